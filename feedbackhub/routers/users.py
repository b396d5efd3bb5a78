"""Profile management for the signed-in user and member lookup."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from feedbackhub.models import User
from feedbackhub.security import get_current_user, require_role
from feedbackhub.security.auth import get_db_session
from feedbackhub.services import UserService

router = APIRouter(prefix="/api/users", tags=["users"])

SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
ViewerRoleDep = Annotated[str, Depends(require_role("viewer"))]


class UserResponse(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    email: EmailStr
    name: str
    role: str
    is_active: bool
    last_activity_at: dt.datetime | None = None
    created_at: dt.datetime


class UserSummary(BaseModel):
    id: uuid.UUID
    email: EmailStr
    name: str
    role: str


class ProfileUpdateRequest(BaseModel):
    # Length is checked by the service so errors carry FIELD_TOO_SHORT/LONG.
    name: str | None = None
    email: str | None = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., max_length=128)


class UserStatsResponse(BaseModel):
    feedback_created: int
    feedback_assigned: int
    feedback_assigned_open: int
    comments_written: int
    last_activity_at: dt.datetime | None = None


def _user(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        organization_id=user.organization_id,
        email=user.email,
        name=user.name,
        role=user.role,
        is_active=user.is_active,
        last_activity_at=user.last_activity_at,
        created_at=user.created_at,
    )


@router.get("/me", response_model=UserResponse)
def get_me(session: SessionDep, current_user: UserDep) -> UserResponse:
    return _user(UserService(session).get_profile(current_user.id))


@router.put("/me", response_model=UserResponse)
def update_me(
    payload: ProfileUpdateRequest, session: SessionDep, current_user: UserDep
) -> UserResponse:
    user = UserService(session).update_profile(
        current_user.id, name=payload.name, email=payload.email
    )
    session.commit()
    return _user(user)


@router.post("/me/password", status_code=status.HTTP_204_NO_CONTENT)
def change_password(
    payload: ChangePasswordRequest, session: SessionDep, current_user: UserDep
) -> Response:
    """Change the password; every refresh token of the user is revoked."""

    UserService(session).change_password(
        current_user.id, payload.current_password, payload.new_password
    )
    session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me/stats", response_model=UserStatsResponse)
def get_my_stats(session: SessionDep, current_user: UserDep) -> UserStatsResponse:
    return UserStatsResponse(**UserService(session).get_user_stats(current_user.id))


@router.get("/search", response_model=list[UserSummary])
def search_users(
    session: SessionDep,
    current_user: UserDep,
    _: ViewerRoleDep,
    q: str = Query(..., max_length=255),
    limit: int = Query(10, ge=1, le=50),
) -> list[UserSummary]:
    users = UserService(session).search_users(current_user.organization_id, q, limit=limit)
    return [UserSummary(id=u.id, email=u.email, name=u.name, role=u.role) for u in users]


@router.get("/{user_id}", response_model=UserResponse)
def get_user(
    user_id: uuid.UUID, session: SessionDep, current_user: UserDep, _: ViewerRoleDep
) -> UserResponse:
    return _user(UserService(session).get_user(current_user.organization_id, user_id))
