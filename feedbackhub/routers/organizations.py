"""Organization settings, membership and statistics."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from feedbackhub.models import Organization, User
from feedbackhub.security import get_current_user, require_role
from feedbackhub.security.auth import get_db_session
from feedbackhub.services import OrganizationService

router = APIRouter(prefix="/api/organizations", tags=["organizations"])

SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
ViewerRoleDep = Annotated[str, Depends(require_role("viewer"))]
AdminRoleDep = Annotated[str, Depends(require_role("admin"))]

RoleLiteral = Literal["viewer", "operator", "admin"]


class OrganizationResponse(BaseModel):
    id: uuid.UUID
    name: str
    subdomain: str
    plan_type: str
    description: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: dt.datetime
    updated_at: dt.datetime


class OrganizationUpdateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    settings: dict[str, Any] | None = None


class MemberResponse(BaseModel):
    id: uuid.UUID
    email: EmailStr
    name: str
    role: str
    is_active: bool
    last_activity_at: dt.datetime | None = None
    created_at: dt.datetime


class AddMemberRequest(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., max_length=128)
    role: RoleLiteral = "viewer"


class UpdateMemberRoleRequest(BaseModel):
    role: RoleLiteral


class OrganizationStatsResponse(BaseModel):
    member_count: int
    members_by_role: dict[str, int]
    feedback_count: int
    feedback_by_status: dict[str, int]
    customer_count: int
    integration_count: int


class NameAvailabilityResponse(BaseModel):
    name: str
    available: bool


class RoleResponse(BaseModel):
    organization_id: uuid.UUID
    user_id: uuid.UUID
    role: str | None


def _organization(org: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=org.id,
        name=org.name,
        subdomain=org.subdomain,
        plan_type=org.plan_type,
        description=org.description,
        settings=dict(org.settings or {}),
        created_at=org.created_at,
        updated_at=org.updated_at,
    )


def _member(user: User) -> MemberResponse:
    return MemberResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        is_active=user.is_active,
        last_activity_at=user.last_activity_at,
        created_at=user.created_at,
    )


@router.get("/current", response_model=OrganizationResponse)
def get_current_organization(
    session: SessionDep, current_user: UserDep, _: ViewerRoleDep
) -> OrganizationResponse:
    organization = OrganizationService(session).get_organization(current_user.organization_id)
    return _organization(organization)


@router.put("/current", response_model=OrganizationResponse)
def update_current_organization(
    payload: OrganizationUpdateRequest,
    session: SessionDep,
    current_user: UserDep,
    _: AdminRoleDep,
) -> OrganizationResponse:
    organization = OrganizationService(session).update_organization(
        current_user.organization_id,
        current_user,
        name=payload.name,
        description=payload.description,
        settings=payload.settings,
    )
    session.commit()
    return _organization(organization)


@router.delete("/current", status_code=status.HTTP_204_NO_CONTENT)
def delete_current_organization(
    session: SessionDep, current_user: UserDep, _: AdminRoleDep
) -> Response:
    """Delete the caller's organization and everything it owns."""

    OrganizationService(session).delete_organization(current_user.organization_id, current_user)
    session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/current/stats", response_model=OrganizationStatsResponse)
def get_organization_stats(
    session: SessionDep, current_user: UserDep, _: ViewerRoleDep
) -> OrganizationStatsResponse:
    stats = OrganizationService(session).get_statistics(current_user.organization_id)
    return OrganizationStatsResponse(**stats)


@router.get("/current/members", response_model=list[MemberResponse])
def list_members(
    session: SessionDep, current_user: UserDep, _: ViewerRoleDep
) -> list[MemberResponse]:
    members = OrganizationService(session).list_members(current_user.organization_id)
    return [_member(user) for user in members]


@router.post(
    "/current/members",
    response_model=MemberResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_member(
    payload: AddMemberRequest,
    session: SessionDep,
    current_user: UserDep,
    _: AdminRoleDep,
) -> MemberResponse:
    member = OrganizationService(session).add_member(
        current_user.organization_id,
        current_user,
        email=payload.email,
        name=payload.name,
        password=payload.password,
        role=payload.role,
    )
    session.commit()
    return _member(member)


@router.put("/current/members/{user_id}", response_model=MemberResponse)
def update_member_role(
    user_id: uuid.UUID,
    payload: UpdateMemberRoleRequest,
    session: SessionDep,
    current_user: UserDep,
    _: AdminRoleDep,
) -> MemberResponse:
    member = OrganizationService(session).update_member_role(
        current_user.organization_id, current_user, user_id, payload.role
    )
    session.commit()
    return _member(member)


@router.delete("/current/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_member(
    user_id: uuid.UUID,
    session: SessionDep,
    current_user: UserDep,
    _: AdminRoleDep,
) -> Response:
    OrganizationService(session).remove_member(current_user.organization_id, current_user, user_id)
    session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/check-name", response_model=NameAvailabilityResponse)
def check_name(
    session: SessionDep,
    current_user: UserDep,
    _: ViewerRoleDep,
    name: str = Query(..., min_length=1, max_length=255),
) -> NameAvailabilityResponse:
    available = OrganizationService(session).is_name_available(
        name, exclude_id=current_user.organization_id
    )
    return NameAvailabilityResponse(name=name, available=available)


@router.get("/current/role", response_model=RoleResponse)
def get_current_role(
    session: SessionDep, current_user: UserDep, _: ViewerRoleDep
) -> RoleResponse:
    role = OrganizationService(session).get_user_role(current_user.organization_id, current_user.id)
    return RoleResponse(
        organization_id=current_user.organization_id, user_id=current_user.id, role=role
    )
