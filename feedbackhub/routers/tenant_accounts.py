"""Tenant account management API: sign-up, sessions and invitations."""

from __future__ import annotations

import datetime as dt
import secrets
import uuid
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from feedbackhub.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    ValidationError,
)
from feedbackhub.models import Organization, User, UserInvite
from feedbackhub.security import (
    TokenPair,
    as_utc,
    get_current_user,
    hash_password,
    issue_token_pair,
    require_role,
    revoke_all_refresh_tokens,
    revoke_refresh_token,
    verify_password,
    verify_refresh_token,
)
from feedbackhub.security.auth import get_db_session
from feedbackhub.services import OrganizationService

router = APIRouter(prefix="/api/tenant/accounts", tags=["tenant-accounts"])

SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
AdminRoleDep = Annotated[str, Depends(require_role("admin"))]
AUTH_SCHEME_BEARER: Literal["bearer"] = "bearer"


class OrganizationPayload(BaseModel):
    id: uuid.UUID
    name: str
    subdomain: str
    plan_type: str


class UserPayload(BaseModel):
    id: uuid.UUID
    email: EmailStr
    name: str
    role: str


class TokenEnvelope(BaseModel):
    access_token: str
    refresh_token: str
    token_type: Literal["bearer"] = AUTH_SCHEME_BEARER
    expires_in: int = Field(..., description="Seconds until the access token expires")
    refresh_expires_in: int = Field(
        ..., description="Seconds until the refresh token expires"
    )
    roles: list[str]


class AuthenticatedResponse(BaseModel):
    organization: OrganizationPayload
    user: UserPayload
    tokens: TokenEnvelope


class RegisterOrganizationRequest(BaseModel):
    organization_name: str = Field(..., min_length=1, max_length=255)
    subdomain: str = Field(..., pattern=r"^[a-z0-9-]{3,50}$")
    description: str | None = Field(default=None, max_length=2000)
    admin_name: str = Field(..., min_length=1, max_length=255)
    admin_email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class InviteUserRequest(BaseModel):
    email: EmailStr
    role: Literal["viewer", "operator", "admin"] = "viewer"
    expires_in: int = Field(default=60 * 60 * 24 * 7, ge=300, le=60 * 60 * 24 * 30)
    message: str | None = Field(default=None, max_length=2000)


class InviteResponse(BaseModel):
    token: str
    email: EmailStr
    role: str
    expires_at: dt.datetime


class AcceptInviteRequest(BaseModel):
    token: str
    name: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _email_taken(session: Session, email: str) -> bool:
    return session.execute(select(User.id).where(User.email == email)).first() is not None


def _authenticated(organization: Organization, user: User, pair: TokenPair) -> AuthenticatedResponse:
    now = _utcnow()
    return AuthenticatedResponse(
        organization=OrganizationPayload(
            id=organization.id,
            name=organization.name,
            subdomain=organization.subdomain,
            plan_type=organization.plan_type,
        ),
        user=UserPayload(id=user.id, email=user.email, name=user.name, role=user.role),
        tokens=TokenEnvelope(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=max(int((as_utc(pair.access_expires_at) - now).total_seconds()), 0),
            refresh_expires_in=max(int((as_utc(pair.refresh_expires_at) - now).total_seconds()), 0),
            roles=[user.role],
        ),
    )


@router.post(
    "/register",
    response_model=AuthenticatedResponse,
    status_code=status.HTTP_201_CREATED,
)
def register_organization(
    payload: RegisterOrganizationRequest,
    request: Request,
    session: SessionDep,
) -> AuthenticatedResponse:
    """Create an organization together with its first administrator."""

    subdomain = payload.subdomain.lower()
    email = _normalize_email(payload.admin_email)

    if session.execute(
        select(Organization.id).where(Organization.subdomain == subdomain)
    ).first():
        raise ResourceAlreadyExistsError("organization", "Subdomain already in use.")
    if _email_taken(session, email):
        raise ResourceAlreadyExistsError("user")

    organization = OrganizationService(session).create_organization(
        payload.organization_name,
        description=payload.description,
        subdomain=subdomain,
    )
    admin = User(
        organization_id=organization.id,
        email=email,
        name=payload.admin_name.strip(),
        password_hash=hash_password(payload.password),
        role="admin",
    )
    session.add(admin)
    session.flush()

    pair = issue_token_pair(session, admin, user_agent=request.headers.get("User-Agent"))
    session.commit()
    return _authenticated(organization, admin, pair)


@router.post("/login", response_model=AuthenticatedResponse)
def login(
    payload: LoginRequest,
    request: Request,
    session: SessionDep,
) -> AuthenticatedResponse:
    """Authenticate a user via e-mail and password."""

    email = _normalize_email(payload.email)
    user = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is None or not verify_password(payload.password, user.password_hash):
        raise InvalidCredentialsError()
    if not user.is_active:
        raise AuthenticationError(code="ACCOUNT_DISABLED")

    user.last_activity_at = _utcnow()
    pair = issue_token_pair(session, user, user_agent=request.headers.get("User-Agent"))
    session.commit()
    return _authenticated(user.organization, user, pair)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    payload: RefreshTokenRequest,
    session: SessionDep,
    current_user: UserDep,
) -> Response:
    """Revoke a single refresh token of the authenticated user."""

    token = verify_refresh_token(session, payload.refresh_token)
    if token is None or token.user_id != current_user.id:
        raise ValidationError("Invalid refresh token.", metadata={"field": "refresh_token"})

    revoke_refresh_token(token)
    session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/refresh", response_model=AuthenticatedResponse)
def refresh(
    payload: RefreshTokenRequest,
    request: Request,
    session: SessionDep,
) -> AuthenticatedResponse:
    """Exchange a refresh token for a new access/refresh pair."""

    token = verify_refresh_token(session, payload.refresh_token)
    if token is None:
        raise AuthenticationError("Invalid refresh token.", code="INVALID_TOKEN")

    user = session.get(User, token.user_id)
    if user is None or not user.is_active:
        raise AuthenticationError(code="ACCOUNT_DISABLED")

    revoke_refresh_token(token)
    pair = issue_token_pair(session, user, user_agent=request.headers.get("User-Agent"))
    session.commit()
    return _authenticated(user.organization, user, pair)


@router.post(
    "/invite", response_model=InviteResponse, status_code=status.HTTP_201_CREATED
)
def invite_user(
    payload: InviteUserRequest,
    session: SessionDep,
    current_user: UserDep,
    _: AdminRoleDep,
) -> InviteResponse:
    """Issue an invitation for another user to join the organization."""

    email = _normalize_email(payload.email)
    if _email_taken(session, email):
        raise ResourceAlreadyExistsError("user")

    pending = session.execute(
        select(UserInvite).where(
            UserInvite.organization_id == current_user.organization_id,
            UserInvite.email == email,
            UserInvite.accepted_at.is_(None),
        )
    ).scalar_one_or_none()
    if pending is not None:
        session.delete(pending)
        session.flush()

    invite_token = secrets.token_urlsafe(32)
    expires_at = _utcnow() + dt.timedelta(seconds=payload.expires_in)
    session.add(
        UserInvite(
            organization_id=current_user.organization_id,
            email=email,
            role=payload.role,
            token=invite_token,
            message=payload.message,
            expires_at=expires_at,
        )
    )
    session.commit()
    return InviteResponse(token=invite_token, email=email, role=payload.role, expires_at=expires_at)


@router.post("/accept-invite", response_model=AuthenticatedResponse)
def accept_invite(
    payload: AcceptInviteRequest,
    request: Request,
    session: SessionDep,
) -> AuthenticatedResponse:
    """Turn an invitation token into an active user account."""

    invite = session.execute(
        select(UserInvite).where(UserInvite.token == payload.token)
    ).scalar_one_or_none()
    if invite is None or invite.accepted_at is not None or as_utc(invite.expires_at) <= _utcnow():
        raise ValidationError("Invalid or expired invite.", metadata={"field": "token"})

    email = _normalize_email(invite.email)
    if _email_taken(session, email):
        raise ResourceAlreadyExistsError("user")

    organization = session.get(Organization, invite.organization_id)
    if organization is None:
        raise ResourceNotFoundError("organization", invite.organization_id)

    user = User(
        organization_id=invite.organization_id,
        email=email,
        name=payload.name.strip(),
        password_hash=hash_password(payload.password),
        role=invite.role,
    )
    session.add(user)
    invite.accepted_at = _utcnow()
    session.flush()

    pair = issue_token_pair(session, user, user_agent=request.headers.get("User-Agent"))
    session.commit()
    return _authenticated(organization, user, pair)


@router.post("/rotate-credentials", response_model=AuthenticatedResponse)
def rotate_credentials(
    payload: RefreshTokenRequest,
    request: Request,
    session: SessionDep,
    current_user: UserDep,
) -> AuthenticatedResponse:
    """Invalidate every refresh token of the caller and issue a fresh pair."""

    token = verify_refresh_token(session, payload.refresh_token)
    if token is None or token.user_id != current_user.id:
        raise AuthenticationError("Invalid refresh token.", code="INVALID_TOKEN")

    revoke_all_refresh_tokens(session, current_user)
    pair = issue_token_pair(session, current_user, user_agent=request.headers.get("User-Agent"))
    session.commit()
    return _authenticated(current_user.organization, current_user, pair)
