"""JWT-backed authentication dependencies for FastAPI routers."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from collections.abc import Iterator
from typing import Callable

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker

from feedbackhub.core.auth import TenantTokenPayload, get_tenant_context
from feedbackhub.errors import InsufficientPermissionsError
from feedbackhub.models import User
from feedbackhub.models.session import get_sessionmaker

logger = logging.getLogger(__name__)

ROLE_LEVELS = {"viewer": 0, "operator": 1, "admin": 2}
_ACTIVITY_RESOLUTION = dt.timedelta(minutes=5)
_SESSION_FACTORY: sessionmaker[Session] | None = None


def get_session_factory() -> sessionmaker[Session]:
    """Return the process-wide session factory, creating it on first use."""

    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = get_sessionmaker()
    return _SESSION_FACTORY


def reset_session_factory() -> None:
    """Forget the cached factory; the next call re-reads ``DATABASE_URL``."""

    global _SESSION_FACTORY
    _SESSION_FACTORY = None


def get_db_session() -> Iterator[Session]:
    """Yield a SQLAlchemy session for request-scoped dependencies."""

    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


async def get_current_token_payload(request: Request) -> TenantTokenPayload:
    """Decode and validate the bearer token from ``request``."""

    payload = await get_tenant_context(request)
    token_type = payload.get("type")
    if token_type and token_type != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required.",
        )
    return payload


def _touch_activity(session: Session, user: User) -> None:
    now = dt.datetime.now(dt.timezone.utc)
    last = user.last_activity_at
    if last is not None and last.tzinfo is None:
        last = last.replace(tzinfo=dt.timezone.utc)
    if last is not None and now - last < _ACTIVITY_RESOLUTION:
        return
    user.last_activity_at = now
    session.commit()


async def get_current_user(
    payload: TenantTokenPayload = Depends(get_current_token_payload),
    session: Session = Depends(get_db_session),
) -> User:
    """Resolve the authenticated :class:`~feedbackhub.models.User`."""

    try:
        user_id = uuid.UUID(payload["user_id"])
    except (KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identifier in token.",
        ) from exc

    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User is inactive or no longer exists.",
        )

    if str(user.organization_id) != payload.get("tenant_id"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token tenant mismatch.",
        )

    _touch_activity(session, user)
    return user


def has_role(role: str | None, min_role: str) -> bool:
    if role not in ROLE_LEVELS:
        return False
    return ROLE_LEVELS[role] >= ROLE_LEVELS[min_role]


def require_role(min_role: str) -> Callable[..., str]:
    """Create a dependency ensuring the caller has at least ``min_role`` privileges.

    The role stored on the user row is authoritative so that demotions take
    effect before outstanding access tokens expire.
    """

    if min_role not in ROLE_LEVELS:
        raise ValueError(f"Unknown role: {min_role}")

    async def dependency(user: User = Depends(get_current_user)) -> str:
        if not has_role(user.role, min_role):
            raise InsufficientPermissionsError(required_role=min_role)
        return user.role

    return dependency


__all__ = [
    "ROLE_LEVELS",
    "get_current_token_payload",
    "get_current_user",
    "get_db_session",
    "get_session_factory",
    "has_role",
    "require_role",
    "reset_session_factory",
]
