"""Helpers for issuing and managing JWT access/refresh tokens."""

from __future__ import annotations

import dataclasses
import datetime as dt
import hashlib
import os
import secrets
from functools import lru_cache
from typing import Any, cast

import jwt
from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.orm import Session

from feedbackhub.models import RefreshToken, User


@dataclasses.dataclass(frozen=True)
class JWTSettings:
    """Runtime configuration for issuing authentication tokens."""

    secret: str
    issuer: str
    audience: str
    algorithm: str = "HS256"
    access_token_ttl_seconds: int = 900  # 15 minutes
    refresh_token_ttl_seconds: int = 60 * 60 * 24 * 14  # two weeks


@dataclasses.dataclass(frozen=True)
class TokenPair:
    """Freshly issued access and refresh tokens for one user."""

    access_token: str
    access_expires_at: dt.datetime
    refresh_token: str
    refresh_expires_at: dt.datetime


@lru_cache(maxsize=1)
def get_jwt_settings() -> JWTSettings:
    """Load settings from the environment."""

    secret = os.getenv("TENANT_TOKEN_SECRET")
    issuer = os.getenv("TENANT_TOKEN_ISSUER")
    audience = os.getenv("TENANT_TOKEN_AUDIENCE")
    algorithm = os.getenv("TENANT_TOKEN_ALGORITHM", "HS256")
    if not secret or not issuer or not audience:
        raise RuntimeError(
            "TENANT_TOKEN_SECRET, TENANT_TOKEN_ISSUER and TENANT_TOKEN_AUDIENCE must be set.",
        )
    access_ttl = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", "900"))
    refresh_ttl = int(os.getenv("REFRESH_TOKEN_TTL_SECONDS", str(60 * 60 * 24 * 14)))
    return JWTSettings(
        secret=secret,
        issuer=issuer,
        audience=audience,
        algorithm=algorithm,
        access_token_ttl_seconds=access_ttl,
        refresh_token_ttl_seconds=refresh_ttl,
    )


def reset_jwt_settings_cache() -> None:
    """Clear cached JWT settings; useful in tests when env vars change."""

    get_jwt_settings.cache_clear()


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def as_utc(value: dt.datetime) -> dt.datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def create_access_token(
    user: User, *, settings: JWTSettings | None = None
) -> tuple[str, dt.datetime]:
    """Issue a signed JWT access token for ``user``."""

    settings = settings or get_jwt_settings()
    now = _utcnow()
    expires_at = now + dt.timedelta(seconds=settings.access_token_ttl_seconds)
    payload: dict[str, Any] = {
        "tenant_id": str(user.organization_id),
        "user_id": str(user.id),
        "email": user.email,
        "name": user.name,
        "roles": [user.role] if user.role else [],
        "iss": settings.issuer,
        "aud": settings.audience,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "scope": "tenant",
        "type": "access",
    }
    token = jwt.encode(payload, settings.secret, algorithm=settings.algorithm)
    return str(token), expires_at


def create_refresh_token(
    session: Session,
    user: User,
    *,
    user_agent: str | None = None,
    settings: JWTSettings | None = None,
) -> tuple[str, RefreshToken]:
    """Persist a refresh token bound to ``user`` and return the raw secret."""

    settings = settings or get_jwt_settings()
    raw_token = secrets.token_urlsafe(48)
    now = _utcnow()
    record = RefreshToken(
        user_id=user.id,
        token_hash=_hash_token(raw_token),
        issued_at=now,
        expires_at=now + dt.timedelta(seconds=settings.refresh_token_ttl_seconds),
        user_agent=(user_agent or "")[:255] or None,
    )
    session.add(record)
    session.flush()
    return raw_token, record


def issue_token_pair(
    session: Session, user: User, *, user_agent: str | None = None
) -> TokenPair:
    """Create a refresh token row and a matching access token."""

    refresh_token, record = create_refresh_token(session, user, user_agent=user_agent)
    access_token, access_expires_at = create_access_token(user)
    return TokenPair(
        access_token=access_token,
        access_expires_at=access_expires_at,
        refresh_token=refresh_token,
        refresh_expires_at=record.expires_at,
    )


def verify_refresh_token(session: Session, raw_token: str) -> RefreshToken | None:
    """Return the refresh token row matching ``raw_token`` if valid."""

    if not raw_token:
        return None
    token = session.execute(
        select(RefreshToken).where(RefreshToken.token_hash == _hash_token(raw_token))
    ).scalar_one_or_none()
    if token is None or token.revoked_at is not None:
        return None
    if as_utc(token.expires_at) <= _utcnow():
        return None
    return token


def revoke_refresh_token(
    token: RefreshToken, *, when: dt.datetime | None = None
) -> None:
    token.revoked_at = when or _utcnow()


def revoke_all_refresh_tokens(
    session: Session, user: User, *, when: dt.datetime | None = None
) -> int:
    """Revoke every refresh token for ``user`` and return the count."""

    when = when or _utcnow()
    result = session.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user.id)
        .where(RefreshToken.revoked_at.is_(None))
        .values(revoked_at=when)
        .execution_options(synchronize_session="fetch")
    )
    cursor_result = cast(CursorResult[Any], result)
    return int(cursor_result.rowcount or 0)


__all__ = [
    "JWTSettings",
    "TokenPair",
    "as_utc",
    "create_access_token",
    "create_refresh_token",
    "get_jwt_settings",
    "issue_token_pair",
    "reset_jwt_settings_cache",
    "revoke_all_refresh_tokens",
    "revoke_refresh_token",
    "verify_refresh_token",
]
