"""Bearer token decoding for organization-scoped requests.

Every authenticated request carries an access token whose ``tenant_id`` claim
is the id of the caller's organization and whose ``user_id`` claim is the
member making the call. Both are UUIDs; ``roles`` may only name the
``viewer``, ``operator`` and ``admin`` roles.
"""

from __future__ import annotations

import os
import uuid
from typing import NamedTuple, cast

import jwt
from fastapi import HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError
from typing_extensions import TypedDict

__all__ = [
    "KNOWN_ROLES",
    "TenantTokenPayload",
    "TenantTokenConfigurationError",
    "TenantTokenValidationError",
    "decode_tenant_token",
    "extract_bearer_token",
    "get_tenant_context",
]

KNOWN_ROLES = frozenset({"viewer", "operator", "admin"})


class TenantTokenConfigurationError(RuntimeError):
    """The ``TENANT_TOKEN_*`` environment is incomplete."""


class TenantTokenValidationError(ValueError):
    """The bearer token was rejected."""


class _TenantTokenRequiredClaims(TypedDict):
    tenant_id: str
    user_id: str


class TenantTokenPayload(_TenantTokenRequiredClaims, total=False):
    """Decoded JWT payload; ``tenant_id`` is the organization id."""

    aud: str | list[str]
    email: str
    exp: int
    iat: int
    iss: str
    name: str
    roles: list[str]
    scope: str
    type: str


class _VerificationConfig(NamedTuple):
    secret: str
    audience: str
    issuer: str
    algorithm: str
    leeway: int


def _load_config() -> _VerificationConfig:
    values = {
        name: (os.getenv(name) or "").strip()
        for name in ("TENANT_TOKEN_SECRET", "TENANT_TOKEN_AUDIENCE", "TENANT_TOKEN_ISSUER")
    }
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise TenantTokenConfigurationError(
            f"Environment variable '{missing[0]}' must be set for tenant token validation.",
        )
    try:
        leeway = int((os.getenv("TENANT_TOKEN_LEEWAY") or "0").strip())
    except ValueError as exc:
        raise TenantTokenConfigurationError("TENANT_TOKEN_LEEWAY must be an integer.") from exc
    return _VerificationConfig(
        secret=values["TENANT_TOKEN_SECRET"],
        audience=values["TENANT_TOKEN_AUDIENCE"],
        issuer=values["TENANT_TOKEN_ISSUER"],
        algorithm=(os.getenv("TENANT_TOKEN_ALGORITHM") or "HS256").strip(),
        leeway=leeway,
    )


def _uuid_claim(payload: dict, name: str) -> str:
    value = payload.get(name)
    if not value:
        raise TenantTokenValidationError(
            "Tenant token payload must include 'tenant_id' and 'user_id'.",
        )
    try:
        return str(uuid.UUID(str(value)))
    except ValueError as exc:
        raise TenantTokenValidationError(f"Tenant token claim '{name}' is not a valid id.") from exc


def _roles_claim(payload: dict) -> list[str] | None:
    roles = payload.get("roles")
    if roles is None:
        return None
    if isinstance(roles, str):
        roles = [roles]
    if not isinstance(roles, list) or not all(isinstance(role, str) for role in roles):
        raise TenantTokenValidationError("Tenant token roles must be a list of strings.")
    unknown = sorted(set(roles) - KNOWN_ROLES)
    if unknown:
        raise TenantTokenValidationError(f"Tenant token has unknown roles: {', '.join(unknown)}.")
    return roles


def extract_bearer_token(authorization: str | None) -> str:
    """Return the credentials of a ``Bearer`` authorization header.

    Raises:
        TenantTokenValidationError: If the header is absent or uses another scheme.
    """

    if not authorization:
        raise TenantTokenValidationError("Missing Authorization header.")
    scheme, _, credentials = authorization.partition(" ")
    if not credentials.strip() or scheme.lower() != "bearer":
        raise TenantTokenValidationError("Authorization header must use Bearer scheme.")
    return credentials.strip()


def decode_tenant_token(token: str) -> TenantTokenPayload:
    """Decode an access token and normalise its organization claims.

    ``tenant_id`` and ``user_id`` come back in canonical UUID form. Refresh
    tokens and tokens carrying roles outside the three known ones are refused.

    Raises:
        TenantTokenConfigurationError: If mandatory environment configuration is missing.
        TenantTokenValidationError: If token signature, claims, or expiry are invalid.
    """

    config = _load_config()
    try:
        payload = jwt.decode(
            token,
            config.secret,
            algorithms=[config.algorithm],
            audience=config.audience,
            issuer=config.issuer,
            leeway=config.leeway,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise TenantTokenValidationError("Tenant token has expired.") from exc
    except InvalidTokenError as exc:
        raise TenantTokenValidationError("Tenant token is invalid.") from exc

    if (payload.get("type") or "access") != "access":
        raise TenantTokenValidationError("Tenant token must be an access token.")

    payload["tenant_id"] = _uuid_claim(payload, "tenant_id")
    payload["user_id"] = _uuid_claim(payload, "user_id")
    roles = _roles_claim(payload)
    if roles is not None:
        payload["roles"] = roles
    return cast(TenantTokenPayload, payload)


async def get_tenant_context(request: Request) -> TenantTokenPayload:
    """FastAPI dependency returning the validated token payload.

    Raises:
        HTTPException: ``401`` when the header is missing or invalid, ``500``
            if the token configuration is incorrect.
    """

    try:
        return decode_tenant_token(extract_bearer_token(request.headers.get("Authorization")))
    except TenantTokenConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except TenantTokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
