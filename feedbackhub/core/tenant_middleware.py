"""Middleware responsible for wiring organization context into each request."""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .auth import (
    TenantTokenConfigurationError,
    TenantTokenValidationError,
    decode_tenant_token,
    extract_bearer_token,
)
from .tenant_context import reset_tenant_context, set_tenant_context

__all__ = ["TenantContextMiddleware", "PUBLIC_ENDPOINTS"]

logger = logging.getLogger(__name__)

PUBLIC_ENDPOINTS = frozenset(
    {
        "/api/health",
        "/api/version",
        "/api/config",
        "/api/metrics",
        "/api/oauth/callback",
    }
)
_PUBLIC_ACCOUNT_ACTIONS = frozenset({"register", "login", "refresh", "accept-invite"})
_PUBLIC_PREFIXES = ("/api/webhooks/",)


class TenantContextMiddleware(BaseHTTPMiddleware):
    """Validate the bearer token of ``/api`` requests and expose its claims.

    The middleware is inactive until ``TENANT_TOKEN_SECRET``,
    ``TENANT_TOKEN_AUDIENCE`` and ``TENANT_TOKEN_ISSUER`` are all set.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:  # type: ignore[override]
        if not self._is_configured() or self._should_bypass(request):
            return await call_next(request)

        try:
            token = extract_bearer_token(request.headers.get("Authorization"))
            payload = decode_tenant_token(token)
        except TenantTokenValidationError as exc:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": str(exc)},
                headers={"WWW-Authenticate": "Bearer"},
            )
        except TenantTokenConfigurationError as exc:
            logger.error("Tenant token configuration error: %s", exc)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": str(exc)},
            )

        request.state.tenant_id = payload["tenant_id"]
        request.state.user_id = payload["user_id"]

        context_token = set_tenant_context(payload["tenant_id"], payload["user_id"])
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(context_token)

    @staticmethod
    def _is_configured() -> bool:
        required = (
            os.getenv("TENANT_TOKEN_SECRET"),
            os.getenv("TENANT_TOKEN_AUDIENCE"),
            os.getenv("TENANT_TOKEN_ISSUER"),
        )
        return all(required)

    @staticmethod
    def _should_bypass(request: Request) -> bool:
        if request.method.upper() == "OPTIONS":
            return True

        path = request.url.path
        if not path.startswith("/api/"):
            return True
        if path in PUBLIC_ENDPOINTS or path.rstrip("/") in PUBLIC_ENDPOINTS:
            return True
        if path.startswith(_PUBLIC_PREFIXES):
            return True

        if not path.startswith("/api/tenant/accounts"):
            return False

        suffix = path.removeprefix("/api/tenant/accounts").lstrip("/")
        action = suffix.split("/", 1)[0]
        return action in _PUBLIC_ACCOUNT_ACTIONS
