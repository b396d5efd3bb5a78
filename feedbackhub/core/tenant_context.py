"""Request-scoped organization context.

``TenantContextMiddleware`` stores the caller's organization and user ids in
a :class:`contextvars.ContextVar` so services and log records can discover
them without access to the request object.
"""

from __future__ import annotations

from contextvars import ContextVar, Token
from typing import TypedDict

__all__ = [
    "TenantRuntimeContext",
    "get_current_tenant_id",
    "get_current_user_id",
    "reset_tenant_context",
    "set_tenant_context",
]


class TenantRuntimeContext(TypedDict):
    """Values stored in the tenant context during a request."""

    tenant_id: str
    user_id: str


_tenant_context: ContextVar[TenantRuntimeContext | None] = ContextVar(
    "tenant_runtime_context", default=None
)


def set_tenant_context(tenant_id: str, user_id: str) -> Token[TenantRuntimeContext | None]:
    """Store the ids and return the token needed by :func:`reset_tenant_context`."""

    return _tenant_context.set({"tenant_id": tenant_id, "user_id": user_id})


def reset_tenant_context(token: Token[TenantRuntimeContext | None]) -> None:
    _tenant_context.reset(token)


def get_current_tenant_id() -> str | None:
    """Return the organization id for the current context, if any."""

    context = _tenant_context.get()
    if context is None:
        return None
    return context["tenant_id"]


def get_current_user_id() -> str | None:
    context = _tenant_context.get()
    if context is None:
        return None
    return context["user_id"]
