"""Normalise arbitrary exceptions and render them as API responses."""

from __future__ import annotations

import logging
from typing import Any

import jwt
import requests
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from .base import BaseError
from .specific import (
    AuthenticationError,
    DatabaseConnectionError,
    DatabaseConstraintError,
    DatabaseError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "AUTHENTICATION_REQUIRED",
    403: "INSUFFICIENT_PERMISSIONS",
    404: "RESOURCE_NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "RESOURCE_ALREADY_EXISTS",
    422: "UNPROCESSABLE_ENTITY",
    429: "RATE_LIMIT_EXCEEDED",
    502: "EXTERNAL_SERVICE_ERROR",
    503: "SERVICE_UNAVAILABLE",
    504: "TIMEOUT_ERROR",
}


def _validation_details(exc: Exception) -> list[dict[str, Any]]:
    errors = getattr(exc, "errors", None)
    if not callable(errors):
        return []
    details = []
    for item in errors():
        details.append(
            {
                "field": ".".join(str(part) for part in item.get("loc", ())),
                "message": item.get("msg", ""),
            }
        )
    return details


def process_error(exc: BaseException, context: dict[str, Any] | None = None) -> BaseError:
    """Convert any exception into a :class:`BaseError`."""

    if isinstance(exc, BaseError):
        if context:
            exc.context.update(context)
        return exc

    if isinstance(exc, (RequestValidationError, PydanticValidationError)):
        return ValidationError(
            metadata={"errors": _validation_details(exc)},
            context=context,
            cause=exc,
        )

    if isinstance(exc, jwt.ExpiredSignatureError):
        return AuthenticationError(code="TOKEN_EXPIRED", context=context, cause=exc)
    if isinstance(exc, jwt.InvalidTokenError):
        return AuthenticationError(code="INVALID_TOKEN", context=context, cause=exc)

    if isinstance(exc, IntegrityError):
        text = str(exc.orig if exc.orig is not None else exc).lower()
        constraint = "foreign_key" if "foreign key" in text else "unique"
        return DatabaseConstraintError(constraint, context=context, cause=exc)
    if isinstance(exc, OperationalError):
        return DatabaseConnectionError(context=context, cause=exc)
    if isinstance(exc, SQLAlchemyError):
        return DatabaseError(code="DATABASE_QUERY_FAILED", context=context, cause=exc)

    if isinstance(exc, requests.Timeout):
        return BaseError("TIMEOUT_ERROR", retryable=True, context=context, cause=exc)
    if isinstance(exc, requests.ConnectionError):
        return BaseError("NETWORK_ERROR", retryable=True, context=context, cause=exc)

    message = str(exc).lower()
    if "unauthorized" in message or "authentication" in message:
        return AuthenticationError(context=context, cause=exc)

    return BaseError.internal(context=context, cause=exc)


def create_http_error(status_code: int, message: str | None = None) -> BaseError:
    """Build a :class:`BaseError` for a bare HTTP status."""

    code = _STATUS_CODES.get(status_code, "INTERNAL_SERVER_ERROR")
    return BaseError(code, message, status_code=status_code)


def extract_request_context(request: Request) -> dict[str, Any]:
    forwarded = request.headers.get("X-Forwarded-For")
    client_ip = forwarded.split(",")[0].strip() if forwarded else None
    if client_ip is None and request.client is not None:
        client_ip = request.client.host
    return {
        "request_id": getattr(request.state, "request_id", None),
        "method": request.method,
        "path": request.url.path,
        "user_agent": request.headers.get("User-Agent"),
        "ip": client_ip,
        "user_id": getattr(request.state, "user_id", None),
        "tenant_id": getattr(request.state, "tenant_id", None),
    }


def _render(error: BaseError) -> JSONResponse:
    headers = None
    retry_after = error.metadata.get("retryAfter")
    if error.status_code == 429 and retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    return JSONResponse(
        status_code=error.status_code, content=error.to_response(), headers=headers
    )


def install_error_handlers(app: FastAPI) -> None:
    """Register handlers rendering :class:`BaseError` and unexpected failures."""

    async def handle_base_error(request: Request, exc: BaseError) -> JSONResponse:
        exc.context.update(extract_request_context(request))
        exc.log()
        return _render(exc)

    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        error = process_error(exc, extract_request_context(request))
        error.log()
        return _render(error)

    app.add_exception_handler(BaseError, handle_base_error)
    app.add_exception_handler(SQLAlchemyError, handle_unexpected)
    app.add_exception_handler(Exception, handle_unexpected)


__all__ = [
    "create_http_error",
    "extract_request_context",
    "install_error_handlers",
    "process_error",
]
