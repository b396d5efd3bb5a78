"""Base error type carrying a catalog code, HTTP status and correlation id."""

from __future__ import annotations

import datetime as dt
import logging
import secrets
import time
import traceback
from typing import Any

from .messages import (
    get_error_category,
    get_error_message,
    get_error_status_code,
)

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_GENERIC_MESSAGE = "An unexpected error occurred. Please try again later."


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_error_id() -> str:
    """Return an id like ``err_<base36 millis>_<6 random chars>``."""

    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"err_{_to_base36(millis)}_{suffix}"


class BaseError(Exception):
    """Application error mapped to an HTTP status and JSON body.

    Args:
        code: Catalog code (see :mod:`feedbackhub.errors.messages`).
        message: Optional override for the catalog message.
        status_code: Optional override for the mapped HTTP status.
        context: Request or operation details kept for logging only.
        cause: Underlying exception, if any.
        retryable: Whether the caller may retry the operation.
        user_friendly: When ``False`` clients receive a generic message.
        metadata: Extra details returned to the client.
    """

    def __init__(
        self,
        code: str,
        message: str | None = None,
        *,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
        retryable: bool = False,
        user_friendly: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message or get_error_message(code)
        super().__init__(self.message)
        self.status_code = status_code or get_error_status_code(code)
        self.category = get_error_category(code)
        self.context = dict(context or {})
        self.cause = cause
        self.retryable = retryable
        self.user_friendly = user_friendly
        self.metadata = dict(metadata or {})
        self.timestamp = dt.datetime.now(dt.timezone.utc).isoformat()
        self.error_id = generate_error_id()
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, status_code={self.status_code})"

    def user_friendly_message(self) -> str:
        if self.user_friendly:
            return self.message
        return _GENERIC_MESSAGE

    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    def is_server_error(self) -> bool:
        return self.status_code >= 500

    def to_response(self, include_stack: bool = False) -> dict[str, Any]:
        """Return the JSON body sent to API clients."""

        error: dict[str, Any] = {
            "code": self.code,
            "message": self.user_friendly_message(),
            "statusCode": self.status_code,
            "category": self.category,
            "errorId": self.error_id,
            "timestamp": self.timestamp,
            "retryable": self.retryable,
        }
        if self.metadata:
            error["metadata"] = self.metadata
        if include_stack:
            error["stack"] = "".join(
                traceback.format_exception(type(self), self, self.__traceback__)
            )
        return {"success": False, "error": error}

    def to_log_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error_id": self.error_id,
            "error_code": self.code,
            "status_code": self.status_code,
            "category": self.category,
            "retryable": self.retryable,
            "context": self.context,
        }
        if self.cause is not None:
            payload["cause"] = repr(self.cause)
        return payload

    def log(self, log: logging.Logger | None = None) -> None:
        """Log the error at a level derived from its status code."""

        log = log or logger
        extra = {"error_id": self.error_id, "error_code": self.code}
        if self.status_code >= 500:
            log.error(
                "%s: %s %s", self.code, self.message, self.to_log_dict(),
                extra=extra, exc_info=self.cause is not None,
            )
        elif self.status_code >= 400:
            log.warning("%s: %s", self.code, self.message, extra=extra)
        else:
            log.info("%s: %s", self.code, self.message, extra=extra)

    # Factories -----------------------------------------------------------

    @classmethod
    def from_code(cls, code: str, message: str | None = None, **kwargs: Any) -> "BaseError":
        return cls(code, message, **kwargs)

    @classmethod
    def validation(cls, message: str | None = None, **kwargs: Any) -> "BaseError":
        return cls("VALIDATION_ERROR", message, **kwargs)

    @classmethod
    def authentication(cls, message: str | None = None, **kwargs: Any) -> "BaseError":
        return cls("AUTHENTICATION_REQUIRED", message, **kwargs)

    @classmethod
    def authorization(cls, message: str | None = None, **kwargs: Any) -> "BaseError":
        return cls("INSUFFICIENT_PERMISSIONS", message, **kwargs)

    @classmethod
    def not_found(cls, resource: str = "Resource", **kwargs: Any) -> "BaseError":
        return cls("RESOURCE_NOT_FOUND", f"{resource} not found", **kwargs)

    @classmethod
    def conflict(cls, message: str | None = None, **kwargs: Any) -> "BaseError":
        return cls("RESOURCE_ALREADY_EXISTS", message, **kwargs)

    @classmethod
    def internal(cls, message: str | None = None, **kwargs: Any) -> "BaseError":
        kwargs.setdefault("user_friendly", False)
        return cls("INTERNAL_SERVER_ERROR", message, **kwargs)

    @classmethod
    def rate_limit(cls, message: str | None = None, **kwargs: Any) -> "BaseError":
        kwargs.setdefault("retryable", True)
        return cls("RATE_LIMIT_EXCEEDED", message, **kwargs)


__all__ = ["BaseError", "generate_error_id"]
