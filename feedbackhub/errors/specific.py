"""Concrete error classes grouped by domain."""

from __future__ import annotations

from typing import Any

from .base import BaseError
from .messages import is_valid_error_code


class _CodedError(BaseError):
    """Error whose code defaults to a class-level value."""

    default_code = "SOMETHING_WENT_WRONG"
    default_status: int | None = None
    default_retryable = False

    def __init__(
        self, message: str | None = None, *, code: str | None = None, **kwargs: Any
    ) -> None:
        code = code or self.default_code
        # An explicit code takes its status from the catalog.
        if code == self.default_code and self.default_status is not None:
            kwargs.setdefault("status_code", self.default_status)
        kwargs.setdefault("retryable", self.default_retryable)
        super().__init__(code, message, **kwargs)


# Validation ---------------------------------------------------------------


class ValidationError(_CodedError):
    default_code = "VALIDATION_ERROR"
    default_status = 400


class RequiredFieldError(ValidationError):
    def __init__(self, field: str, **kwargs: Any) -> None:
        kwargs.setdefault("metadata", {"field": field})
        super().__init__(f"{field} is required", code="REQUIRED_FIELD_MISSING", **kwargs)
        self.field = field


class InvalidFormatError(ValidationError):
    def __init__(self, field: str, expected: str | None = None, **kwargs: Any) -> None:
        message = f"{field} has an invalid format"
        if expected:
            message = f"{message}; expected {expected}"
        kwargs.setdefault("metadata", {"field": field})
        super().__init__(message, code="INVALID_FORMAT", **kwargs)
        self.field = field


# Authentication / authorization ------------------------------------------


class AuthenticationError(_CodedError):
    default_code = "AUTHENTICATION_REQUIRED"
    default_status = 401


class InvalidCredentialsError(AuthenticationError):
    default_code = "INVALID_CREDENTIALS"


class TokenExpiredError(AuthenticationError):
    default_code = "TOKEN_EXPIRED"


class SessionExpiredError(AuthenticationError):
    default_code = "SESSION_EXPIRED"


class AuthorizationError(_CodedError):
    default_code = "INSUFFICIENT_PERMISSIONS"
    default_status = 403


class InsufficientPermissionsError(AuthorizationError):
    def __init__(self, required_role: str | None = None, **kwargs: Any) -> None:
        if required_role:
            kwargs.setdefault("metadata", {"requiredRole": required_role})
        super().__init__(**kwargs)


class AccessDeniedError(AuthorizationError):
    default_code = "ACCESS_DENIED"


class RateLimitExceededError(_CodedError):
    default_code = "RATE_LIMIT_EXCEEDED"
    default_status = 429
    default_retryable = True

    def __init__(self, retry_after: int | None = None, **kwargs: Any) -> None:
        if retry_after is not None:
            kwargs.setdefault("metadata", {"retryAfter": retry_after})
        super().__init__(**kwargs)


# Generic resources --------------------------------------------------------


class ResourceNotFoundError(BaseError):
    """``<TYPE>_NOT_FOUND`` for a known resource type, else ``RESOURCE_NOT_FOUND``."""

    def __init__(
        self, resource_type: str = "Resource", resource_id: Any = None, **kwargs: Any
    ) -> None:
        code = f"{resource_type.upper()}_NOT_FOUND"
        if not is_valid_error_code(code):
            code = "RESOURCE_NOT_FOUND"
        if resource_id is not None:
            kwargs.setdefault("metadata", {"resourceId": str(resource_id)})
        kwargs.setdefault("status_code", 404)
        message = kwargs.pop("message", None) or f"{resource_type.capitalize()} not found"
        super().__init__(code, message, **kwargs)
        self.resource_type = resource_type
        self.resource_id = resource_id


class ResourceAlreadyExistsError(BaseError):
    def __init__(self, resource_type: str = "Resource", message: str | None = None, **kwargs: Any) -> None:
        code = f"{resource_type.upper()}_ALREADY_EXISTS"
        if not is_valid_error_code(code):
            code = "RESOURCE_ALREADY_EXISTS"
        kwargs.setdefault("status_code", 409)
        super().__init__(code, message, **kwargs)
        self.resource_type = resource_type


# Organization -------------------------------------------------------------


class OrganizationError(_CodedError):
    default_code = "ORGANIZATION_UPDATE_FAILED"
    default_status = 400


class OrganizationNotFoundError(OrganizationError):
    default_code = "ORGANIZATION_NOT_FOUND"
    default_status = 404


class MemberNotFoundError(OrganizationError):
    default_code = "MEMBER_NOT_FOUND"
    default_status = 404


# Feedback -----------------------------------------------------------------


class FeedbackError(_CodedError):
    default_code = "FEEDBACK_UPDATE_FAILED"


class FeedbackNotFoundError(FeedbackError):
    default_code = "FEEDBACK_NOT_FOUND"
    default_status = 404


class FeedbackCreationFailedError(FeedbackError):
    default_code = "FEEDBACK_CREATION_FAILED"
    default_status = 500


# Customer -----------------------------------------------------------------


class CustomerError(_CodedError):
    default_code = "CUSTOMER_UPDATE_FAILED"


class CustomerNotFoundError(CustomerError):
    default_code = "CUSTOMER_NOT_FOUND"
    default_status = 404


class CustomerAlreadyExistsError(CustomerError):
    default_code = "CUSTOMER_ALREADY_EXISTS"
    default_status = 409


# Integration --------------------------------------------------------------


class IntegrationError(_CodedError):
    default_code = "INTEGRATION_SYNC_FAILED"


class IntegrationNotFoundError(IntegrationError):
    default_code = "INTEGRATION_NOT_FOUND"
    default_status = 404


class IntegrationConnectionFailedError(IntegrationError):
    default_code = "INTEGRATION_CONNECTION_FAILED"
    default_status = 502
    default_retryable = True


class IntegrationSyncFailedError(IntegrationError):
    default_code = "INTEGRATION_SYNC_FAILED"
    default_status = 500
    default_retryable = True


# Database -----------------------------------------------------------------


class DatabaseError(_CodedError):
    default_code = "DATABASE_ERROR"
    default_status = 500
    default_retryable = True

    def __init__(self, message: str | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("user_friendly", False)
        super().__init__(message, **kwargs)


class DatabaseConnectionError(DatabaseError):
    default_code = "DATABASE_CONNECTION_FAILED"


class DatabaseTransactionError(DatabaseError):
    default_code = "DATABASE_TRANSACTION_FAILED"


class DatabaseConstraintError(DatabaseError):
    """Unique or foreign key violation."""

    default_status = 400
    default_retryable = False

    def __init__(self, constraint_type: str = "unique", message: str | None = None, **kwargs: Any) -> None:
        code = (
            "DATABASE_FOREIGN_KEY_VIOLATION"
            if constraint_type == "foreign_key"
            else "DATABASE_UNIQUE_VIOLATION"
        )
        kwargs.setdefault("user_friendly", True)
        super().__init__(message, code=code, **kwargs)
        self.constraint_type = constraint_type


# API ----------------------------------------------------------------------


class ApiError(_CodedError):
    default_code = "API_ENDPOINT_NOT_FOUND"


class ApiKeyError(ApiError):
    default_code = "API_KEY_INVALID"
    default_status = 401


class WebhookError(ApiError):
    default_code = "WEBHOOK_DELIVERY_FAILED"
    default_status = 502


# System -------------------------------------------------------------------


class SystemError_(_CodedError):
    default_code = "INTERNAL_SERVER_ERROR"
    default_status = 500

    def __init__(self, message: str | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("user_friendly", False)
        super().__init__(message, **kwargs)


class ServiceUnavailableError(SystemError_):
    default_code = "SERVICE_UNAVAILABLE"
    default_status = 503
    default_retryable = True


class MaintenanceModeError(SystemError_):
    default_code = "MAINTENANCE_MODE"
    default_status = 503


class TimeoutError_(SystemError_):
    default_code = "TIMEOUT_ERROR"
    default_status = 504
    default_retryable = True


__all__ = [
    "AccessDeniedError",
    "ApiError",
    "ApiKeyError",
    "AuthenticationError",
    "AuthorizationError",
    "CustomerAlreadyExistsError",
    "CustomerError",
    "CustomerNotFoundError",
    "DatabaseConnectionError",
    "DatabaseConstraintError",
    "DatabaseError",
    "DatabaseTransactionError",
    "FeedbackCreationFailedError",
    "FeedbackError",
    "FeedbackNotFoundError",
    "InsufficientPermissionsError",
    "IntegrationConnectionFailedError",
    "IntegrationError",
    "IntegrationNotFoundError",
    "IntegrationSyncFailedError",
    "InvalidCredentialsError",
    "InvalidFormatError",
    "MaintenanceModeError",
    "MemberNotFoundError",
    "OrganizationError",
    "OrganizationNotFoundError",
    "RateLimitExceededError",
    "RequiredFieldError",
    "ResourceAlreadyExistsError",
    "ResourceNotFoundError",
    "ServiceUnavailableError",
    "SessionExpiredError",
    "SystemError_",
    "TimeoutError_",
    "TokenExpiredError",
    "ValidationError",
    "WebhookError",
]
