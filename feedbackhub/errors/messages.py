"""Catalog of error codes, their human messages and HTTP status codes."""

from __future__ import annotations

VALIDATION_ERRORS: dict[str, str] = {
    "VALIDATION_ERROR": "The request contains invalid data",
    "INVALID_ID": "The provided ID is invalid",
    "INVALID_EMAIL": "Please provide a valid email address",
    "INVALID_FORMAT": "The provided value has an invalid format",
    "REQUIRED_FIELD_MISSING": "A required field is missing",
    "FIELD_TOO_SHORT": "The provided value is too short",
    "FIELD_TOO_LONG": "The provided value is too long",
    "INVALID_ENUM_VALUE": "The provided value is not allowed",
    "INVALID_DATE_RANGE": "The provided date range is invalid",
    "INVALID_PAGINATION": "Invalid pagination parameters",
    "INVALID_SORT_FIELD": "Invalid sort field",
    "PASSWORD_TOO_WEAK": "Password must be at least 8 characters long",
}

AUTH_ERRORS: dict[str, str] = {
    "AUTHENTICATION_REQUIRED": "Authentication is required to access this resource",
    "INVALID_CREDENTIALS": "Invalid email or password",
    "INVALID_TOKEN": "The provided token is invalid",
    "TOKEN_EXPIRED": "Your session has expired. Please sign in again",
    "SESSION_EXPIRED": "Your session has expired. Please sign in again",
    "INCORRECT_PASSWORD": "The current password is incorrect",
    "USER_NOT_FOUND": "User not found",
    "USER_ALREADY_EXISTS": "A user with this email already exists",
    "ACCOUNT_DISABLED": "This account has been disabled",
}

AUTHORIZATION_ERRORS: dict[str, str] = {
    "INSUFFICIENT_PERMISSIONS": "You do not have permission to perform this action",
    "ACCESS_DENIED": "Access denied",
    "ADMIN_PERMISSIONS_REQUIRED": "Administrator permissions are required",
    "ORGANIZATION_ACCESS_DENIED": "You do not have access to this organization",
    "RATE_LIMIT_EXCEEDED": "Too many requests. Please try again later",
}

ORGANIZATION_ERRORS: dict[str, str] = {
    "ORGANIZATION_NOT_FOUND": "Organization not found",
    "ORGANIZATION_NAME_REQUIRED": "Organization name is required",
    "ORGANIZATION_NAME_EXISTS": "An organization with this name already exists",
    "ORGANIZATION_CREATION_FAILED": "Failed to create organization",
    "ORGANIZATION_UPDATE_FAILED": "Failed to update organization",
    "MEMBER_NOT_FOUND": "Organization member not found",
    "MEMBER_ALREADY_EXISTS": "This user is already a member of the organization",
    "CANNOT_REMOVE_OWNER": "You cannot remove yourself from the organization",
    "MINIMUM_ADMIN_REQUIRED": "An organization must have at least one administrator",
    "INVALID_ROLE": "The provided role is invalid",
}

FEEDBACK_ERRORS: dict[str, str] = {
    "FEEDBACK_NOT_FOUND": "Feedback not found",
    "FEEDBACK_TITLE_REQUIRED": "Feedback title is required",
    "FEEDBACK_CREATION_FAILED": "Failed to create feedback",
    "FEEDBACK_UPDATE_FAILED": "Failed to update feedback",
    "FEEDBACK_DELETE_FAILED": "Failed to delete feedback",
    "FEEDBACK_STATUS_INVALID": "Invalid feedback status",
    "FEEDBACK_PRIORITY_INVALID": "Invalid feedback priority",
    "FEEDBACK_BULK_UPDATE_FAILED": "Some feedback items not found or not accessible",
    "COMMENT_CONTENT_REQUIRED": "Comment content is required",
}

CUSTOMER_ERRORS: dict[str, str] = {
    "CUSTOMER_NOT_FOUND": "Customer not found",
    "CUSTOMER_ALREADY_EXISTS": "Customer already exists with this email",
    "CUSTOMER_CREATION_FAILED": "Failed to create customer",
    "CUSTOMER_UPDATE_FAILED": "Failed to update customer",
    "CUSTOMER_DELETE_FAILED": "Cannot delete customer with existing feedback. Archive the customer instead.",
    "CUSTOMER_MERGE_FAILED": "Failed to merge customers",
}

INTEGRATION_ERRORS: dict[str, str] = {
    "INTEGRATION_NOT_FOUND": "Integration not found",
    "INTEGRATION_NOT_SUPPORTED": "This integration type is not supported",
    "INTEGRATION_CONNECTION_FAILED": "Failed to connect to the integration",
    "INTEGRATION_SYNC_FAILED": "Failed to synchronize with the integration",
    "INTEGRATION_AUTH_FAILED": "Integration authentication failed",
    "INTEGRATION_CONFIG_INVALID": "Integration configuration is invalid",
    "INTEGRATION_WEBHOOK_FAILED": "Integration webhook processing failed",
    "INTEGRATION_RATE_LIMITED": "The integration rate limit was exceeded",
}

DATABASE_ERRORS: dict[str, str] = {
    "DATABASE_ERROR": "A database error occurred",
    "DATABASE_CONNECTION_FAILED": "Unable to connect to the database",
    "DATABASE_QUERY_FAILED": "Database query failed",
    "DATABASE_TRANSACTION_FAILED": "Database transaction failed",
    "DATABASE_UNIQUE_VIOLATION": "A record with these values already exists",
    "DATABASE_FOREIGN_KEY_VIOLATION": "A referenced record does not exist",
    "MIGRATION_FAILED": "Database migration failed",
}

API_ERRORS: dict[str, str] = {
    "API_KEY_INVALID": "The provided API key is invalid",
    "WEBHOOK_SIGNATURE_INVALID": "Invalid webhook signature",
    "WEBHOOK_DELIVERY_FAILED": "Webhook delivery failed",
    "API_ENDPOINT_NOT_FOUND": "API endpoint not found",
    "METHOD_NOT_ALLOWED": "Method not allowed",
}

SYSTEM_ERRORS: dict[str, str] = {
    "INTERNAL_SERVER_ERROR": "Internal server error occurred",
    "SERVICE_UNAVAILABLE": "The service is temporarily unavailable",
    "MAINTENANCE_MODE": "The service is under maintenance",
    "TIMEOUT_ERROR": "The operation timed out",
    "EXTERNAL_SERVICE_ERROR": "An external service returned an error",
    "CONFIGURATION_ERROR": "The server is misconfigured",
    "NETWORK_ERROR": "A network error occurred",
}

GENERAL_ERRORS: dict[str, str] = {
    "SOMETHING_WENT_WRONG": "Something went wrong. Please try again",
    "RESOURCE_NOT_FOUND": "The requested resource was not found",
    "RESOURCE_ALREADY_EXISTS": "The resource already exists",
    "OPERATION_NOT_ALLOWED": "This operation is not allowed",
    "UNPROCESSABLE_ENTITY": "The request could not be processed",
}

ERROR_CATEGORIES: dict[str, dict[str, str]] = {
    "validation": VALIDATION_ERRORS,
    "authentication": AUTH_ERRORS,
    "authorization": AUTHORIZATION_ERRORS,
    "organization": ORGANIZATION_ERRORS,
    "feedback": FEEDBACK_ERRORS,
    "customer": CUSTOMER_ERRORS,
    "integration": INTEGRATION_ERRORS,
    "database": DATABASE_ERRORS,
    "api": API_ERRORS,
    "system": SYSTEM_ERRORS,
    "general": GENERAL_ERRORS,
}

ERROR_MESSAGES: dict[str, str] = {
    code: message
    for catalog in ERROR_CATEGORIES.values()
    for code, message in catalog.items()
}

ERROR_STATUS_MAPPINGS: dict[str, int] = {
    **{code: 400 for code in VALIDATION_ERRORS},
    **{code: 401 for code in AUTH_ERRORS},
    "USER_NOT_FOUND": 404,
    "USER_ALREADY_EXISTS": 409,
    "ACCOUNT_DISABLED": 403,
    **{code: 403 for code in AUTHORIZATION_ERRORS},
    "RATE_LIMIT_EXCEEDED": 429,
    "ORGANIZATION_NOT_FOUND": 404,
    "ORGANIZATION_NAME_REQUIRED": 400,
    "ORGANIZATION_NAME_EXISTS": 409,
    "MEMBER_NOT_FOUND": 404,
    "MEMBER_ALREADY_EXISTS": 409,
    "CANNOT_REMOVE_OWNER": 400,
    "MINIMUM_ADMIN_REQUIRED": 400,
    "INVALID_ROLE": 400,
    "FEEDBACK_NOT_FOUND": 404,
    "FEEDBACK_TITLE_REQUIRED": 400,
    "FEEDBACK_STATUS_INVALID": 422,
    "FEEDBACK_PRIORITY_INVALID": 422,
    "FEEDBACK_BULK_UPDATE_FAILED": 404,
    "COMMENT_CONTENT_REQUIRED": 400,
    "CUSTOMER_NOT_FOUND": 404,
    "CUSTOMER_ALREADY_EXISTS": 409,
    "CUSTOMER_DELETE_FAILED": 409,
    "CUSTOMER_MERGE_FAILED": 400,
    "INTEGRATION_NOT_FOUND": 404,
    "INTEGRATION_NOT_SUPPORTED": 400,
    "INTEGRATION_CONNECTION_FAILED": 502,
    "INTEGRATION_AUTH_FAILED": 401,
    "INTEGRATION_CONFIG_INVALID": 400,
    "INTEGRATION_WEBHOOK_FAILED": 502,
    "INTEGRATION_RATE_LIMITED": 429,
    "DATABASE_UNIQUE_VIOLATION": 409,
    "DATABASE_FOREIGN_KEY_VIOLATION": 400,
    "API_KEY_INVALID": 401,
    "WEBHOOK_SIGNATURE_INVALID": 401,
    "WEBHOOK_DELIVERY_FAILED": 502,
    "API_ENDPOINT_NOT_FOUND": 404,
    "METHOD_NOT_ALLOWED": 405,
    "SERVICE_UNAVAILABLE": 503,
    "MAINTENANCE_MODE": 503,
    "TIMEOUT_ERROR": 504,
    "EXTERNAL_SERVICE_ERROR": 502,
    "RESOURCE_NOT_FOUND": 404,
    "RESOURCE_ALREADY_EXISTS": 409,
    "OPERATION_NOT_ALLOWED": 403,
    "UNPROCESSABLE_ENTITY": 422,
}


def get_error_message(code: str) -> str:
    """Return the catalog message for ``code`` or a generic fallback."""

    return ERROR_MESSAGES.get(code, GENERAL_ERRORS["SOMETHING_WENT_WRONG"])


def get_error_status_code(code: str) -> int:
    """Return the HTTP status mapped to ``code``; unknown codes map to 500."""

    return ERROR_STATUS_MAPPINGS.get(code, 500)


def get_error_category(code: str) -> str:
    for category, catalog in ERROR_CATEGORIES.items():
        if code in catalog:
            return category
    return "general"


def is_valid_error_code(code: str) -> bool:
    return code in ERROR_MESSAGES


__all__ = [
    "ERROR_CATEGORIES",
    "ERROR_MESSAGES",
    "ERROR_STATUS_MAPPINGS",
    "get_error_category",
    "get_error_message",
    "get_error_status_code",
    "is_valid_error_code",
]
