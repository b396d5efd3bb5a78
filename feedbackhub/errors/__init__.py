"""Error hierarchy mapped to HTTP status codes and JSON error bodies."""

from .base import BaseError, generate_error_id
from .handler import (
    create_http_error,
    extract_request_context,
    install_error_handlers,
    process_error,
)
from .messages import (
    get_error_category,
    get_error_message,
    get_error_status_code,
    is_valid_error_code,
)
from .specific import *  # noqa: F401,F403
from .specific import __all__ as _specific_all

__all__ = [
    "BaseError",
    "create_http_error",
    "extract_request_context",
    "generate_error_id",
    "get_error_category",
    "get_error_message",
    "get_error_status_code",
    "install_error_handlers",
    "is_valid_error_code",
    "process_error",
    *_specific_all,
]
