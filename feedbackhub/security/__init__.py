"""Security utilities exposed for convenience."""

from .auth import (
    get_current_token_payload,
    get_current_user,
    get_db_session,
    has_role,
    require_role,
)
from .passwords import (
    hash_password,
    is_strong_enough,
    password_needs_rehash,
    verify_password,
)
from .tokens import (
    JWTSettings,
    TokenPair,
    as_utc,
    create_access_token,
    create_refresh_token,
    get_jwt_settings,
    issue_token_pair,
    reset_jwt_settings_cache,
    revoke_all_refresh_tokens,
    revoke_refresh_token,
    verify_refresh_token,
)

__all__ = [
    "JWTSettings",
    "TokenPair",
    "as_utc",
    "create_access_token",
    "create_refresh_token",
    "get_current_token_payload",
    "get_current_user",
    "get_db_session",
    "get_jwt_settings",
    "has_role",
    "hash_password",
    "is_strong_enough",
    "issue_token_pair",
    "password_needs_rehash",
    "require_role",
    "reset_jwt_settings_cache",
    "revoke_all_refresh_tokens",
    "revoke_refresh_token",
    "verify_password",
    "verify_refresh_token",
]
