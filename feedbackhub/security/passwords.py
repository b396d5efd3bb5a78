"""Password hashing utilities backed by Passlib (Argon2)."""

from __future__ import annotations

from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    """Return a secure hash for ``password`` using Argon2."""

    if not password:
        raise ValueError("Password must be non-empty.")
    return _pwd_context.hash(password)


def verify_password(password: str, hashed_password: str) -> bool:
    if not hashed_password or not password:
        return False
    return _pwd_context.verify(password, hashed_password)


def password_needs_rehash(hashed_password: str) -> bool:
    """Whether ``hashed_password`` was produced with outdated parameters."""

    return _pwd_context.needs_update(hashed_password)


def is_strong_enough(password: str) -> bool:
    return len(password or "") >= MIN_PASSWORD_LENGTH


__all__ = [
    "MIN_PASSWORD_LENGTH",
    "hash_password",
    "is_strong_enough",
    "password_needs_rehash",
    "verify_password",
]
