"""Authenticated encryption of stored OAuth credentials."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from feedbackhub.config import IntegrationSettings
from feedbackhub.errors import IntegrationError

logger = logging.getLogger(__name__)


def _fernet_key(secret: str) -> bytes:
    """Use ``secret`` as a Fernet key when it is one, else derive one from it."""

    raw = secret.encode("utf-8")
    try:
        if len(base64.urlsafe_b64decode(raw)) == 32:
            return raw
    except (binascii.Error, ValueError):
        pass
    return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())


class CredentialCipher:
    """Encrypt credential dictionaries to opaque strings and back."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("An encryption secret is required.")
        self._fernet = Fernet(_fernet_key(secret))

    @classmethod
    def from_settings(cls, settings: IntegrationSettings) -> "CredentialCipher":
        if not settings.encryption_key:
            raise RuntimeError("OAUTH_ENCRYPTION_KEY is not configured.")
        return cls(settings.encryption_key)

    def encrypt(self, credentials: dict[str, Any]) -> str:
        try:
            plaintext = json.dumps(credentials, default=str).encode("utf-8")
            return self._fernet.encrypt(plaintext).decode("ascii")
        except (TypeError, ValueError) as exc:
            raise IntegrationError(
                "Failed to encrypt credentials", code="INTEGRATION_AUTH_FAILED", cause=exc
            ) from exc

    def decrypt(self, token: str) -> dict[str, Any]:
        try:
            plaintext = self._fernet.decrypt(token.encode("ascii"))
            payload = json.loads(plaintext.decode("utf-8"))
        except (InvalidToken, UnicodeError, ValueError, AttributeError) as exc:
            logger.warning("Failed to decrypt stored credentials")
            raise IntegrationError(
                "Failed to decrypt credentials", code="INTEGRATION_AUTH_FAILED", cause=exc
            ) from exc
        if not isinstance(payload, dict):
            raise IntegrationError("Failed to decrypt credentials", code="INTEGRATION_AUTH_FAILED")
        return payload


__all__ = ["CredentialCipher"]
