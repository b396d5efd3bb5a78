"""Shared OAuth2 machinery for third-party providers.

Credentials travel as plain dictionaries so they can be encrypted and stored
as-is::

    {
        "access_token": "...",
        "refresh_token": "...",   # optional
        "token_type": "Bearer",
        "expires_at": "2024-05-01T12:00:00+00:00",  # ISO string or None
        "scope": "read write",
        "metadata": {...},        # provider specific
    }
"""

from __future__ import annotations

import abc
import dataclasses
import datetime as dt
import logging
from typing import Any, ClassVar, Mapping
from urllib.parse import urlencode

import requests

from feedbackhub.config import ProviderClientConfig

Credentials = dict[str, Any]

EXPIRY_BUFFER = dt.timedelta(minutes=5)


class OAuthProviderError(RuntimeError):
    """A provider answered with an application-level error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclasses.dataclass(frozen=True)
class OAuthConfig:
    client_id: str
    client_secret: str
    redirect_uri: str
    auth_url: str
    token_url: str
    scopes: tuple[str, ...] = ()


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def parse_expires_at(value: Any) -> dt.datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, dt.datetime):
        expires_at = value
    else:
        expires_at = dt.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=dt.timezone.utc)
    return expires_at


class OAuthProvider(abc.ABC):
    """Base class for the Slack, Zendesk and Intercom clients."""

    integration_type: ClassVar[str]
    display_name: ClassVar[str]
    description: ClassVar[str] = ""
    capabilities: ClassVar[tuple[str, ...]] = ()
    requires_config: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        config: OAuthConfig,
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    @abc.abstractmethod
    def from_settings(
        cls,
        client: ProviderClientConfig,
        options: Mapping[str, Any],
        **kwargs: Any,
    ) -> "OAuthProvider":
        """Build a provider from the client registration and connection config."""

    # ------------------------------------------------------------------
    # OAuth flow helpers
    # ------------------------------------------------------------------

    def get_authorization_url(
        self, state: str, extra_params: Mapping[str, str] | None = None
    ) -> str:
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": " ".join(self.config.scopes),
            "state": state,
        }
        params.update(extra_params or {})
        return f"{self.config.auth_url}?{urlencode(params)}"

    def build_auth_payload(self, code: str) -> dict[str, str]:
        return {
            "grant_type": "authorization_code",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "code": code,
            "redirect_uri": self.config.redirect_uri,
        }

    def build_refresh_payload(self, credentials: Mapping[str, Any]) -> dict[str, str]:
        refresh_token = credentials.get("refresh_token")
        if not refresh_token:
            raise ValueError("Refresh token is required for token refresh")
        return {
            "grant_type": "refresh_token",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "refresh_token": refresh_token,
        }

    @staticmethod
    def token_request_headers() -> dict[str, str]:
        return {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }

    def extract_metadata(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return {}

    def parse_token_response(self, payload: Mapping[str, Any]) -> Credentials:
        expires_at = None
        if payload.get("expires_in"):
            expires_at = (_utcnow() + dt.timedelta(seconds=int(payload["expires_in"]))).isoformat()
        return {
            "access_token": payload.get("access_token"),
            "refresh_token": payload.get("refresh_token"),
            "token_type": payload.get("token_type") or "Bearer",
            "expires_at": expires_at,
            "scope": payload.get("scope"),
            "metadata": self.extract_metadata(payload),
        }

    @staticmethod
    def is_token_expired(expires_at: Any, buffer: dt.timedelta = EXPIRY_BUFFER) -> bool:
        """Whether the token expires within ``buffer``; ``None`` never expires."""

        parsed = parse_expires_at(expires_at)
        if parsed is None:
            return False
        return parsed - _utcnow() < buffer

    @staticmethod
    def auth_headers(credentials: Mapping[str, Any]) -> dict[str, str]:
        token_type = credentials.get("token_type") or "Bearer"
        # Slack and Zendesk return a lowercase "bearer".
        if token_type.lower() == "bearer":
            token_type = "Bearer"
        return {"Authorization": f"{token_type} {credentials.get('access_token')}"}

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        credentials: Mapping[str, Any] | None = None,
        *,
        headers: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        request_headers: dict[str, str] = {"Accept": "application/json"}
        if credentials is not None:
            request_headers.update(self.auth_headers(credentials))
        request_headers.update(headers or {})
        response = self.session.request(
            method, url, headers=request_headers, timeout=self.timeout, **kwargs
        )
        response.raise_for_status()
        if response.status_code == 204:
            return {}
        return response.json()

    def _post_token(self, payload: Mapping[str, str]) -> dict[str, Any]:
        return self._request(
            "POST", self.config.token_url, headers=self.token_request_headers(), data=dict(payload)
        )

    # ------------------------------------------------------------------
    # Provider specific
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def exchange_code_for_tokens(self, code: str) -> Credentials:
        ...

    @abc.abstractmethod
    def refresh_access_token(self, credentials: Credentials) -> Credentials:
        ...

    @abc.abstractmethod
    def validate_token(self, credentials: Credentials) -> bool:
        ...

    @abc.abstractmethod
    def get_user_info(self, credentials: Credentials) -> dict[str, Any] | None:
        ...

    @abc.abstractmethod
    def get_account_info(self, credentials: Credentials) -> dict[str, Any] | None:
        ...


__all__ = [
    "Credentials",
    "EXPIRY_BUFFER",
    "OAuthConfig",
    "OAuthProvider",
    "OAuthProviderError",
    "parse_expires_at",
]
