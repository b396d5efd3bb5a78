"""Intercom OAuth client and REST API helpers."""

from __future__ import annotations

import hashlib
import hmac
from typing import Any, Mapping

from feedbackhub.config import ProviderClientConfig

from .base import Credentials, OAuthConfig, OAuthProvider, OAuthProviderError
from .registry import register_provider

AUTH_URL = "https://app.intercom.com/oauth"
TOKEN_URL = "https://api.intercom.io/auth/eagle/token"
API_BASE_URL = "https://api.intercom.io"
API_VERSION = "2.10"

SCOPES = (
    "read_admins",
    "write_admins",
    "read_conversations",
    "write_conversations",
    "read_contacts",
    "write_contacts",
    "read_companies",
    "write_companies",
)

_CLOSED_STATES = {"closed", "close"}


@register_provider
class IntercomProvider(OAuthProvider):
    integration_type = "INTERCOM"
    display_name = "Intercom"
    description = "Capture customer conversations as feedback and reply from FeedbackHub."
    capabilities = (
        "create_conversations",
        "read_conversations",
        "update_contacts",
        "webhook_notifications",
    )

    @classmethod
    def from_settings(
        cls, client: ProviderClientConfig, options: Mapping[str, Any], **kwargs: Any
    ) -> "IntercomProvider":
        config = OAuthConfig(
            client_id=client.client_id or "",
            client_secret=client.client_secret or "",
            redirect_uri=client.redirect_uri or "",
            auth_url=AUTH_URL,
            token_url=TOKEN_URL,
            scopes=SCOPES,
        )
        return cls(config, **kwargs)

    def _api(self, method: str, path: str, credentials: Mapping[str, Any], **kwargs: Any) -> Any:
        headers = {"Intercom-Version": API_VERSION}
        if "json" in kwargs:
            headers["Content-Type"] = "application/json"
        return self._request(method, f"{API_BASE_URL}/{path}", credentials, headers=headers, **kwargs)

    # OAuth -----------------------------------------------------------------

    def exchange_code_for_tokens(self, code: str) -> Credentials:
        return self.parse_token_response(self._post_token(self.build_auth_payload(code)))

    def refresh_access_token(self, credentials: Credentials) -> Credentials:
        # Intercom access tokens are long lived.
        if not self.validate_token(credentials):
            raise OAuthProviderError("Intercom token is invalid and cannot be refreshed", status_code=401)
        return credentials

    def _me(self, credentials: Credentials) -> dict[str, Any]:
        return self._request("GET", f"{API_BASE_URL}/me", credentials)

    def validate_token(self, credentials: Credentials) -> bool:
        try:
            payload = self._me(credentials)
        except Exception:
            self.logger.warning("Intercom token validation failed", exc_info=True)
            return False
        return payload.get("type") == "admin"

    def get_user_info(self, credentials: Credentials) -> dict[str, Any] | None:
        admin = self._me(credentials)
        if admin.get("type") != "admin":
            raise OAuthProviderError("Failed to get admin info from Intercom")
        return {
            "id": admin.get("id"),
            "name": admin.get("name"),
            "email": admin.get("email"),
            "type": admin.get("type"),
        }

    def get_account_info(self, credentials: Credentials) -> dict[str, Any] | None:
        app = self._me(credentials).get("app")
        if not app:
            raise OAuthProviderError("Failed to get app info from Intercom")
        return dict(app)

    # Contacts --------------------------------------------------------------

    def create_or_update_contact(self, credentials: Credentials, contact: dict[str, Any]) -> dict[str, Any]:
        return self._api("POST", "contacts", credentials, json=contact)

    def get_contact(self, credentials: Credentials, contact_id: str) -> dict[str, Any]:
        return self._api("GET", f"contacts/{contact_id}", credentials)

    def search_contacts(
        self, credentials: Credentials, query: dict[str, Any], *, per_page: int = 50
    ) -> list[dict[str, Any]]:
        payload = self._api(
            "POST",
            "contacts/search",
            credentials,
            json={"query": query, "pagination": {"per_page": per_page}},
        )
        return list(payload.get("data") or [])

    # Conversations ---------------------------------------------------------

    def create_conversation(self, credentials: Credentials, conversation: dict[str, Any]) -> dict[str, Any]:
        return self._api("POST", "conversations", credentials, json=conversation)

    def get_conversations(
        self,
        credentials: Credentials,
        *,
        per_page: int | None = None,
        starting_after: str | None = None,
    ) -> list[dict[str, Any]]:
        params = {
            key: value
            for key, value in (("per_page", per_page), ("starting_after", starting_after))
            if value is not None
        }
        payload = self._api("GET", "conversations", credentials, params=params)
        return list(payload.get("conversations") or [])

    def reply_to_conversation(
        self, credentials: Credentials, conversation_id: str, reply: dict[str, Any]
    ) -> dict[str, Any]:
        return self._api("POST", f"conversations/{conversation_id}/reply", credentials, json=reply)

    def update_conversation(
        self, credentials: Credentials, conversation_id: str, updates: dict[str, Any]
    ) -> dict[str, Any]:
        """Open/snooze via PUT; closing goes through a ``close`` part."""

        state = updates.get("state")
        if state in _CLOSED_STATES:
            part = {"message_type": "close", "type": "admin"}
            if updates.get("admin_id"):
                part["admin_id"] = updates["admin_id"]
            return self._api("POST", f"conversations/{conversation_id}/parts", credentials, json=part)
        return self._api("PUT", f"conversations/{conversation_id}", credentials, json=updates)

    def tag_conversation(
        self, credentials: Credentials, conversation_id: str, tag_id: str, admin_id: str
    ) -> dict[str, Any]:
        return self._api(
            "POST",
            f"conversations/{conversation_id}/tags",
            credentials,
            json={"id": tag_id, "admin_id": admin_id},
        )

    @staticmethod
    def conversation_url(app_id: str | None, conversation_id: str) -> str:
        return f"https://app.intercom.com/a/apps/{app_id or '_'}/inbox/conversation/{conversation_id}"

    # Webhooks --------------------------------------------------------------

    @staticmethod
    def verify_signature(body: bytes, signature_header: str | None, secret: str | None) -> bool:
        """Check the ``X-Hub-Signature`` (``sha1=<hex>``) of ``body``."""

        if not secret:
            return True
        if not signature_header:
            return False
        expected = "sha1=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha1).hexdigest()
        return hmac.compare_digest(expected, signature_header)


__all__ = ["IntercomProvider"]
