"""Slack OAuth v2 client and Web API helpers."""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Any, Mapping

from feedbackhub.config import ProviderClientConfig

from .base import Credentials, OAuthConfig, OAuthProvider, OAuthProviderError
from .registry import register_provider

AUTH_URL = "https://slack.com/oauth/v2/authorize"
TOKEN_URL = "https://slack.com/api/oauth.v2.access"
API_BASE_URL = "https://slack.com/api"

BOT_SCOPES = (
    "channels:read",
    "chat:write",
    "commands",
    "users:read",
    "users:read.email",
    "team:read",
    "incoming-webhook",
)
USER_SCOPES = ("identity.basic", "identity.email", "identity.team")

SIGNATURE_TOLERANCE_SECONDS = 60 * 5

_AUTH_ERRORS = {"invalid_auth", "not_authed", "token_revoked", "token_expired", "account_inactive"}


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


@register_provider
class SlackProvider(OAuthProvider):
    integration_type = "SLACK"
    display_name = "Slack"
    description = "Collect feedback from Slack messages and post updates to a channel."
    capabilities = ("send_messages", "read_channels", "webhook_notifications")

    @classmethod
    def from_settings(
        cls, client: ProviderClientConfig, options: Mapping[str, Any], **kwargs: Any
    ) -> "SlackProvider":
        config = OAuthConfig(
            client_id=client.client_id or "",
            client_secret=client.client_secret or "",
            redirect_uri=client.redirect_uri or "",
            auth_url=AUTH_URL,
            token_url=TOKEN_URL,
            scopes=BOT_SCOPES,
        )
        return cls(config, **kwargs)

    def get_authorization_url(
        self, state: str, extra_params: Mapping[str, str] | None = None
    ) -> str:
        params = {"user_scope": ",".join(USER_SCOPES)}
        params.update(extra_params or {})
        return super().get_authorization_url(state, params)

    def _api(
        self,
        method: str,
        endpoint: str,
        credentials: Mapping[str, Any],
        **kwargs: Any,
    ) -> dict[str, Any]:
        payload = self._request(method, f"{API_BASE_URL}/{endpoint}", credentials, **kwargs)
        if not payload.get("ok"):
            error = payload.get("error") or "unknown_error"
            status_code = None
            if error in _AUTH_ERRORS:
                status_code = 401
            elif error == "ratelimited":
                status_code = 429
            raise OAuthProviderError(f"Slack API error: {error}", status_code=status_code)
        return payload

    # OAuth -----------------------------------------------------------------

    def exchange_code_for_tokens(self, code: str) -> Credentials:
        payload = self._post_token(self.build_auth_payload(code))
        if not payload.get("ok"):
            raise OAuthProviderError(f"Slack OAuth error: {payload.get('error')}")
        return self.parse_token_response(payload)

    def extract_metadata(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        team = payload.get("team") or {}
        return {
            "teamId": team.get("id"),
            "teamName": team.get("name"),
            "teamDomain": team.get("domain"),
            "botUserId": payload.get("bot_user_id"),
            "appId": payload.get("app_id"),
            "authedUser": payload.get("authed_user"),
            "incomingWebhook": payload.get("incoming_webhook"),
        }

    def refresh_access_token(self, credentials: Credentials) -> Credentials:
        # Bot tokens do not expire; a refresh only confirms the token still works.
        if not self.validate_token(credentials):
            raise OAuthProviderError("Slack token is invalid and cannot be refreshed", status_code=401)
        return credentials

    def validate_token(self, credentials: Credentials) -> bool:
        try:
            payload = self._request("GET", f"{API_BASE_URL}/auth.test", credentials)
        except Exception:
            self.logger.warning("Slack token validation failed", exc_info=True)
            return False
        return payload.get("ok") is True

    # Web API ---------------------------------------------------------------

    def get_user_info(self, credentials: Credentials) -> dict[str, Any] | None:
        user = self._api("GET", "users.identity", credentials).get("user") or {}
        return {
            "id": user.get("id"),
            "name": user.get("name"),
            "email": user.get("email"),
            "image_48": user.get("image_48"),
        }

    def get_team_info(self, credentials: Credentials) -> dict[str, Any] | None:
        team = self._api("GET", "team.info", credentials).get("team") or {}
        return {
            "id": team.get("id"),
            "name": team.get("name"),
            "domain": team.get("domain"),
            "image_68": (team.get("icon") or {}).get("image_68"),
        }

    def get_account_info(self, credentials: Credentials) -> dict[str, Any] | None:
        return self.get_team_info(credentials)

    def get_user(self, credentials: Credentials, user_id: str) -> dict[str, Any]:
        return self._api("GET", "users.info", credentials, params={"user": user_id}).get("user") or {}

    def send_message(
        self,
        credentials: Credentials,
        channel: str,
        text: str,
        attachments: list[dict[str, Any]] | None = None,
    ) -> bool:
        body: dict[str, Any] = {"channel": channel, "text": text}
        if attachments:
            body["attachments"] = attachments
        payload = self._request(
            "POST",
            f"{API_BASE_URL}/chat.postMessage",
            credentials,
            headers={"Content-Type": "application/json"},
            json=body,
        )
        return payload.get("ok") is True

    def get_channels(self, credentials: Credentials) -> list[dict[str, Any]]:
        payload = self._api(
            "GET",
            "conversations.list",
            credentials,
            params={"types": "public_channel,private_channel"},
        )
        return list(payload.get("channels") or [])

    @staticmethod
    def get_permalink(channel: str, message_ts: str) -> str:
        return f"https://slack.com/app_redirect?channel={channel}&message_ts={message_ts}"

    # Webhooks --------------------------------------------------------------

    @staticmethod
    def verify_signature(
        body: bytes,
        headers: Mapping[str, str],
        signing_secret: str | None,
        *,
        now: float | None = None,
    ) -> bool:
        """Check the ``X-Slack-Signature`` v0 HMAC of ``body``."""

        if not signing_secret:
            return True
        timestamp = _header(headers, "X-Slack-Request-Timestamp")
        signature = _header(headers, "X-Slack-Signature")
        if not timestamp or not signature:
            return False
        try:
            age = abs((now if now is not None else time.time()) - int(timestamp))
        except ValueError:
            return False
        if age > SIGNATURE_TOLERANCE_SECONDS:
            return False
        basestring = b"v0:" + timestamp.encode("utf-8") + b":" + body
        expected = "v0=" + hmac.new(
            signing_secret.encode("utf-8"), basestring, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature)


__all__ = ["SlackProvider"]
