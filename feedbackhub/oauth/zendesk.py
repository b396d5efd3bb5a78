"""Zendesk OAuth client and Support API helpers."""

from __future__ import annotations

from typing import Any, Mapping

from feedbackhub.config import ProviderClientConfig
from feedbackhub.errors import IntegrationError

from .base import Credentials, OAuthConfig, OAuthProvider, OAuthProviderError
from .registry import register_provider


@register_provider
class ZendeskProvider(OAuthProvider):
    integration_type = "ZENDESK"
    display_name = "Zendesk"
    description = "Turn support tickets into feedback and keep ticket status in sync."
    capabilities = ("create_tickets", "update_tickets", "read_tickets", "webhook_notifications")
    requires_config = ("subdomain",)

    def __init__(self, config: OAuthConfig, *, subdomain: str, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self.subdomain = subdomain

    @classmethod
    def from_settings(
        cls, client: ProviderClientConfig, options: Mapping[str, Any], **kwargs: Any
    ) -> "ZendeskProvider":
        subdomain = (options.get("subdomain") or "").strip().lower()
        if not subdomain:
            raise IntegrationError(
                "Zendesk subdomain is required",
                code="INTEGRATION_CONFIG_INVALID",
                metadata={"field": "subdomain"},
            )
        base = f"https://{subdomain}.zendesk.com"
        config = OAuthConfig(
            client_id=client.client_id or "",
            client_secret=client.client_secret or "",
            redirect_uri=client.redirect_uri or "",
            auth_url=f"{base}/oauth/authorizations/new",
            token_url=f"{base}/oauth/tokens",
            scopes=("read", "write"),
        )
        return cls(config, subdomain=subdomain, **kwargs)

    @property
    def api_base_url(self) -> str:
        return f"https://{self.subdomain}.zendesk.com/api/v2"

    def _api(self, method: str, path: str, credentials: Mapping[str, Any], **kwargs: Any) -> Any:
        return self._request(method, f"{self.api_base_url}/{path}", credentials, **kwargs)

    def extract_metadata(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return {"subdomain": self.subdomain}

    # OAuth -----------------------------------------------------------------

    def exchange_code_for_tokens(self, code: str) -> Credentials:
        return self.parse_token_response(self._post_token(self.build_auth_payload(code)))

    def refresh_access_token(self, credentials: Credentials) -> Credentials:
        refreshed = self.parse_token_response(
            self._post_token(self.build_refresh_payload(credentials))
        )
        # Zendesk may omit the refresh token on refresh.
        refreshed["refresh_token"] = refreshed.get("refresh_token") or credentials.get("refresh_token")
        return refreshed

    def validate_token(self, credentials: Credentials) -> bool:
        try:
            payload = self._api("GET", "users/me.json", credentials)
        except Exception:
            self.logger.warning("Zendesk token validation failed", exc_info=True)
            return False
        return bool((payload.get("user") or {}).get("id"))

    def get_user_info(self, credentials: Credentials) -> dict[str, Any] | None:
        user = self._api("GET", "users/me.json", credentials).get("user")
        if not user:
            raise OAuthProviderError("Failed to get user info from Zendesk")
        return {
            "id": user.get("id"),
            "name": user.get("name"),
            "email": user.get("email"),
            "role": user.get("role"),
            "organization_id": user.get("organization_id"),
        }

    def get_account_info(self, credentials: Credentials) -> dict[str, Any] | None:
        settings = self._api("GET", "account/settings.json", credentials).get("settings")
        if not settings:
            raise OAuthProviderError("Failed to get account info from Zendesk")
        return {
            "subdomain": self.subdomain,
            "plan_name": (settings.get("branding") or {}).get("plan_name") or "Unknown",
        }

    # Tickets ---------------------------------------------------------------

    def create_ticket(self, credentials: Credentials, ticket: dict[str, Any]) -> dict[str, Any]:
        payload = self._api("POST", "tickets.json", credentials, json={"ticket": ticket})
        return payload.get("ticket") or {}

    def get_tickets(
        self,
        credentials: Credentials,
        *,
        status: str | None = None,
        priority: str | None = None,
        per_page: int | None = None,
        page: int | None = None,
    ) -> list[dict[str, Any]]:
        params = {
            key: value
            for key, value in (
                ("status", status),
                ("priority", priority),
                ("per_page", per_page),
                ("page", page),
            )
            if value is not None
        }
        return list(self._api("GET", "tickets.json", credentials, params=params).get("tickets") or [])

    def get_ticket(self, credentials: Credentials, ticket_id: int | str) -> dict[str, Any]:
        return self._api("GET", f"tickets/{ticket_id}.json", credentials).get("ticket") or {}

    def update_ticket(
        self, credentials: Credentials, ticket_id: int | str, updates: dict[str, Any]
    ) -> dict[str, Any]:
        payload = self._api("PUT", f"tickets/{ticket_id}.json", credentials, json={"ticket": updates})
        return payload.get("ticket") or {}

    def search_tickets(self, credentials: Credentials, query: str) -> list[dict[str, Any]]:
        payload = self._api("GET", "search.json", credentials, params={"query": query})
        return [
            result for result in payload.get("results") or [] if result.get("result_type") == "ticket"
        ]

    def ticket_url(self, ticket_id: int | str) -> str:
        return f"https://{self.subdomain}.zendesk.com/agent/tickets/{ticket_id}"


__all__ = ["ZendeskProvider"]
