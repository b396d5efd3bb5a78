"""Runtime settings for third-party integrations.

Values are read from environment variables once and cached. Tests that change
the environment should call :func:`reset_integration_settings_cache`.
"""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

SUPPORTED_INTEGRATIONS: tuple[str, ...] = ("SLACK", "ZENDESK", "INTERCOM")


@dataclasses.dataclass(frozen=True)
class ProviderClientConfig:
    """OAuth client registration for a single provider."""

    client_id: str | None
    client_secret: str | None
    redirect_uri: str | None

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


@dataclasses.dataclass(frozen=True)
class IntegrationSettings:
    """OAuth clients, webhook secrets and retry policy."""

    clients: dict[str, ProviderClientConfig]
    encryption_key: str | None = None
    web_app_url: str = "http://localhost:3000"
    slack_signing_secret: str | None = None
    intercom_webhook_secret: str | None = None
    http_timeout: float = 30.0
    retry_delays: tuple[float, ...] = (1.0, 5.0, 15.0)
    max_attempts: int = 3

    def client_config(self, integration_type: str) -> ProviderClientConfig:
        key = integration_type.upper()
        return self.clients.get(key) or ProviderClientConfig(None, None, None)


def _parse_delays(raw: str | None) -> tuple[float, ...]:
    if not raw:
        return (1.0, 5.0, 15.0)
    delays = tuple(float(part) for part in raw.split(",") if part.strip())
    return delays or (1.0, 5.0, 15.0)


@lru_cache(maxsize=1)
def get_integration_settings() -> IntegrationSettings:
    """Load integration settings from the environment."""

    clients = {
        name: ProviderClientConfig(
            client_id=os.getenv(f"{name}_CLIENT_ID") or None,
            client_secret=os.getenv(f"{name}_CLIENT_SECRET") or None,
            redirect_uri=os.getenv(f"{name}_REDIRECT_URI") or None,
        )
        for name in SUPPORTED_INTEGRATIONS
    }
    return IntegrationSettings(
        clients=clients,
        encryption_key=os.getenv("OAUTH_ENCRYPTION_KEY") or None,
        web_app_url=os.getenv("WEB_APP_URL", "http://localhost:3000").rstrip("/"),
        slack_signing_secret=os.getenv("SLACK_SIGNING_SECRET") or None,
        intercom_webhook_secret=os.getenv("INTERCOM_WEBHOOK_SECRET") or None,
        http_timeout=float(os.getenv("INTEGRATION_HTTP_TIMEOUT", "30")),
        retry_delays=_parse_delays(os.getenv("INTEGRATION_RETRY_DELAYS")),
        max_attempts=int(os.getenv("INTEGRATION_MAX_ATTEMPTS", "3")),
    )


def reset_integration_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_integration_settings.cache_clear()


__all__ = [
    "IntegrationSettings",
    "ProviderClientConfig",
    "SUPPORTED_INTEGRATIONS",
    "get_integration_settings",
    "reset_integration_settings_cache",
]
