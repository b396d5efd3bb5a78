"""Lookup table from integration type to provider class."""

from __future__ import annotations

from typing import Any, Mapping, TypeVar

import requests

from feedbackhub.config import IntegrationSettings
from feedbackhub.errors import IntegrationError

from .base import OAuthProvider

P = TypeVar("P", bound=type[OAuthProvider])

_PROVIDERS: dict[str, type[OAuthProvider]] = {}


def register_provider(cls: P) -> P:
    _PROVIDERS[cls.integration_type.upper()] = cls
    return cls


def get_provider_class(integration_type: str) -> type[OAuthProvider]:
    """Return the provider class or raise :class:`KeyError`."""

    key = str(getattr(integration_type, "value", integration_type)).upper()
    try:
        return _PROVIDERS[key]
    except KeyError:
        raise KeyError(f"Unsupported integration type: {integration_type}") from None


def registered_types() -> list[str]:
    return list(_PROVIDERS)


def build_provider(
    integration_type: str,
    settings: IntegrationSettings,
    config: Mapping[str, Any] | None = None,
    session: requests.Session | None = None,
) -> OAuthProvider:
    """Instantiate the provider for ``integration_type`` from ``settings``."""

    provider_cls = get_provider_class(integration_type)
    client = settings.client_config(provider_cls.integration_type)
    if not client.configured:
        raise IntegrationError(
            f"{provider_cls.display_name} OAuth client is not configured",
            code="INTEGRATION_CONFIG_INVALID",
            metadata={"integrationType": provider_cls.integration_type},
        )
    return provider_cls.from_settings(
        client, config or {}, session=session, timeout=settings.http_timeout
    )


__all__ = ["build_provider", "get_provider_class", "register_provider", "registered_types"]
