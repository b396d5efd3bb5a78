"""OAuth2 providers, credential encryption and connection management."""

from .base import Credentials, OAuthConfig, OAuthProvider, OAuthProviderError
from .registry import build_provider, get_provider_class, register_provider, registered_types

# Importing the provider modules registers them.
from .intercom import IntercomProvider
from .slack import SlackProvider
from .zendesk import ZendeskProvider

from .connections import Connection, OAuthConnectionService, capabilities_for
from .crypto import CredentialCipher

__all__ = [
    "Connection",
    "CredentialCipher",
    "Credentials",
    "IntercomProvider",
    "OAuthConfig",
    "OAuthConnectionService",
    "OAuthProvider",
    "OAuthProviderError",
    "SlackProvider",
    "ZendeskProvider",
    "build_provider",
    "capabilities_for",
    "get_provider_class",
    "register_provider",
    "registered_types",
]
