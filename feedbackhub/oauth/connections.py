"""Persistence of OAuth connections and the authorization handshake.

Integration rows store the provider credentials encrypted with
:class:`~feedbackhub.oauth.crypto.CredentialCipher`; callers work with the
decrypted :class:`Connection` view and never see the ciphertext.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import secrets
import uuid
from typing import Any, Callable, Mapping

import requests
from sqlalchemy import select
from sqlalchemy.orm import Session

from feedbackhub.config import (
    SUPPORTED_INTEGRATIONS,
    IntegrationSettings,
    get_integration_settings,
)
from feedbackhub.errors import (
    BaseError,
    IntegrationConnectionFailedError,
    IntegrationError,
    IntegrationNotFoundError,
    ValidationError,
)
from feedbackhub.models import ConnectionStatus, Integration, OAuthState

from .base import Credentials, OAuthProvider
from .crypto import CredentialCipher
from .registry import build_provider, get_provider_class

logger = logging.getLogger(__name__)

STATE_TTL = dt.timedelta(minutes=10)
_SECRET_MARKERS = ("token", "secret", "password")

ProviderFactory = Callable[..., OAuthProvider]


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def _isoformat(value: dt.datetime | None) -> str | None:
    return _as_utc(value).isoformat() if value is not None else None


def _strip_secrets(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: _strip_secrets(item)
            for key, item in value.items()
            if not any(marker in str(key).lower() for marker in _SECRET_MARKERS)
        }
    if isinstance(value, list):
        return [_strip_secrets(item) for item in value]
    return value


def capabilities_for(integration_type: str) -> list[str]:
    try:
        return list(get_provider_class(integration_type).capabilities)
    except KeyError:
        return []


@dataclasses.dataclass
class Connection:
    """An integration row together with its decrypted credentials."""

    integration: Integration
    credentials: Credentials | None
    has_decryption_error: bool = False

    @property
    def id(self) -> uuid.UUID:
        return self.integration.id

    @property
    def organization_id(self) -> uuid.UUID:
        return self.integration.organization_id

    @property
    def type(self) -> str:
        return self.integration.type

    @property
    def name(self) -> str:
        return self.integration.name

    @property
    def metadata(self) -> dict[str, Any]:
        return dict(self.integration.metadata_ or {})

    @property
    def config(self) -> dict[str, Any]:
        return dict(self.integration.config or {})

    @property
    def sync_config(self) -> dict[str, Any]:
        return dict(self.integration.sync_config or {})

    @property
    def is_active(self) -> bool:
        return self.integration.is_active


class OAuthConnectionService:
    def __init__(
        self,
        session: Session,
        settings: IntegrationSettings | None = None,
        cipher: CredentialCipher | None = None,
        provider_factory: ProviderFactory = build_provider,
        http_session: requests.Session | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_integration_settings()
        self.cipher = cipher or CredentialCipher.from_settings(self.settings)
        self.provider_factory = provider_factory
        self.http_session = http_session

    # Providers -------------------------------------------------------------

    def provider_for_type(
        self, integration_type: str, config: Mapping[str, Any] | None = None
    ) -> OAuthProvider:
        return self.provider_factory(
            integration_type, self.settings, dict(config or {}), session=self.http_session
        )

    def provider_for(self, connection: Connection) -> OAuthProvider:
        options = {**connection.metadata, **connection.config}
        return self.provider_for_type(connection.type, options)

    # Authorization handshake ----------------------------------------------

    def get_authorization_url(
        self,
        integration_type: str,
        organization_id: uuid.UUID,
        config: Mapping[str, Any] | None = None,
        user_id: uuid.UUID | None = None,
    ) -> dict[str, str]:
        integration_type = str(integration_type).upper()
        if integration_type not in SUPPORTED_INTEGRATIONS:
            raise IntegrationError(
                code="INTEGRATION_NOT_SUPPORTED", metadata={"integrationType": integration_type}
            )
        provider = self.provider_for_type(integration_type, config)
        state = secrets.token_hex(32)
        now = _utcnow()
        self.session.add(
            OAuthState(
                state=state,
                organization_id=organization_id,
                integration_type=integration_type,
                config=dict(config or {}),
                created_by=user_id,
                created_at=now,
                expires_at=now + STATE_TTL,
            )
        )
        self.session.flush()
        return {"url": provider.get_authorization_url(state), "state": state}

    def consume_state(self, state: str) -> OAuthState:
        record = self.session.get(OAuthState, state) if state else None
        if record is None:
            raise ValidationError("Invalid or expired OAuth state", code="INVALID_TOKEN")
        self.session.delete(record)
        self.session.flush()
        if _as_utc(record.expires_at) <= _utcnow():
            raise ValidationError("Invalid or expired OAuth state", code="INVALID_TOKEN")
        return record

    def _best_effort(self, fetch: Callable[[Credentials], Any], credentials: Credentials) -> Any:
        try:
            return fetch(credentials)
        except Exception:
            logger.warning("Optional provider lookup %s failed", getattr(fetch, "__name__", fetch), exc_info=True)
            return None

    @staticmethod
    def generate_connection_name(
        integration_type: str,
        user_info: Mapping[str, Any] | None,
        account_info: Mapping[str, Any] | None,
        credentials: Mapping[str, Any] | None = None,
    ) -> str:
        base = integration_type.capitalize()
        account_name = (account_info or {}).get("name") or (account_info or {}).get("teamName")
        if not account_name:
            account_name = ((credentials or {}).get("metadata") or {}).get("teamName")
        if account_name:
            return f"{base} - {account_name}"
        if (user_info or {}).get("name"):
            return f"{base} - {user_info['name']}"  # type: ignore[index]
        return f"{base} Connection"

    def create_connection_from_auth_code(self, code: str, state_record: OAuthState) -> Connection:
        integration_type = state_record.integration_type
        try:
            provider = self.provider_for_type(integration_type, state_record.config)
            credentials = provider.exchange_code_for_tokens(code)
            user_info = self._best_effort(provider.get_user_info, credentials)
            account_info = self._best_effort(provider.get_account_info, credentials)

            capabilities = capabilities_for(integration_type)
            token_meta = credentials.get("metadata") or {}
            metadata: dict[str, Any] = {
                "userInfo": user_info,
                "accountInfo": account_info,
                "capabilities": capabilities,
                "lastHealthCheck": _utcnow().isoformat(),
            }
            config: dict[str, Any] = {"authType": "oauth2", "capabilities": capabilities}
            if integration_type == "SLACK":
                metadata["teamId"] = token_meta.get("teamId")
                metadata["appId"] = token_meta.get("appId")
            elif integration_type == "INTERCOM":
                metadata["appId"] = (account_info or {}).get("id_code") or (account_info or {}).get("id")
            elif integration_type == "ZENDESK":
                subdomain = getattr(provider, "subdomain", None) or state_record.config.get("subdomain")
                metadata["subdomain"] = subdomain
                config["subdomain"] = subdomain

            connection = self.create_connection(
                state_record.organization_id,
                integration_type,
                credentials,
                metadata=metadata,
                name=self.generate_connection_name(
                    integration_type, user_info, account_info, credentials
                ),
                config=config,
            )
        except Exception as exc:
            reason = exc.message if isinstance(exc, BaseError) else str(exc)
            logger.error(
                "OAuth flow for %s failed: %s", integration_type, reason,
                extra={"organization_id": str(state_record.organization_id)},
            )
            raise IntegrationConnectionFailedError(
                f"Failed to complete OAuth flow: {reason}", cause=exc
            ) from exc
        logger.info(
            "Connected %s integration %s", integration_type, connection.id,
            extra={
                "organization_id": str(connection.organization_id),
                "integration_id": str(connection.id),
            },
        )
        return connection

    # CRUD ------------------------------------------------------------------

    def _wrap(self, integration: Integration) -> Connection:
        if not integration.credentials:
            return Connection(integration, None)
        try:
            return Connection(integration, self.cipher.decrypt(integration.credentials))
        except IntegrationError:
            logger.error(
                "Could not decrypt credentials for integration %s", integration.id,
                extra={"integration_id": str(integration.id)},
            )
            return Connection(integration, None, has_decryption_error=True)

    def _get_row(self, integration_id: uuid.UUID, organization_id: uuid.UUID) -> Integration | None:
        integration = self.session.get(Integration, integration_id)
        if integration is None or integration.organization_id != organization_id:
            return None
        return integration

    def create_connection(
        self,
        organization_id: uuid.UUID,
        integration_type: str,
        credentials: Credentials,
        *,
        metadata: Mapping[str, Any] | None = None,
        name: str | None = None,
        is_active: bool = True,
        config: Mapping[str, Any] | None = None,
    ) -> Connection:
        integration_type = str(integration_type).upper()
        integration = Integration(
            organization_id=organization_id,
            type=integration_type,
            name=name or f"{integration_type} Integration",
            status=(ConnectionStatus.ACTIVE if is_active else ConnectionStatus.INACTIVE).value,
            config=dict(config or {"authType": "oauth2", "capabilities": capabilities_for(integration_type)}),
            credentials=self.cipher.encrypt(credentials),
            metadata_=dict(metadata or {}),
            sync_config={},
        )
        self.session.add(integration)
        self.session.flush()
        return Connection(integration, dict(credentials))

    def get_connection(
        self, integration_id: uuid.UUID, organization_id: uuid.UUID
    ) -> Connection | None:
        integration = self._get_row(integration_id, organization_id)
        return self._wrap(integration) if integration is not None else None

    def get_connections(self, organization_id: uuid.UUID) -> list[Connection]:
        rows = self.session.execute(
            select(Integration)
            .where(Integration.organization_id == organization_id)
            .order_by(Integration.created_at.desc())
        ).scalars()
        return [self._wrap(row) for row in rows]

    def get_connections_by_type(self, integration_type: str) -> list[Connection]:
        rows = self.session.execute(
            select(Integration)
            .where(Integration.type == str(integration_type).upper())
            .order_by(Integration.created_at.desc())
        ).scalars()
        return [self._wrap(row) for row in rows]

    def _active_rows(self, integration_type: str) -> list[Integration]:
        return list(
            self.session.execute(
                select(Integration)
                .where(
                    Integration.type == integration_type,
                    Integration.status == ConnectionStatus.ACTIVE.value,
                )
                .order_by(Integration.created_at.desc())
            ).scalars()
        )

    def find_by_external_id(self, integration_type: str, external_id: str) -> Connection | None:
        """Find the active connection whose team or app id is ``external_id``."""

        if not external_id:
            return None
        for row in self._active_rows(str(integration_type).upper()):
            metadata = row.metadata_ or {}
            if external_id in (
                metadata.get("teamId"),
                metadata.get("appId"),
                (row.config or {}).get("teamId"),
            ):
                return self._wrap(row)
        return None

    def find_zendesk_by_subdomain(self, subdomain: str) -> Connection | None:
        if not subdomain:
            return None
        subdomain = subdomain.lower()
        for row in self._active_rows("ZENDESK"):
            candidates = {(row.metadata_ or {}).get("subdomain"), (row.config or {}).get("subdomain")}
            if subdomain in {str(c).lower() for c in candidates if c}:
                return self._wrap(row)
        return None

    def update_connection(
        self,
        integration_id: uuid.UUID,
        organization_id: uuid.UUID,
        *,
        credentials: Credentials | None = None,
        metadata: Mapping[str, Any] | None = None,
        name: str | None = None,
        is_active: bool | None = None,
        sync_config: Mapping[str, Any] | None = None,
        last_health_check: dt.datetime | None = None,
    ) -> Connection:
        integration = self._get_row(integration_id, organization_id)
        if integration is None:
            raise IntegrationNotFoundError(metadata={"integrationId": str(integration_id)})
        if credentials is not None:
            integration.credentials = self.cipher.encrypt(credentials)
        if metadata is not None:
            integration.metadata_ = {**(integration.metadata_ or {}), **metadata}
        if name:
            integration.name = name
        if is_active is not None:
            integration.status = (
                ConnectionStatus.ACTIVE if is_active else ConnectionStatus.INACTIVE
            ).value
        if sync_config is not None:
            integration.sync_config = dict(sync_config)
        if last_health_check is not None:
            integration.last_health_check = last_health_check
        self.session.flush()
        return self._wrap(integration)

    def delete_connection(self, integration_id: uuid.UUID, organization_id: uuid.UUID) -> None:
        integration = self._get_row(integration_id, organization_id)
        if integration is None:
            raise IntegrationNotFoundError(metadata={"integrationId": str(integration_id)})
        self.session.delete(integration)
        self.session.flush()

    # Token lifecycle -------------------------------------------------------

    def refresh_token_if_needed(
        self, integration_id: uuid.UUID, organization_id: uuid.UUID
    ) -> Credentials:
        connection = self.get_connection(integration_id, organization_id)
        if connection is None or not connection.credentials:
            raise IntegrationNotFoundError(metadata={"integrationId": str(integration_id)})
        credentials = connection.credentials
        if not OAuthProvider.is_token_expired(credentials.get("expires_at")):
            return credentials

        try:
            refreshed = self.provider_for(connection).refresh_access_token(credentials)
        except Exception as exc:
            integration = connection.integration
            metadata = dict(integration.metadata_ or {})
            metadata["lastError"] = str(exc) or "Token refresh failed"
            metadata["errorCount"] = int(metadata.get("errorCount") or 0) + 1
            integration.metadata_ = metadata
            integration.status = ConnectionStatus.ERROR.value
            self.session.flush()
            logger.error(
                "Token refresh failed for integration %s", integration_id,
                extra={"integration_id": str(integration_id), "organization_id": str(organization_id)},
            )
            raise
        self.update_connection(integration_id, organization_id, credentials=refreshed)
        return refreshed

    def test_connection(self, integration_id: uuid.UUID, organization_id: uuid.UUID) -> dict[str, Any]:
        connection = self.get_connection(integration_id, organization_id)
        if connection is None or not connection.credentials:
            return {"healthy": False, "error": "Connection not found or credentials unavailable"}
        try:
            valid = self.provider_for(connection).validate_token(connection.credentials)
            if not valid:
                return {"healthy": False, "error": "Token validation failed"}
            self.update_connection(
                integration_id,
                organization_id,
                metadata={"errorCount": 0, "lastError": None, "lastHealthCheck": _utcnow().isoformat()},
                last_health_check=_utcnow(),
            )
            return {"healthy": True}
        except Exception as exc:
            reason = exc.message if isinstance(exc, BaseError) else str(exc)
            return {"healthy": False, "error": reason}

    # Presentation ----------------------------------------------------------

    @staticmethod
    def to_public_dict(connection: Connection) -> dict[str, Any]:
        integration = connection.integration
        credentials = connection.credentials or {}
        return {
            "id": str(integration.id),
            "type": integration.type,
            "name": integration.name,
            "status": integration.status,
            "isActive": integration.is_active,
            "config": _strip_secrets(integration.config or {}),
            "metadata": _strip_secrets(integration.metadata_ or {}),
            "syncConfig": dict(integration.sync_config or {}),
            "tokenExpiresAt": credentials.get("expires_at"),
            "hasDecryptionError": connection.has_decryption_error,
            "lastHealthCheck": _isoformat(integration.last_health_check),
            "createdAt": _isoformat(integration.created_at),
            "updatedAt": _isoformat(integration.updated_at),
        }


__all__ = [
    "Connection",
    "OAuthConnectionService",
    "STATE_TTL",
    "capabilities_for",
]
