"""Integration connections, their event log and pending OAuth handshakes."""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Any, List

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base, JSONType
from .tenant import Organization, _utcnow


class IntegrationType(str, Enum):
    """Third-party platforms FeedbackHub can connect to."""

    SLACK = "SLACK"
    ZENDESK = "ZENDESK"
    INTERCOM = "INTERCOM"


class ConnectionStatus(str, Enum):
    """Lifecycle state of an integration connection."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    EXPIRED = "expired"


class ProcessingStatus(str, Enum):
    """Processing state of a queued integration event."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class Integration(Base):
    """An OAuth connection to a third-party platform.

    ``credentials`` holds the Fernet-encrypted token payload and is never
    returned by the API. ``metadata`` carries provider identifiers (team,
    app, subdomain) used to route inbound webhooks as well as the health
    counters maintained by the health monitor.
    """

    __tablename__ = "integrations"
    __table_args__ = (
        Index("ix_integrations_org", "organization_id"),
        Index("ix_integrations_type", "type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(length=32), nullable=False)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default=ConnectionStatus.ACTIVE.value,
        server_default=text("'active'"),
    )
    config: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    credentials: Mapped[str | None] = mapped_column(Text(), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    sync_config: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    last_health_check: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    organization: Mapped[Organization] = relationship(back_populates="integrations")
    events: Mapped[List["IntegrationEvent"]] = relationship(
        back_populates="integration",
        cascade="all, delete-orphan",
    )

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE.value


class IntegrationEvent(Base):
    """A unit of integration work, inbound (webhook) or outbound (sync).

    The row is the source of truth for retry state: ``attempts`` counts
    completed failed tries and ``next_attempt_at`` records when the in-process
    scheduler will run the next one.
    """

    __tablename__ = "integration_events"
    __table_args__ = (
        Index("ix_integration_events_integration", "integration_id", "created_at"),
        Index("ix_integration_events_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(length=64), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    status: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default=ProcessingStatus.PENDING.value,
        server_default=text("'PENDING'"),
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_error: Mapped[str | None] = mapped_column(Text(), nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_attempt_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    integration: Mapped[Integration] = relationship(back_populates="events")


class OAuthState(Base):
    """Pending OAuth authorization; consumed by the callback."""

    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(String(length=128), primary_key=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    integration_type: Mapped[str] = mapped_column(String(length=32), nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    expires_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


__all__ = [
    "ConnectionStatus",
    "Integration",
    "IntegrationEvent",
    "IntegrationType",
    "OAuthState",
    "ProcessingStatus",
]
