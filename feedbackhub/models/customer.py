"""Customer model: the people feedback comes from."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import TYPE_CHECKING, Any, List

from sqlalchemy import DateTime, ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base, JSONType
from .tenant import Organization, _utcnow

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .feedback import Feedback


class Customer(Base):
    """An end customer identified by e-mail, external id or name/company.

    ``email`` is unique per organization but may be ``NULL`` for customers
    discovered through integrations that do not expose an address.
    """

    __tablename__ = "customers"
    __table_args__ = (
        Index("ix_customers_org_email_unique", "organization_id", "email", unique=True),
        Index("ix_customers_org_last_seen", "organization_id", "last_seen_at"),
        Index("ix_customers_org_external", "organization_id", "source", "external_id"),
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
    email: Mapped[str | None] = mapped_column(String(length=320), nullable=True)
    name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    company: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    source: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    integration_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("integrations.id", ondelete="SET NULL"),
        nullable=True,
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    first_seen_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    last_seen_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    organization: Mapped[Organization] = relationship(back_populates="customers")
    feedback_items: Mapped[List["Feedback"]] = relationship(back_populates="customer")

    @property
    def display_name(self) -> str:
        return self.name or self.email or "Anonymous"


__all__ = ["Customer"]
