"""Feedback items and their comment threads."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, List

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base, JSONType
from .customer import Customer
from .tenant import Organization, User, _utcnow

FEEDBACK_STATUSES: tuple[str, ...] = (
    "new",
    "triaged",
    "planned",
    "in_progress",
    "resolved",
    "archived",
)
FEEDBACK_PRIORITIES: tuple[str, ...] = ("low", "medium", "high", "urgent")


class Feedback(Base):
    """A single piece of customer feedback.

    ``source_metadata`` holds the identifiers of the upstream record when the
    item was created from an integration (``slackMessageTs``,
    ``zendeskTicketId``, ``intercomConversationId``) so later events can find it.
    """

    __tablename__ = "feedback"
    __table_args__ = (
        Index("ix_feedback_org_status", "organization_id", "status"),
        Index("ix_feedback_org_created", "organization_id", "created_at"),
        Index("ix_feedback_customer", "customer_id"),
        Index("ix_feedback_assigned_to", "assigned_to"),
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
    title: Mapped[str] = mapped_column(String(length=500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text(), nullable=True)
    status: Mapped[str] = mapped_column(
        String(length=32), nullable=False, default="new", server_default=text("'new'")
    )
    priority: Mapped[str | None] = mapped_column(String(length=16), nullable=True)
    category: Mapped[str | None] = mapped_column(String(length=128), nullable=True)
    source: Mapped[str] = mapped_column(
        String(length=64), nullable=False, default="manual", server_default=text("'manual'")
    )
    customer_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
    )
    integration_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("integrations.id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    upvote_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    source_metadata: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    organization: Mapped[Organization] = relationship(back_populates="feedback_items")
    customer: Mapped[Customer | None] = relationship(back_populates="feedback_items")
    assignee: Mapped[User | None] = relationship(foreign_keys=[assigned_to])
    creator: Mapped[User | None] = relationship(foreign_keys=[created_by])
    comments: Mapped[List["Comment"]] = relationship(
        back_populates="feedback",
        cascade="all, delete-orphan",
        order_by="Comment.created_at",
    )


class Comment(Base):
    """A note on a feedback item. ``user_id`` is ``NULL`` for system comments."""

    __tablename__ = "comments"
    __table_args__ = (Index("ix_comments_feedback", "feedback_id"),)

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
    feedback_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("feedback.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    is_internal: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    feedback: Mapped[Feedback] = relationship(back_populates="comments")
    author: Mapped[User | None] = relationship()


__all__ = ["Comment", "FEEDBACK_PRIORITIES", "FEEDBACK_STATUSES", "Feedback"]
