"""SQLAlchemy declarative base and domain models.

This package hosts the SQLAlchemy models used across the backend. It exposes a
single declarative ``Base`` class that other modules can import when creating
tables or writing migrations in Python. Individual models live in dedicated
modules within this package.
"""

from __future__ import annotations

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


# Re-export models so callers can import them via ``from feedbackhub.models
# import Feedback`` instead of touching private modules.
from .tenant import Organization, RefreshToken, User, UserInvite  # noqa: E402
from .customer import Customer  # noqa: E402
from .feedback import (  # noqa: E402
    FEEDBACK_PRIORITIES,
    FEEDBACK_STATUSES,
    Comment,
    Feedback,
)
from .integration import (  # noqa: E402
    ConnectionStatus,
    Integration,
    IntegrationEvent,
    IntegrationType,
    OAuthState,
    ProcessingStatus,
)
from .migration import ExecutedMigration  # noqa: E402


__all__ = [
    "Base",
    "Comment",
    "ConnectionStatus",
    "Customer",
    "ExecutedMigration",
    "FEEDBACK_PRIORITIES",
    "FEEDBACK_STATUSES",
    "Feedback",
    "Integration",
    "IntegrationEvent",
    "IntegrationType",
    "JSONType",
    "OAuthState",
    "Organization",
    "ProcessingStatus",
    "RefreshToken",
    "User",
    "UserInvite",
]
