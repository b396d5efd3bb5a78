"""Bookkeeping table for the migration runner."""

from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from . import Base, JSONType
from .tenant import _utcnow


class ExecutedMigration(Base):
    """One row per migration the runner has attempted.

    A row with ``error_log = NULL`` is a successful run. Skipped migrations
    keep ``{"skipped": true}`` in ``error_log`` so they are retried on the
    next run.
    """

    __tablename__ = "executed_migrations"

    id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    release_version: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    executed_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_log: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    rollback_executed_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rollback_error_log: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True
    )
    execution_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    checksum: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    @property
    def status(self) -> str:
        if self.rollback_executed_at is not None:
            return "rolled_back"
        if self.error_log:
            return "skipped" if self.error_log.get("skipped") else "failed"
        return "success"


__all__ = ["ExecutedMigration"]
