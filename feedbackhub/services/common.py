"""Helpers shared by the CRUD services."""

from __future__ import annotations

import dataclasses
import datetime as dt
import math
import uuid
from typing import Any, Generic, TypeVar

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from feedbackhub.errors import ValidationError

T = TypeVar("T")

MAX_PAGE_SIZE = 100


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: dt.datetime | None) -> dt.datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def isoformat(value: dt.datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


def validate_email_address(email: str) -> str:
    """Return the normalised address or raise ``INVALID_EMAIL``."""

    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError(
            code="INVALID_EMAIL", metadata={"field": "email"}, cause=exc
        ) from exc
    return email.strip().lower()


def coerce_uuid(value: Any, field: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError(code="INVALID_ID", metadata={"field": field}) from exc


@dataclasses.dataclass
class Page(Generic[T]):
    """One page of results plus the total row count."""

    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return math.ceil(self.total / self.limit)


def validate_pagination(page: int, limit: int) -> tuple[int, int]:
    if page < 1 or limit < 1:
        raise ValidationError(code="INVALID_PAGINATION")
    return page, min(limit, MAX_PAGE_SIZE)


def paginate(session: Session, stmt: Select[Any], page: int, limit: int) -> Page[Any]:
    """Run ``stmt`` for one page and count the unpaged rows."""

    page, limit = validate_pagination(page, limit)
    total = session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()
    rows = session.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().unique().all()
    return Page(items=list(rows), total=int(total), page=page, limit=limit)


__all__ = [
    "MAX_PAGE_SIZE",
    "Page",
    "as_utc",
    "coerce_uuid",
    "isoformat",
    "normalize_email",
    "paginate",
    "utcnow",
    "validate_email_address",
    "validate_pagination",
]
