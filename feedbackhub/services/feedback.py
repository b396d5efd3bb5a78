"""Feedback CRUD, search, bulk operations, comments and export.

Changes that the connected platforms should hear about (creation, status
changes, assignment) are collected in :attr:`FeedbackService.outbox` and
handed to the dispatcher by :meth:`FeedbackService.publish_events` once the
caller has committed the transaction.
"""

from __future__ import annotations

import csv
import dataclasses
import datetime as dt
import io
import logging
import uuid
from typing import Any, Callable, Iterable

from sqlalchemy import Select, and_, case, func, or_, select
from sqlalchemy.orm import Session

from feedbackhub.errors import (
    FeedbackError,
    FeedbackNotFoundError,
    InsufficientPermissionsError,
    IntegrationNotFoundError,
    ResourceNotFoundError,
    ValidationError,
)
from feedbackhub.models import (
    FEEDBACK_PRIORITIES,
    FEEDBACK_STATUSES,
    Comment,
    Customer,
    Feedback,
    Integration,
    User,
)

from .common import Page, isoformat, paginate, utcnow
from .customers import CustomerService

logger = logging.getLogger(__name__)

FEEDBACK_CREATED = "FEEDBACK_CREATED"
FEEDBACK_STATUS_CHANGED = "FEEDBACK_STATUS_CHANGED"
FEEDBACK_ASSIGNED = "FEEDBACK_ASSIGNED"

FEEDBACK_SORT_FIELDS = ("created_at", "updated_at", "title", "status", "priority", "upvote_count")
EXPORT_COLUMNS = (
    "id",
    "title",
    "description",
    "status",
    "priority",
    "category",
    "source",
    "customer_name",
    "customer_email",
    "assigned_to",
    "upvote_count",
    "created_at",
    "updated_at",
)

# dispatcher(organization_id, event_type, feedback_snapshot, **extra)
FeedbackDispatcher = Callable[..., Any]

_PRIORITY_RANK = {name: index for index, name in enumerate(FEEDBACK_PRIORITIES, start=1)}
_STATUS_RANK = {name: index for index, name in enumerate(FEEDBACK_STATUSES, start=1)}


@dataclasses.dataclass
class FeedbackFilters:
    search: str | None = None
    status: list[str] | None = None
    category: list[str] | None = None
    priority: list[str] | None = None
    source: list[str] | None = None
    assigned_to: uuid.UUID | None = None
    customer_id: uuid.UUID | None = None
    integration_id: uuid.UUID | None = None
    date_from: dt.datetime | None = None
    date_to: dt.datetime | None = None
    has_customer: bool | None = None
    is_assigned: bool | None = None


def feedback_snapshot(feedback: Feedback) -> dict[str, Any]:
    """Serialisable view of ``feedback`` used in outbound integration events."""

    customer = feedback.customer
    return {
        "id": str(feedback.id),
        "title": feedback.title,
        "description": feedback.description,
        "status": feedback.status,
        "priority": feedback.priority,
        "category": feedback.category,
        "source": feedback.source,
        "customerId": str(feedback.customer_id) if feedback.customer_id else None,
        "customerName": customer.name if customer else None,
        "customerEmail": customer.email if customer else None,
        "assignedTo": str(feedback.assigned_to) if feedback.assigned_to else None,
        "upvoteCount": feedback.upvote_count,
        "sourceMetadata": dict(feedback.source_metadata or {}),
        "createdAt": isoformat(feedback.created_at),
    }


def _validate_status(status: str) -> str:
    if status not in FEEDBACK_STATUSES:
        raise FeedbackError(
            code="FEEDBACK_STATUS_INVALID",
            metadata={"status": status, "allowed": list(FEEDBACK_STATUSES)},
        )
    return status


def _validate_priority(priority: str | None) -> str | None:
    if priority is None:
        return None
    if priority not in FEEDBACK_PRIORITIES:
        raise FeedbackError(
            code="FEEDBACK_PRIORITY_INVALID",
            metadata={"priority": priority, "allowed": list(FEEDBACK_PRIORITIES)},
        )
    return priority


class FeedbackService:
    """Organization-scoped operations on :class:`~feedbackhub.models.Feedback`."""

    def __init__(self, session: Session, dispatcher: FeedbackDispatcher | None = None) -> None:
        self.session = session
        self.dispatcher = dispatcher
        self.outbox: list[tuple[uuid.UUID, str, dict[str, Any], dict[str, Any]]] = []

    # Outbound events -------------------------------------------------------

    def _queue(self, feedback: Feedback, event_type: str, **extra: Any) -> None:
        if self.dispatcher is None:
            return
        self.outbox.append((feedback.organization_id, event_type, feedback_snapshot(feedback), extra))

    def publish_events(self) -> int:
        """Hand queued events to the dispatcher; call after commit."""

        published = 0
        pending, self.outbox = self.outbox, []
        for organization_id, event_type, snapshot, extra in pending:
            try:
                self.dispatcher(organization_id, event_type, snapshot, **extra)  # type: ignore[misc]
                published += 1
            except Exception:
                logger.exception(
                    "Failed to dispatch %s for feedback %s", event_type, snapshot.get("id"),
                    extra={"organization_id": str(organization_id)},
                )
        return published

    # Validation helpers ----------------------------------------------------

    def _member(self, organization_id: uuid.UUID, user_id: uuid.UUID) -> User:
        user = self.session.get(User, user_id)
        if user is None or user.organization_id != organization_id or not user.is_active:
            raise ResourceNotFoundError("user", user_id)
        return user

    def _integration(self, organization_id: uuid.UUID, integration_id: uuid.UUID) -> Integration:
        integration = self.session.get(Integration, integration_id)
        if integration is None or integration.organization_id != organization_id:
            raise IntegrationNotFoundError(metadata={"integrationId": str(integration_id)})
        return integration

    # CRUD ----------------------------------------------------------------

    def create_feedback(
        self,
        organization_id: uuid.UUID,
        data: dict[str, Any],
        *,
        created_by: uuid.UUID | None = None,
    ) -> Feedback:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError(code="FEEDBACK_TITLE_REQUIRED", metadata={"field": "title"})
        status = _validate_status(data.get("status") or "new")
        priority = _validate_priority(data.get("priority"))
        source = data.get("source") or "manual"

        customers = CustomerService(self.session)
        customer_id = data.get("customer_id")
        if customer_id:
            customer_id = customers.get_customer(organization_id, customer_id).id
        elif data.get("customer_email") or data.get("customer_name"):
            customer, _ = customers.identify_or_create(
                organization_id,
                email=data.get("customer_email"),
                name=data.get("customer_name"),
                company=data.get("customer_company"),
                source=source,
            )
            customer_id = customer.id

        integration_id = data.get("integration_id")
        if integration_id:
            integration_id = self._integration(organization_id, integration_id).id
        assigned_to = data.get("assigned_to")
        if assigned_to:
            assigned_to = self._member(organization_id, assigned_to).id

        feedback = Feedback(
            organization_id=organization_id,
            title=title,
            description=data.get("description"),
            status=status,
            priority=priority,
            category=data.get("category"),
            source=source,
            customer_id=customer_id,
            integration_id=integration_id,
            assigned_to=assigned_to,
            created_by=created_by,
            upvote_count=0,
            source_metadata=dict(data.get("source_metadata") or {}),
        )
        self.session.add(feedback)
        self.session.flush()
        self.session.refresh(feedback)
        self._queue(feedback, FEEDBACK_CREATED)
        logger.info(
            "Feedback %s created from %s", feedback.id, source,
            extra={"organization_id": str(organization_id)},
        )
        return feedback

    def get_feedback(self, organization_id: uuid.UUID, feedback_id: uuid.UUID) -> Feedback:
        feedback = self.session.get(Feedback, feedback_id)
        if feedback is None or feedback.organization_id != organization_id:
            raise FeedbackNotFoundError(metadata={"feedbackId": str(feedback_id)})
        return feedback

    def _filtered(self, organization_id: uuid.UUID, filters: FeedbackFilters) -> Select[Any]:
        stmt = (
            select(Feedback)
            .outerjoin(Customer, Feedback.customer_id == Customer.id)
            .where(Feedback.organization_id == organization_id)
        )
        if filters.search:
            for term in filters.search.split():
                pattern = f"%{term.lower()}%"
                stmt = stmt.where(
                    or_(
                        func.lower(Feedback.title).like(pattern),
                        func.lower(Feedback.description).like(pattern),
                        func.lower(Feedback.category).like(pattern),
                        func.lower(Feedback.source).like(pattern),
                        func.lower(Customer.name).like(pattern),
                        func.lower(Customer.email).like(pattern),
                        func.lower(Customer.company).like(pattern),
                    )
                )
        if filters.status:
            stmt = stmt.where(Feedback.status.in_(filters.status))
        if filters.category:
            stmt = stmt.where(Feedback.category.in_(filters.category))
        if filters.priority:
            stmt = stmt.where(Feedback.priority.in_(filters.priority))
        if filters.source:
            stmt = stmt.where(Feedback.source.in_(filters.source))
        if filters.assigned_to:
            stmt = stmt.where(Feedback.assigned_to == filters.assigned_to)
        if filters.customer_id:
            stmt = stmt.where(Feedback.customer_id == filters.customer_id)
        if filters.integration_id:
            stmt = stmt.where(Feedback.integration_id == filters.integration_id)
        if filters.date_from:
            stmt = stmt.where(Feedback.created_at >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(Feedback.created_at <= filters.date_to)
        if filters.has_customer is True:
            stmt = stmt.where(Feedback.customer_id.is_not(None))
        elif filters.has_customer is False:
            stmt = stmt.where(Feedback.customer_id.is_(None))
        if filters.is_assigned is True:
            stmt = stmt.where(Feedback.assigned_to.is_not(None))
        elif filters.is_assigned is False:
            stmt = stmt.where(Feedback.assigned_to.is_(None))
        return stmt

    def _sort_column(self, sort_by: str) -> Any:
        if sort_by not in FEEDBACK_SORT_FIELDS:
            raise ValidationError(code="INVALID_SORT_FIELD", metadata={"sortBy": sort_by})
        if sort_by == "priority":
            return case(_PRIORITY_RANK, value=Feedback.priority, else_=0)
        if sort_by == "status":
            return case(_STATUS_RANK, value=Feedback.status, else_=0)
        return getattr(Feedback, sort_by)

    def list_feedback(
        self,
        organization_id: uuid.UUID,
        filters: FeedbackFilters | None = None,
        *,
        page: int = 1,
        limit: int = 25,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Page[Feedback]:
        column = self._sort_column(sort_by)
        stmt = self._filtered(organization_id, filters or FeedbackFilters()).order_by(
            column.asc() if sort_order == "asc" else column.desc(), Feedback.id
        )
        return paginate(self.session, stmt, page, limit)

    def update_feedback(
        self,
        organization_id: uuid.UUID,
        feedback_id: uuid.UUID,
        changes: dict[str, Any],
        actor: User | None = None,
    ) -> Feedback:
        """Apply ``changes`` and queue status and assignment events.

        ``actor`` is the member making the change; integration handlers pass
        none. The actor must belong to the organization with at least the
        operator role, and is recorded as ``changedBy`` on queued events.
        """

        if actor is not None and (
            actor.organization_id != organization_id or actor.role not in ("operator", "admin")
        ):
            raise InsufficientPermissionsError("operator")
        feedback = self.get_feedback(organization_id, feedback_id)
        old_status = feedback.status
        old_assignee = feedback.assigned_to

        if "title" in changes:
            title = (changes["title"] or "").strip()
            if not title:
                raise ValidationError(code="FEEDBACK_TITLE_REQUIRED", metadata={"field": "title"})
            feedback.title = title
        if "description" in changes:
            feedback.description = changes["description"]
        if "category" in changes:
            feedback.category = changes["category"]
        if "status" in changes:
            feedback.status = _validate_status(changes["status"])
        if "priority" in changes:
            feedback.priority = _validate_priority(changes["priority"])
        if "customer_id" in changes:
            customer_id = changes["customer_id"]
            if customer_id:
                customer_id = CustomerService(self.session).get_customer(organization_id, customer_id).id
            feedback.customer_id = customer_id
        assignee: User | None = None
        if "assigned_to" in changes:
            assigned_to = changes["assigned_to"]
            if assigned_to:
                assignee = self._member(organization_id, assigned_to)
                assigned_to = assignee.id
            feedback.assigned_to = assigned_to
        if changes.get("source_metadata"):
            feedback.source_metadata = {**(feedback.source_metadata or {}), **changes["source_metadata"]}

        self.session.flush()
        self.session.refresh(feedback)
        changed_by = {"changedBy": str(actor.id)} if actor is not None else {}
        if feedback.status != old_status:
            self._queue(
                feedback,
                FEEDBACK_STATUS_CHANGED,
                oldStatus=old_status,
                newStatus=feedback.status,
                **changed_by,
            )
        if assignee is not None and assignee.id != old_assignee:
            self._queue(
                feedback,
                FEEDBACK_ASSIGNED,
                assigneeId=str(assignee.id),
                assigneeName=assignee.name,
                **changed_by,
            )
        return feedback

    def delete_feedback(self, organization_id: uuid.UUID, feedback_id: uuid.UUID) -> None:
        feedback = self.get_feedback(organization_id, feedback_id)
        self.session.delete(feedback)
        self.session.flush()

    # Bulk operations -------------------------------------------------------

    def _load_many(self, organization_id: uuid.UUID, ids: Iterable[uuid.UUID]) -> list[Feedback]:
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            raise ValidationError("No feedback IDs provided", code="REQUIRED_FIELD_MISSING")
        items = self.session.execute(
            select(Feedback).where(
                Feedback.organization_id == organization_id, Feedback.id.in_(unique_ids)
            )
        ).scalars().all()
        if len(items) != len(unique_ids):
            found = {item.id for item in items}
            raise FeedbackError(
                code="FEEDBACK_BULK_UPDATE_FAILED",
                metadata={"missing": [str(i) for i in unique_ids if i not in found]},
            )
        return list(items)

    def bulk_update_status(
        self, organization_id: uuid.UUID, feedback_ids: Iterable[uuid.UUID], status: str
    ) -> int:
        status = _validate_status(status)
        items = self._load_many(organization_id, feedback_ids)
        changed = []
        for item in items:
            if item.status != status:
                changed.append((item, item.status))
                item.status = status
        self.session.flush()
        for item, old_status in changed:
            self._queue(item, FEEDBACK_STATUS_CHANGED, oldStatus=old_status, newStatus=status)
        return len(items)

    def bulk_assign(
        self,
        organization_id: uuid.UUID,
        feedback_ids: Iterable[uuid.UUID],
        assignee_id: uuid.UUID | None,
    ) -> int:
        assignee = self._member(organization_id, assignee_id) if assignee_id else None
        items = self._load_many(organization_id, feedback_ids)
        for item in items:
            item.assigned_to = assignee.id if assignee else None
        self.session.flush()
        if assignee is not None:
            for item in items:
                self._queue(
                    item, FEEDBACK_ASSIGNED, assigneeId=str(assignee.id), assigneeName=assignee.name
                )
        return len(items)

    # Comments --------------------------------------------------------------

    def add_comment(
        self,
        organization_id: uuid.UUID,
        feedback_id: uuid.UUID,
        content: str,
        *,
        user_id: uuid.UUID | None = None,
        is_internal: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> Comment:
        content = (content or "").strip()
        if not content:
            raise ValidationError(code="COMMENT_CONTENT_REQUIRED", metadata={"field": "content"})
        feedback = self.get_feedback(organization_id, feedback_id)
        comment = Comment(
            organization_id=organization_id,
            feedback_id=feedback.id,
            user_id=user_id,
            content=content,
            is_internal=is_internal,
            metadata_=dict(metadata or {}),
        )
        self.session.add(comment)
        self.session.flush()
        return comment

    # Reporting -------------------------------------------------------------

    def _group_counts(self, organization_id: uuid.UUID, column: Any) -> dict[str, int]:
        rows = self.session.execute(
            select(column, func.count())
            .where(Feedback.organization_id == organization_id)
            .group_by(column)
        ).all()
        return {(key if key is not None else "none"): int(count) for key, count in rows}

    def get_feedback_stats(self, organization_id: uuid.UUID) -> dict[str, Any]:
        scope = Feedback.organization_id == organization_id
        total = self.session.execute(
            select(func.count()).select_from(Feedback).where(scope)
        ).scalar_one()
        unassigned = self.session.execute(
            select(func.count()).select_from(Feedback).where(scope, Feedback.assigned_to.is_(None))
        ).scalar_one()
        recent = self.session.execute(
            select(func.count())
            .select_from(Feedback)
            .where(and_(scope, Feedback.created_at >= utcnow() - dt.timedelta(days=7)))
        ).scalar_one()
        by_status = {status: 0 for status in FEEDBACK_STATUSES}
        by_status.update(self._group_counts(organization_id, Feedback.status))
        return {
            "total": int(total),
            "by_status": by_status,
            "by_category": self._group_counts(organization_id, Feedback.category),
            "by_priority": self._group_counts(organization_id, Feedback.priority),
            "by_source": self._group_counts(organization_id, Feedback.source),
            "unassigned": int(unassigned),
            "created_last_7_days": int(recent),
        }

    def get_filter_options(self, organization_id: uuid.UUID) -> dict[str, Any]:
        scope = Feedback.organization_id == organization_id
        categories = self.session.execute(
            select(Feedback.category).where(scope, Feedback.category.is_not(None)).distinct()
        ).scalars().all()
        sources = self.session.execute(
            select(Feedback.source).where(scope).distinct()
        ).scalars().all()
        users = self.session.execute(
            select(User)
            .where(User.organization_id == organization_id, User.is_active.is_(True))
            .order_by(User.name)
        ).scalars().all()
        customers = self.session.execute(
            select(Customer).where(Customer.organization_id == organization_id).order_by(Customer.name)
        ).scalars().all()
        return {
            "statuses": list(FEEDBACK_STATUSES),
            "priorities": list(FEEDBACK_PRIORITIES),
            "categories": sorted(categories),
            "sources": sorted(sources),
            "assignees": [{"id": str(u.id), "name": u.name} for u in users],
            "customers": [{"id": str(c.id), "name": c.display_name} for c in customers],
        }

    def export_feedback(
        self, organization_id: uuid.UUID, filters: FeedbackFilters | None = None
    ) -> str:
        """Return the filtered feedback as CSV text."""

        stmt = self._filtered(organization_id, filters or FeedbackFilters()).order_by(
            Feedback.created_at.desc()
        )
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(EXPORT_COLUMNS)
        for item in self.session.execute(stmt).scalars().unique():
            customer = item.customer
            writer.writerow(
                [
                    item.id,
                    item.title,
                    item.description or "",
                    item.status,
                    item.priority or "",
                    item.category or "",
                    item.source,
                    (customer.name or "") if customer else "",
                    (customer.email or "") if customer else "",
                    item.assignee.name if item.assignee else "",
                    item.upvote_count,
                    isoformat(item.created_at),
                    isoformat(item.updated_at),
                ]
            )
        return buffer.getvalue()


__all__ = [
    "EXPORT_COLUMNS",
    "FEEDBACK_ASSIGNED",
    "FEEDBACK_CREATED",
    "FEEDBACK_SORT_FIELDS",
    "FEEDBACK_STATUS_CHANGED",
    "FeedbackDispatcher",
    "FeedbackFilters",
    "FeedbackService",
    "feedback_snapshot",
]
