"""Customer identification, CRUD, merging and statistics."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import uuid
from collections import defaultdict
from typing import Any

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.orm import Session

from feedbackhub.errors import (
    CustomerAlreadyExistsError,
    CustomerError,
    CustomerNotFoundError,
    ValidationError,
)
from feedbackhub.models import Customer, Feedback

from .common import (
    Page,
    as_utc,
    normalize_email,
    paginate,
    utcnow,
    validate_email_address,
)

logger = logging.getLogger(__name__)

CUSTOMER_SORT_FIELDS = ("name", "email", "company", "created_at", "last_seen_at", "first_seen_at")
_EDITABLE_FIELDS = ("name", "email", "company", "external_id", "source", "metadata")


@dataclasses.dataclass
class CustomerOverview:
    customer: Customer
    recent_feedback: list[Feedback]
    feedback_count: int


@dataclasses.dataclass
class CustomerFilters:
    search: str | None = None
    companies: list[str] | None = None
    has_email: bool | None = None
    integration_id: uuid.UUID | None = None
    date_from: dt.datetime | None = None
    date_to: dt.datetime | None = None


class CustomerService:
    """Organization-scoped operations on :class:`~feedbackhub.models.Customer`."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Lookups -------------------------------------------------------------

    def _by_email(self, organization_id: uuid.UUID, email: str) -> Customer | None:
        return self.session.execute(
            select(Customer).where(
                Customer.organization_id == organization_id,
                func.lower(Customer.email) == email,
            )
        ).scalars().first()

    def get_customer(self, organization_id: uuid.UUID, customer_id: uuid.UUID) -> Customer:
        customer = self.session.get(Customer, customer_id)
        if customer is None or customer.organization_id != organization_id:
            raise CustomerNotFoundError(metadata={"customerId": str(customer_id)})
        return customer

    def get_customer_overview(
        self, organization_id: uuid.UUID, customer_id: uuid.UUID
    ) -> CustomerOverview:
        """Customer plus its five most recent feedback items."""

        customer = self.get_customer(organization_id, customer_id)
        recent = self.session.execute(
            select(Feedback)
            .where(Feedback.customer_id == customer.id)
            .order_by(Feedback.created_at.desc())
            .limit(5)
        ).scalars().all()
        count = self.session.execute(
            select(func.count()).select_from(Feedback).where(Feedback.customer_id == customer.id)
        ).scalar_one()
        return CustomerOverview(customer=customer, recent_feedback=list(recent), feedback_count=int(count))

    # Identification --------------------------------------------------------

    def identify_or_create(
        self,
        organization_id: uuid.UUID,
        *,
        email: str | None = None,
        name: str | None = None,
        company: str | None = None,
        source: str | None = None,
        external_id: str | None = None,
        integration_id: uuid.UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Customer, bool]:
        """Find the customer matching the given identity or create it.

        Matching order: e-mail (case-insensitive), then external id within
        the same source, then name together with company. A match has its
        ``last_seen_at`` bumped and its empty fields filled in.

        Returns:
            The customer and whether it was created.
        """

        email = normalize_email(email)
        name = (name or "").strip() or None
        company = (company or "").strip() or None

        customer: Customer | None = None
        if email:
            customer = self._by_email(organization_id, email)
        if customer is None and external_id and source:
            customer = self.session.execute(
                select(Customer).where(
                    Customer.organization_id == organization_id,
                    Customer.source == source,
                    Customer.external_id == str(external_id),
                )
            ).scalars().first()
        if customer is None and name and company:
            customer = self.session.execute(
                select(Customer).where(
                    Customer.organization_id == organization_id,
                    func.lower(Customer.name) == name.lower(),
                    func.lower(Customer.company) == company.lower(),
                )
            ).scalars().first()

        now = utcnow()
        if customer is not None:
            customer.last_seen_at = now
            if email and not customer.email:
                customer.email = email
            if name and not customer.name:
                customer.name = name
            if company and not customer.company:
                customer.company = company
            if external_id and not customer.external_id:
                customer.external_id = str(external_id)
            if source and not customer.source:
                customer.source = source
            if integration_id and not customer.integration_id:
                customer.integration_id = integration_id
            if metadata:
                customer.metadata_ = {**(customer.metadata_ or {}), **metadata}
            self.session.flush()
            return customer, False

        customer = Customer(
            organization_id=organization_id,
            email=email,
            name=name,
            company=company,
            source=source,
            external_id=str(external_id) if external_id else None,
            integration_id=integration_id,
            metadata_=dict(metadata or {}),
            first_seen_at=now,
            last_seen_at=now,
        )
        self.session.add(customer)
        self.session.flush()
        logger.info(
            "Customer %s identified from %s", customer.id, source or "manual",
            extra={"organization_id": str(organization_id)},
        )
        return customer, True

    # CRUD ----------------------------------------------------------------

    def create_customer(self, organization_id: uuid.UUID, data: dict[str, Any]) -> Customer:
        email = data.get("email")
        name = (data.get("name") or "").strip() or None
        if email:
            email = validate_email_address(email)
            if self._by_email(organization_id, email) is not None:
                raise CustomerAlreadyExistsError(metadata={"email": email})
        if not email and not name:
            raise ValidationError(
                "Customer email or name is required", code="REQUIRED_FIELD_MISSING"
            )
        now = utcnow()
        customer = Customer(
            organization_id=organization_id,
            email=email,
            name=name,
            company=(data.get("company") or "").strip() or None,
            external_id=data.get("external_id"),
            source=data.get("source") or "manual",
            metadata_=dict(data.get("metadata") or {}),
            first_seen_at=now,
            last_seen_at=now,
        )
        self.session.add(customer)
        self.session.flush()
        return customer

    def list_customers(
        self,
        organization_id: uuid.UUID,
        filters: CustomerFilters | None = None,
        *,
        page: int = 1,
        limit: int = 25,
        sort_by: str = "last_seen_at",
        sort_order: str = "desc",
    ) -> Page[Customer]:
        if sort_by not in CUSTOMER_SORT_FIELDS:
            raise ValidationError(code="INVALID_SORT_FIELD", metadata={"sortBy": sort_by})
        stmt = self._filtered(organization_id, filters or CustomerFilters())
        column = getattr(Customer, sort_by)
        stmt = stmt.order_by(column.asc() if sort_order == "asc" else column.desc(), Customer.id)
        return paginate(self.session, stmt, page, limit)

    def _filtered(self, organization_id: uuid.UUID, filters: CustomerFilters) -> Select[Any]:
        stmt = select(Customer).where(Customer.organization_id == organization_id)
        if filters.search:
            pattern = f"%{filters.search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Customer.name).like(pattern),
                    func.lower(Customer.email).like(pattern),
                    func.lower(Customer.company).like(pattern),
                )
            )
        if filters.companies:
            stmt = stmt.where(Customer.company.in_(filters.companies))
        if filters.has_email is True:
            stmt = stmt.where(Customer.email.is_not(None))
        elif filters.has_email is False:
            stmt = stmt.where(Customer.email.is_(None))
        if filters.integration_id:
            stmt = stmt.where(Customer.integration_id == filters.integration_id)
        if filters.date_from:
            stmt = stmt.where(Customer.created_at >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(Customer.created_at <= filters.date_to)
        return stmt

    def update_customer(
        self, organization_id: uuid.UUID, customer_id: uuid.UUID, changes: dict[str, Any]
    ) -> Customer:
        customer = self.get_customer(organization_id, customer_id)
        for key, value in changes.items():
            if key not in _EDITABLE_FIELDS:
                continue
            if key == "email":
                if value:
                    value = validate_email_address(value)
                    existing = self._by_email(organization_id, value)
                    if existing is not None and existing.id != customer.id:
                        raise CustomerAlreadyExistsError(metadata={"email": value})
                customer.email = value or None
            elif key == "metadata":
                customer.metadata_ = {**(customer.metadata_ or {}), **(value or {})}
            else:
                setattr(customer, key, value)
        self.session.flush()
        return customer

    def delete_customer(self, organization_id: uuid.UUID, customer_id: uuid.UUID) -> None:
        customer = self.get_customer(organization_id, customer_id)
        feedback_count = self.session.execute(
            select(func.count()).select_from(Feedback).where(Feedback.customer_id == customer.id)
        ).scalar_one()
        if feedback_count:
            raise CustomerError(
                code="CUSTOMER_DELETE_FAILED", metadata={"feedbackCount": int(feedback_count)}
            )
        self.session.delete(customer)
        self.session.flush()

    # Merging & duplicates ------------------------------------------------

    def merge_customers(
        self, organization_id: uuid.UUID, primary_id: uuid.UUID, duplicate_id: uuid.UUID
    ) -> Customer:
        """Fold ``duplicate_id`` into ``primary_id`` and delete the duplicate."""

        if primary_id == duplicate_id:
            raise ValidationError("Cannot merge a customer with itself")
        primary = self.get_customer(organization_id, primary_id)
        duplicate = self.get_customer(organization_id, duplicate_id)

        self.session.execute(
            update(Feedback)
            .where(Feedback.customer_id == duplicate.id)
            .values(customer_id=primary.id)
            .execution_options(synchronize_session="fetch")
        )

        merged_from = list((primary.metadata_ or {}).get("mergedFrom") or [])
        merged_from.append(str(duplicate.id))
        primary.metadata_ = {
            **(duplicate.metadata_ or {}),
            **(primary.metadata_ or {}),
            "mergedFrom": merged_from,
            "mergedAt": utcnow().isoformat(),
        }
        for field in ("name", "company", "external_id", "source", "integration_id"):
            if not getattr(primary, field) and getattr(duplicate, field):
                setattr(primary, field, getattr(duplicate, field))
        duplicate_email = duplicate.email
        first_seen = [as_utc(primary.first_seen_at), as_utc(duplicate.first_seen_at)]
        last_seen = [as_utc(primary.last_seen_at), as_utc(duplicate.last_seen_at)]
        primary.first_seen_at = min(v for v in first_seen if v is not None)
        primary.last_seen_at = max(v for v in last_seen if v is not None)

        self.session.expire(duplicate, ["feedback_items"])
        self.session.delete(duplicate)
        self.session.flush()
        # The unique (organization, email) index forbids copying before the delete.
        if not primary.email and duplicate_email:
            primary.email = duplicate_email
            self.session.flush()
        logger.info(
            "Merged customer %s into %s", duplicate_id, primary_id,
            extra={"organization_id": str(organization_id)},
        )
        return primary

    def find_duplicates(self, organization_id: uuid.UUID) -> list[dict[str, Any]]:
        """Group customers sharing name+company or e-mail local part+company."""

        customers = self.session.execute(
            select(Customer).where(Customer.organization_id == organization_id)
        ).scalars().all()

        groups: dict[tuple[str, str, str], list[Customer]] = defaultdict(list)
        for customer in customers:
            company = (customer.company or "").strip().lower()
            if not company:
                continue
            if customer.name:
                groups[("name_company", customer.name.strip().lower(), company)].append(customer)
            if customer.email:
                local_part = customer.email.split("@", 1)[0].lower()
                groups[("email_company", local_part, company)].append(customer)

        results = []
        for (reason, key, company), members in groups.items():
            if len(members) < 2:
                continue
            results.append(
                {
                    "reason": reason,
                    "key": key,
                    "company": company,
                    "customers": members,
                }
            )
        return results

    # Statistics ------------------------------------------------------------

    def get_customer_stats(self, organization_id: uuid.UUID) -> dict[str, Any]:
        scope = Customer.organization_id == organization_id

        def _count(*criteria: Any) -> int:
            return int(
                self.session.execute(
                    select(func.count()).select_from(Customer).where(scope, *criteria)
                ).scalar_one()
            )

        total = _count()
        with_email = _count(Customer.email.is_not(None))
        recent = _count(Customer.last_seen_at >= utcnow() - dt.timedelta(days=30))

        top_companies = self.session.execute(
            select(Customer.company, func.count().label("count"))
            .where(scope, Customer.company.is_not(None))
            .group_by(Customer.company)
            .order_by(func.count().desc(), Customer.company)
            .limit(10)
        ).all()
        by_integration = self.session.execute(
            select(Customer.source, func.count())
            .where(scope)
            .group_by(Customer.source)
        ).all()

        return {
            "total": total,
            "with_email": with_email,
            "without_email": total - with_email,
            "recent_activity": recent,
            "top_companies": [
                {"company": company, "count": int(count)} for company, count in top_companies
            ],
            "by_integration": {
                (source or "manual"): int(count) for source, count in by_integration
            },
        }


__all__ = ["CUSTOMER_SORT_FIELDS", "CustomerFilters", "CustomerOverview", "CustomerService"]
