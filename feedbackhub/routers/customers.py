"""Customer directory API."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from feedbackhub.models import Customer, Feedback, User
from feedbackhub.security import get_current_user, require_role
from feedbackhub.security.auth import get_db_session
from feedbackhub.services import CustomerFilters, CustomerService

router = APIRouter(prefix="/api/customers", tags=["customers"])

SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
ViewerRoleDep = Annotated[str, Depends(require_role("viewer"))]
OperatorRoleDep = Annotated[str, Depends(require_role("operator"))]
AdminRoleDep = Annotated[str, Depends(require_role("admin"))]


class CustomerResponse(BaseModel):
    id: uuid.UUID
    email: str | None = None
    name: str | None = None
    company: str | None = None
    external_id: str | None = None
    source: str | None = None
    integration_id: uuid.UUID | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    first_seen_at: dt.datetime
    last_seen_at: dt.datetime
    created_at: dt.datetime
    updated_at: dt.datetime


class FeedbackBrief(BaseModel):
    id: uuid.UUID
    title: str
    status: str
    priority: str | None = None
    created_at: dt.datetime


class CustomerDetailResponse(CustomerResponse):
    recent_feedback: list[FeedbackBrief] = Field(default_factory=list)
    feedback_count: int = 0


class CustomerListResponse(BaseModel):
    items: list[CustomerResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class CustomerCreateRequest(BaseModel):
    email: str | None = Field(default=None, max_length=320)
    name: str | None = Field(default=None, max_length=255)
    company: str | None = Field(default=None, max_length=255)
    external_id: str | None = Field(default=None, max_length=255)
    source: str | None = Field(default=None, max_length=64)
    metadata: dict[str, Any] | None = None


class CustomerUpdateRequest(CustomerCreateRequest):
    pass


class MergeRequest(BaseModel):
    duplicate_id: uuid.UUID


class DuplicateGroup(BaseModel):
    reason: str
    key: str
    company: str
    customers: list[CustomerResponse]


def _customer(customer: Customer) -> CustomerResponse:
    return CustomerResponse(
        id=customer.id,
        email=customer.email,
        name=customer.name,
        company=customer.company,
        external_id=customer.external_id,
        source=customer.source,
        integration_id=customer.integration_id,
        metadata=dict(customer.metadata_ or {}),
        first_seen_at=customer.first_seen_at,
        last_seen_at=customer.last_seen_at,
        created_at=customer.created_at,
        updated_at=customer.updated_at,
    )


def _brief(feedback: Feedback) -> FeedbackBrief:
    return FeedbackBrief(
        id=feedback.id,
        title=feedback.title,
        status=feedback.status,
        priority=feedback.priority,
        created_at=feedback.created_at,
    )


@router.post("/", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
def create_customer(
    payload: CustomerCreateRequest,
    session: SessionDep,
    current_user: UserDep,
    _: OperatorRoleDep,
) -> CustomerResponse:
    customer = CustomerService(session).create_customer(
        current_user.organization_id, payload.model_dump(exclude_none=True)
    )
    session.commit()
    return _customer(customer)


@router.get("/", response_model=CustomerListResponse)
def list_customers(
    session: SessionDep,
    current_user: UserDep,
    _: ViewerRoleDep,
    search: str | None = None,
    companies: list[str] | None = Query(None),
    has_email: bool | None = None,
    integration_id: uuid.UUID | None = None,
    date_from: dt.datetime | None = None,
    date_to: dt.datetime | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1),
    sort_by: str = "last_seen_at",
    sort_order: Literal["asc", "desc"] = "desc",
) -> CustomerListResponse:
    filters = CustomerFilters(
        search=search,
        companies=companies,
        has_email=has_email,
        integration_id=integration_id,
        date_from=date_from,
        date_to=date_to,
    )
    result = CustomerService(session).list_customers(
        current_user.organization_id,
        filters,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return CustomerListResponse(
        items=[_customer(c) for c in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        total_pages=result.total_pages,
    )


@router.get("/stats")
def customer_stats(session: SessionDep, current_user: UserDep, _: ViewerRoleDep) -> dict[str, Any]:
    return CustomerService(session).get_customer_stats(current_user.organization_id)


@router.get("/duplicates", response_model=list[DuplicateGroup])
def find_duplicates(
    session: SessionDep, current_user: UserDep, _: ViewerRoleDep
) -> list[DuplicateGroup]:
    groups = CustomerService(session).find_duplicates(current_user.organization_id)
    return [
        DuplicateGroup(
            reason=group["reason"],
            key=group["key"],
            company=group["company"],
            customers=[_customer(c) for c in group["customers"]],
        )
        for group in groups
    ]


@router.get("/{customer_id}", response_model=CustomerDetailResponse)
def get_customer(
    customer_id: uuid.UUID, session: SessionDep, current_user: UserDep, _: ViewerRoleDep
) -> CustomerDetailResponse:
    overview = CustomerService(session).get_customer_overview(
        current_user.organization_id, customer_id
    )
    return CustomerDetailResponse(
        **_customer(overview.customer).model_dump(),
        recent_feedback=[_brief(f) for f in overview.recent_feedback],
        feedback_count=overview.feedback_count,
    )


@router.put("/{customer_id}", response_model=CustomerResponse)
def update_customer(
    customer_id: uuid.UUID,
    payload: CustomerUpdateRequest,
    session: SessionDep,
    current_user: UserDep,
    _: OperatorRoleDep,
) -> CustomerResponse:
    customer = CustomerService(session).update_customer(
        current_user.organization_id, customer_id, payload.model_dump(exclude_unset=True)
    )
    session.commit()
    return _customer(customer)


@router.delete("/{customer_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_customer(
    customer_id: uuid.UUID, session: SessionDep, current_user: UserDep, _: AdminRoleDep
) -> Response:
    CustomerService(session).delete_customer(current_user.organization_id, customer_id)
    session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{customer_id}/merge", response_model=CustomerResponse)
def merge_customers(
    customer_id: uuid.UUID,
    payload: MergeRequest,
    session: SessionDep,
    current_user: UserDep,
    _: AdminRoleDep,
) -> CustomerResponse:
    """Fold ``duplicate_id`` into the customer in the path."""

    customer = CustomerService(session).merge_customers(
        current_user.organization_id, customer_id, payload.duplicate_id
    )
    session.commit()
    return _customer(customer)
