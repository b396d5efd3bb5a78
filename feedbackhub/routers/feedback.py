"""Feedback API: CRUD, search, bulk updates, comments and CSV export."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from feedbackhub.integrations.runtime import get_integration_processor
from feedbackhub.models import Comment, Feedback, User
from feedbackhub.security import get_current_user, require_role
from feedbackhub.security.auth import get_db_session
from feedbackhub.services import FeedbackFilters, FeedbackService
from feedbackhub.services.feedback import FeedbackDispatcher

router = APIRouter(prefix="/api/feedback", tags=["feedback"])


def get_feedback_dispatcher() -> FeedbackDispatcher:
    """Outbound hook handed to :class:`FeedbackService`."""

    return get_integration_processor().dispatch_feedback_event


SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
DispatcherDep = Annotated[FeedbackDispatcher, Depends(get_feedback_dispatcher)]
ViewerRoleDep = Annotated[str, Depends(require_role("viewer"))]
OperatorRoleDep = Annotated[str, Depends(require_role("operator"))]
AdminRoleDep = Annotated[str, Depends(require_role("admin"))]


class PersonRef(BaseModel):
    id: uuid.UUID
    name: str | None = None
    email: str | None = None


class CommentResponse(BaseModel):
    id: uuid.UUID
    content: str
    is_internal: bool
    user_id: uuid.UUID | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: dt.datetime


class FeedbackResponse(BaseModel):
    id: uuid.UUID
    title: str
    description: str | None = None
    status: str
    priority: str | None = None
    category: str | None = None
    source: str
    customer_id: uuid.UUID | None = None
    integration_id: uuid.UUID | None = None
    assigned_to: uuid.UUID | None = None
    created_by: uuid.UUID | None = None
    upvote_count: int
    source_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: dt.datetime
    updated_at: dt.datetime


class FeedbackDetailResponse(FeedbackResponse):
    customer: PersonRef | None = None
    assignee: PersonRef | None = None
    comments: list[CommentResponse] = Field(default_factory=list)


class FeedbackListResponse(BaseModel):
    items: list[FeedbackResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class FeedbackCreateRequest(BaseModel):
    title: str = Field(..., max_length=500)
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    category: str | None = Field(default=None, max_length=128)
    source: str | None = Field(default=None, max_length=32)
    customer_id: uuid.UUID | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    customer_company: str | None = None
    integration_id: uuid.UUID | None = None
    assigned_to: uuid.UUID | None = None
    source_metadata: dict[str, Any] | None = None


class FeedbackUpdateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=500)
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    category: str | None = Field(default=None, max_length=128)
    customer_id: uuid.UUID | None = None
    assigned_to: uuid.UUID | None = None


class CommentCreateRequest(BaseModel):
    content: str
    is_internal: bool = True


class BulkStatusRequest(BaseModel):
    feedback_ids: list[uuid.UUID] = Field(..., min_length=1)
    status: str


class BulkAssignRequest(BaseModel):
    feedback_ids: list[uuid.UUID] = Field(..., min_length=1)
    assignee_id: uuid.UUID | None = None


class BulkResult(BaseModel):
    updated: int


def _feedback(feedback: Feedback) -> FeedbackResponse:
    return FeedbackResponse(
        id=feedback.id,
        title=feedback.title,
        description=feedback.description,
        status=feedback.status,
        priority=feedback.priority,
        category=feedback.category,
        source=feedback.source,
        customer_id=feedback.customer_id,
        integration_id=feedback.integration_id,
        assigned_to=feedback.assigned_to,
        created_by=feedback.created_by,
        upvote_count=feedback.upvote_count,
        source_metadata=dict(feedback.source_metadata or {}),
        created_at=feedback.created_at,
        updated_at=feedback.updated_at,
    )


def _comment(comment: Comment) -> CommentResponse:
    return CommentResponse(
        id=comment.id,
        content=comment.content,
        is_internal=comment.is_internal,
        user_id=comment.user_id,
        metadata=dict(comment.metadata_ or {}),
        created_at=comment.created_at,
    )


def _filters(
    search: str | None = None,
    status_: list[str] | None = Query(None, alias="status"),
    category: list[str] | None = Query(None),
    priority: list[str] | None = Query(None),
    source: list[str] | None = Query(None),
    assigned_to: uuid.UUID | None = None,
    customer_id: uuid.UUID | None = None,
    integration_id: uuid.UUID | None = None,
    date_from: dt.datetime | None = None,
    date_to: dt.datetime | None = None,
    has_customer: bool | None = None,
    is_assigned: bool | None = None,
) -> FeedbackFilters:
    return FeedbackFilters(
        search=search,
        status=status_,
        category=category,
        priority=priority,
        source=source,
        assigned_to=assigned_to,
        customer_id=customer_id,
        integration_id=integration_id,
        date_from=date_from,
        date_to=date_to,
        has_customer=has_customer,
        is_assigned=is_assigned,
    )


FiltersDep = Annotated[FeedbackFilters, Depends(_filters)]


@router.post("/", response_model=FeedbackResponse, status_code=status.HTTP_201_CREATED)
def create_feedback(
    payload: FeedbackCreateRequest,
    session: SessionDep,
    current_user: UserDep,
    dispatcher: DispatcherDep,
    _: OperatorRoleDep,
) -> FeedbackResponse:
    service = FeedbackService(session, dispatcher=dispatcher)
    feedback = service.create_feedback(
        current_user.organization_id,
        payload.model_dump(exclude_none=True),
        created_by=current_user.id,
    )
    session.commit()
    service.publish_events()
    return _feedback(feedback)


@router.get("/", response_model=FeedbackListResponse)
def list_feedback(
    session: SessionDep,
    current_user: UserDep,
    filters: FiltersDep,
    _: ViewerRoleDep,
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1),
    sort_by: str = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
) -> FeedbackListResponse:
    result = FeedbackService(session).list_feedback(
        current_user.organization_id,
        filters,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return FeedbackListResponse(
        items=[_feedback(item) for item in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        total_pages=result.total_pages,
    )


@router.get("/stats")
def feedback_stats(session: SessionDep, current_user: UserDep, _: ViewerRoleDep) -> dict[str, Any]:
    return FeedbackService(session).get_feedback_stats(current_user.organization_id)


@router.get("/filters")
def filter_options(session: SessionDep, current_user: UserDep, _: ViewerRoleDep) -> dict[str, Any]:
    return FeedbackService(session).get_filter_options(current_user.organization_id)


@router.get("/export")
def export_feedback(
    session: SessionDep, current_user: UserDep, filters: FiltersDep, _: ViewerRoleDep
) -> Response:
    """Download the filtered feedback as CSV."""

    content = FeedbackService(session).export_feedback(current_user.organization_id, filters)
    filename = f"feedback-export-{dt.date.today().isoformat()}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/bulk/status", response_model=BulkResult)
def bulk_update_status(
    payload: BulkStatusRequest,
    session: SessionDep,
    current_user: UserDep,
    dispatcher: DispatcherDep,
    _: OperatorRoleDep,
) -> BulkResult:
    service = FeedbackService(session, dispatcher=dispatcher)
    updated = service.bulk_update_status(
        current_user.organization_id, payload.feedback_ids, payload.status
    )
    session.commit()
    service.publish_events()
    return BulkResult(updated=updated)


@router.post("/bulk/assign", response_model=BulkResult)
def bulk_assign(
    payload: BulkAssignRequest,
    session: SessionDep,
    current_user: UserDep,
    dispatcher: DispatcherDep,
    _: OperatorRoleDep,
) -> BulkResult:
    service = FeedbackService(session, dispatcher=dispatcher)
    updated = service.bulk_assign(
        current_user.organization_id, payload.feedback_ids, payload.assignee_id
    )
    session.commit()
    service.publish_events()
    return BulkResult(updated=updated)


@router.get("/{feedback_id}", response_model=FeedbackDetailResponse)
def get_feedback(
    feedback_id: uuid.UUID, session: SessionDep, current_user: UserDep, _: ViewerRoleDep
) -> FeedbackDetailResponse:
    feedback = FeedbackService(session).get_feedback(current_user.organization_id, feedback_id)
    customer = feedback.customer
    assignee = feedback.assignee
    comments = sorted(feedback.comments, key=lambda c: c.created_at)
    return FeedbackDetailResponse(
        **_feedback(feedback).model_dump(),
        customer=PersonRef(id=customer.id, name=customer.name, email=customer.email) if customer else None,
        assignee=PersonRef(id=assignee.id, name=assignee.name, email=assignee.email) if assignee else None,
        comments=[_comment(c) for c in comments],
    )


@router.put("/{feedback_id}", response_model=FeedbackResponse)
def update_feedback(
    feedback_id: uuid.UUID,
    payload: FeedbackUpdateRequest,
    session: SessionDep,
    current_user: UserDep,
    dispatcher: DispatcherDep,
    _: OperatorRoleDep,
) -> FeedbackResponse:
    service = FeedbackService(session, dispatcher=dispatcher)
    feedback = service.update_feedback(
        current_user.organization_id,
        feedback_id,
        payload.model_dump(exclude_unset=True),
        actor=current_user,
    )
    session.commit()
    service.publish_events()
    return _feedback(feedback)


@router.delete("/{feedback_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_feedback(
    feedback_id: uuid.UUID, session: SessionDep, current_user: UserDep, _: AdminRoleDep
) -> Response:
    FeedbackService(session).delete_feedback(current_user.organization_id, feedback_id)
    session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{feedback_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_comment(
    feedback_id: uuid.UUID,
    payload: CommentCreateRequest,
    session: SessionDep,
    current_user: UserDep,
    _: ViewerRoleDep,
) -> CommentResponse:
    comment = FeedbackService(session).add_comment(
        current_user.organization_id,
        feedback_id,
        payload.content,
        user_id=current_user.id,
        is_internal=payload.is_internal,
    )
    session.commit()
    return _comment(comment)
