"""Organization-wide integration metrics, rankings and CSV export."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from feedbackhub.integrations import IntegrationMetricsService
from feedbackhub.models import User
from feedbackhub.security import get_current_user, require_role
from feedbackhub.security.auth import get_db_session

router = APIRouter(prefix="/api/integrations/metrics", tags=["integration-metrics"])


def get_metrics_service(
    session: Annotated[Session, Depends(get_db_session)],
) -> IntegrationMetricsService:
    return IntegrationMetricsService(session)


SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
MetricsDep = Annotated[IntegrationMetricsService, Depends(get_metrics_service)]
ViewerRoleDep = Annotated[str, Depends(require_role("viewer"))]
AdminRoleDep = Annotated[str, Depends(require_role("admin"))]


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


@router.get("/summary")
def metrics_summary(current_user: UserDep, metrics: MetricsDep, _: ViewerRoleDep) -> dict[str, Any]:
    return _ok(metrics.get_metrics_summary(current_user.organization_id))


@router.get("/integrations")
def integration_metrics(current_user: UserDep, metrics: MetricsDep, _: ViewerRoleDep) -> dict[str, Any]:
    return _ok(metrics.get_integration_metrics(current_user.organization_id))


@router.get("/top")
def top_performing(
    current_user: UserDep,
    metrics: MetricsDep,
    _: ViewerRoleDep,
    limit: int = Query(5, ge=1, le=50),
) -> dict[str, Any]:
    return _ok(metrics.get_top_performing_integrations(current_user.organization_id, limit=limit))


@router.get("/problematic")
def problematic(
    current_user: UserDep,
    metrics: MetricsDep,
    _: ViewerRoleDep,
    limit: int = Query(5, ge=1, le=50),
) -> dict[str, Any]:
    return _ok(metrics.get_problematic_integrations(current_user.organization_id, limit=limit))


@router.get("/period")
def metrics_for_period(
    current_user: UserDep,
    metrics: MetricsDep,
    _: ViewerRoleDep,
    start: dt.date | None = None,
    end: dt.date | None = None,
) -> dict[str, Any]:
    """Daily outcomes; defaults to the seven days ending today."""

    end = end or dt.datetime.now(dt.timezone.utc).date()
    start = start or end - dt.timedelta(days=6)
    return _ok(metrics.get_metrics_for_period(current_user.organization_id, start, end))


@router.get("/export")
def export_metrics(current_user: UserDep, metrics: MetricsDep, _: ViewerRoleDep) -> Response:
    content = metrics.export_metrics_csv(current_user.organization_id)
    filename = f"integration-metrics-{dt.date.today().isoformat()}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/{integration_id}/reset")
def reset_metrics(
    integration_id: uuid.UUID,
    session: SessionDep,
    current_user: UserDep,
    metrics: MetricsDep,
    _: AdminRoleDep,
) -> dict[str, Any]:
    metrics.reset_integration_metrics(integration_id, current_user.organization_id)
    session.commit()
    return _ok({"integrationId": str(integration_id), "reset": True})
