"""Integration health dashboards and on-demand checks."""

from __future__ import annotations

import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from feedbackhub.integrations import HealthMonitorService
from feedbackhub.models import User
from feedbackhub.security import get_current_user, require_role
from feedbackhub.security.auth import get_db_session

router = APIRouter(prefix="/api/integrations/health", tags=["integration-health"])


def get_health_monitor(
    session: Annotated[Session, Depends(get_db_session)],
) -> HealthMonitorService:
    return HealthMonitorService(session)


SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
MonitorDep = Annotated[HealthMonitorService, Depends(get_health_monitor)]
ViewerRoleDep = Annotated[str, Depends(require_role("viewer"))]
OperatorRoleDep = Annotated[str, Depends(require_role("operator"))]


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


@router.get("/summary")
def health_summary(
    session: SessionDep, current_user: UserDep, monitor: MonitorDep, _: ViewerRoleDep
) -> dict[str, Any]:
    records = monitor.check_organization_health(current_user.organization_id)
    session.commit()
    return _ok(HealthMonitorService.build_summary(records))


@router.get("/organization")
def organization_health(
    session: SessionDep, current_user: UserDep, monitor: MonitorDep, _: ViewerRoleDep
) -> dict[str, Any]:
    records = monitor.check_organization_health(current_user.organization_id)
    session.commit()
    return _ok(
        {
            "summary": HealthMonitorService.build_organization_summary(records),
            "integrations": records,
        }
    )


@router.get("/{integration_id}")
def integration_health(
    integration_id: uuid.UUID,
    session: SessionDep,
    current_user: UserDep,
    monitor: MonitorDep,
    _: ViewerRoleDep,
) -> dict[str, Any]:
    record = monitor.check_integration_health(integration_id, current_user.organization_id)
    session.commit()
    return _ok(record)


@router.post("/{integration_id}/refresh")
def refresh_integration_health(
    integration_id: uuid.UUID,
    session: SessionDep,
    current_user: UserDep,
    monitor: MonitorDep,
    _: OperatorRoleDep,
) -> dict[str, Any]:
    """Run a fresh provider check and return the new record."""

    record = monitor.check_integration_health(integration_id, current_user.organization_id)
    session.commit()
    return _ok(record)


@router.get("/{integration_id}/history")
def integration_health_history(
    integration_id: uuid.UUID,
    session: SessionDep,
    current_user: UserDep,
    monitor: MonitorDep,
    _: ViewerRoleDep,
    days: int = Query(7, ge=1, le=90),
) -> dict[str, Any]:
    history = monitor.get_health_history(integration_id, current_user.organization_id, days=days)
    session.commit()
    return _ok(history)
