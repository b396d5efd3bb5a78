"""Sync configuration, sync rules and manual sync triggers per integration."""

from __future__ import annotations

import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from feedbackhub.integrations import SyncConfigService
from feedbackhub.models import User
from feedbackhub.security import get_current_user, require_role
from feedbackhub.security.auth import get_db_session

router = APIRouter(prefix="/api/integrations/sync", tags=["integration-sync"])


def get_sync_config_service(
    session: Annotated[Session, Depends(get_db_session)],
) -> SyncConfigService:
    return SyncConfigService(session)


SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
ServiceDep = Annotated[SyncConfigService, Depends(get_sync_config_service)]
ViewerRoleDep = Annotated[str, Depends(require_role("viewer"))]
OperatorRoleDep = Annotated[str, Depends(require_role("operator"))]


class TestRuleRequest(BaseModel):
    rule: dict[str, Any]
    sample_data: Any = Field(default=None, alias="sampleData")


class ManualSyncRequest(BaseModel):
    rule_ids: list[str] | None = Field(default=None, alias="ruleIds")
    direction: str | None = None


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


@router.get("/{integration_id}/config")
def get_sync_config(
    integration_id: uuid.UUID, current_user: UserDep, service: ServiceDep, _: ViewerRoleDep
) -> dict[str, Any]:
    return _ok(service.get_sync_config(integration_id, current_user.organization_id))


@router.put("/{integration_id}/config")
def update_sync_config(
    integration_id: uuid.UUID,
    changes: dict[str, Any],
    session: SessionDep,
    current_user: UserDep,
    service: ServiceDep,
    _: OperatorRoleDep,
) -> dict[str, Any]:
    config = service.update_sync_config(integration_id, current_user.organization_id, changes)
    session.commit()
    return _ok(config)


@router.post("/{integration_id}/rules")
def save_sync_rule(
    integration_id: uuid.UUID,
    rule: dict[str, Any],
    session: SessionDep,
    current_user: UserDep,
    service: ServiceDep,
    _: OperatorRoleDep,
) -> dict[str, Any]:
    """Create a rule, or replace the rule with the same ``id``."""

    saved = service.save_sync_rule(integration_id, current_user.organization_id, rule)
    session.commit()
    return _ok(saved)


@router.delete("/{integration_id}/rules/{rule_id}")
def delete_sync_rule(
    integration_id: uuid.UUID,
    rule_id: str,
    session: SessionDep,
    current_user: UserDep,
    service: ServiceDep,
    _: OperatorRoleDep,
) -> dict[str, Any]:
    config = service.delete_sync_rule(integration_id, current_user.organization_id, rule_id)
    session.commit()
    return _ok(config)


@router.post("/{integration_id}/test-rule")
def test_sync_rule(
    integration_id: uuid.UUID,
    payload: TestRuleRequest,
    current_user: UserDep,
    service: ServiceDep,
    _: ViewerRoleDep,
) -> dict[str, Any]:
    # Only checks that the integration is visible; the test itself is pure.
    service.get_sync_config(integration_id, current_user.organization_id)
    return _ok(service.test_sync_rule(payload.rule, payload.sample_data))


@router.get("/{integration_id}/stats")
def get_sync_stats(
    integration_id: uuid.UUID, current_user: UserDep, service: ServiceDep, _: ViewerRoleDep
) -> dict[str, Any]:
    return _ok(service.get_sync_stats(integration_id, current_user.organization_id))


@router.post("/{integration_id}/sync")
def trigger_manual_sync(
    integration_id: uuid.UUID,
    payload: ManualSyncRequest,
    current_user: UserDep,
    service: ServiceDep,
    _: OperatorRoleDep,
) -> dict[str, Any]:
    return _ok(
        service.trigger_manual_sync(
            integration_id,
            current_user.organization_id,
            current_user.id,
            rule_ids=payload.rule_ids,
            direction=payload.direction,
        )
    )
