"""OAuth handshake and connection management for Slack, Zendesk and Intercom."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Annotated, Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from feedbackhub.config import get_integration_settings
from feedbackhub.errors import BaseError, IntegrationNotFoundError, ValidationError
from feedbackhub.integrations.runtime import get_integration_processor
from feedbackhub.models import IntegrationEvent, User
from feedbackhub.oauth import Connection, OAuthConnectionService, get_provider_class, registered_types
from feedbackhub.security import get_current_user, require_role
from feedbackhub.security.auth import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])


def get_connection_service(
    session: Annotated[Session, Depends(get_db_session)],
) -> OAuthConnectionService:
    return OAuthConnectionService(session)


SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
ConnectionsDep = Annotated[OAuthConnectionService, Depends(get_connection_service)]
ViewerRoleDep = Annotated[str, Depends(require_role("viewer"))]
OperatorRoleDep = Annotated[str, Depends(require_role("operator"))]
AdminRoleDep = Annotated[str, Depends(require_role("admin"))]


class IntegrationTypeResponse(BaseModel):
    type: str
    name: str
    description: str
    capabilities: list[str]
    configured: bool
    requiresConfig: list[str]


class AuthorizeRequest(BaseModel):
    integration_type: str = Field(..., min_length=1, max_length=32)
    config: dict[str, Any] | None = None


class AuthorizeResponse(BaseModel):
    authorizationUrl: str
    state: str


class CallbackRequest(BaseModel):
    code: str | None = None
    state: str | None = None
    error: str | None = None


class ConnectionUpdateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None
    sync_config: dict[str, Any] | None = None


class EventResponse(BaseModel):
    id: uuid.UUID
    event_type: str
    source_id: str | None = None
    status: str
    attempts: int
    last_error: str | None = None
    result: dict[str, Any] | None = None
    response_time_ms: int | None = None
    next_attempt_at: dt.datetime | None = None
    processed_at: dt.datetime | None = None
    created_at: dt.datetime


def _event(event: IntegrationEvent) -> EventResponse:
    return EventResponse(
        id=event.id,
        event_type=event.event_type,
        source_id=event.source_id,
        status=event.status,
        attempts=event.attempts,
        last_error=event.last_error,
        result=event.result,
        response_time_ms=event.response_time_ms,
        next_attempt_at=event.next_attempt_at,
        processed_at=event.processed_at,
        created_at=event.created_at,
    )


def _require_connection(
    connections: OAuthConnectionService, integration_id: uuid.UUID, organization_id: uuid.UUID
) -> Connection:
    connection = connections.get_connection(integration_id, organization_id)
    if connection is None:
        raise IntegrationNotFoundError(metadata={"integrationId": str(integration_id)})
    return connection


def _complete_callback(
    session: Session,
    connections: OAuthConnectionService,
    code: str | None,
    state: str | None,
    error: str | None,
) -> Connection:
    """Exchange ``code`` for tokens and persist the new connection."""

    if error:
        raise ValidationError(f"OAuth authorization failed: {error}", metadata={"providerError": error})
    if not code or not state:
        raise ValidationError("Missing authorization code or state")

    try:
        record = connections.consume_state(state)
    finally:
        # States are single use, expired ones included.
        session.commit()

    try:
        connection = connections.create_connection_from_auth_code(code, record)
    except Exception:
        session.rollback()
        raise
    session.commit()
    return connection


@router.get("/integration-types", response_model=list[IntegrationTypeResponse])
def list_integration_types(_: ViewerRoleDep) -> list[IntegrationTypeResponse]:
    settings = get_integration_settings()
    types = []
    for integration_type in registered_types():
        provider_cls = get_provider_class(integration_type)
        types.append(
            IntegrationTypeResponse(
                type=provider_cls.integration_type,
                name=provider_cls.display_name,
                description=provider_cls.description,
                capabilities=list(provider_cls.capabilities),
                configured=settings.client_config(integration_type).configured,
                requiresConfig=list(provider_cls.requires_config),
            )
        )
    return types


@router.post("/authorize", response_model=AuthorizeResponse)
def authorize(
    payload: AuthorizeRequest,
    session: SessionDep,
    current_user: UserDep,
    connections: ConnectionsDep,
    _: AdminRoleDep,
) -> AuthorizeResponse:
    """Start the OAuth flow; the client redirects the browser to the URL."""

    result = connections.get_authorization_url(
        payload.integration_type,
        current_user.organization_id,
        payload.config,
        user_id=current_user.id,
    )
    session.commit()
    return AuthorizeResponse(authorizationUrl=result["url"], state=result["state"])


@router.get("/callback")
def oauth_callback_redirect(
    request: Request,
    session: SessionDep,
    connections: ConnectionsDep,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
) -> Response:
    """Provider redirect target.

    Browsers are sent back to the web app; API clients asking for JSON get the
    connection (or the error body) directly.
    """

    wants_json = "application/json" in request.headers.get("Accept", "")
    web_app_url = get_integration_settings().web_app_url
    try:
        connection = _complete_callback(session, connections, code, state, error)
    except BaseError as exc:
        if wants_json:
            raise
        logger.warning("OAuth callback failed: %s", exc.message)
        query = urlencode({"error": "true", "message": exc.message})
        return RedirectResponse(f"{web_app_url}/integrations?{query}", status_code=status.HTTP_302_FOUND)

    if wants_json:
        return JSONResponse(
            status_code=status.HTTP_201_CREATED,
            content={"success": True, "connection": connections.to_public_dict(connection)},
        )
    query = urlencode(
        {"success": "true", "type": connection.type.lower(), "connectionId": str(connection.id)}
    )
    return RedirectResponse(f"{web_app_url}/integrations?{query}", status_code=status.HTTP_302_FOUND)


@router.post("/callback", status_code=status.HTTP_201_CREATED)
def oauth_callback(
    payload: CallbackRequest,
    session: SessionDep,
    connections: ConnectionsDep,
) -> dict[str, Any]:
    connection = _complete_callback(session, connections, payload.code, payload.state, payload.error)
    return {"success": True, "connection": connections.to_public_dict(connection)}


@router.get("/connections")
def list_connections(
    current_user: UserDep, connections: ConnectionsDep, _: ViewerRoleDep
) -> list[dict[str, Any]]:
    return [
        connections.to_public_dict(c)
        for c in connections.get_connections(current_user.organization_id)
    ]


@router.get("/connections/{integration_id}")
def get_connection(
    integration_id: uuid.UUID,
    current_user: UserDep,
    connections: ConnectionsDep,
    _: ViewerRoleDep,
) -> dict[str, Any]:
    connection = _require_connection(connections, integration_id, current_user.organization_id)
    return connections.to_public_dict(connection)


@router.put("/connections/{integration_id}")
def update_connection(
    integration_id: uuid.UUID,
    payload: ConnectionUpdateRequest,
    session: SessionDep,
    current_user: UserDep,
    connections: ConnectionsDep,
    _: AdminRoleDep,
) -> dict[str, Any]:
    connection = connections.update_connection(
        integration_id,
        current_user.organization_id,
        name=payload.name,
        is_active=payload.is_active,
        sync_config=payload.sync_config,
    )
    session.commit()
    return connections.to_public_dict(connection)


@router.delete("/connections/{integration_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_connection(
    integration_id: uuid.UUID,
    session: SessionDep,
    current_user: UserDep,
    connections: ConnectionsDep,
    _: AdminRoleDep,
) -> Response:
    connections.delete_connection(integration_id, current_user.organization_id)
    session.commit()
    logger.info(
        "Deleted integration %s", integration_id,
        extra={"integration_id": str(integration_id), "organization_id": str(current_user.organization_id)},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/connections/{integration_id}/test")
def test_connection(
    integration_id: uuid.UUID,
    session: SessionDep,
    current_user: UserDep,
    connections: ConnectionsDep,
    _: OperatorRoleDep,
) -> dict[str, Any]:
    _require_connection(connections, integration_id, current_user.organization_id)
    result = connections.test_connection(integration_id, current_user.organization_id)
    session.commit()
    return result


@router.post("/connections/{integration_id}/refresh")
def refresh_connection(
    integration_id: uuid.UUID,
    session: SessionDep,
    current_user: UserDep,
    connections: ConnectionsDep,
    _: OperatorRoleDep,
) -> dict[str, Any]:
    """Refresh the access token when it is close to expiry."""

    _require_connection(connections, integration_id, current_user.organization_id)
    try:
        connections.refresh_token_if_needed(integration_id, current_user.organization_id)
    except BaseError:
        session.commit()
        raise
    except Exception as exc:
        # Keep the error state recorded on the integration.
        session.commit()
        return {"success": False, "error": str(exc) or exc.__class__.__name__}
    session.commit()
    connection = _require_connection(connections, integration_id, current_user.organization_id)
    return {"success": True, "connection": connections.to_public_dict(connection)}


@router.get("/connections/{integration_id}/events", response_model=list[EventResponse])
def list_events(
    integration_id: uuid.UUID,
    current_user: UserDep,
    connections: ConnectionsDep,
    _: ViewerRoleDep,
    status_: str | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
) -> list[EventResponse]:
    _require_connection(connections, integration_id, current_user.organization_id)
    events = get_integration_processor().get_events(
        current_user.organization_id, integration_id, status=status_, limit=limit
    )
    return [_event(e) for e in events]


@router.post(
    "/connections/{integration_id}/events/{event_id}/retry", response_model=EventResponse
)
def retry_event(
    integration_id: uuid.UUID,
    event_id: uuid.UUID,
    current_user: UserDep,
    connections: ConnectionsDep,
    _: OperatorRoleDep,
) -> EventResponse:
    _require_connection(connections, integration_id, current_user.organization_id)
    event = get_integration_processor().retry_event(event_id, current_user.organization_id)
    return _event(event)
