"""Webhook ingestion routes for Slack, Zendesk and Intercom.

Each route authenticates the sender, resolves the integration the payload
belongs to and queues an integration event; the processing itself happens in
:class:`~feedbackhub.integrations.IntegrationProcessor`.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
import time
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from feedbackhub.config import get_integration_settings
from feedbackhub.integrations import (
    INTERCOM_CONVERSATION_CREATED,
    INTERCOM_CONVERSATION_UPDATED,
    SLACK_MESSAGE,
    SLACK_REACTION,
    ZENDESK_TICKET_CREATED,
    ZENDESK_TICKET_UPDATED,
)
from feedbackhub.integrations.runtime import get_integration_processor
from feedbackhub.oauth import IntercomProvider, OAuthConnectionService, SlackProvider
from feedbackhub.security.auth import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

_ZENDESK_AGENT = re.compile(r"Zendesk/(\w+)")
_ZENDESK_URL = re.compile(r"https?://(\w+)\.zendesk\.com")
_ZENDESK_TICKET_FIELDS = (
    "id",
    "subject",
    "description",
    "status",
    "priority",
    "type",
    "url",
    "requester",
    "assignee",
    "organization_id",
    "created_at",
    "updated_at",
)
_INTERCOM_TOPICS = {
    "conversation.user.created": INTERCOM_CONVERSATION_CREATED,
    "conversation.user.replied": INTERCOM_CONVERSATION_UPDATED,
    "conversation.admin.replied": INTERCOM_CONVERSATION_UPDATED,
}


def get_connection_service(
    session: Annotated[Session, Depends(get_db_session)],
) -> OAuthConnectionService:
    return OAuthConnectionService(session)


ConnectionsDep = Annotated[OAuthConnectionService, Depends(get_connection_service)]


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _ok(**extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True, **extra})


def _parse(body: bytes) -> dict[str, Any]:
    payload = json.loads(body.decode("utf-8")) if body else {}
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")
    return payload


def extract_zendesk_subdomain(headers: Any, payload: dict[str, Any]) -> str | None:
    """Find the Zendesk subdomain in the User-Agent, Referer/Origin or body."""

    user_agent = headers.get("user-agent") or ""
    match = _ZENDESK_AGENT.search(user_agent)
    if match:
        return match.group(1)
    for header in ("referer", "origin"):
        match = _ZENDESK_URL.search(headers.get(header) or "")
        if match:
            return match.group(1)
    account = payload.get("account") or {}
    return account.get("subdomain") or None


@router.post("/slack")
async def slack_webhook(request: Request, connections: ConnectionsDep) -> JSONResponse:
    try:
        body = await request.body()
        try:
            payload = _parse(body)
        except ValueError:
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON payload")

        if payload.get("challenge"):
            return JSONResponse({"challenge": payload["challenge"]})

        secret = get_integration_settings().slack_signing_secret
        if not SlackProvider.verify_signature(body, request.headers, secret):
            return _error(status.HTTP_401_UNAUTHORIZED, "Invalid signature")

        event = payload.get("event") or {}
        if request.headers.get("x-slack-retry-num") or event.get("bot_id"):
            return _ok()

        team_id = payload.get("team_id")
        connection = connections.find_by_external_id("SLACK", team_id)
        if connection is None:
            logger.warning("No Slack integration found for team %s", team_id)
            return _error(status.HTTP_404_NOT_FOUND, "Integration not found")

        item = event.get("item") or {}
        event_kind = event.get("type")
        if event_kind == "message":
            if event.get("subtype"):
                return _ok()
            event_type = SLACK_MESSAGE
            data = {
                "message": event,
                "channel": event.get("channel"),
                "user": event.get("user"),
                "text": event.get("text"),
                "ts": event.get("ts"),
            }
        elif event_kind == "reaction_added":
            event_type = SLACK_REACTION
            data = {
                "reaction": event.get("reaction"),
                "message_ts": item.get("ts"),
                "channel": item.get("channel"),
                "user": event.get("user"),
            }
        else:
            logger.info("Ignoring Slack event type %s", event_kind)
            return _ok()

        source_id = event.get("ts") or item.get("ts") or str(int(time.time() * 1000))
        event_id = get_integration_processor().queue_event(
            connection.organization_id,
            connection.id,
            event_type,
            source_id,
            data,
            {"teamId": team_id, "appId": payload.get("api_app_id"), "receivedAt": _now_iso()},
        )
        return _ok(eventId=str(event_id))
    except Exception:
        logger.exception("Error handling Slack webhook")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@router.post("/zendesk")
async def zendesk_webhook(request: Request, connections: ConnectionsDep) -> JSONResponse:
    try:
        try:
            payload = _parse(await request.body())
        except ValueError:
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON payload")

        subdomain = extract_zendesk_subdomain(request.headers, payload)
        if not subdomain:
            return _error(status.HTTP_400_BAD_REQUEST, "Could not determine Zendesk subdomain")

        connection = connections.find_zendesk_by_subdomain(subdomain)
        if connection is None:
            logger.warning("No Zendesk integration found for subdomain %s", subdomain)
            return _error(status.HTTP_404_NOT_FOUND, "Integration not found")

        ticket = payload.get("ticket") or {}
        if ticket.get("id") is None:
            return _error(status.HTTP_400_BAD_REQUEST, "Missing ticket")
        if ticket.get("created_at") == ticket.get("updated_at"):
            event_type = ZENDESK_TICKET_CREATED
        else:
            event_type = ZENDESK_TICKET_UPDATED

        event_id = get_integration_processor().queue_event(
            connection.organization_id,
            connection.id,
            event_type,
            str(ticket["id"]),
            {
                "ticket": {key: ticket.get(key) for key in _ZENDESK_TICKET_FIELDS},
                "current_user": payload.get("current_user"),
            },
            {"subdomain": subdomain, "receivedAt": _now_iso()},
        )
        return _ok(eventId=str(event_id))
    except Exception:
        logger.exception("Error handling Zendesk webhook")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@router.post("/intercom")
async def intercom_webhook(request: Request, connections: ConnectionsDep) -> JSONResponse:
    try:
        body = await request.body()
        secret = get_integration_settings().intercom_webhook_secret
        if not IntercomProvider.verify_signature(body, request.headers.get("x-hub-signature"), secret):
            return _error(status.HTTP_401_UNAUTHORIZED, "Invalid signature")
        try:
            payload = _parse(body)
        except ValueError:
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON payload")

        app_id = request.headers.get("x-intercom-app-id") or payload.get("app_id")
        connection = connections.find_by_external_id("INTERCOM", app_id)
        if connection is None:
            logger.warning("No Intercom integration found for app %s", app_id)
            return _error(status.HTTP_404_NOT_FOUND, "Integration not found")

        topic = payload.get("topic") or payload.get("type")
        event_type = _INTERCOM_TOPICS.get(topic)
        if event_type is None:
            logger.info("Ignoring Intercom webhook topic %s", topic)
            return _ok()

        item = (payload.get("data") or {}).get("item") or {}
        event_id = get_integration_processor().queue_event(
            connection.organization_id,
            connection.id,
            event_type,
            str(item.get("id")) if item.get("id") is not None else None,
            {
                "conversation": item,
                "user": item.get("user"),
                "message": item.get("conversation_message"),
            },
            {"appId": app_id, "webhookType": topic, "receivedAt": _now_iso()},
        )
        return _ok(eventId=str(event_id))
    except Exception:
        logger.exception("Error handling Intercom webhook")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@router.get("/health")
def webhooks_health() -> dict[str, str]:
    return {"status": "ok", "timestamp": _now_iso()}
