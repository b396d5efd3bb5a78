"""Queue, process and retry integration events.

Inbound events (webhooks from Slack, Zendesk and Intercom) create or update
feedback. Outbound events push FeedbackHub changes to the connected
platforms. Every event is an ``integration_events`` row; the row status and
attempt counter are the source of truth, and :class:`RetryScheduler` only
holds the in-process timers that re-drive them.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import logging
import time
import uuid
from typing import Any, Callable

import requests
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from feedbackhub.errors import ResourceNotFoundError, ValidationError
from feedbackhub.models import (
    ConnectionStatus,
    Feedback,
    Integration,
    IntegrationEvent,
    ProcessingStatus,
)
from feedbackhub.oauth import (
    Connection,
    Credentials,
    IntercomProvider,
    OAuthConnectionService,
    OAuthProvider,
    OAuthProviderError,
    SlackProvider,
    ZendeskProvider,
)
from feedbackhub.services import CustomerService, FeedbackService

from .health import HealthMonitorService
from .mappings import (
    UPVOTE_REACTIONS,
    extract_title,
    status_emoji,
    strip_html,
    to_intercom_state,
    to_zendesk_priority,
    to_zendesk_status,
    zendesk_priority,
    zendesk_status,
)
from .scheduler import RetryScheduler
from .sync_config import allows_outbound

logger = logging.getLogger(__name__)

SLACK_MESSAGE = "SLACK_MESSAGE"
SLACK_REACTION = "SLACK_REACTION"
ZENDESK_TICKET_CREATED = "ZENDESK_TICKET_CREATED"
ZENDESK_TICKET_UPDATED = "ZENDESK_TICKET_UPDATED"
INTERCOM_CONVERSATION_CREATED = "INTERCOM_CONVERSATION_CREATED"
INTERCOM_CONVERSATION_UPDATED = "INTERCOM_CONVERSATION_UPDATED"
FEEDBACK_CREATED = "FEEDBACK_CREATED"
FEEDBACK_STATUS_CHANGED = "FEEDBACK_STATUS_CHANGED"
FEEDBACK_ASSIGNED = "FEEDBACK_ASSIGNED"
CUSTOMER_CREATED = "CUSTOMER_CREATED"

INBOUND_EVENT_TYPES = (
    SLACK_MESSAGE,
    SLACK_REACTION,
    ZENDESK_TICKET_CREATED,
    ZENDESK_TICKET_UPDATED,
    INTERCOM_CONVERSATION_CREATED,
    INTERCOM_CONVERSATION_UPDATED,
)
OUTBOUND_EVENT_TYPES = (FEEDBACK_CREATED, FEEDBACK_STATUS_CHANGED, FEEDBACK_ASSIGNED, CUSTOMER_CREATED)


@dataclasses.dataclass
class ProcessingResult:
    success: bool
    result: Any = None
    error: str | None = None
    should_retry: bool = False
    metadata: dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class HandlerContext:
    session: Session
    event: IntegrationEvent
    connection: Connection
    provider: OAuthProvider
    credentials: Credentials

    @property
    def organization_id(self) -> uuid.UUID:
        return self.event.organization_id

    @property
    def data(self) -> dict[str, Any]:
        return dict(self.event.data or {})


Handler = Callable[[HandlerContext], ProcessingResult]


def should_retry_error(exc: BaseException) -> bool:
    """Network failures, rate limits and 5xx answers are worth another try."""

    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    status_code = None
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status_code = exc.response.status_code
    elif isinstance(exc, OAuthProviderError):
        status_code = exc.status_code
    return status_code is not None and (status_code == 429 or status_code >= 500)


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime) -> dt.datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=dt.timezone.utc)


def find_feedback_by_source(
    session: Session, organization_id: uuid.UUID, key: str, value: Any
) -> Feedback | None:
    """Feedback whose ``source_metadata[key]`` equals ``value`` (as text)."""

    if value in (None, ""):
        return None
    return session.execute(
        select(Feedback)
        .where(
            Feedback.organization_id == organization_id,
            Feedback.source_metadata[key].as_string() == str(value),
        )
        .limit(1)
    ).scalar_one_or_none()


def _retry_on_error(fn: Callable[["IntegrationProcessor", HandlerContext], ProcessingResult]):
    """Inbound handlers treat every failure as transient."""

    def wrapper(self: "IntegrationProcessor", ctx: HandlerContext) -> ProcessingResult:
        try:
            return fn(self, ctx)
        except Exception as exc:
            logger.warning(
                "Handler for %s failed: %s", ctx.event.event_type, exc,
                extra={"event_id": str(ctx.event.id), "integration_id": str(ctx.connection.id)},
            )
            return ProcessingResult(False, error=str(exc) or exc.__class__.__name__, should_retry=True)

    wrapper.__name__ = fn.__name__
    wrapper.__doc__ = fn.__doc__
    return wrapper


class IntegrationProcessor:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        connection_service_factory: Callable[[Session], OAuthConnectionService] | None = None,
        scheduler: RetryScheduler | None = None,
        health_monitor_factory: Callable[[Session, OAuthConnectionService], HealthMonitorService] | None = None,
        retry_delays: tuple[float, ...] = (1.0, 5.0, 15.0),
        max_attempts: int = 3,
    ) -> None:
        self.session_factory = session_factory
        self.connection_service_factory = connection_service_factory or OAuthConnectionService
        self.scheduler = scheduler or RetryScheduler()
        self.health_monitor_factory = health_monitor_factory or (
            lambda session, connections: HealthMonitorService(session, connections)
        )
        self.retry_delays = tuple(retry_delays) or (1.0,)
        self.max_attempts = max_attempts
        self.handlers: dict[str, Handler] = {
            SLACK_MESSAGE: self._slack_message,
            SLACK_REACTION: self._slack_reaction,
            ZENDESK_TICKET_CREATED: self._zendesk_ticket_created,
            ZENDESK_TICKET_UPDATED: self._zendesk_ticket_updated,
            INTERCOM_CONVERSATION_CREATED: self._intercom_conversation_created,
            INTERCOM_CONVERSATION_UPDATED: self._intercom_conversation_updated,
            FEEDBACK_CREATED: self._feedback_created,
            FEEDBACK_STATUS_CHANGED: self._feedback_status_changed,
            FEEDBACK_ASSIGNED: self._feedback_assigned,
            CUSTOMER_CREATED: self._customer_created,
        }

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def _schedule(self, event_id: uuid.UUID, delay: float) -> None:
        self.scheduler.schedule(event_id, delay, lambda: self.process_event(event_id))

    def queue_event(
        self,
        organization_id: uuid.UUID,
        integration_id: uuid.UUID,
        event_type: str,
        source_id: str | None,
        data: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> uuid.UUID:
        """Persist a pending event and schedule it for immediate processing."""

        with self.session_factory() as session:
            event = IntegrationEvent(
                organization_id=organization_id,
                integration_id=integration_id,
                event_type=event_type,
                source_id=str(source_id) if source_id is not None else None,
                data=_json_safe(data),
                metadata_={**_json_safe(metadata or {}), "queuedAt": _utcnow().isoformat()},
                status=ProcessingStatus.PENDING.value,
                attempts=0,
            )
            session.add(event)
            session.commit()
            event_id = event.id

        logger.info(
            "Queued %s event %s", event_type, event_id,
            extra={
                "event_code": "EVENT_QUEUED",
                "event_id": str(event_id),
                "integration_id": str(integration_id),
                "organization_id": str(organization_id),
            },
        )
        self._schedule(event_id, 0)
        return event_id

    def dispatch_feedback_event(
        self,
        organization_id: uuid.UUID,
        event_type: str,
        feedback: dict[str, Any],
        **extra: Any,
    ) -> list[uuid.UUID]:
        """Queue ``event_type`` for every integration that wants it."""

        with self.session_factory() as session:
            integrations = session.execute(
                select(Integration).where(
                    Integration.organization_id == organization_id,
                    Integration.status == ConnectionStatus.ACTIVE.value,
                )
            ).scalars().all()
            targets = [(row.id, row.type, dict(row.sync_config or {})) for row in integrations]

        source_meta = feedback.get("sourceMetadata") or {}
        queued: list[uuid.UUID] = []
        for integration_id, integration_type, sync_config in targets:
            if not allows_outbound(sync_config):
                continue
            service = sync_config.get(integration_type.lower()) or {}
            if event_type == FEEDBACK_CREATED:
                wanted = bool(service.get("enabled"))
            elif event_type == FEEDBACK_STATUS_CHANGED:
                wanted = (
                    (integration_type == "SLACK" and bool(service.get("notifyOnStatusChange")))
                    or (integration_type == "ZENDESK" and bool(source_meta.get("zendeskTicketId")))
                    or (integration_type == "INTERCOM" and bool(source_meta.get("intercomConversationId")))
                )
            elif event_type == FEEDBACK_ASSIGNED:
                wanted = (
                    (integration_type == "SLACK" and bool(service.get("notifyOnAssignment")))
                    or (integration_type == "ZENDESK" and bool(source_meta.get("zendeskTicketId")))
                )
            else:
                wanted = False
            if not wanted:
                continue
            queued.append(
                self.queue_event(
                    organization_id,
                    integration_id,
                    event_type,
                    feedback.get("id"),
                    {"feedback": feedback, "syncConfig": sync_config, **extra},
                )
            )
        return queued

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _log_extra(self, event: IntegrationEvent, code: str, **extra: Any) -> dict[str, Any]:
        return {
            "event_code": code,
            "event_id": str(event.id),
            "integration_id": str(event.integration_id),
            "organization_id": str(event.organization_id),
            **extra,
        }

    def process_event(self, event_id: uuid.UUID) -> ProcessingResult:
        started = time.monotonic()
        with self.session_factory() as session:
            connections = self.connection_service_factory(session)
            health = self.health_monitor_factory(session, connections)

            event = session.get(IntegrationEvent, event_id)
            if event is None:
                logger.warning(
                    "Integration event %s not found", event_id,
                    extra={"event_code": "EVENT_NOT_FOUND", "event_id": str(event_id)},
                )
                return ProcessingResult(False, error="Event not found")
            if event.status == ProcessingStatus.COMPLETED.value:
                logger.info(
                    "Event %s already processed", event.id,
                    extra=self._log_extra(event, "EVENT_ALREADY_PROCESSED"),
                )
                return ProcessingResult(True, result="Already processed")

            integration_id, organization_id = event.integration_id, event.organization_id
            try:
                if event.attempts >= self.max_attempts:
                    error = f"Max retries exceeded ({self.max_attempts})"
                    event.status = ProcessingStatus.FAILED.value
                    event.last_error = error
                    session.commit()
                    logger.error(
                        "Event %s failed: %s", event.id, error,
                        extra=self._log_extra(event, "MAX_RETRIES_EXCEEDED", attempts=event.attempts),
                    )
                    health.update_integration_metrics(integration_id, organization_id, False, error)
                    return ProcessingResult(False, error=error)

                event.status = ProcessingStatus.PROCESSING.value
                session.commit()
                logger.info(
                    "Processing %s event %s", event.event_type, event.id,
                    extra=self._log_extra(event, "EVENT_PROCESSING_STARTED", attempts=event.attempts),
                )

                connection = connections.get_connection(integration_id, organization_id)
                if connection is None or not connection.credentials:
                    error = "Integration connection not found or invalid"
                    event.status = ProcessingStatus.FAILED.value
                    event.last_error = error
                    event.next_attempt_at = None
                    session.commit()
                    logger.error(
                        "Event %s failed: %s", event.id, error,
                        extra=self._log_extra(event, "INTEGRATION_CONNECTION_INVALID"),
                    )
                    health.update_integration_metrics(integration_id, organization_id, False, error)
                    return ProcessingResult(False, error=error)

                result = self._run_handler(session, event, connection, connections)

                elapsed_ms = int((time.monotonic() - started) * 1000)
                if result.success:
                    self._complete(session, event, result, elapsed_ms)
                    health.update_integration_metrics(
                        integration_id, organization_id, True, response_time=elapsed_ms
                    )
                else:
                    self._handle_failure(session, event, result, health)
                return result
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "Unexpected error while processing event %s", event_id,
                    extra={
                        "event_code": "EVENT_PROCESSING_EXCEPTION",
                        "event_id": str(event_id),
                        "integration_id": str(integration_id),
                        "organization_id": str(organization_id),
                    },
                )
                error = str(exc) or exc.__class__.__name__
                event = session.get(IntegrationEvent, event_id)
                if event is not None:
                    event.status = ProcessingStatus.FAILED.value
                    event.last_error = error
                    session.commit()
                health.update_integration_metrics(integration_id, organization_id, False, error)
                return ProcessingResult(False, error=error)

    def _run_handler(
        self,
        session: Session,
        event: IntegrationEvent,
        connection: Connection,
        connections: OAuthConnectionService,
    ) -> ProcessingResult:
        handler = self.handlers.get(event.event_type)
        if handler is None:
            return ProcessingResult(False, error=f"Unsupported event type: {event.event_type}")

        try:
            credentials = connections.refresh_token_if_needed(connection.id, connection.organization_id)
        except Exception as exc:
            # The connection's error status was flushed by the refresh; keep it.
            session.commit()
            return ProcessingResult(False, error=str(exc), should_retry=should_retry_error(exc))

        try:
            provider = connections.provider_for(connection)
            result = handler(HandlerContext(session, event, connection, provider, credentials))
        except Exception as exc:
            session.rollback()
            logger.warning(
                "Handler for %s raised %s", event.event_type, exc,
                extra={"event_id": str(event.id), "integration_id": str(event.integration_id)},
            )
            return ProcessingResult(False, error=str(exc) or exc.__class__.__name__, should_retry=should_retry_error(exc))
        if not result.success:
            session.rollback()
        return result

    def _complete(
        self, session: Session, event: IntegrationEvent, result: ProcessingResult, elapsed_ms: int
    ) -> None:
        payload = result.result if isinstance(result.result, dict) else {"message": result.result}
        event.status = (
            ProcessingStatus.SKIPPED.value if result.metadata.get("skipped") else ProcessingStatus.COMPLETED.value
        )
        event.result = _json_safe(payload)
        event.last_error = None
        event.next_attempt_at = None
        event.processed_at = _utcnow()
        event.response_time_ms = elapsed_ms
        session.commit()
        logger.info(
            "Processed %s event %s in %d ms", event.event_type, event.id, elapsed_ms,
            extra=self._log_extra(event, "EVENT_PROCESSED_SUCCESS", response_time=elapsed_ms),
        )

    def _retry_delay(self, attempt: int) -> float:
        index = min(max(attempt - 1, 0), len(self.retry_delays) - 1)
        return float(self.retry_delays[index])

    def _handle_failure(
        self,
        session: Session,
        event: IntegrationEvent,
        result: ProcessingResult,
        health: HealthMonitorService,
    ) -> None:
        attempt = event.attempts + 1
        error = result.error or "Unknown error"
        integration_id, organization_id = event.integration_id, event.organization_id
        if result.should_retry and attempt < self.max_attempts:
            delay = self._retry_delay(attempt)
            event.status = ProcessingStatus.PENDING.value
            event.attempts = attempt
            event.last_error = error
            event.next_attempt_at = _utcnow() + dt.timedelta(seconds=delay)
            session.commit()
            logger.warning(
                "Retrying event %s in %ss (attempt %d): %s", event.id, delay, attempt, error,
                extra=self._log_extra(event, "EVENT_PROCESSING_RETRY", attempt=attempt),
            )
            self._schedule(event.id, delay)
            health.update_integration_metrics(integration_id, organization_id, False, f"Retry {attempt}: {error}")
            return

        event.status = ProcessingStatus.FAILED.value
        event.attempts = attempt
        event.last_error = error
        event.next_attempt_at = None
        session.commit()
        logger.error(
            "Event %s failed after %d attempt(s): %s", event.id, attempt, error,
            extra=self._log_extra(event, "EVENT_PROCESSING_FAILED", attempt=attempt),
        )
        health.update_integration_metrics(integration_id, organization_id, False, error)

    # ------------------------------------------------------------------
    # Operator helpers
    # ------------------------------------------------------------------

    def get_events(
        self,
        organization_id: uuid.UUID,
        integration_id: uuid.UUID | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[IntegrationEvent]:
        with self.session_factory() as session:
            stmt = select(IntegrationEvent).where(IntegrationEvent.organization_id == organization_id)
            if integration_id is not None:
                stmt = stmt.where(IntegrationEvent.integration_id == integration_id)
            if status:
                stmt = stmt.where(IntegrationEvent.status == status.upper())
            stmt = stmt.order_by(IntegrationEvent.created_at.desc()).limit(max(1, min(limit, 500)))
            return list(session.execute(stmt).scalars())

    def retry_event(self, event_id: uuid.UUID, organization_id: uuid.UUID) -> IntegrationEvent:
        """Put a failed event back in the queue with a fresh attempt budget."""

        with self.session_factory() as session:
            event = session.get(IntegrationEvent, event_id)
            if event is None or event.organization_id != organization_id:
                raise ResourceNotFoundError("event", event_id)
            if event.status != ProcessingStatus.FAILED.value:
                raise ValidationError("Only failed events can be retried", metadata={"status": event.status})
            event.status = ProcessingStatus.PENDING.value
            event.attempts = 0
            event.last_error = None
            event.next_attempt_at = None
            session.commit()
        self._schedule(event_id, 0)
        return event

    def recover_pending_events(self, stale_after: float = 300.0) -> list[uuid.UUID]:
        """Reschedule events an earlier process left unfinished.

        ``PENDING`` rows run at their ``next_attempt_at``, or at once when it
        is unset or already past. ``PROCESSING`` rows untouched for
        ``stale_after`` seconds lost their worker and go back to ``PENDING``;
        their attempt count is kept.
        """

        now = _utcnow()
        cutoff = now - dt.timedelta(seconds=stale_after)
        recovered: list[tuple[uuid.UUID, float]] = []
        with self.session_factory() as session:
            events = session.execute(
                select(IntegrationEvent)
                .where(
                    IntegrationEvent.status.in_(
                        (ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value)
                    )
                )
                .order_by(IntegrationEvent.created_at)
            ).scalars().all()
            for event in events:
                if event.status == ProcessingStatus.PROCESSING.value:
                    if _as_utc(event.updated_at) > cutoff:
                        continue
                    event.status = ProcessingStatus.PENDING.value
                delay = 0.0
                if event.next_attempt_at is not None:
                    delay = max((_as_utc(event.next_attempt_at) - now).total_seconds(), 0.0)
                recovered.append((event.id, delay))
            session.commit()

        for event_id, delay in recovered:
            self._schedule(event_id, delay)
        if recovered:
            logger.info(
                "Rescheduled %d unfinished integration event(s)", len(recovered),
                extra={"event_code": "EVENTS_RECOVERED", "service": "integrations"},
            )
        return [event_id for event_id, _ in recovered]

    # ------------------------------------------------------------------
    # Inbound handlers
    # ------------------------------------------------------------------

    @_retry_on_error
    def _slack_message(self, ctx: HandlerContext) -> ProcessingResult:
        if not isinstance(ctx.provider, SlackProvider):
            return ProcessingResult(False, error="Invalid Slack provider")
        data = ctx.data
        message = data.get("message") or {}
        if message.get("subtype") or message.get("bot_id"):
            return ProcessingResult(True, result="Skipped bot/system message")

        user = data.get("user") or message.get("user")
        channel = data.get("channel") or message.get("channel")
        text = data.get("text") or message.get("text") or ""
        ts = message.get("ts") or data.get("ts")

        profile: dict[str, Any] = {}
        if user:
            profile = (ctx.provider.get_user(ctx.credentials, user) or {}).get("profile") or {}
        name = profile.get("display_name") or profile.get("real_name")

        customer, _ = CustomerService(ctx.session).identify_or_create(
            ctx.organization_id,
            email=profile.get("email"),
            name=name,
            source="integration_slack",
            external_id=user,
            integration_id=ctx.connection.id,
            metadata={
                "slackUserId": user,
                "slackChannel": channel,
                "slackTeam": ctx.connection.metadata.get("teamId"),
            },
        )
        feedback = FeedbackService(ctx.session).create_feedback(
            ctx.organization_id,
            {
                "title": extract_title(text, "Slack Message"),
                "description": text,
                "source": "slack",
                "customer_id": customer.id,
                "integration_id": ctx.connection.id,
                "source_metadata": {
                    "slackChannel": channel,
                    "slackMessageTs": ts,
                    "slackUserId": user,
                    "slackPermalink": SlackProvider.get_permalink(channel, ts) if channel and ts else None,
                },
            },
        )
        ctx.session.commit()
        return ProcessingResult(
            True,
            result={
                "feedbackId": str(feedback.id),
                "customerId": str(customer.id),
                "action": "feedback_created_from_slack_message",
            },
        )

    @_retry_on_error
    def _slack_reaction(self, ctx: HandlerContext) -> ProcessingResult:
        data = ctx.data
        reaction = data.get("reaction")
        feedback = find_feedback_by_source(
            ctx.session, ctx.organization_id, "slackMessageTs", data.get("message_ts")
        )
        if feedback is None:
            return ProcessingResult(True, result="No associated feedback found")
        if reaction in UPVOTE_REACTIONS:
            feedback.upvote_count = (feedback.upvote_count or 0) + 1
            ctx.session.commit()
        return ProcessingResult(
            True,
            result={"feedbackId": str(feedback.id), "reaction": reaction, "action": "reaction_processed"},
        )

    @_retry_on_error
    def _zendesk_ticket_created(self, ctx: HandlerContext) -> ProcessingResult:
        if not isinstance(ctx.provider, ZendeskProvider):
            return ProcessingResult(False, error="Invalid Zendesk provider")
        ticket = ctx.data.get("ticket") or {}
        ticket_id = ticket.get("id")
        existing = find_feedback_by_source(ctx.session, ctx.organization_id, "zendeskTicketId", ticket_id)
        if existing is not None:
            return ProcessingResult(True, result={"feedbackId": str(existing.id), "action": "already_linked"})

        requester = ticket.get("requester") or {}
        customer, _ = CustomerService(ctx.session).identify_or_create(
            ctx.organization_id,
            email=requester.get("email"),
            name=requester.get("name"),
            source="integration_zendesk",
            external_id=str(requester["id"]) if requester.get("id") is not None else None,
            integration_id=ctx.connection.id,
            metadata={
                "zendeskUserId": requester.get("id"),
                "zendeskOrganizationId": ticket.get("organization_id"),
            },
        )
        feedback = FeedbackService(ctx.session).create_feedback(
            ctx.organization_id,
            {
                "title": ticket.get("subject") or f"Zendesk Ticket {ticket_id}",
                "description": ticket.get("description"),
                "priority": zendesk_priority(ticket.get("priority")),
                "source": "zendesk",
                "customer_id": customer.id,
                "integration_id": ctx.connection.id,
                "source_metadata": {
                    "zendeskTicketId": str(ticket_id) if ticket_id is not None else None,
                    "zendeskStatus": ticket.get("status"),
                    "zendeskType": ticket.get("type"),
                    "zendeskUrl": ticket.get("url") or ctx.provider.ticket_url(ticket_id),
                },
            },
        )
        ctx.session.commit()
        return ProcessingResult(
            True,
            result={
                "feedbackId": str(feedback.id),
                "customerId": str(customer.id),
                "zendeskTicketId": ticket_id,
                "action": "feedback_created_from_zendesk_ticket",
            },
        )

    @_retry_on_error
    def _zendesk_ticket_updated(self, ctx: HandlerContext) -> ProcessingResult:
        ticket = ctx.data.get("ticket") or {}
        feedback = find_feedback_by_source(
            ctx.session, ctx.organization_id, "zendeskTicketId", ticket.get("id")
        )
        if feedback is None:
            return ProcessingResult(True, result="No associated feedback found")
        FeedbackService(ctx.session).update_feedback(
            ctx.organization_id,
            feedback.id,
            {
                "status": zendesk_status(ticket.get("status")),
                "priority": zendesk_priority(ticket.get("priority")),
                "source_metadata": {
                    "zendeskStatus": ticket.get("status"),
                    "zendeskUpdatedAt": ticket.get("updated_at"),
                },
            },
        )
        ctx.session.commit()
        return ProcessingResult(
            True,
            result={
                "feedbackId": str(feedback.id),
                "zendeskTicketId": ticket.get("id"),
                "action": "feedback_updated_from_zendesk_ticket",
            },
        )

    @_retry_on_error
    def _intercom_conversation_created(self, ctx: HandlerContext) -> ProcessingResult:
        if not isinstance(ctx.provider, IntercomProvider):
            return ProcessingResult(False, error="Invalid Intercom provider")
        data = ctx.data
        conversation = data.get("conversation") or {}
        user = data.get("user") or {}
        message = data.get("message") or {}
        conversation_id = conversation.get("id")
        existing = find_feedback_by_source(
            ctx.session, ctx.organization_id, "intercomConversationId", conversation_id
        )
        if existing is not None:
            return ProcessingResult(True, result={"feedbackId": str(existing.id), "action": "already_linked"})

        customer, _ = CustomerService(ctx.session).identify_or_create(
            ctx.organization_id,
            email=user.get("email"),
            name=user.get("name"),
            source="integration_intercom",
            external_id=str(user["id"]) if user.get("id") is not None else None,
            integration_id=ctx.connection.id,
            metadata={"intercomUserId": user.get("id"), "intercomContactId": user.get("contact_id")},
        )
        body = message.get("body")
        links = conversation.get("links") or {}
        feedback = FeedbackService(ctx.session).create_feedback(
            ctx.organization_id,
            {
                "title": extract_title(strip_html(body or conversation.get("subject")), "Intercom Conversation"),
                "description": body or "Intercom conversation",
                "source": "intercom",
                "customer_id": customer.id,
                "integration_id": ctx.connection.id,
                "source_metadata": {
                    "intercomConversationId": str(conversation_id) if conversation_id is not None else None,
                    "intercomState": conversation.get("state"),
                    "intercomMessageId": message.get("id"),
                    "intercomUrl": links.get("self")
                    or IntercomProvider.conversation_url(ctx.connection.metadata.get("appId"), conversation_id),
                },
            },
        )
        ctx.session.commit()
        return ProcessingResult(
            True,
            result={
                "feedbackId": str(feedback.id),
                "customerId": str(customer.id),
                "intercomConversationId": conversation_id,
                "action": "feedback_created_from_intercom_conversation",
            },
        )

    @_retry_on_error
    def _intercom_conversation_updated(self, ctx: HandlerContext) -> ProcessingResult:
        data = ctx.data
        conversation = data.get("conversation") or {}
        message = data.get("message") or {}
        feedback = find_feedback_by_source(
            ctx.session, ctx.organization_id, "intercomConversationId", conversation.get("id")
        )
        if feedback is None:
            return ProcessingResult(True, result="No associated feedback found")
        if message.get("body"):
            FeedbackService(ctx.session).add_comment(
                ctx.organization_id,
                feedback.id,
                message["body"],
                metadata={
                    "source": "intercom",
                    "intercomMessageId": message.get("id"),
                    "intercomAuthor": message.get("author"),
                },
            )
            ctx.session.commit()
        return ProcessingResult(
            True,
            result={
                "feedbackId": str(feedback.id),
                "intercomConversationId": conversation.get("id"),
                "action": "comment_added_from_intercom_update",
            },
        )

    # ------------------------------------------------------------------
    # Outbound handlers
    # ------------------------------------------------------------------

    def _sync_call(self, service: str, fn: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        try:
            return {"service": service, **fn()}
        except Exception as exc:
            logger.warning("%s sync failed: %s", service, exc)
            return {"service": service, "success": False, "error": str(exc) or exc.__class__.__name__}

    def _link_feedback(self, ctx: HandlerContext, feedback_id: Any, **values: Any) -> None:
        try:
            feedback = ctx.session.get(Feedback, uuid.UUID(str(feedback_id)))
        except ValueError:
            return
        if feedback is None or feedback.organization_id != ctx.organization_id:
            return
        feedback.source_metadata = {**(feedback.source_metadata or {}), **values}
        ctx.session.commit()

    def _feedback_created(self, ctx: HandlerContext) -> ProcessingResult:
        data = ctx.data
        feedback = data.get("feedback") or {}
        sync = data.get("syncConfig") or {}
        kind = ctx.connection.type
        results: list[dict[str, Any]] = []

        slack_cfg = sync.get("slack") or {}
        if kind == "SLACK" and slack_cfg.get("enabled") and isinstance(ctx.provider, SlackProvider):
            provider = ctx.provider
            text = (
                f"🗣️ *New Feedback*\n*{feedback.get('title')}*\n{feedback.get('description') or ''}"
                f"\n\n_From: {feedback.get('customerName') or 'Anonymous'}_"
            )
            results.append(
                self._sync_call(
                    "slack",
                    lambda: {"success": provider.send_message(ctx.credentials, slack_cfg.get("channelId"), text)},
                )
            )

        zendesk_cfg = sync.get("zendesk") or {}
        if kind == "ZENDESK" and zendesk_cfg.get("enabled") and isinstance(ctx.provider, ZendeskProvider):
            zendesk = ctx.provider

            def _create_ticket() -> dict[str, Any]:
                ticket = zendesk.create_ticket(
                    ctx.credentials,
                    {
                        "subject": feedback.get("title"),
                        "comment": {"body": feedback.get("description") or feedback.get("title")},
                        "requester": {
                            "name": feedback.get("customerName") or "Anonymous",
                            "email": feedback.get("customerEmail") or "no-email@example.com",
                        },
                        "priority": to_zendesk_priority(feedback.get("priority")),
                        "type": "question",
                        "tags": ["feedbackhub", "auto-created"],
                    },
                )
                if ticket.get("id") is not None:
                    self._link_feedback(ctx, feedback.get("id"), zendeskTicketId=str(ticket["id"]))
                return {"success": True, "ticketId": ticket.get("id")}

            results.append(self._sync_call("zendesk", _create_ticket))

        intercom_cfg = sync.get("intercom") or {}
        if kind == "INTERCOM" and intercom_cfg.get("enabled") and isinstance(ctx.provider, IntercomProvider):
            intercom = ctx.provider

            def _create_conversation() -> dict[str, Any]:
                contact = intercom.create_or_update_contact(
                    ctx.credentials,
                    {
                        "role": "user",
                        "email": feedback.get("customerEmail"),
                        "name": feedback.get("customerName"),
                        "custom_attributes": {"feedback_source": "feedbackhub"},
                    },
                )
                conversation = intercom.create_conversation(
                    ctx.credentials,
                    {
                        "from": {"type": "user", "id": contact.get("id")},
                        "body": f"**{feedback.get('title')}**\n\n{feedback.get('description') or ''}",
                        "message_type": "email",
                        "subject": feedback.get("title"),
                    },
                )
                conversation_id = conversation.get("conversation_id") or conversation.get("id")
                if conversation_id is not None:
                    self._link_feedback(ctx, feedback.get("id"), intercomConversationId=str(conversation_id))
                return {"success": True, "conversationId": conversation_id}

            results.append(self._sync_call("intercom", _create_conversation))

        return ProcessingResult(
            True,
            result={
                "feedbackId": feedback.get("id"),
                "syncResults": results,
                "action": "feedback_synced_to_integrations",
            },
        )

    def _feedback_status_changed(self, ctx: HandlerContext) -> ProcessingResult:
        data = ctx.data
        feedback = data.get("feedback") or {}
        sync = data.get("syncConfig") or {}
        old_status, new_status = data.get("oldStatus"), data.get("newStatus")
        source_meta = feedback.get("sourceMetadata") or {}
        provider = ctx.provider
        results: list[dict[str, Any]] = []

        slack_cfg = sync.get("slack") or {}
        if isinstance(provider, SlackProvider) and slack_cfg.get("notifyOnStatusChange"):
            text = (
                f"{status_emoji(new_status)} Feedback \"{feedback.get('title')}\" "
                f"status changed from {old_status} to {new_status}"
            )
            results.append(
                self._sync_call(
                    "slack",
                    lambda: {"success": provider.send_message(ctx.credentials, slack_cfg.get("channelId"), text)},
                )
            )

        ticket_id = source_meta.get("zendeskTicketId")
        if isinstance(provider, ZendeskProvider) and ticket_id:
            results.append(
                self._sync_call(
                    "zendesk",
                    lambda: {
                        "success": bool(
                            provider.update_ticket(ctx.credentials, ticket_id, {"status": to_zendesk_status(new_status)})
                            is not None
                        )
                    },
                )
            )

        conversation_id = source_meta.get("intercomConversationId")
        if isinstance(provider, IntercomProvider) and conversation_id:
            results.append(
                self._sync_call(
                    "intercom",
                    lambda: {
                        "success": bool(
                            provider.update_conversation(
                                ctx.credentials, conversation_id, {"state": to_intercom_state(new_status)}
                            )
                            is not None
                        )
                    },
                )
            )

        return ProcessingResult(
            True,
            result={
                "feedbackId": feedback.get("id"),
                "oldStatus": old_status,
                "newStatus": new_status,
                "syncResults": results,
                "action": "status_change_synced",
            },
        )

    def _feedback_assigned(self, ctx: HandlerContext) -> ProcessingResult:
        data = ctx.data
        feedback = data.get("feedback") or {}
        sync = data.get("syncConfig") or {}
        assignee_name = data.get("assigneeName")
        provider = ctx.provider
        results: list[dict[str, Any]] = []

        slack_cfg = sync.get("slack") or {}
        if isinstance(provider, SlackProvider) and slack_cfg.get("notifyOnAssignment"):
            text = f"📋 Feedback \"{feedback.get('title')}\" has been assigned to {assignee_name}"
            results.append(
                self._sync_call(
                    "slack",
                    lambda: {"success": provider.send_message(ctx.credentials, slack_cfg.get("channelId"), text)},
                )
            )

        ticket_id = (feedback.get("sourceMetadata") or {}).get("zendeskTicketId")
        if isinstance(provider, ZendeskProvider) and ticket_id:
            results.append(
                self._sync_call(
                    "zendesk",
                    lambda: {
                        "success": bool(
                            provider.update_ticket(ctx.credentials, ticket_id, {"assignee_id": data.get("assigneeId")})
                            is not None
                        )
                    },
                )
            )

        return ProcessingResult(
            True,
            result={
                "feedbackId": feedback.get("id"),
                "assigneeId": data.get("assigneeId"),
                "syncResults": results,
                "action": "assignment_synced",
            },
        )

    def _customer_created(self, ctx: HandlerContext) -> ProcessingResult:
        return ProcessingResult(
            True, result="No outbound action for customer events", metadata={"skipped": True}
        )


__all__ = [
    "CUSTOMER_CREATED",
    "FEEDBACK_ASSIGNED",
    "FEEDBACK_CREATED",
    "FEEDBACK_STATUS_CHANGED",
    "HandlerContext",
    "INBOUND_EVENT_TYPES",
    "INTERCOM_CONVERSATION_CREATED",
    "INTERCOM_CONVERSATION_UPDATED",
    "IntegrationProcessor",
    "OUTBOUND_EVENT_TYPES",
    "ProcessingResult",
    "SLACK_MESSAGE",
    "SLACK_REACTION",
    "ZENDESK_TICKET_CREATED",
    "ZENDESK_TICKET_UPDATED",
    "find_feedback_by_source",
    "should_retry_error",
]
