import datetime as dt
import logging
import uuid

import pytest
import requests

from feedbackhub.config import IntegrationSettings
from feedbackhub.errors import ResourceNotFoundError, ValidationError
from feedbackhub.integrations import (
    CUSTOMER_CREATED,
    FEEDBACK_ASSIGNED,
    FEEDBACK_CREATED,
    FEEDBACK_STATUS_CHANGED,
    INTERCOM_CONVERSATION_CREATED,
    INTERCOM_CONVERSATION_UPDATED,
    SLACK_MESSAGE,
    SLACK_REACTION,
    ZENDESK_TICKET_CREATED,
    ZENDESK_TICKET_UPDATED,
    IntegrationProcessor,
    RetryScheduler,
    should_retry_error,
)
from feedbackhub.models import Comment, Customer, Feedback, Integration, IntegrationEvent
from feedbackhub.oauth import (
    IntercomProvider,
    OAuthConfig,
    OAuthConnectionService,
    OAuthProviderError,
    SlackProvider,
    ZendeskProvider,
)

SETTINGS = IntegrationSettings(clients={}, encryption_key="processor-test-key")
CONFIG = OAuthConfig(
    client_id="id",
    client_secret="secret",
    redirect_uri="https://app.example/callback",
    auth_url="https://provider.example/authorize",
    token_url="https://provider.example/token",
)


class FakeSlack(SlackProvider):
    def __init__(self):
        super().__init__(CONFIG)
        self.user_error = None
        self.messages = []

    def get_user(self, credentials, user_id):
        if self.user_error is not None:
            raise self.user_error
        return {"id": user_id, "profile": {"email": "pat@example.com", "real_name": "Pat"}}

    def send_message(self, credentials, channel, text, attachments=None):
        self.messages.append((channel, text))
        return True


class FakeZendesk(ZendeskProvider):
    def __init__(self):
        super().__init__(CONFIG, subdomain="acme")
        self.tickets = []
        self.updates = []

    def create_ticket(self, credentials, ticket):
        self.tickets.append(ticket)
        return {"id": 99, **ticket}

    def update_ticket(self, credentials, ticket_id, updates):
        self.updates.append((ticket_id, updates))
        return {"id": ticket_id}


class FakeIntercom(IntercomProvider):
    def __init__(self):
        super().__init__(CONFIG)
        self.contacts = []
        self.conversations = []
        self.updates = []

    def create_or_update_contact(self, credentials, contact):
        self.contacts.append(contact)
        return {"id": "contact-1", **contact}

    def create_conversation(self, credentials, conversation):
        self.conversations.append(conversation)
        return {"conversation_id": "conv-7"}

    def update_conversation(self, credentials, conversation_id, updates):
        self.updates.append((conversation_id, updates))
        return {"id": conversation_id}


@pytest.fixture
def providers():
    return {"SLACK": FakeSlack(), "ZENDESK": FakeZendesk(), "INTERCOM": FakeIntercom()}


@pytest.fixture
def event_processor(tenant_auth, scheduler, providers):
    def _factory(integration_type, settings, config, session=None):
        return providers[integration_type]

    return IntegrationProcessor(
        tenant_auth.session_factory,
        connection_service_factory=lambda session: OAuthConnectionService(
            session, settings=SETTINGS, provider_factory=_factory
        ),
        scheduler=scheduler,
    )


def _connect(tenant_auth, integration_type, *, sync_config=None, metadata=None, is_active=True):
    with tenant_auth.session_factory() as session:
        service = OAuthConnectionService(session, settings=SETTINGS)
        connection = service.create_connection(
            tenant_auth.organization_id,
            integration_type,
            {"access_token": f"{integration_type.lower()}-token"},
            metadata=metadata,
            is_active=is_active,
        )
        if sync_config is not None:
            service.update_connection(
                connection.id, tenant_auth.organization_id, sync_config=sync_config
            )
        session.commit()
        return connection.id


def _event(tenant_auth, event_id):
    with tenant_auth.session_factory() as session:
        return session.get(IntegrationEvent, event_id)


def _metrics(tenant_auth, integration_id):
    with tenant_auth.session_factory() as session:
        return session.get(Integration, integration_id).metadata_["metrics"]


PROCESSOR_LOGGER = "feedbackhub.integrations.processor"


def _logged(caplog):
    return [
        record
        for record in caplog.records
        if record.name == PROCESSOR_LOGGER and hasattr(record, "event_code")
    ]


def _codes(caplog):
    return [record.event_code for record in _logged(caplog)]


SLACK_DATA = {
    "user": "U1",
    "channel": "C1",
    "text": "Please add dark mode. It hurts my eyes at night.",
    "message": {"ts": "1700000000.000100"},
}


def test_queue_event_persists_and_schedules(tenant_auth, event_processor, scheduler):
    integration_id = _connect(tenant_auth, "SLACK")

    event_id = event_processor.queue_event(
        tenant_auth.organization_id, integration_id, SLACK_MESSAGE, "ts-1", SLACK_DATA
    )

    event = _event(tenant_auth, event_id)
    assert event.status == "PENDING"
    assert event.attempts == 0
    assert event.source_id == "ts-1"
    assert "queuedAt" in event.metadata_
    assert [(key, delay) for key, delay, _ in scheduler.jobs] == [(event_id, 0)]


def test_slack_message_creates_feedback(tenant_auth, event_processor, scheduler):
    integration_id = _connect(tenant_auth, "SLACK", metadata={"teamId": "T1"})
    event_id = event_processor.queue_event(
        tenant_auth.organization_id, integration_id, SLACK_MESSAGE, "ts-1", SLACK_DATA
    )

    scheduler.run_all()

    event = _event(tenant_auth, event_id)
    assert event.status == "COMPLETED"
    assert event.result["action"] == "feedback_created_from_slack_message"
    assert event.processed_at is not None
    with tenant_auth.session_factory() as session:
        feedback = session.get(Feedback, uuid.UUID(event.result["feedbackId"]))
        assert feedback.title == "Please add dark mode"
        assert feedback.source == "slack"
        assert feedback.integration_id == integration_id
        assert feedback.source_metadata["slackPermalink"].endswith("message_ts=1700000000.000100")
        customer = session.get(Customer, feedback.customer_id)
        assert customer.email == "pat@example.com"
        assert customer.source == "integration_slack"
        assert customer.metadata_["slackTeam"] == "T1"
    assert _metrics(tenant_auth, integration_id)["successCount"] == 1


def test_bot_messages_are_skipped(tenant_auth, event_processor, scheduler):
    integration_id = _connect(tenant_auth, "SLACK")
    event_id = event_processor.queue_event(
        tenant_auth.organization_id,
        integration_id,
        SLACK_MESSAGE,
        None,
        {"text": "beep", "message": {"bot_id": "B1", "ts": "1"}},
    )

    scheduler.run_all()

    assert _event(tenant_auth, event_id).result == {"message": "Skipped bot/system message"}
    with tenant_auth.session_factory() as session:
        assert session.query(Feedback).count() == 0


def test_transient_failures_retry_with_backoff(tenant_auth, event_processor, scheduler, providers, caplog):
    caplog.set_level(logging.INFO, logger=PROCESSOR_LOGGER)
    providers["SLACK"].user_error = requests.ConnectionError("slack unreachable")
    integration_id = _connect(tenant_auth, "SLACK")
    event_id = event_processor.queue_event(
        tenant_auth.organization_id, integration_id, SLACK_MESSAGE, None, SLACK_DATA
    )

    delays = []
    for _ in range(3):
        scheduler.run_all()
        delays.extend(delay for _, delay, _ in scheduler.jobs)
        if scheduler.jobs:
            event = _event(tenant_auth, event_id)
            assert event.status == "PENDING"
            assert event.next_attempt_at is not None

    assert delays == [1.0, 5.0]
    event = _event(tenant_auth, event_id)
    assert event.status == "FAILED"
    assert event.attempts == 3
    assert event.last_error == "slack unreachable"
    assert scheduler.jobs == []

    metrics = _metrics(tenant_auth, integration_id)
    assert metrics["failureCount"] == 3
    assert metrics["recentErrors"] == [
        "slack unreachable",
        "Retry 2: slack unreachable",
        "Retry 1: slack unreachable",
    ]
    codes = _codes(caplog)
    assert codes.count("EVENT_PROCESSING_RETRY") == 2
    assert codes[-1] == "EVENT_PROCESSING_FAILED"


def test_retry_delay_is_clamped_to_last_value(tenant_auth, scheduler):
    processor = IntegrationProcessor(tenant_auth.session_factory, scheduler=scheduler)

    assert [processor._retry_delay(attempt) for attempt in (1, 2, 3, 9)] == [1.0, 5.0, 15.0, 15.0]


def test_unsupported_event_type_fails_without_retry(tenant_auth, event_processor, scheduler):
    integration_id = _connect(tenant_auth, "SLACK")
    event_id = event_processor.queue_event(
        tenant_auth.organization_id, integration_id, "JIRA_ISSUE_CREATED", None, {}
    )

    scheduler.run_all()

    event = _event(tenant_auth, event_id)
    assert event.status == "FAILED"
    assert event.attempts == 1
    assert event.last_error == "Unsupported event type: JIRA_ISSUE_CREATED"
    assert scheduler.jobs == []


def test_missing_credentials_fail_the_event(tenant_auth, event_processor, scheduler, caplog):
    caplog.set_level(logging.INFO, logger=PROCESSOR_LOGGER)
    integration_id = _connect(tenant_auth, "SLACK")
    with tenant_auth.session_factory.begin() as session:
        session.get(Integration, integration_id).credentials = None
    event_id = event_processor.queue_event(
        tenant_auth.organization_id, integration_id, SLACK_MESSAGE, None, SLACK_DATA
    )

    scheduler.run_all()

    event = _event(tenant_auth, event_id)
    assert event.status == "FAILED"
    assert event.last_error == "Integration connection not found or invalid"
    assert event.attempts == 0
    assert scheduler.jobs == []
    assert _codes(caplog)[-1] == "INTEGRATION_CONNECTION_INVALID"
    assert _metrics(tenant_auth, integration_id)["recentErrors"] == ["Integration connection not found or invalid"]


def test_exhausted_event_is_marked_failed(tenant_auth, event_processor, scheduler, caplog):
    caplog.set_level(logging.INFO, logger=PROCESSOR_LOGGER)
    integration_id = _connect(tenant_auth, "SLACK")
    event_id = event_processor.queue_event(
        tenant_auth.organization_id, integration_id, SLACK_MESSAGE, None, SLACK_DATA
    )
    with tenant_auth.session_factory.begin() as session:
        session.get(IntegrationEvent, event_id).attempts = 3

    result = event_processor.process_event(event_id)

    assert result.success is False
    assert result.error == "Max retries exceeded (3)"
    assert _event(tenant_auth, event_id).status == "FAILED"
    assert _codes(caplog)[-1] == "MAX_RETRIES_EXCEEDED"
    assert _logged(caplog)[-1].attempts == 3


def test_completed_and_unknown_events(tenant_auth, event_processor, scheduler, caplog):
    caplog.set_level(logging.INFO, logger=PROCESSOR_LOGGER)
    integration_id = _connect(tenant_auth, "SLACK")
    event_id = event_processor.queue_event(
        tenant_auth.organization_id, integration_id, SLACK_MESSAGE, None, SLACK_DATA
    )
    scheduler.run_all()

    assert _codes(caplog) == ["EVENT_QUEUED", "EVENT_PROCESSING_STARTED", "EVENT_PROCESSED_SUCCESS"]

    again = event_processor.process_event(event_id)
    assert again.success is True
    assert again.result == "Already processed"
    assert _codes(caplog)[-1] == "EVENT_ALREADY_PROCESSED"

    missing = event_processor.process_event(uuid.uuid4())
    assert missing.success is False
    assert missing.error == "Event not found"


def test_retry_event_requeues_failed_events(tenant_auth, event_processor, scheduler):
    integration_id = _connect(tenant_auth, "SLACK")
    event_id = event_processor.queue_event(
        tenant_auth.organization_id, integration_id, "JIRA_ISSUE_CREATED", None, {}
    )

    with pytest.raises(ValidationError):
        event_processor.retry_event(event_id, tenant_auth.organization_id)

    scheduler.run_all()
    with pytest.raises(ResourceNotFoundError):
        event_processor.retry_event(event_id, uuid.uuid4())

    event = event_processor.retry_event(event_id, tenant_auth.organization_id)

    assert event.status == "PENDING"
    assert event.attempts == 0
    assert [(key, delay) for key, delay, _ in scheduler.jobs] == [(event_id, 0)]
    listed = event_processor.get_events(tenant_auth.organization_id, status="pending")
    assert [item.id for item in listed] == [event_id]


def test_dispatch_feedback_event_respects_sync_config(tenant_auth, event_processor):
    org_id = tenant_auth.organization_id
    slack_id = _connect(tenant_auth, "SLACK", sync_config={"slack": {"enabled": True, "channelId": "C1"}})
    zendesk_id = _connect(tenant_auth, "ZENDESK", sync_config={})
    _connect(tenant_auth, "SLACK", sync_config={"slack": {"enabled": True}}, is_active=False)
    snapshot = {"id": str(uuid.uuid4()), "title": "Dark mode", "sourceMetadata": {}}

    created = event_processor.dispatch_feedback_event(org_id, FEEDBACK_CREATED, snapshot)
    assert [_event(tenant_auth, event_id).integration_id for event_id in created] == [slack_id]

    unlinked = event_processor.dispatch_feedback_event(
        org_id, FEEDBACK_STATUS_CHANGED, snapshot, oldStatus="new", newStatus="planned"
    )
    assert unlinked == []

    linked = dict(snapshot, sourceMetadata={"zendeskTicketId": "42"})
    queued = event_processor.dispatch_feedback_event(
        org_id, FEEDBACK_STATUS_CHANGED, linked, oldStatus="new", newStatus="planned"
    )
    event = _event(tenant_auth, queued[0])
    assert event.integration_id == zendesk_id
    assert event.data["newStatus"] == "planned"
    assert event.source_id == snapshot["id"]


def test_status_change_is_posted_to_slack(tenant_auth, event_processor, scheduler, providers):
    _connect(
        tenant_auth,
        "SLACK",
        sync_config={"slack": {"channelId": "C1", "notifyOnStatusChange": True}},
    )
    snapshot = {"id": str(uuid.uuid4()), "title": "Dark mode", "sourceMetadata": {}}

    [event_id] = event_processor.dispatch_feedback_event(
        tenant_auth.organization_id,
        FEEDBACK_STATUS_CHANGED,
        snapshot,
        oldStatus="new",
        newStatus="resolved",
    )
    scheduler.run_all()

    assert providers["SLACK"].messages == [
        ("C1", '✅ Feedback "Dark mode" status changed from new to resolved')
    ]
    event = _event(tenant_auth, event_id)
    assert event.status == "COMPLETED"
    assert event.result["syncResults"] == [{"service": "slack", "success": True}]


def test_new_feedback_opens_zendesk_ticket(tenant_auth, event_processor, scheduler, providers):
    _connect(tenant_auth, "ZENDESK", sync_config={"zendesk": {"enabled": True}})
    with tenant_auth.session_factory.begin() as session:
        feedback = Feedback(
            organization_id=tenant_auth.organization_id,
            title="Export is slow",
            description="Takes minutes",
            priority="medium",
            source="manual",
        )
        session.add(feedback)
        session.flush()
        feedback_id = feedback.id
    snapshot = {
        "id": str(feedback_id),
        "title": "Export is slow",
        "description": "Takes minutes",
        "priority": "medium",
        "customerEmail": "buyer@example.com",
        "sourceMetadata": {},
    }

    event_processor.dispatch_feedback_event(tenant_auth.organization_id, FEEDBACK_CREATED, snapshot)
    scheduler.run_all()

    [ticket] = providers["ZENDESK"].tickets
    assert ticket["subject"] == "Export is slow"
    assert ticket["priority"] == "normal"
    assert ticket["requester"] == {"name": "Anonymous", "email": "buyer@example.com"}
    with tenant_auth.session_factory() as session:
        assert session.get(Feedback, feedback_id).source_metadata["zendeskTicketId"] == "99"


def test_zendesk_ticket_lifecycle(tenant_auth, event_processor, scheduler):
    org_id = tenant_auth.organization_id
    integration_id = _connect(tenant_auth, "ZENDESK")
    ticket = {
        "id": 42,
        "subject": "Broken export",
        "description": "The CSV is empty",
        "priority": "normal",
        "status": "open",
        "requester": {"id": 7, "email": "req@example.com", "name": "Req"},
    }

    first = event_processor.queue_event(org_id, integration_id, ZENDESK_TICKET_CREATED, "42", {"ticket": ticket})
    duplicate = event_processor.queue_event(org_id, integration_id, ZENDESK_TICKET_CREATED, "42", {"ticket": ticket})
    scheduler.run_all()

    feedback_id = uuid.UUID(_event(tenant_auth, first).result["feedbackId"])
    assert _event(tenant_auth, duplicate).result == {"feedbackId": str(feedback_id), "action": "already_linked"}
    with tenant_auth.session_factory() as session:
        feedback = session.get(Feedback, feedback_id)
        assert feedback.priority == "medium"
        assert feedback.source == "zendesk"
        assert feedback.source_metadata["zendeskUrl"] == "https://acme.zendesk.com/agent/tickets/42"

    event_processor.queue_event(
        org_id,
        integration_id,
        ZENDESK_TICKET_UPDATED,
        "42",
        {"ticket": {"id": 42, "status": "solved", "priority": "urgent"}},
    )
    scheduler.run_all()

    with tenant_auth.session_factory() as session:
        feedback = session.get(Feedback, feedback_id)
        assert feedback.status == "resolved"
        assert feedback.priority == "urgent"
        assert feedback.source_metadata["zendeskStatus"] == "solved"
        assert feedback.source_metadata["zendeskTicketId"] == "42"


def test_intercom_conversation_updates_add_comments(tenant_auth, event_processor, scheduler):
    org_id = tenant_auth.organization_id
    integration_id = _connect(tenant_auth, "INTERCOM", metadata={"appId": "app1"})
    conversation = {"id": "c-1", "state": "open"}

    created = event_processor.queue_event(
        org_id,
        integration_id,
        INTERCOM_CONVERSATION_CREATED,
        "c-1",
        {
            "conversation": conversation,
            "user": {"id": "u-1", "email": "ic@example.com", "name": "Ic"},
            "message": {"id": "m-1", "body": "<p>Need SSO support!</p>"},
        },
    )
    scheduler.run_all()
    event_processor.queue_event(
        org_id,
        integration_id,
        INTERCOM_CONVERSATION_UPDATED,
        "c-1",
        {"conversation": conversation, "message": {"id": "m-2", "body": "Any update?"}},
    )
    scheduler.run_all()

    feedback_id = uuid.UUID(_event(tenant_auth, created).result["feedbackId"])
    with tenant_auth.session_factory() as session:
        feedback = session.get(Feedback, feedback_id)
        assert feedback.title == "Need SSO support"
        assert feedback.source_metadata["intercomUrl"].endswith("/apps/app1/inbox/conversation/c-1")
        [comment] = session.query(Comment).filter(Comment.feedback_id == feedback_id).all()
        assert comment.content == "Any update?"
        assert comment.metadata_["source"] == "intercom"


def test_slack_reactions_upvote_feedback(tenant_auth, event_processor, scheduler):
    org_id = tenant_auth.organization_id
    integration_id = _connect(tenant_auth, "SLACK")
    with tenant_auth.session_factory.begin() as session:
        feedback = Feedback(
            organization_id=org_id,
            title="From Slack",
            source="slack",
            source_metadata={"slackMessageTs": "1700.1"},
        )
        session.add(feedback)
        session.flush()
        feedback_id = feedback.id

    for reaction in ("thumbsup", "eyes", "heart"):
        event_processor.queue_event(
            org_id, integration_id, SLACK_REACTION, None, {"reaction": reaction, "message_ts": "1700.1"}
        )
    scheduler.run_all()

    with tenant_auth.session_factory() as session:
        assert session.get(Feedback, feedback_id).upvote_count == 2


def test_recover_pending_events_after_restart(tenant_auth, event_processor, scheduler):
    org_id = tenant_auth.organization_id
    integration_id = _connect(tenant_auth, "SLACK")
    stopped = RetryScheduler(max_workers=1)
    stopped.shutdown()
    before_restart = IntegrationProcessor(
        tenant_auth.session_factory,
        connection_service_factory=event_processor.connection_service_factory,
        scheduler=stopped,
    )
    lost = before_restart.queue_event(org_id, integration_id, SLACK_MESSAGE, None, SLACK_DATA)
    assert _event(tenant_auth, lost).status == "PENDING"

    delayed, stuck, running, done = (
        event_processor.queue_event(org_id, integration_id, SLACK_MESSAGE, None, SLACK_DATA)
        for _ in range(4)
    )
    scheduler.jobs.clear()
    now = dt.datetime.now(dt.timezone.utc)
    with tenant_auth.session_factory.begin() as session:
        event = session.get(IntegrationEvent, delayed)
        event.attempts = 1
        event.next_attempt_at = now + dt.timedelta(seconds=10)
        event = session.get(IntegrationEvent, stuck)
        event.status = "PROCESSING"
        event.updated_at = now - dt.timedelta(hours=1)
        session.get(IntegrationEvent, running).status = "PROCESSING"
        session.get(IntegrationEvent, done).status = "COMPLETED"

    recovered = event_processor.recover_pending_events()

    assert sorted(recovered, key=str) == sorted([lost, delayed, stuck], key=str)
    delays = {key: delay for key, delay, _ in scheduler.jobs}
    assert delays[lost] == 0
    assert delays[stuck] == 0
    assert 5 < delays[delayed] <= 10
    assert _event(tenant_auth, stuck).status == "PENDING"
    assert _event(tenant_auth, running).status == "PROCESSING"

    scheduler.run_all()

    for event_id in (lost, delayed, stuck):
        assert _event(tenant_auth, event_id).status == "COMPLETED"
    assert _event(tenant_auth, delayed).attempts == 1


def test_assignment_notifies_slack_and_updates_zendesk(tenant_auth, event_processor, scheduler, providers):
    _connect(
        tenant_auth,
        "SLACK",
        sync_config={"slack": {"channelId": "C2", "notifyOnAssignment": True}},
    )
    _connect(tenant_auth, "ZENDESK")
    snapshot = {"id": str(uuid.uuid4()), "title": "Dark mode", "sourceMetadata": {"zendeskTicketId": "42"}}

    queued = event_processor.dispatch_feedback_event(
        tenant_auth.organization_id, FEEDBACK_ASSIGNED, snapshot, assigneeId="agent-9", assigneeName="Sam"
    )
    scheduler.run_all()

    assert len(queued) == 2
    assert providers["SLACK"].messages == [("C2", '📋 Feedback "Dark mode" has been assigned to Sam')]
    assert providers["ZENDESK"].updates == [("42", {"assignee_id": "agent-9"})]
    for event_id in queued:
        event = _event(tenant_auth, event_id)
        assert event.status == "COMPLETED"
        assert event.result["action"] == "assignment_synced"
        assert event.result["assigneeId"] == "agent-9"


def test_new_feedback_opens_intercom_conversation(tenant_auth, event_processor, scheduler, providers):
    _connect(tenant_auth, "INTERCOM", sync_config={"intercom": {"enabled": True}})
    with tenant_auth.session_factory.begin() as session:
        feedback = Feedback(
            organization_id=tenant_auth.organization_id,
            title="Bulk export",
            description="Need all rows",
            source="manual",
        )
        session.add(feedback)
        session.flush()
        feedback_id = feedback.id
    snapshot = {
        "id": str(feedback_id),
        "title": "Bulk export",
        "description": "Need all rows",
        "customerEmail": "ops@example.com",
        "customerName": "Ops",
        "sourceMetadata": {},
    }

    [event_id] = event_processor.dispatch_feedback_event(
        tenant_auth.organization_id, FEEDBACK_CREATED, snapshot
    )
    scheduler.run_all()

    intercom = providers["INTERCOM"]
    assert intercom.contacts == [
        {
            "role": "user",
            "email": "ops@example.com",
            "name": "Ops",
            "custom_attributes": {"feedback_source": "feedbackhub"},
        }
    ]
    [conversation] = intercom.conversations
    assert conversation["from"] == {"type": "user", "id": "contact-1"}
    assert conversation["subject"] == "Bulk export"
    assert conversation["body"] == "**Bulk export**\n\nNeed all rows"
    assert _event(tenant_auth, event_id).result["syncResults"] == [
        {"service": "intercom", "success": True, "conversationId": "conv-7"}
    ]
    with tenant_auth.session_factory() as session:
        assert session.get(Feedback, feedback_id).source_metadata["intercomConversationId"] == "conv-7"


def test_status_change_updates_zendesk_and_intercom(tenant_auth, event_processor, scheduler, providers):
    _connect(tenant_auth, "ZENDESK")
    _connect(tenant_auth, "INTERCOM")
    snapshot = {
        "id": str(uuid.uuid4()),
        "title": "Bulk export",
        "sourceMetadata": {"zendeskTicketId": "42", "intercomConversationId": "conv-7"},
    }

    queued = event_processor.dispatch_feedback_event(
        tenant_auth.organization_id,
        FEEDBACK_STATUS_CHANGED,
        snapshot,
        oldStatus="in_progress",
        newStatus="resolved",
    )
    scheduler.run_all()

    assert len(queued) == 2
    assert providers["ZENDESK"].updates == [("42", {"status": "solved"})]
    assert providers["INTERCOM"].updates == [("conv-7", {"state": "closed"})]
    for event_id in queued:
        assert _event(tenant_auth, event_id).result["action"] == "status_change_synced"


def test_customer_events_are_skipped(tenant_auth, event_processor, scheduler):
    integration_id = _connect(tenant_auth, "SLACK")
    event_id = event_processor.queue_event(
        tenant_auth.organization_id, integration_id, CUSTOMER_CREATED, None, {"customer": {"id": "c-1"}}
    )

    scheduler.run_all()

    event = _event(tenant_auth, event_id)
    assert event.status == "SKIPPED"
    assert event.result == {"message": "No outbound action for customer events"}
    assert event.processed_at is not None
    assert _metrics(tenant_auth, integration_id)["successCount"] == 1


def _http_error(status_code):
    response = requests.Response()
    response.status_code = status_code
    return requests.HTTPError(response=response)


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (requests.ConnectionError(), True),
        (requests.Timeout(), True),
        (OAuthProviderError("ratelimited", status_code=429), True),
        (OAuthProviderError("server", status_code=503), True),
        (OAuthProviderError("invalid_auth", status_code=401), False),
        (OAuthProviderError("unknown"), False),
        (_http_error(502), True),
        (_http_error(404), False),
        (ValueError("bad payload"), False),
    ],
)
def test_should_retry_error(exc, expected):
    assert should_retry_error(exc) is expected
