import hashlib
import hmac
import json
import time

import pytest

from feedbackhub.config import reset_integration_settings_cache
from feedbackhub.models import IntegrationEvent
from feedbackhub.oauth import OAuthConnectionService
from feedbackhub.routers.webhooks import extract_zendesk_subdomain


@pytest.fixture
def connect(tenant_auth, client):
    def _connect(integration_type, *, metadata=None, config=None, is_active=True):
        with tenant_auth.session_factory() as session:
            connection = OAuthConnectionService(session).create_connection(
                tenant_auth.organization_id,
                integration_type,
                {"access_token": "token"},
                metadata=metadata,
                config=config,
                is_active=is_active,
            )
            session.commit()
            return connection.id

    return _connect


def _events(tenant_auth):
    with tenant_auth.session_factory() as session:
        return session.query(IntegrationEvent).order_by(IntegrationEvent.created_at).all()


def _slack_post(client, payload, secret=None, headers=None):
    body = json.dumps(payload).encode()
    headers = dict(headers or {})
    if secret:
        timestamp = str(int(time.time()))
        digest = hmac.new(secret.encode(), f"v0:{timestamp}:".encode() + body, hashlib.sha256).hexdigest()
        headers.update({"X-Slack-Request-Timestamp": timestamp, "X-Slack-Signature": f"v0={digest}"})
    return client.post(
        "/api/webhooks/slack", content=body, headers={"Content-Type": "application/json", **headers}
    )


def test_slack_url_verification(client):
    res = _slack_post(client, {"type": "url_verification", "challenge": "abc123"})

    assert res.status_code == 200
    assert res.json() == {"challenge": "abc123"}


def test_slack_rejects_invalid_json(client):
    res = client.post("/api/webhooks/slack", content=b"not json")

    assert res.status_code == 400
    assert res.json() == {"error": "Invalid JSON payload"}


def test_slack_message_is_queued(client, tenant_auth, connect, scheduler):
    integration_id = connect("SLACK", metadata={"teamId": "T1"})

    res = _slack_post(
        client,
        {
            "team_id": "T1",
            "api_app_id": "A1",
            "event": {"type": "message", "user": "U1", "channel": "C1", "text": "Love it", "ts": "1700.1"},
        },
    )

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    [event] = _events(tenant_auth)
    assert str(event.id) == body["eventId"]
    assert event.integration_id == integration_id
    assert event.event_type == "SLACK_MESSAGE"
    assert event.source_id == "1700.1"
    assert event.data["text"] == "Love it"
    assert event.metadata_["teamId"] == "T1"
    assert [key for key, _, _ in scheduler.jobs] == [event.id]


def test_slack_reaction_is_queued(client, tenant_auth, connect):
    connect("SLACK", metadata={"teamId": "T1"})

    res = _slack_post(
        client,
        {
            "team_id": "T1",
            "event": {"type": "reaction_added", "reaction": "+1", "user": "U2", "item": {"ts": "1700.1", "channel": "C1"}},
        },
    )

    assert res.status_code == 200
    [event] = _events(tenant_auth)
    assert event.event_type == "SLACK_REACTION"
    assert event.data == {"reaction": "+1", "message_ts": "1700.1", "channel": "C1", "user": "U2"}


@pytest.mark.parametrize(
    ("event", "headers"),
    [
        ({"type": "message", "subtype": "channel_join", "ts": "1"}, {}),
        ({"type": "message", "bot_id": "B1", "ts": "1"}, {}),
        ({"type": "message", "text": "again", "ts": "1"}, {"X-Slack-Retry-Num": "1"}),
        ({"type": "app_mention", "ts": "1"}, {}),
    ],
)
def test_slack_events_that_are_acknowledged_but_ignored(client, tenant_auth, connect, event, headers):
    connect("SLACK", metadata={"teamId": "T1"})

    res = _slack_post(client, {"team_id": "T1", "event": event}, headers=headers)

    assert res.status_code == 200
    assert res.json() == {"success": True}
    assert _events(tenant_auth) == []


def test_slack_unknown_team(client, connect):
    connect("SLACK", metadata={"teamId": "T1"}, is_active=False)

    res = _slack_post(client, {"team_id": "T1", "event": {"type": "message", "ts": "1"}})

    assert res.status_code == 404
    assert res.json() == {"error": "Integration not found"}


def test_slack_signature_is_enforced(client, tenant_auth, connect, monkeypatch):
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "signing-secret")
    reset_integration_settings_cache()
    connect("SLACK", metadata={"teamId": "T1"})
    payload = {"team_id": "T1", "event": {"type": "message", "text": "hi", "ts": "1"}}

    unsigned = _slack_post(client, payload)
    assert unsigned.status_code == 401
    assert unsigned.json() == {"error": "Invalid signature"}

    forged = _slack_post(client, payload, secret="wrong-secret")
    assert forged.status_code == 401

    signed = _slack_post(client, payload, secret="signing-secret")
    assert signed.status_code == 200
    assert len(_events(tenant_auth)) == 1


def _ticket(**overrides):
    ticket = {
        "id": 42,
        "subject": "Export broken",
        "status": "new",
        "priority": "high",
        "requester": {"id": 7, "email": "req@example.com"},
        "created_at": "2024-05-01T10:00:00Z",
        "updated_at": "2024-05-01T10:00:00Z",
        "internal_note": "dropped",
    }
    ticket.update(overrides)
    return ticket


def test_zendesk_ticket_created_and_updated(client, tenant_auth, connect):
    integration_id = connect("ZENDESK", config={"subdomain": "acme"})
    headers = {"User-Agent": "Zendesk/acme Webhook"}

    created = client.post("/api/webhooks/zendesk", json={"ticket": _ticket()}, headers=headers)
    updated = client.post(
        "/api/webhooks/zendesk",
        json={"ticket": _ticket(status="solved", updated_at="2024-05-02T09:00:00Z")},
        headers=headers,
    )

    assert created.status_code == 200
    assert updated.status_code == 200
    first, second = _events(tenant_auth)
    assert first.integration_id == integration_id
    assert first.event_type == "ZENDESK_TICKET_CREATED"
    assert second.event_type == "ZENDESK_TICKET_UPDATED"
    assert first.source_id == "42"
    assert "internal_note" not in first.data["ticket"]
    assert second.data["ticket"]["status"] == "solved"
    assert first.metadata_["subdomain"] == "acme"


def test_zendesk_subdomain_from_referer(client, tenant_auth, connect):
    connect("ZENDESK", metadata={"subdomain": "acme"})

    res = client.post(
        "/api/webhooks/zendesk",
        json={"ticket": _ticket()},
        headers={"Referer": "https://acme.zendesk.com/agent/tickets/42"},
    )

    assert res.status_code == 200
    assert len(_events(tenant_auth)) == 1


def test_zendesk_webhook_errors(client, connect):
    connect("ZENDESK", config={"subdomain": "acme"})

    anonymous = client.post("/api/webhooks/zendesk", json={"ticket": _ticket()})
    assert anonymous.status_code == 400
    assert anonymous.json() == {"error": "Could not determine Zendesk subdomain"}

    unknown = client.post(
        "/api/webhooks/zendesk", json={"ticket": _ticket(), "account": {"subdomain": "globex"}}
    )
    assert unknown.status_code == 404

    no_ticket = client.post("/api/webhooks/zendesk", json={"account": {"subdomain": "acme"}})
    assert no_ticket.status_code == 400
    assert no_ticket.json() == {"error": "Missing ticket"}


def test_extract_zendesk_subdomain():
    assert extract_zendesk_subdomain({"user-agent": "Zendesk/acme"}, {}) == "acme"
    assert extract_zendesk_subdomain({"origin": "https://globex.zendesk.com"}, {}) == "globex"
    assert extract_zendesk_subdomain({}, {"account": {"subdomain": "initech"}}) == "initech"
    assert extract_zendesk_subdomain({}, {}) is None


def _intercom_payload(topic="conversation.user.created"):
    return {
        "type": "notification_event",
        "topic": topic,
        "app_id": "app1",
        "data": {
            "item": {
                "id": "c-1",
                "user": {"id": "u-1", "email": "ic@example.com"},
                "conversation_message": {"id": "m-1", "body": "<p>Hello</p>"},
            }
        },
    }


def test_intercom_conversation_is_queued(client, tenant_auth, connect):
    integration_id = connect("INTERCOM", metadata={"appId": "app1"})

    res = client.post("/api/webhooks/intercom", json=_intercom_payload())
    replied = client.post("/api/webhooks/intercom", json=_intercom_payload("conversation.admin.replied"))
    ignored = client.post("/api/webhooks/intercom", json=_intercom_payload("contact.created"))

    assert res.status_code == replied.status_code == ignored.status_code == 200
    created, updated = _events(tenant_auth)
    assert created.integration_id == integration_id
    assert created.event_type == "INTERCOM_CONVERSATION_CREATED"
    assert created.source_id == "c-1"
    assert created.data["message"]["body"] == "<p>Hello</p>"
    assert updated.event_type == "INTERCOM_CONVERSATION_UPDATED"


def test_intercom_signature_and_routing(client, tenant_auth, connect, monkeypatch):
    monkeypatch.setenv("INTERCOM_WEBHOOK_SECRET", "hook-secret")
    reset_integration_settings_cache()
    connect("INTERCOM", metadata={"appId": "app1"})
    body = json.dumps(_intercom_payload()).encode()
    signature = "sha1=" + hmac.new(b"hook-secret", body, hashlib.sha1).hexdigest()
    headers = {"Content-Type": "application/json"}

    unsigned = client.post("/api/webhooks/intercom", content=body, headers=headers)
    assert unsigned.status_code == 401

    signed = client.post(
        "/api/webhooks/intercom", content=body, headers={**headers, "X-Hub-Signature": signature}
    )
    assert signed.status_code == 200

    other_app = client.post(
        "/api/webhooks/intercom",
        content=body,
        headers={**headers, "X-Hub-Signature": signature, "X-Intercom-App-Id": "app2"},
    )
    assert other_app.status_code == 404
    assert len(_events(tenant_auth)) == 1


def test_webhooks_health(client):
    res = client.get("/api/webhooks/health")

    assert res.status_code == 200
    assert res.json()["status"] == "ok"
