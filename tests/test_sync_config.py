import logging
import uuid

import pytest

from feedbackhub.errors import IntegrationNotFoundError, ResourceNotFoundError, ValidationError
from feedbackhub.integrations import FEEDBACK_CREATED, SyncConfigService
from feedbackhub.integrations.sync_config import (
    DEFAULT_OPTIONS,
    apply_transform,
    condition_matches,
    validate_sync_rule,
)
from feedbackhub.models import Integration, IntegrationEvent

RULE = {
    "name": "Bugs from support",
    "conditions": [{"field": "type", "operator": "equals", "value": "problem", "source": "external"}],
    "actions": [
        {
            "type": "create",
            "target": "feedback",
            "mapping": [
                {"sourceField": "subject", "targetField": "title", "transform": "trim"},
                {"sourceField": "requester.email", "targetField": "customerEmail", "transform": "lowercase"},
                {"sourceField": "missing", "targetField": "sourceMetadata.origin", "defaultValue": "zendesk"},
            ],
        }
    ],
}


def _integration(tenant_auth, integration_type="ZENDESK", *, sync_config=None, metadata=None, org_id=None):
    with tenant_auth.session_factory() as session:
        integration = Integration(
            organization_id=org_id or tenant_auth.organization_id,
            type=integration_type,
            name=integration_type.title(),
            sync_config=sync_config or {},
            metadata_=metadata or {},
        )
        session.add(integration)
        session.commit()
        return integration.id


@pytest.fixture
def db(tenant_auth):
    with tenant_auth.session_factory() as session:
        yield session


def test_defaults_depend_on_integration_type(tenant_auth, db):
    service = SyncConfigService(db)
    org_id = tenant_auth.organization_id

    slack = service.get_sync_config(_integration(tenant_auth, "SLACK"), org_id)
    intercom = service.get_sync_config(_integration(tenant_auth, "INTERCOM"), org_id)

    assert slack["enabled"] is True
    assert slack["syncDirection"] == "BIDIRECTIONAL"
    assert slack["options"] == DEFAULT_OPTIONS
    assert [(rule["id"], rule["enabled"]) for rule in slack["rules"]] == [
        ("slack-message-to-feedback", True),
        ("feedback-to-slack-notification", False),
    ]
    assert slack["filters"] == {"inbound": [], "outbound": []}
    assert [rule["id"] for rule in intercom["rules"]] == ["intercom-conversation-to-feedback"]
    assert intercom["fieldMappings"]["outbound"] == [
        {"sourceField": "title", "targetField": "subject"},
        {"sourceField": "description", "targetField": "body"},
    ]
    assert slack["organizationId"] == str(org_id)


def test_metadata_is_derived_from_health_counters(tenant_auth, db):
    integration_id = _integration(
        tenant_auth,
        metadata={
            "metrics": {"successCount": 8, "failureCount": 2},
            "lastSyncAt": "2026-01-02T03:04:05+00:00",
            "lastError": "boom",
        },
    )

    config = SyncConfigService(db).get_sync_config(integration_id, tenant_auth.organization_id)

    assert config["metadata"] == {
        "totalSyncedItems": 10,
        "errorCount": 2,
        "lastSyncAt": "2026-01-02T03:04:05+00:00",
        "lastError": "boom",
    }


def test_other_organizations_cannot_read_the_config(tenant_auth, db):
    other_org = tenant_auth.create_tenant("Other", "other")
    integration_id = _integration(tenant_auth, org_id=other_org)

    with pytest.raises(IntegrationNotFoundError):
        SyncConfigService(db).get_sync_config(integration_id, tenant_auth.organization_id)


def test_update_keeps_service_switches_and_ignores_metadata(tenant_auth, db, caplog):
    integration_id = _integration(tenant_auth, sync_config={"zendesk": {"enabled": True}})
    service = SyncConfigService(db)

    with caplog.at_level(logging.INFO, logger="feedbackhub.integrations.sync_config"):
        config = service.update_sync_config(
            integration_id,
            tenant_auth.organization_id,
            {
                "syncDirection": "OUTBOUND_ONLY",
                "options": {"batchSize": 10},
                "metadata": {"errorCount": 99},
                "integrationId": "spoofed",
            },
        )
    db.commit()

    assert config["syncDirection"] == "OUTBOUND_ONLY"
    assert config["options"] == {**DEFAULT_OPTIONS, "batchSize": 10}
    assert config["metadata"]["errorCount"] == 0
    assert config["integrationId"] == str(integration_id)
    stored = db.get(Integration, integration_id).sync_config
    assert stored["zendesk"] == {"enabled": True}
    assert "metadata" not in stored
    assert [
        record.event_code
        for record in caplog.records
        if record.name == "feedbackhub.integrations.sync_config" and hasattr(record, "event_code")
    ] == ["SYNC_CONFIG_UPDATED"]


@pytest.mark.parametrize(
    "changes",
    [
        {"syncDirection": "SIDEWAYS"},
        {"enabled": "yes"},
        {"rules": [{"name": "", "conditions": [], "actions": []}]},
    ],
)
def test_update_rejects_invalid_values(tenant_auth, db, changes):
    integration_id = _integration(tenant_auth)

    with pytest.raises(ValidationError):
        SyncConfigService(db).update_sync_config(integration_id, tenant_auth.organization_id, changes)


def test_validate_sync_rule_lists_every_problem():
    errors = validate_sync_rule(
        {
            "name": "  ",
            "trigger": "SCHEDULED",
            "conditions": [{"value": 1}],
            "actions": [{"type": "create"}],
        }
    )

    assert errors == [
        "Rule name is required",
        "Schedule is required for scheduled triggers",
        "Condition 1: field is required",
        "Condition 1: operator is required",
        "Action 1: target is required",
        "Action 1: at least one field mapping is required",
    ]
    assert validate_sync_rule({}) == [
        "Rule name is required",
        "At least one condition is required",
        "At least one action is required",
    ]
    assert validate_sync_rule(RULE) == []


def test_save_and_delete_rules(tenant_auth, db):
    integration_id = _integration(tenant_auth)
    org_id = tenant_auth.organization_id
    service = SyncConfigService(db)

    saved = service.save_sync_rule(integration_id, org_id, RULE)
    assert saved["id"].startswith("rule_")
    assert saved["enabled"] is True
    assert saved["trigger"] == "REAL_TIME"
    assert saved["direction"] == "BIDIRECTIONAL"

    renamed = service.save_sync_rule(integration_id, org_id, {**saved, "name": "Renamed"})
    rules = service.get_sync_config(integration_id, org_id)["rules"]
    assert [rule["id"] for rule in rules] == [
        "zendesk-ticket-to-feedback",
        "feedback-to-zendesk-update",
        saved["id"],
    ]
    assert rules[-1]["name"] == renamed["name"] == "Renamed"

    config = service.delete_sync_rule(integration_id, org_id, "feedback-to-zendesk-update")
    assert [rule["id"] for rule in config["rules"]] == ["zendesk-ticket-to-feedback", saved["id"]]

    with pytest.raises(ResourceNotFoundError, match="Sync rule not found"):
        service.delete_sync_rule(integration_id, org_id, "feedback-to-zendesk-update")

    with pytest.raises(ValidationError) as excinfo:
        service.save_sync_rule(integration_id, org_id, {"name": "Empty"})
    assert excinfo.value.metadata["errors"] == [
        "At least one condition is required",
        "At least one action is required",
    ]


def test_rule_test_maps_sample_data():
    outcome = SyncConfigService.test_sync_rule(
        RULE,
        {"type": "problem", "subject": "  Export crashes ", "requester": {"email": "Ops@Example.com"}},
    )

    assert outcome == {
        "success": True,
        "result": {
            "matched": True,
            "conditionsMatched": 1,
            "actionResults": [
                {
                    "type": "create",
                    "target": "feedback",
                    "data": {
                        "title": "Export crashes",
                        "customerEmail": "ops@example.com",
                        "sourceMetadata": {"origin": "zendesk"},
                    },
                    "options": None,
                }
            ],
        },
    }


def test_rule_test_reports_mismatch_and_invalid_rules():
    mismatch = SyncConfigService.test_sync_rule(RULE, {"type": "question"})
    invalid = SyncConfigService.test_sync_rule({"name": "x"}, {})
    bad_regex = SyncConfigService.test_sync_rule(
        {**RULE, "conditions": [{"field": "subject", "operator": "regex", "value": "("}]},
        {"subject": "x"},
    )

    assert mismatch == {
        "success": True,
        "result": {"matched": False, "reason": "Sample data does not match rule conditions"},
    }
    assert invalid == {
        "success": False,
        "error": "Validation failed: At least one condition is required, At least one action is required",
    }
    assert bad_regex["success"] is False


@pytest.mark.parametrize(
    ("operator", "expected", "value", "matches"),
    [
        ("equals", "open", "open", True),
        ("contains", "port", "export", True),
        ("contains", "1", 123, False),
        ("starts_with", "ex", "export", True),
        ("regex", r"^\d+$", "123", True),
        ("regex", ".*", None, False),
        ("in", ["a", "b"], "b", True),
        ("in", "ab", "a", False),
        ("not_in", ["bot_message"], None, True),
        ("between", [1, 2], 1, False),
    ],
)
def test_condition_operators(operator, expected, value, matches):
    condition = {"field": "item.value", "operator": operator, "value": expected}

    assert condition_matches(condition, {"item": {"value": value}}) is matches


@pytest.mark.parametrize(
    ("transform", "value", "expected"),
    [
        ("uppercase", "abc", "ABC"),
        ("trim", 5, 5),
        ("extract_email", "Pat <pat@example.com>", "pat@example.com"),
        ("extract_email", "no address", None),
        ("parse_date", "2026-03-01T10:00:00Z", "2026-03-01T10:00:00+00:00"),
        ("custom", "kept", "kept"),
    ],
)
def test_transforms(transform, value, expected):
    assert apply_transform(value, transform) == expected


def test_stats_summarise_rules_and_counters(tenant_auth, db):
    integration_id = _integration(
        tenant_auth, "SLACK", metadata={"metrics": {"successCount": 2, "failureCount": 1}}
    )

    stats = SyncConfigService(db).get_sync_stats(integration_id, tenant_auth.organization_id)

    assert stats["totalRules"] == 2
    assert stats["activeRules"] == 1
    assert stats["totalSyncedItems"] == 3
    assert stats["errorRate"] == "33.33"
    assert stats["ruleBreakdown"][0] == {
        "id": "slack-message-to-feedback",
        "name": "Convert Slack Messages to Feedback",
        "enabled": True,
        "trigger": "REAL_TIME",
        "direction": "INBOUND_ONLY",
        "conditionCount": 2,
        "actionCount": 1,
    }
    empty = SyncConfigService(db).get_sync_stats(_integration(tenant_auth), tenant_auth.organization_id)
    assert empty["errorRate"] == "0.00"


def test_manual_sync_selects_enabled_rules(tenant_auth, db):
    integration_id = _integration(tenant_auth)
    org_id = tenant_auth.organization_id
    user_id = tenant_auth.users["operator"]
    service = SyncConfigService(db)
    service.save_sync_rule(integration_id, org_id, {**RULE, "id": "two-way"})

    everything = service.trigger_manual_sync(integration_id, org_id, user_id)
    inbound = service.trigger_manual_sync(integration_id, org_id, user_id, direction="INBOUND_ONLY")
    outbound = service.trigger_manual_sync(integration_id, org_id, user_id, direction="OUTBOUND_ONLY")
    picked = service.trigger_manual_sync(integration_id, org_id, user_id, rule_ids=["two-way"])

    assert everything["syncJobId"].startswith(f"sync_{integration_id}_")
    assert everything["status"] == "queued"
    assert everything["triggeredBy"] == str(user_id)
    assert [rule["id"] for rule in everything["rules"]] == ["zendesk-ticket-to-feedback", "two-way"]
    assert inbound["triggeredRules"] == 2
    assert [rule["id"] for rule in outbound["rules"]] == ["two-way"]
    assert picked["rules"] == [{"id": "two-way", "name": "Bugs from support"}]
    with pytest.raises(ValidationError):
        service.trigger_manual_sync(integration_id, org_id, user_id, direction="SIDEWAYS")


def test_disabled_or_inbound_only_config_stops_outbound_dispatch(tenant_auth, processor, scheduler):
    org_id = tenant_auth.organization_id
    _integration(tenant_auth, "SLACK", sync_config={"slack": {"enabled": True}})
    _integration(tenant_auth, "ZENDESK", sync_config={"zendesk": {"enabled": True}, "enabled": False})
    _integration(
        tenant_auth,
        "INTERCOM",
        sync_config={"intercom": {"enabled": True}, "syncDirection": "INBOUND_ONLY"},
    )

    queued = processor.dispatch_feedback_event(org_id, FEEDBACK_CREATED, {"id": str(uuid.uuid4())})

    assert len(queued) == 1
    [(key, _, _)] = scheduler.jobs
    assert key == queued[0]
    with tenant_auth.session_factory() as session:
        event = session.get(IntegrationEvent, queued[0])
        assert session.get(Integration, event.integration_id).type == "SLACK"


def test_sync_api(client, tenant_auth):
    integration_id = _integration(tenant_auth, "SLACK")
    base = f"/api/integrations/sync/{integration_id}"
    viewer = tenant_auth.header("viewer")
    operator = tenant_auth.header("operator")

    config = client.get(f"{base}/config", headers=viewer)
    assert config.status_code == 200
    assert config.json()["success"] is True
    assert config.json()["data"]["rules"][0]["id"] == "slack-message-to-feedback"

    assert client.put(f"{base}/config", json={"enabled": False}, headers=viewer).status_code == 403
    updated = client.put(f"{base}/config", json={"enabled": False}, headers=operator)
    assert updated.json()["data"]["enabled"] is False

    saved = client.post(f"{base}/rules", json={**RULE, "id": "bugs"}, headers=operator)
    assert saved.status_code == 200
    assert saved.json()["data"]["id"] == "bugs"
    invalid = client.post(f"{base}/rules", json={"name": "x"}, headers=operator)
    assert invalid.status_code == 400
    assert invalid.json()["error"]["metadata"]["errors"] == [
        "At least one condition is required",
        "At least one action is required",
    ]

    tested = client.post(
        f"{base}/test-rule", json={"rule": RULE, "sampleData": {"type": "problem"}}, headers=viewer
    )
    assert tested.json()["data"]["result"]["matched"] is True

    stats = client.get(f"{base}/stats", headers=viewer).json()["data"]
    assert stats["totalRules"] == 3
    assert stats["enabled"] is False

    job = client.post(f"{base}/sync", json={"ruleIds": ["bugs"]}, headers=operator).json()["data"]
    assert job["rules"] == [{"id": "bugs", "name": "Bugs from support"}]

    assert client.delete(f"{base}/rules/bugs", headers=operator).status_code == 200
    assert client.delete(f"{base}/rules/bugs", headers=operator).status_code == 404
    assert client.get(f"/api/integrations/sync/{uuid.uuid4()}/config", headers=viewer).status_code == 404
