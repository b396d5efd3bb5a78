"""Per-integration sync configuration and rule evaluation.

The configuration is stored in ``integrations.sync_config`` next to the
per-service outbound switches (``slack``, ``zendesk``, ``intercom``) read by
:meth:`IntegrationProcessor.dispatch_feedback_event`. Reads merge the stored
values over type-specific defaults, so an integration that was never
configured still reports a complete config.
"""

from __future__ import annotations

import copy
import datetime as dt
import logging
import re
import time
import uuid
from enum import Enum
from typing import Any, Iterable

from sqlalchemy.orm import Session

from feedbackhub.errors import IntegrationNotFoundError, ResourceNotFoundError, ValidationError
from feedbackhub.models import Integration

from .health import stored_metrics

logger = logging.getLogger(__name__)


class SyncDirection(str, Enum):
    BIDIRECTIONAL = "BIDIRECTIONAL"
    INBOUND_ONLY = "INBOUND_ONLY"
    OUTBOUND_ONLY = "OUTBOUND_ONLY"


class SyncTrigger(str, Enum):
    REAL_TIME = "REAL_TIME"
    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"


DIRECTIONS = tuple(direction.value for direction in SyncDirection)


STORED_FIELDS = (
    "enabled",
    "syncDirection",
    "rules",
    "fieldMappings",
    "filters",
    "options",
    "slack",
    "zendesk",
    "intercom",
)

DEFAULT_OPTIONS: dict[str, Any] = {
    "deduplication": True,
    "autoMergeCustomers": True,
    "createMissingCustomers": True,
    "notifyOnSync": False,
    "batchSize": 50,
    "rateLimitDelay": 1000,
}

EMAIL_PATTERN = re.compile(r"[\w.-]+@[\w.-]+\.\w+")


def _condition(field: str, operator: str, value: Any, source: str = "external") -> dict[str, Any]:
    return {"field": field, "operator": operator, "value": value, "source": source}


def _map(source: str, target: str, **extra: Any) -> dict[str, Any]:
    return {"sourceField": source, "targetField": target, **extra}


def _rule(
    rule_id: str,
    name: str,
    *,
    enabled: bool,
    direction: SyncDirection,
    conditions: list[dict[str, Any]],
    actions: list[dict[str, Any]],
) -> dict[str, Any]:
    return {
        "id": rule_id,
        "name": name,
        "enabled": enabled,
        "trigger": SyncTrigger.REAL_TIME.value,
        "direction": direction.value,
        "conditions": conditions,
        "actions": actions,
    }


TYPE_DEFAULTS: dict[str, dict[str, Any]] = {
    "SLACK": {
        "rules": [
            _rule(
                "slack-message-to-feedback",
                "Convert Slack Messages to Feedback",
                enabled=True,
                direction=SyncDirection.INBOUND_ONLY,
                conditions=[
                    _condition("channel_type", "in", ["public_channel", "private_channel"]),
                    _condition("subtype", "not_in", ["bot_message", "channel_join", "channel_leave"]),
                ],
                actions=[
                    {
                        "type": "create",
                        "target": "feedback",
                        "mapping": [
                            _map("text", "description", required=True),
                            _map("user.profile.email", "customerEmail"),
                            _map("user.profile.display_name", "customerName"),
                            _map("channel", "sourceMetadata.slackChannel"),
                            _map("ts", "sourceMetadata.slackMessageTs"),
                        ],
                    }
                ],
            ),
            _rule(
                "feedback-to-slack-notification",
                "Notify Slack on Feedback Status Change",
                enabled=False,
                direction=SyncDirection.OUTBOUND_ONLY,
                conditions=[_condition("status", "in", ["resolved", "in_progress"], "internal")],
                actions=[
                    {
                        "type": "notify",
                        "target": "integration",
                        "mapping": [
                            _map("title", "message.text"),
                            _map("status", "message.status"),
                        ],
                        "options": {
                            "channelId": "",
                            "messageTemplate": '✅ Feedback "{title}" status changed to {status}',
                        },
                    }
                ],
            ),
        ],
        "fieldMappings": {
            "inbound": [
                _map("text", "description", required=True),
                _map("user.profile.email", "customerEmail"),
                _map("user.profile.display_name", "customerName"),
                _map("channel", "source", defaultValue="slack"),
            ],
            "outbound": [
                _map("title", "text"),
                _map("description", "text", transform="trim"),
                _map("status", "status"),
            ],
        },
    },
    "ZENDESK": {
        "rules": [
            _rule(
                "zendesk-ticket-to-feedback",
                "Convert Zendesk Tickets to Feedback",
                enabled=True,
                direction=SyncDirection.INBOUND_ONLY,
                conditions=[
                    _condition("type", "in", ["question", "problem", "incident"]),
                    _condition("status", "not_in", ["spam", "deleted"]),
                ],
                actions=[
                    {
                        "type": "create",
                        "target": "feedback",
                        "mapping": [
                            _map("subject", "title", required=True),
                            _map("description", "description", required=True),
                            _map("requester.email", "customerEmail"),
                            _map("requester.name", "customerName"),
                            _map("priority", "priority", transform="lowercase"),
                            _map("id", "sourceMetadata.zendeskTicketId"),
                        ],
                    }
                ],
            ),
            _rule(
                "feedback-to-zendesk-update",
                "Update Zendesk Tickets on Feedback Changes",
                enabled=False,
                direction=SyncDirection.OUTBOUND_ONLY,
                conditions=[_condition("sourceMetadata.zendeskTicketId", "not_in", [None, ""], "internal")],
                actions=[
                    {
                        "type": "update",
                        "target": "integration",
                        "mapping": [_map("status", "status"), _map("priority", "priority")],
                    }
                ],
            ),
        ],
        "fieldMappings": {
            "inbound": [
                _map("subject", "title", required=True),
                _map("description", "description", required=True),
                _map("requester.email", "customerEmail"),
                _map("requester.name", "customerName"),
                _map("priority", "priority"),
                _map("type", "category"),
            ],
            "outbound": [
                _map("title", "subject"),
                _map("status", "status"),
                _map("priority", "priority"),
            ],
        },
    },
    "INTERCOM": {
        "rules": [
            _rule(
                "intercom-conversation-to-feedback",
                "Convert Intercom Conversations to Feedback",
                enabled=True,
                direction=SyncDirection.INBOUND_ONLY,
                conditions=[
                    _condition("state", "equals", "open"),
                    _condition("source.type", "equals", "conversation"),
                ],
                actions=[
                    {
                        "type": "create",
                        "target": "feedback",
                        "mapping": [
                            _map("conversation_message.body", "description", required=True),
                            _map("user.email", "customerEmail"),
                            _map("user.name", "customerName"),
                            _map("id", "sourceMetadata.intercomConversationId"),
                        ],
                    }
                ],
            ),
        ],
        "fieldMappings": {
            "inbound": [
                _map("conversation_message.body", "description", required=True),
                _map("user.email", "customerEmail"),
                _map("user.name", "customerName"),
                _map("source.type", "source", defaultValue="intercom"),
            ],
            "outbound": [
                _map("title", "subject"),
                _map("description", "body"),
            ],
        },
    },
}


def default_sync_config(integration_type: str) -> dict[str, Any]:
    """Fresh default config for ``integration_type``."""

    config: dict[str, Any] = {
        "enabled": True,
        "syncDirection": SyncDirection.BIDIRECTIONAL.value,
        "rules": [],
        "fieldMappings": {"inbound": [], "outbound": []},
        "filters": {"inbound": [], "outbound": []},
        "options": dict(DEFAULT_OPTIONS),
    }
    config.update(copy.deepcopy(TYPE_DEFAULTS.get(integration_type.upper(), {})))
    return config


def allows_outbound(sync_config: dict[str, Any] | None) -> bool:
    """False when the stored config turns sync off or only accepts inbound data."""

    stored = sync_config or {}
    if stored.get("enabled") is False:
        return False
    return stored.get("syncDirection") != SyncDirection.INBOUND_ONLY.value


# ----------------------------------------------------------------------
# Rule evaluation
# ----------------------------------------------------------------------


def get_path(data: Any, path: str) -> Any:
    current = data
    for key in path.split("."):
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
    return current


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    *parents, last = path.split(".")
    target = data
    for key in parents:
        child = target.get(key)
        if not isinstance(child, dict):
            child = target[key] = {}
        target = child
    target[last] = value


def _parse_date(value: Any) -> str:
    if isinstance(value, (int, float)):
        parsed = dt.datetime.fromtimestamp(value / 1000, tz=dt.timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid date: {value}") from None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc).isoformat()


def apply_transform(value: Any, transform: str | None) -> Any:
    """Apply a field transform; unknown transforms pass the value through."""

    if not transform or value is None:
        return value
    if transform == "lowercase":
        return value.lower() if isinstance(value, str) else value
    if transform == "uppercase":
        return value.upper() if isinstance(value, str) else value
    if transform == "trim":
        return value.strip() if isinstance(value, str) else value
    if transform == "extract_email":
        match = EMAIL_PATTERN.search(value) if isinstance(value, str) else None
        return match.group(0) if match else None
    if transform == "parse_date":
        return _parse_date(value)
    return value


def condition_matches(condition: dict[str, Any], data: Any) -> bool:
    value = get_path(data, condition.get("field") or "")
    expected = condition.get("value")
    operator = condition.get("operator")
    if operator == "equals":
        return value == expected
    if operator == "contains":
        return isinstance(value, str) and str(expected) in value
    if operator == "starts_with":
        return isinstance(value, str) and value.startswith(str(expected))
    if operator == "regex":
        return value is not None and re.search(str(expected), str(value)) is not None
    if operator == "in":
        return isinstance(expected, list) and value in expected
    if operator == "not_in":
        return isinstance(expected, list) and value not in expected
    return False


def simulate_action(action: dict[str, Any], data: Any) -> dict[str, Any]:
    mapped: dict[str, Any] = {}
    for mapping in action.get("mapping") or []:
        value = apply_transform(get_path(data, mapping.get("sourceField") or ""), mapping.get("transform"))
        set_path(mapped, mapping["targetField"], value if value is not None else mapping.get("defaultValue"))
    return {
        "type": action.get("type"),
        "target": action.get("target"),
        "data": mapped,
        "options": action.get("options"),
    }


def validate_sync_rule(rule: dict[str, Any]) -> list[str]:
    """Return the problems with ``rule``; an empty list means it is valid."""

    errors: list[str] = []
    conditions = rule.get("conditions") or []
    actions = rule.get("actions") or []
    if not str(rule.get("name") or "").strip():
        errors.append("Rule name is required")
    if not conditions:
        errors.append("At least one condition is required")
    if not actions:
        errors.append("At least one action is required")
    if rule.get("trigger") == SyncTrigger.SCHEDULED.value and not rule.get("schedule"):
        errors.append("Schedule is required for scheduled triggers")
    for index, condition in enumerate(conditions, start=1):
        if not condition.get("field"):
            errors.append(f"Condition {index}: field is required")
        if not condition.get("operator"):
            errors.append(f"Condition {index}: operator is required")
    for index, action in enumerate(actions, start=1):
        if not action.get("type"):
            errors.append(f"Action {index}: type is required")
        if not action.get("target"):
            errors.append(f"Action {index}: target is required")
        if not action.get("mapping"):
            errors.append(f"Action {index}: at least one field mapping is required")
    return errors


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class SyncConfigService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _integration(self, integration_id: uuid.UUID, organization_id: uuid.UUID) -> Integration:
        integration = self.session.get(Integration, integration_id)
        if integration is None or integration.organization_id != organization_id:
            raise IntegrationNotFoundError(metadata={"integrationId": str(integration_id)})
        return integration

    @staticmethod
    def _compose(integration: Integration) -> dict[str, Any]:
        stored = dict(integration.sync_config or {})
        config = default_sync_config(integration.type)
        for key, value in stored.items():
            if key in STORED_FIELDS:
                config[key] = copy.deepcopy(value)
        config["options"] = {**DEFAULT_OPTIONS, **(stored.get("options") or {})}

        metadata = dict(integration.metadata_ or {})
        metrics = stored_metrics(metadata)
        return {
            "integrationId": str(integration.id),
            "organizationId": str(integration.organization_id),
            **config,
            "metadata": {
                "totalSyncedItems": metrics["successCount"] + metrics["failureCount"],
                "errorCount": metrics["failureCount"],
                "lastSyncAt": metadata.get("lastSyncAt"),
                "lastError": metadata.get("lastError"),
            },
        }

    def _store(self, integration: Integration, config: dict[str, Any]) -> dict[str, Any]:
        integration.sync_config = {key: config[key] for key in STORED_FIELDS if key in config}
        self.session.flush()
        return self._compose(integration)

    @staticmethod
    def _check_rules(rules: Iterable[dict[str, Any]]) -> None:
        for rule in rules:
            errors = validate_sync_rule(rule)
            if errors:
                raise ValidationError(
                    "Invalid sync rule",
                    metadata={"ruleId": rule.get("id"), "errors": errors},
                )

    def get_sync_config(self, integration_id: uuid.UUID, organization_id: uuid.UUID) -> dict[str, Any]:
        return self._compose(self._integration(integration_id, organization_id))

    def update_sync_config(
        self,
        integration_id: uuid.UUID,
        organization_id: uuid.UUID,
        changes: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge ``changes`` into the stored config.

        Keys outside :data:`STORED_FIELDS` are ignored; ``metadata`` is derived
        from the health counters and cannot be written.

        Raises:
            IntegrationNotFoundError: If the integration is not in the org.
            ValidationError: On a bad ``enabled``/``syncDirection`` value or
                an invalid rule.
        """

        integration = self._integration(integration_id, organization_id)
        updates = {key: changes[key] for key in STORED_FIELDS if key in changes}
        if "enabled" in updates and not isinstance(updates["enabled"], bool):
            raise ValidationError("enabled must be a boolean", metadata={"field": "enabled"})
        if "syncDirection" in updates and updates["syncDirection"] not in DIRECTIONS:
            raise ValidationError(
                "Invalid sync direction",
                metadata={"field": "syncDirection", "allowed": list(DIRECTIONS)},
            )
        if "rules" in updates:
            if not isinstance(updates["rules"], list):
                raise ValidationError("rules must be a list", metadata={"field": "rules"})
            self._check_rules(updates["rules"])
        if "options" in updates and not isinstance(updates["options"], dict):
            raise ValidationError("options must be an object", metadata={"field": "options"})

        config = self._compose(integration)
        config.update(updates)
        result = self._store(integration, config)
        logger.info(
            "Updated sync config for integration %s", integration_id,
            extra={
                "event_code": "SYNC_CONFIG_UPDATED",
                "integration_id": str(integration_id),
                "organization_id": str(organization_id),
                "fields": sorted(updates),
            },
        )
        return result

    def save_sync_rule(
        self, integration_id: uuid.UUID, organization_id: uuid.UUID, rule: dict[str, Any]
    ) -> dict[str, Any]:
        """Insert ``rule``, or replace the stored rule with the same id."""

        integration = self._integration(integration_id, organization_id)
        self._check_rules([rule])
        saved = {
            "enabled": True,
            "trigger": SyncTrigger.REAL_TIME.value,
            "direction": SyncDirection.BIDIRECTIONAL.value,
            **rule,
        }
        if not saved.get("id"):
            saved["id"] = f"rule_{_epoch_ms()}"

        config = self._compose(integration)
        rules = config["rules"]
        for index, existing in enumerate(rules):
            if existing.get("id") == saved["id"]:
                rules[index] = saved
                break
        else:
            rules.append(saved)
        self._store(integration, config)
        return saved

    def delete_sync_rule(
        self, integration_id: uuid.UUID, organization_id: uuid.UUID, rule_id: str
    ) -> dict[str, Any]:
        integration = self._integration(integration_id, organization_id)
        config = self._compose(integration)
        rules = [rule for rule in config["rules"] if rule.get("id") != rule_id]
        if len(rules) == len(config["rules"]):
            raise ResourceNotFoundError("sync_rule", rule_id, message="Sync rule not found")
        config["rules"] = rules
        return self._store(integration, config)

    @staticmethod
    def test_sync_rule(rule: dict[str, Any], sample_data: Any) -> dict[str, Any]:
        """Evaluate ``rule`` against ``sample_data`` without touching the database."""

        errors = validate_sync_rule(rule)
        if errors:
            return {"success": False, "error": f"Validation failed: {', '.join(errors)}"}
        try:
            conditions = rule["conditions"]
            if not all(condition_matches(condition, sample_data) for condition in conditions):
                return {
                    "success": True,
                    "result": {"matched": False, "reason": "Sample data does not match rule conditions"},
                }
            return {
                "success": True,
                "result": {
                    "matched": True,
                    "conditionsMatched": len(conditions),
                    "actionResults": [simulate_action(action, sample_data) for action in rule["actions"]],
                },
            }
        except (re.error, ValueError, TypeError) as exc:
            return {"success": False, "error": str(exc) or "Unknown error during rule testing"}

    def get_sync_stats(self, integration_id: uuid.UUID, organization_id: uuid.UUID) -> dict[str, Any]:
        config = self.get_sync_config(integration_id, organization_id)
        metadata = config["metadata"]
        rules = config["rules"]
        total = metadata["totalSyncedItems"]
        error_rate = metadata["errorCount"] / total * 100 if total > 0 else 0.0
        return {
            "totalRules": len(rules),
            "activeRules": sum(1 for rule in rules if rule.get("enabled")),
            "totalSyncedItems": total,
            "errorCount": metadata["errorCount"],
            "errorRate": f"{error_rate:.2f}",
            "lastSyncAt": metadata["lastSyncAt"],
            "lastError": metadata["lastError"],
            "syncDirection": config["syncDirection"],
            "enabled": config["enabled"],
            "ruleBreakdown": [
                {
                    "id": rule.get("id"),
                    "name": rule.get("name"),
                    "enabled": rule.get("enabled"),
                    "trigger": rule.get("trigger"),
                    "direction": rule.get("direction"),
                    "conditionCount": len(rule.get("conditions") or []),
                    "actionCount": len(rule.get("actions") or []),
                }
                for rule in rules
            ],
        }

    def trigger_manual_sync(
        self,
        integration_id: uuid.UUID,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        rule_ids: list[str] | None = None,
        direction: str | None = None,
    ) -> dict[str, Any]:
        if direction is not None and direction not in DIRECTIONS:
            raise ValidationError(
                "Invalid sync direction",
                metadata={"field": "direction", "allowed": list(DIRECTIONS)},
            )
        config = self.get_sync_config(integration_id, organization_id)
        rules = [
            rule
            for rule in config["rules"]
            if rule.get("enabled")
            and (rule_ids is None or rule.get("id") in rule_ids)
            and (
                direction is None
                or rule.get("direction") in (direction, SyncDirection.BIDIRECTIONAL.value)
            )
        ]
        job = {
            "syncJobId": f"sync_{integration_id}_{_epoch_ms()}",
            "integrationId": str(integration_id),
            "organizationId": str(organization_id),
            "triggeredRules": len(rules),
            "rules": [{"id": rule.get("id"), "name": rule.get("name")} for rule in rules],
            "status": "queued",
            "triggeredAt": dt.datetime.now(dt.timezone.utc).isoformat(),
            "triggeredBy": str(user_id),
        }
        logger.info(
            "Manual sync %s triggered with %d rule(s)", job["syncJobId"], len(rules),
            extra={
                "event_code": "MANUAL_SYNC_TRIGGERED",
                "integration_id": str(integration_id),
                "organization_id": str(organization_id),
                "user_id": str(user_id),
            },
        )
        return job


__all__ = [
    "DEFAULT_OPTIONS",
    "STORED_FIELDS",
    "SyncConfigService",
    "SyncDirection",
    "SyncTrigger",
    "allows_outbound",
    "apply_transform",
    "condition_matches",
    "default_sync_config",
    "validate_sync_rule",
]
