"""Integration event processing, retry scheduling, sync configuration and health monitoring."""

from .health import HealthConnectionStatus, HealthMonitorService, HealthStatus
from .metrics import IntegrationMetricsService
from .processor import (
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
    ProcessingResult,
    should_retry_error,
)
from .scheduler import RetryScheduler
from .sync_config import SyncConfigService, SyncDirection, SyncTrigger

__all__ = [
    "CUSTOMER_CREATED",
    "FEEDBACK_ASSIGNED",
    "FEEDBACK_CREATED",
    "FEEDBACK_STATUS_CHANGED",
    "HealthConnectionStatus",
    "HealthMonitorService",
    "HealthStatus",
    "INTERCOM_CONVERSATION_CREATED",
    "INTERCOM_CONVERSATION_UPDATED",
    "IntegrationMetricsService",
    "IntegrationProcessor",
    "ProcessingResult",
    "RetryScheduler",
    "SLACK_MESSAGE",
    "SLACK_REACTION",
    "SyncConfigService",
    "SyncDirection",
    "SyncTrigger",
    "ZENDESK_TICKET_CREATED",
    "ZENDESK_TICKET_UPDATED",
    "should_retry_error",
]
