"""Organization-wide reporting over integration health counters."""

from __future__ import annotations

import csv
import datetime as dt
import io
import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from feedbackhub.errors import IntegrationNotFoundError, ValidationError
from feedbackhub.models import Integration, IntegrationEvent, ProcessingStatus

from .health import stored_metrics, success_rate

logger = logging.getLogger(__name__)

ACTIVE_WINDOW = dt.timedelta(days=7)
MAX_PERIOD_DAYS = 366

CSV_HEADERS = [
    "Integration ID",
    "Name",
    "Type",
    "Total Events",
    "Successful Events",
    "Failed Events",
    "Success Rate (%)",
    "Critical Errors",
    "Last Sync",
    "Last Error",
    "Avg Response Time (ms)",
]


def _parse_timestamp(value: Any) -> dt.datetime | None:
    if not value:
        return None
    try:
        parsed = dt.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=dt.timezone.utc)


class IntegrationMetricsService:
    """Aggregate the counters kept by :class:`HealthMonitorService`.

    Counters come from ``integrations.metadata``; period reports are computed
    from the ``integration_events`` table.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _integrations(self, organization_id: uuid.UUID) -> list[Integration]:
        return list(
            self.session.execute(
                select(Integration)
                .where(Integration.organization_id == organization_id)
                .order_by(Integration.created_at)
            ).scalars()
        )

    @staticmethod
    def _entry(integration: Integration) -> dict[str, Any]:
        metadata = integration.metadata_ or {}
        metrics = stored_metrics(metadata)
        total = metrics["successCount"] + metrics["failureCount"]
        return {
            "integrationId": str(integration.id),
            "name": integration.name,
            "type": integration.type,
            "successCount": metrics["successCount"],
            "failureCount": metrics["failureCount"],
            "totalEvents": total,
            "successRate": success_rate(metrics["successCount"], total),
            "criticalErrorCount": metrics["criticalErrorCount"],
            "lastSyncAt": metadata.get("lastSyncAt"),
            "lastErrorAt": metadata.get("lastErrorAt"),
            "averageResponseTime": metadata.get("lastResponseTime"),
        }

    def get_integration_metrics(self, organization_id: uuid.UUID) -> list[dict[str, Any]]:
        return [self._entry(integration) for integration in self._integrations(organization_id)]

    def get_metrics_summary(self, organization_id: uuid.UUID) -> dict[str, Any]:
        entries = self.get_integration_metrics(organization_id)
        cutoff = dt.datetime.now(dt.timezone.utc) - ACTIVE_WINDOW
        total = sum(entry["totalEvents"] for entry in entries)
        successes = sum(entry["successCount"] for entry in entries)
        times = [entry["averageResponseTime"] for entry in entries if entry["averageResponseTime"]]
        active = 0
        for entry in entries:
            last_sync = _parse_timestamp(entry["lastSyncAt"])
            if last_sync is not None and last_sync >= cutoff:
                active += 1
        return {
            "totalIntegrations": len(entries),
            "activeIntegrations": active,
            "totalEvents": total,
            "successfulEvents": successes,
            "failedEvents": sum(entry["failureCount"] for entry in entries),
            "overallSuccessRate": success_rate(successes, total),
            "averageResponseTime": sum(times) / len(times) if times else 0,
            "criticalErrorCount": sum(entry["criticalErrorCount"] for entry in entries),
        }

    def reset_integration_metrics(self, integration_id: uuid.UUID, organization_id: uuid.UUID) -> None:
        """Zero the counters of one integration. ``lastSyncAt`` is kept."""

        integration = self.session.get(Integration, integration_id)
        if integration is None or integration.organization_id != organization_id:
            raise IntegrationNotFoundError(metadata={"integrationId": str(integration_id)})
        metadata = {
            key: value
            for key, value in (integration.metadata_ or {}).items()
            if key not in ("lastError", "lastErrorAt", "lastResponseTime")
        }
        metadata["metrics"] = {
            "successCount": 0,
            "failureCount": 0,
            "recentErrors": [],
            "criticalErrorCount": 0,
        }
        integration.metadata_ = metadata
        self.session.flush()
        logger.info(
            "Reset metrics for integration %s", integration_id,
            extra={
                "event_code": "INTEGRATION_METRICS_RESET",
                "integration_id": str(integration_id),
                "organization_id": str(organization_id),
            },
        )

    def get_metrics_for_period(
        self, organization_id: uuid.UUID, start: dt.date, end: dt.date
    ) -> dict[str, Any]:
        """Daily event outcomes from ``start`` to ``end`` inclusive."""

        if end < start:
            raise ValidationError("end must not be before start", metadata={"start": str(start), "end": str(end)})
        days = (end - start).days + 1
        if days > MAX_PERIOD_DAYS:
            raise ValidationError(
                f"Period cannot exceed {MAX_PERIOD_DAYS} days", metadata={"days": days}
            )

        since = dt.datetime.combine(start, dt.time.min, tzinfo=dt.timezone.utc)
        until = dt.datetime.combine(end + dt.timedelta(days=1), dt.time.min, tzinfo=dt.timezone.utc)
        rows = self.session.execute(
            select(IntegrationEvent.created_at, IntegrationEvent.status).where(
                IntegrationEvent.organization_id == organization_id,
                IntegrationEvent.created_at >= since,
                IntegrationEvent.created_at < until,
            )
        ).all()

        buckets = {
            start + dt.timedelta(days=offset): {"total": 0, "success": 0, "failed": 0}
            for offset in range(days)
        }
        done = (ProcessingStatus.COMPLETED.value, ProcessingStatus.SKIPPED.value)
        for created_at, status in rows:
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=dt.timezone.utc)
            bucket = buckets.get(created_at.astimezone(dt.timezone.utc).date())
            if bucket is None:
                continue
            bucket["total"] += 1
            if status in done:
                bucket["success"] += 1
            elif status == ProcessingStatus.FAILED.value:
                bucket["failed"] += 1

        return {
            "dailyMetrics": [
                {
                    "date": day.isoformat(),
                    "totalEvents": bucket["total"],
                    "successfulEvents": bucket["success"],
                    "failedEvents": bucket["failed"],
                    "successRate": success_rate(bucket["success"], bucket["success"] + bucket["failed"]),
                }
                for day, bucket in sorted(buckets.items())
            ],
            "summary": self.get_metrics_summary(organization_id),
        }

    def get_top_performing_integrations(self, organization_id: uuid.UUID, limit: int = 5) -> list[dict[str, Any]]:
        entries = [entry for entry in self.get_integration_metrics(organization_id) if entry["totalEvents"] > 0]
        entries.sort(key=lambda entry: entry["successRate"], reverse=True)
        return entries[:limit]

    def get_problematic_integrations(self, organization_id: uuid.UUID, limit: int = 5) -> list[dict[str, Any]]:
        entries = [
            entry
            for entry in self.get_integration_metrics(organization_id)
            if entry["criticalErrorCount"] > 0 or entry["failureCount"] > 0
        ]
        entries.sort(key=lambda entry: entry["criticalErrorCount"] + entry["failureCount"], reverse=True)
        return entries[:limit]

    def export_metrics_csv(self, organization_id: uuid.UUID) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL)
        writer.writerow(CSV_HEADERS)
        for entry in self.get_integration_metrics(organization_id):
            writer.writerow(
                [
                    entry["integrationId"],
                    entry["name"],
                    entry["type"],
                    entry["totalEvents"],
                    entry["successCount"],
                    entry["failureCount"],
                    f"{entry['successRate']:.2f}",
                    entry["criticalErrorCount"],
                    entry["lastSyncAt"] or "",
                    entry["lastErrorAt"] or "",
                    entry["averageResponseTime"] or "",
                ]
            )
        return buffer.getvalue()


__all__ = ["CSV_HEADERS", "IntegrationMetricsService"]
