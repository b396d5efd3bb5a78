"""Connection health checks and rolling integration metrics."""

from __future__ import annotations

import datetime as dt
import logging
import time
import uuid
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from feedbackhub.errors import IntegrationNotFoundError
from feedbackhub.models import Integration, IntegrationEvent, ProcessingStatus
from feedbackhub.oauth import (
    Connection,
    IntercomProvider,
    OAuthConnectionService,
    OAuthProvider,
    SlackProvider,
    ZendeskProvider,
)
from feedbackhub.oauth.base import parse_expires_at

logger = logging.getLogger(__name__)

RECENT_ERROR_LIMIT = 10
TOKEN_EXPIRY_WARNING = dt.timedelta(days=7)


class HealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"
    UNKNOWN = "UNKNOWN"


class HealthConnectionStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_CONFIG = "INVALID_CONFIG"
    RATE_LIMITED = "RATE_LIMITED"
    ERROR = "ERROR"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime) -> dt.datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=dt.timezone.utc)


def stored_metrics(metadata: dict[str, Any] | None) -> dict[str, Any]:
    stored = (metadata or {}).get("metrics") or {}
    return {
        "successCount": int(stored.get("successCount") or 0),
        "failureCount": int(stored.get("failureCount") or 0),
        "recentErrors": list(stored.get("recentErrors") or []),
        "criticalErrorCount": int(stored.get("criticalErrorCount") or 0),
    }


def success_rate(success_count: int, total: int) -> float:
    """Percentage of successful events; 100 when nothing has run yet."""

    if total <= 0:
        return 100.0
    return success_count / total * 100


def calculate_trend(values: list[float]) -> str:
    """Compare the mean of the last three values with the earlier ones."""

    if len(values) < 2:
        return "stable"
    recent = values[-3:]
    older = values[:-3]
    recent_mean = sum(recent) / len(recent)
    older_mean = sum(older) / max(1, len(older))
    difference = recent_mean - older_mean
    if abs(difference) < 2:
        return "stable"
    return "up" if difference > 0 else "down"


def _classify_failure(exc: BaseException) -> HealthConnectionStatus:
    message = str(exc).lower()
    status_code = getattr(exc, "status_code", None)
    response = getattr(exc, "response", None)
    if status_code is None and response is not None:
        status_code = getattr(response, "status_code", None)
    if status_code == 401 or "401" in message or "unauthorized" in message:
        return HealthConnectionStatus.TOKEN_EXPIRED
    if status_code == 429 or "429" in message or "rate limit" in message or "ratelimited" in message:
        return HealthConnectionStatus.RATE_LIMITED
    return HealthConnectionStatus.ERROR


class HealthMonitorService:
    """Check integration connections and keep per-integration metrics.

    Metrics live in ``integrations.metadata.metrics`` and are updated by the
    integration processor after every event; history is computed from the
    ``integration_events`` table.
    """

    def __init__(
        self,
        session: Session,
        connection_service: OAuthConnectionService | None = None,
        provider_factory: Callable[[Connection], OAuthProvider] | None = None,
    ) -> None:
        self.session = session
        self.connections = connection_service or OAuthConnectionService(session)
        self.provider_factory = provider_factory or self.connections.provider_for

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _perform_check(self, connection: Connection) -> dict[str, Any]:
        started = time.monotonic()
        credentials = connection.credentials or {}
        try:
            provider = self.provider_factory(connection)
            if isinstance(provider, SlackProvider):
                team = provider.get_team_info(credentials) or {}
                details = {
                    "teamId": team.get("id"),
                    "teamName": team.get("name"),
                    "botUserId": credentials.get("bot_user_id") or connection.metadata.get("botUserId"),
                    "scope": credentials.get("scope"),
                }
            elif isinstance(provider, ZendeskProvider):
                user = provider.get_user_info(credentials) or {}
                details = {
                    "userId": user.get("id"),
                    "userName": user.get("name"),
                    "userEmail": user.get("email"),
                    "subdomain": provider.subdomain,
                }
            elif isinstance(provider, IntercomProvider):
                app = provider.get_account_info(credentials) or {}
                details = {
                    "appId": app.get("id_code"),
                    "appName": app.get("name"),
                    "region": app.get("region"),
                }
            else:
                return {
                    "success": False,
                    "status": HealthConnectionStatus.INVALID_CONFIG,
                    "responseTime": int((time.monotonic() - started) * 1000),
                    "error": f"Unsupported integration type: {connection.type}",
                }
        except Exception as exc:
            return {
                "success": False,
                "status": _classify_failure(exc),
                "responseTime": int((time.monotonic() - started) * 1000),
                "error": str(exc) or exc.__class__.__name__,
            }
        return {
            "success": True,
            "status": HealthConnectionStatus.CONNECTED,
            "responseTime": int((time.monotonic() - started) * 1000),
            "details": details,
        }

    @staticmethod
    def _overall_status(check: dict[str, Any], metrics: dict[str, Any]) -> HealthStatus:
        if not check["success"]:
            if check["status"] == HealthConnectionStatus.RATE_LIMITED:
                return HealthStatus.DEGRADED
            return HealthStatus.UNHEALTHY
        total = metrics["successCount"] + metrics["failureCount"]
        if total > 0:
            ratio = metrics["successCount"] / total
            if ratio < 0.8:
                return HealthStatus.UNHEALTHY
            if ratio < 0.95:
                return HealthStatus.DEGRADED
        if metrics["criticalErrorCount"] > 5:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    @staticmethod
    def _config_valid(connection: Connection) -> bool:
        credentials = connection.credentials or {}
        if not credentials.get("access_token"):
            return False
        if connection.type == "SLACK":
            return bool(credentials.get("bot_user_id") or connection.metadata.get("botUserId"))
        if connection.type == "ZENDESK":
            return bool(connection.config.get("subdomain") or connection.metadata.get("subdomain"))
        return connection.type == "INTERCOM"

    def _unhealthy(
        self,
        integration_id: uuid.UUID,
        organization_id: uuid.UUID,
        *,
        type_: str,
        name: str,
        error: str,
        status: HealthStatus = HealthStatus.UNHEALTHY,
        connection_status: HealthConnectionStatus = HealthConnectionStatus.DISCONNECTED,
    ) -> dict[str, Any]:
        return {
            "integrationId": str(integration_id),
            "organizationId": str(organization_id),
            "type": type_,
            "name": name,
            "status": status.value,
            "connectionStatus": connection_status.value,
            "lastCheckedAt": _utcnow().isoformat(),
            "metrics": {"successCount": 0, "failureCount": 1, "totalEvents": 1, "successRate": 0},
            "errors": {"recentErrors": [error], "criticalErrorCount": 1, "lastError": error},
            "details": {"configValid": False, "webhookActive": False},
        }

    def check_integration_health(
        self, integration_id: uuid.UUID, organization_id: uuid.UUID
    ) -> dict[str, Any]:
        integration = self.session.get(Integration, integration_id)
        if integration is None or integration.organization_id != organization_id:
            raise IntegrationNotFoundError(metadata={"integrationId": str(integration_id)})

        try:
            connection = self.connections.get_connection(integration_id, organization_id)
            if connection is None or not connection.credentials:
                return self._unhealthy(
                    integration_id,
                    organization_id,
                    type_=integration.type,
                    name=integration.name,
                    error="No connection found",
                )

            check = self._perform_check(connection)
            metadata = dict(integration.metadata_ or {})
            metrics = stored_metrics(metadata)
            total = metrics["successCount"] + metrics["failureCount"]
            status = self._overall_status(check, metrics)

            now = _utcnow()
            integration.last_health_check = now
            self.session.flush()

            return {
                "integrationId": str(integration.id),
                "organizationId": str(organization_id),
                "type": integration.type,
                "name": integration.name,
                "status": status.value,
                "connectionStatus": check["status"].value,
                "lastCheckedAt": now.isoformat(),
                "lastSyncAt": metadata.get("lastSyncAt"),
                "lastErrorAt": metadata.get("lastErrorAt"),
                "metrics": {
                    "successCount": metrics["successCount"],
                    "failureCount": metrics["failureCount"],
                    "totalEvents": total,
                    "successRate": round(success_rate(metrics["successCount"], total), 2),
                    "avgResponseTime": check["responseTime"],
                },
                "errors": {
                    "recentErrors": metrics["recentErrors"][:5],
                    "criticalErrorCount": metrics["criticalErrorCount"],
                    "lastError": metadata.get("lastError") or check.get("error"),
                },
                "details": {
                    "tokenExpiresAt": connection.credentials.get("expires_at"),
                    "configValid": self._config_valid(connection),
                    "webhookActive": bool(connection.credentials.get("access_token")),
                    "lastTestResult": check.get("details"),
                },
            }
        except Exception as exc:
            logger.exception(
                "Error checking integration health",
                extra={"integration_id": str(integration_id), "organization_id": str(organization_id)},
            )
            return self._unhealthy(
                integration_id,
                organization_id,
                type_="unknown",
                name="Unknown",
                error=str(exc) or "Unknown error",
                status=HealthStatus.UNKNOWN,
                connection_status=HealthConnectionStatus.ERROR,
            )

    def check_organization_health(self, organization_id: uuid.UUID) -> list[dict[str, Any]]:
        ids = self.session.execute(
            select(Integration.id)
            .where(Integration.organization_id == organization_id)
            .order_by(Integration.created_at)
        ).scalars().all()
        records = []
        for integration_id in ids:
            try:
                records.append(self.check_integration_health(integration_id, organization_id))
            except Exception:
                logger.warning("Health check failed for integration %s", integration_id, exc_info=True)
        return records

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def update_integration_metrics(
        self,
        integration_id: uuid.UUID,
        organization_id: uuid.UUID,
        success: bool,
        error: str | None = None,
        response_time: int | None = None,
    ) -> None:
        """Fold one event outcome into the integration's metrics and commit."""

        try:
            integration = self.session.get(Integration, integration_id)
            if integration is None or integration.organization_id != organization_id:
                return
            metadata = dict(integration.metadata_ or {})
            metrics = stored_metrics(metadata)
            if success:
                metrics["successCount"] += 1
            else:
                metrics["failureCount"] += 1
                if error:
                    metrics["recentErrors"] = [error, *metrics["recentErrors"]][:RECENT_ERROR_LIMIT]
                    lowered = error.lower()
                    if "401" in lowered or "403" in lowered or "token" in lowered:
                        metrics["criticalErrorCount"] += 1

            now = _utcnow().isoformat()
            metadata["metrics"] = metrics
            metadata["lastSyncAt"] = now
            if error:
                metadata["lastError"] = error
                metadata["lastErrorAt"] = now
            if response_time:
                metadata["lastResponseTime"] = response_time
            integration.metadata_ = metadata
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception(
                "Error updating integration metrics",
                extra={"integration_id": str(integration_id), "organization_id": str(organization_id)},
            )

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    @staticmethod
    def _overall_success_rate(records: Iterable[dict[str, Any]]) -> int:
        records = list(records)
        total = sum(r["metrics"]["totalEvents"] for r in records)
        successes = sum(r["metrics"]["successCount"] for r in records)
        return round(success_rate(successes, total))

    @classmethod
    def build_summary(cls, records: list[dict[str, Any]]) -> dict[str, Any]:
        now = _utcnow()

        def _expiring(record: dict[str, Any]) -> bool:
            expires_at = parse_expires_at(record["details"].get("tokenExpiresAt"))
            return expires_at is not None and expires_at - now < TOKEN_EXPIRY_WARNING

        by_type: dict[str, dict[str, Any]] = defaultdict(
            lambda: {"total": 0, "healthy": 0, "degraded": 0, "unhealthy": 0, "unknown": 0, "successRate": 0.0}
        )
        for record in records:
            bucket = by_type[record["type"]]
            bucket["total"] += 1
            bucket[record["status"].lower()] += 1
            bucket["successRate"] += record["metrics"]["successRate"]
        for bucket in by_type.values():
            bucket["successRate"] = round(bucket["successRate"] / bucket["total"], 2)

        return {
            "overview": {
                "totalIntegrations": len(records),
                "activeIntegrations": sum(
                    1 for r in records if r["connectionStatus"] == HealthConnectionStatus.CONNECTED.value
                ),
                "healthyIntegrations": sum(1 for r in records if r["status"] == HealthStatus.HEALTHY.value),
                "issuesCount": sum(
                    1
                    for r in records
                    if r["status"] in (HealthStatus.DEGRADED.value, HealthStatus.UNHEALTHY.value)
                ),
            },
            "recentActivity": {
                "totalEvents": sum(r["metrics"]["totalEvents"] for r in records),
                "successfulEvents": sum(r["metrics"]["successCount"] for r in records),
                "failedEvents": sum(r["metrics"]["failureCount"] for r in records),
                "overallSuccessRate": cls._overall_success_rate(records),
            },
            "alerts": {
                "tokenExpirations": sum(1 for r in records if _expiring(r)),
                "criticalErrors": sum(1 for r in records if r["errors"]["criticalErrorCount"] > 0),
                "rateLimited": sum(
                    1 for r in records if r["connectionStatus"] == HealthConnectionStatus.RATE_LIMITED.value
                ),
            },
            "integrationTypes": dict(by_type),
        }

    @classmethod
    def build_organization_summary(cls, records: list[dict[str, Any]]) -> dict[str, Any]:
        def _count(status: HealthStatus) -> int:
            return sum(1 for r in records if r["status"] == status.value)

        return {
            "totalIntegrations": len(records),
            "healthyCount": _count(HealthStatus.HEALTHY),
            "degradedCount": _count(HealthStatus.DEGRADED),
            "unhealthyCount": _count(HealthStatus.UNHEALTHY),
            "unknownCount": _count(HealthStatus.UNKNOWN),
            "overallSuccessRate": cls._overall_success_rate(records),
            "criticalIssues": sum(1 for r in records if r["errors"]["criticalErrorCount"] > 0),
        }

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_health_history(
        self, integration_id: uuid.UUID, organization_id: uuid.UUID, days: int = 7
    ) -> dict[str, Any]:
        """Daily event outcomes for the last ``days`` days, oldest first."""

        current = self.check_integration_health(integration_id, organization_id)
        today = _utcnow().date()
        start = today - dt.timedelta(days=days - 1)
        since = dt.datetime.combine(start, dt.time.min, tzinfo=dt.timezone.utc)

        rows = self.session.execute(
            select(IntegrationEvent.created_at, IntegrationEvent.status, IntegrationEvent.response_time_ms).where(
                IntegrationEvent.integration_id == integration_id,
                IntegrationEvent.organization_id == organization_id,
                IntegrationEvent.created_at >= since,
            )
        ).all()

        buckets: dict[dt.date, dict[str, Any]] = {
            start + dt.timedelta(days=offset): {"total": 0, "success": 0, "failed": 0, "times": []}
            for offset in range(days)
        }
        done = (ProcessingStatus.COMPLETED.value, ProcessingStatus.SKIPPED.value)
        for created_at, status, response_time in rows:
            bucket = buckets.get(_as_utc(created_at).date())
            if bucket is None:
                continue
            bucket["total"] += 1
            if status in done:
                bucket["success"] += 1
            elif status == ProcessingStatus.FAILED.value:
                bucket["failed"] += 1
            if response_time is not None:
                bucket["times"].append(response_time)

        history = []
        for day, bucket in sorted(buckets.items()):
            finished = bucket["success"] + bucket["failed"]
            rate = round(success_rate(bucket["success"], finished))
            if rate > 95:
                status = HealthStatus.HEALTHY.value
            elif rate > 80:
                status = HealthStatus.DEGRADED.value
            else:
                status = HealthStatus.UNHEALTHY.value
            times = bucket["times"]
            history.append(
                {
                    "date": day.isoformat(),
                    "totalEvents": bucket["total"],
                    "successRate": rate,
                    "errorRate": 100 - rate,
                    "avgResponseTime": round(sum(times) / len(times)) if times else None,
                    "status": status,
                }
            )

        return {
            "current": current,
            "history": history,
            "trends": {
                "successRateTrend": calculate_trend([h["successRate"] for h in history]),
                "errorRateTrend": calculate_trend([h["errorRate"] for h in history]),
                # Days without timed events carry no response time.
                "responseTimeTrend": calculate_trend(
                    [h["avgResponseTime"] for h in history if h["avgResponseTime"] is not None]
                ),
            },
        }


__all__ = [
    "HealthConnectionStatus",
    "HealthMonitorService",
    "HealthStatus",
    "calculate_trend",
    "stored_metrics",
    "success_rate",
]
