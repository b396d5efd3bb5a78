import datetime as dt
import uuid

import pytest

from feedbackhub.config import IntegrationSettings
from feedbackhub.errors import IntegrationNotFoundError
from feedbackhub.integrations import HealthMonitorService
from feedbackhub.integrations.health import calculate_trend, success_rate
from feedbackhub.models import Integration, IntegrationEvent
from feedbackhub.oauth import OAuthConfig, OAuthConnectionService, OAuthProviderError, SlackProvider

SETTINGS = IntegrationSettings(clients={}, encryption_key="health-test-key")


class FakeSlack(SlackProvider):
    def __init__(self, error=None):
        super().__init__(
            OAuthConfig(
                client_id="id",
                client_secret="secret",
                redirect_uri="https://app.example/callback",
                auth_url="https://slack.example/authorize",
                token_url="https://slack.example/token",
            )
        )
        self.error = error

    def get_team_info(self, credentials):
        if self.error is not None:
            raise self.error
        return {"id": "T1", "name": "Acme"}


@pytest.fixture
def db(tenant_auth):
    with tenant_auth.session_factory() as session:
        yield session


@pytest.fixture
def connections(db):
    return OAuthConnectionService(db, settings=SETTINGS)


def _monitor(db, connections, provider=None):
    provider = provider or FakeSlack()
    return HealthMonitorService(db, connections, provider_factory=lambda connection: provider)


def _slack(tenant_auth, connections, metadata=None, **credentials):
    credentials.setdefault("access_token", "xoxb-1")
    return connections.create_connection(
        tenant_auth.organization_id, "SLACK", credentials, metadata={"botUserId": "B1", **(metadata or {})}
    )


def test_healthy_connection(tenant_auth, db, connections):
    connection = _slack(tenant_auth, connections)

    record = _monitor(db, connections).check_integration_health(connection.id, tenant_auth.organization_id)

    assert record["status"] == "HEALTHY"
    assert record["connectionStatus"] == "CONNECTED"
    assert record["metrics"]["successRate"] == 100.0
    assert record["details"]["configValid"] is True
    assert record["details"]["lastTestResult"]["teamName"] == "Acme"
    assert db.get(Integration, connection.id).last_health_check is not None


@pytest.mark.parametrize(
    ("error", "status", "connection_status"),
    [
        (OAuthProviderError("invalid_auth", status_code=401), "UNHEALTHY", "TOKEN_EXPIRED"),
        (OAuthProviderError("ratelimited", status_code=429), "DEGRADED", "RATE_LIMITED"),
        (RuntimeError("socket closed"), "UNHEALTHY", "ERROR"),
    ],
)
def test_failed_check_is_classified(tenant_auth, db, connections, error, status, connection_status):
    connection = _slack(tenant_auth, connections)

    record = _monitor(db, connections, FakeSlack(error)).check_integration_health(
        connection.id, tenant_auth.organization_id
    )

    assert record["status"] == status
    assert record["connectionStatus"] == connection_status
    assert record["errors"]["lastError"] == str(error)


@pytest.mark.parametrize(
    ("successes", "failures", "expected"),
    [(19, 1, "HEALTHY"), (9, 1, "DEGRADED"), (7, 3, "UNHEALTHY")],
)
def test_success_ratio_drives_status(tenant_auth, db, connections, successes, failures, expected):
    connection = _slack(
        tenant_auth,
        connections,
        metadata={"metrics": {"successCount": successes, "failureCount": failures}},
    )

    record = _monitor(db, connections).check_integration_health(connection.id, tenant_auth.organization_id)

    assert record["status"] == expected
    assert record["metrics"]["totalEvents"] == successes + failures


def test_many_critical_errors_degrade(tenant_auth, db, connections):
    connection = _slack(tenant_auth, connections, metadata={"metrics": {"criticalErrorCount": 6}})

    record = _monitor(db, connections).check_integration_health(connection.id, tenant_auth.organization_id)

    assert record["status"] == "DEGRADED"


def test_missing_credentials_are_unhealthy(tenant_auth, db, connections):
    connection = _slack(tenant_auth, connections)
    db.get(Integration, connection.id).credentials = None
    db.flush()

    record = _monitor(db, connections).check_integration_health(connection.id, tenant_auth.organization_id)

    assert record["status"] == "UNHEALTHY"
    assert record["connectionStatus"] == "DISCONNECTED"
    assert record["errors"]["lastError"] == "No connection found"


def test_unknown_integration_raises(tenant_auth, db, connections):
    other = tenant_auth.create_tenant("Other", "other")
    connection = _slack(tenant_auth, connections)
    monitor = _monitor(db, connections)

    with pytest.raises(IntegrationNotFoundError):
        monitor.check_integration_health(uuid.uuid4(), tenant_auth.organization_id)
    with pytest.raises(IntegrationNotFoundError):
        monitor.check_integration_health(connection.id, other)


def test_update_integration_metrics(tenant_auth, db, connections):
    connection = _slack(tenant_auth, connections)
    monitor = _monitor(db, connections)
    org_id = tenant_auth.organization_id

    monitor.update_integration_metrics(connection.id, org_id, True, response_time=120)
    monitor.update_integration_metrics(connection.id, org_id, False, "HTTP 401 from provider")
    for idx in range(12):
        monitor.update_integration_metrics(connection.id, org_id, False, f"timeout {idx}")

    metadata = db.get(Integration, connection.id).metadata_
    metrics = metadata["metrics"]
    assert metrics["successCount"] == 1
    assert metrics["failureCount"] == 13
    assert metrics["criticalErrorCount"] == 1
    assert len(metrics["recentErrors"]) == 10
    assert metrics["recentErrors"][0] == "timeout 11"
    assert metadata["lastResponseTime"] == 120
    assert metadata["lastError"] == "timeout 11"


def test_update_metrics_ignores_other_organizations(tenant_auth, db, connections):
    other = tenant_auth.create_tenant("Other", "other")
    connection = _slack(tenant_auth, connections)

    _monitor(db, connections).update_integration_metrics(connection.id, other, True)

    assert "metrics" not in db.get(Integration, connection.id).metadata_


def test_organization_health_and_summaries(tenant_auth, db, connections):
    healthy = _slack(tenant_auth, connections)
    soon = (dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=2)).isoformat()
    _slack(
        tenant_auth,
        connections,
        metadata={"metrics": {"successCount": 1, "failureCount": 9, "criticalErrorCount": 2}},
        expires_at=soon,
    )

    records = _monitor(db, connections).check_organization_health(tenant_auth.organization_id)

    assert len(records) == 2
    assert {record["integrationId"] for record in records} >= {str(healthy.id)}

    summary = HealthMonitorService.build_summary(records)
    assert summary["overview"] == {
        "totalIntegrations": 2,
        "activeIntegrations": 2,
        "healthyIntegrations": 1,
        "issuesCount": 1,
    }
    assert summary["recentActivity"]["failedEvents"] == 9
    assert summary["recentActivity"]["overallSuccessRate"] == 10
    assert summary["alerts"]["tokenExpirations"] == 1
    assert summary["alerts"]["criticalErrors"] == 1
    assert summary["integrationTypes"]["SLACK"]["total"] == 2

    org_summary = HealthMonitorService.build_organization_summary(records)
    assert org_summary["healthyCount"] == 1
    assert org_summary["unhealthyCount"] == 1
    assert org_summary["criticalIssues"] == 1


def test_health_history(tenant_auth, db, connections):
    connection = _slack(tenant_auth, connections)
    now = dt.datetime.now(dt.timezone.utc)
    for status, response_time in (("COMPLETED", 100), ("COMPLETED", 300), ("FAILED", None)):
        db.add(
            IntegrationEvent(
                organization_id=tenant_auth.organization_id,
                integration_id=connection.id,
                event_type="SLACK_MESSAGE",
                status=status,
                response_time_ms=response_time,
                created_at=now,
            )
        )
    db.add(
        IntegrationEvent(
            organization_id=tenant_auth.organization_id,
            integration_id=connection.id,
            event_type="SLACK_MESSAGE",
            status="COMPLETED",
            created_at=now - dt.timedelta(days=30),
        )
    )
    db.flush()

    history = _monitor(db, connections).get_health_history(connection.id, tenant_auth.organization_id, days=7)

    assert history["current"]["status"] == "HEALTHY"
    assert len(history["history"]) == 7
    today = history["history"][-1]
    assert today["date"] == now.date().isoformat()
    assert today["totalEvents"] == 3
    assert today["successRate"] == 67
    assert today["errorRate"] == 33
    assert today["avgResponseTime"] == 200
    assert today["status"] == "UNHEALTHY"
    assert history["history"][0]["totalEvents"] == 0
    assert history["history"][0]["status"] == "HEALTHY"
    assert history["trends"]["successRateTrend"] == "down"
    assert history["trends"]["responseTimeTrend"] == "stable"


def test_health_history_response_time_trend(tenant_auth, db, connections):
    connection = _slack(tenant_auth, connections)
    now = dt.datetime.now(dt.timezone.utc)
    for days_ago, response_time in ((6, 500), (5, 500), (4, 500), (0, 100)):
        db.add(
            IntegrationEvent(
                organization_id=tenant_auth.organization_id,
                integration_id=connection.id,
                event_type="SLACK_MESSAGE",
                status="COMPLETED",
                response_time_ms=response_time,
                created_at=now - dt.timedelta(days=days_ago),
            )
        )
    db.flush()

    history = _monitor(db, connections).get_health_history(connection.id, tenant_auth.organization_id, days=7)

    assert [day["avgResponseTime"] for day in history["history"]] == [500, 500, 500, None, None, None, 100]
    assert history["trends"]["responseTimeTrend"] == "down"


def test_success_rate_and_trend_helpers():
    assert success_rate(0, 0) == 100.0
    assert success_rate(3, 4) == 75.0
    assert calculate_trend([100]) == "stable"
    assert calculate_trend([50, 50, 50, 90, 90, 90]) == "up"
    assert calculate_trend([90, 90, 90, 50, 50, 50]) == "down"
    assert calculate_trend([80, 80, 81, 81]) == "stable"
