"""Integration tests for the organization context middleware."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable

import jwt
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from feedbackhub.core.tenant_context import get_current_tenant_id, get_current_user_id
from feedbackhub.core.tenant_middleware import TenantContextMiddleware

ORG_ID = str(uuid.uuid4())
USER_ID = str(uuid.uuid4())


@pytest.fixture(autouse=True)
def tenant_token_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Enable the middleware by configuring token settings."""

    monkeypatch.setenv("TENANT_TOKEN_SECRET", "secret-key")
    monkeypatch.setenv("TENANT_TOKEN_AUDIENCE", "feedbackhub")
    monkeypatch.setenv("TENANT_TOKEN_ISSUER", "auth.feedbackhub")
    monkeypatch.setenv("TENANT_TOKEN_ALGORITHM", "HS256")


def _create_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(TenantContextMiddleware)

    @app.get("/api/context")
    async def read_context(request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "tenant_id": request.state.tenant_id,
                "user_id": request.state.user_id,
                "context_tenant": get_current_tenant_id(),
                "context_user": get_current_user_id(),
            }
        )

    @app.get("/api/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.get("/api/config")
    async def config() -> JSONResponse:
        return JSONResponse({"BRAND_NAME": "Test"})

    @app.post("/api/webhooks/slack")
    async def slack() -> JSONResponse:
        return JSONResponse({"success": True, "context_tenant": get_current_tenant_id()})

    @app.post("/api/tenant/accounts/login")
    async def login() -> JSONResponse:
        return JSONResponse({"ok": True})

    @app.post("/api/tenant/accounts/invite")
    async def invite() -> JSONResponse:
        return JSONResponse({"ok": True})

    @app.get("/outside")
    async def outside() -> JSONResponse:
        return JSONResponse({"ok": True})

    return app


@pytest.fixture
def client() -> TestClient:
    return TestClient(_create_app(), raise_server_exceptions=False)


@pytest.fixture
def token_factory() -> Callable[..., str]:
    def _issue_token(
        *,
        tenant_id: str = ORG_ID,
        user_id: str = USER_ID,
        secret: str = "secret-key",
        expires_in: int = 300,
    ) -> str:
        now = int(time.time())
        payload = {
            "tenant_id": tenant_id,
            "user_id": user_id,
            "aud": "feedbackhub",
            "iss": "auth.feedbackhub",
            "iat": now,
            "exp": now + expires_in,
            "type": "access",
        }
        return jwt.encode(payload, secret, algorithm="HS256")

    return _issue_token


def test_valid_token_populates_request_state_and_context(client, token_factory) -> None:
    token = token_factory()

    response = client.get("/api/context", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json() == {
        "tenant_id": ORG_ID,
        "user_id": USER_ID,
        "context_tenant": ORG_ID,
        "context_user": USER_ID,
    }


def test_context_is_reset_after_request(client, token_factory) -> None:
    client.get("/api/context", headers={"Authorization": f"Bearer {token_factory()}"})

    assert get_current_tenant_id() is None


def test_missing_token_is_rejected(client) -> None:
    response = client.get("/api/context")

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    assert "detail" in response.json()


def test_expired_token_is_rejected(client, token_factory) -> None:
    token = token_factory(expires_in=-60)

    response = client.get("/api/context", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Tenant token has expired."


def test_bad_signature_is_rejected(client, token_factory) -> None:
    token = token_factory(secret="other-secret")

    response = client.get("/api/context", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_token_without_organization_uuid_is_rejected(client, token_factory) -> None:
    token = token_factory(tenant_id="org-123")

    response = client.get("/api/context", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Tenant token claim 'tenant_id' is not a valid id."


@pytest.mark.parametrize("path", ["/api/health", "/api/config"])
def test_public_endpoints_skip_validation(client, path: str) -> None:
    response = client.get(path)

    assert response.status_code == 200


def test_webhooks_are_not_authenticated_by_bearer_token(client) -> None:
    response = client.post("/api/webhooks/slack")

    assert response.status_code == 200
    assert response.json()["context_tenant"] is None


def test_public_account_actions_skip_validation(client) -> None:
    assert client.post("/api/tenant/accounts/login").status_code == 200
    assert client.post("/api/tenant/accounts/invite").status_code == 401


def test_paths_outside_api_are_ignored(client) -> None:
    assert client.get("/outside").status_code == 200


def test_options_requests_bypass(client) -> None:
    response = client.options("/api/context")

    assert response.status_code != 401


def test_middleware_is_inactive_without_configuration(monkeypatch) -> None:
    monkeypatch.delenv("TENANT_TOKEN_ISSUER", raising=False)
    client = TestClient(_create_app(), raise_server_exceptions=False)

    response = client.post("/api/tenant/accounts/invite")

    assert response.status_code == 200


def test_configuration_error_returns_500(client, token_factory, monkeypatch) -> None:
    token = token_factory()
    monkeypatch.setenv("TENANT_TOKEN_ALGORITHM", "HS256")
    # The middleware is active, but decoding needs a non-blank secret.
    monkeypatch.setenv("TENANT_TOKEN_SECRET", " ")

    response = client.get("/api/context", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 500
