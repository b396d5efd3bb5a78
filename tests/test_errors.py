import re

import jwt
import pytest
import requests
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, OperationalError

from feedbackhub.errors import (
    AuthenticationError,
    BaseError,
    CustomerAlreadyExistsError,
    DatabaseConnectionError,
    DatabaseConstraintError,
    InsufficientPermissionsError,
    IntegrationConnectionFailedError,
    RateLimitExceededError,
    RequiredFieldError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    ValidationError,
    create_http_error,
    generate_error_id,
    get_error_category,
    get_error_status_code,
    install_error_handlers,
    process_error,
)


def test_generate_error_id_format():
    error_id = generate_error_id()
    assert re.fullmatch(r"err_[0-9a-z]+_[0-9a-z]{6}", error_id)
    assert generate_error_id() != error_id


@pytest.mark.parametrize(
    ("code", "status"),
    [
        ("VALIDATION_ERROR", 400),
        ("INVALID_CREDENTIALS", 401),
        ("USER_ALREADY_EXISTS", 409),
        ("ACCOUNT_DISABLED", 403),
        ("INSUFFICIENT_PERMISSIONS", 403),
        ("RATE_LIMIT_EXCEEDED", 429),
        ("FEEDBACK_STATUS_INVALID", 422),
        ("CUSTOMER_DELETE_FAILED", 409),
        ("INTEGRATION_CONNECTION_FAILED", 502),
        ("SERVICE_UNAVAILABLE", 503),
        ("NOT_A_REAL_CODE", 500),
    ],
)
def test_status_code_mapping(code, status):
    assert get_error_status_code(code) == status


def test_error_category_lookup():
    assert get_error_category("FEEDBACK_NOT_FOUND") == "feedback"
    assert get_error_category("INTEGRATION_AUTH_FAILED") == "integration"
    assert get_error_category("whatever") == "general"


def test_base_error_response_shape():
    error = BaseError("CUSTOMER_NOT_FOUND", metadata={"resourceId": "abc"})

    body = error.to_response()

    assert body["success"] is False
    payload = body["error"]
    assert payload["code"] == "CUSTOMER_NOT_FOUND"
    assert payload["message"] == "Customer not found"
    assert payload["statusCode"] == 404
    assert payload["category"] == "customer"
    assert payload["errorId"] == error.error_id
    assert payload["retryable"] is False
    assert payload["metadata"] == {"resourceId": "abc"}
    assert "stack" not in payload


def test_non_user_friendly_errors_hide_message():
    error = BaseError.internal("db password leaked in stack")

    assert error.to_response()["error"]["message"] != "db password leaked in stack"
    assert error.is_server_error()
    assert not error.is_client_error()


def test_specific_error_defaults():
    assert ValidationError().status_code == 400
    assert AuthenticationError(code="INVALID_TOKEN").code == "INVALID_TOKEN"
    assert CustomerAlreadyExistsError().status_code == 409
    assert IntegrationConnectionFailedError().retryable is True

    missing = RequiredFieldError("email")
    assert missing.code == "REQUIRED_FIELD_MISSING"
    assert missing.metadata == {"field": "email"}

    forbidden = InsufficientPermissionsError(required_role="admin")
    assert forbidden.status_code == 403
    assert forbidden.metadata == {"requiredRole": "admin"}


def test_resource_errors_use_typed_codes():
    not_found = ResourceNotFoundError("Feedback", "123")
    assert not_found.code == "FEEDBACK_NOT_FOUND"
    assert not_found.status_code == 404

    generic = ResourceNotFoundError("Widget", "123")
    assert generic.code == "RESOURCE_NOT_FOUND"

    exists = ResourceAlreadyExistsError("Customer")
    assert exists.code == "CUSTOMER_ALREADY_EXISTS"
    assert ResourceAlreadyExistsError("Widget").code == "RESOURCE_ALREADY_EXISTS"


def test_create_http_error():
    assert create_http_error(404).code == "RESOURCE_NOT_FOUND"
    assert create_http_error(429).status_code == 429
    assert create_http_error(418).code == "INTERNAL_SERVER_ERROR"


def test_process_error_passes_base_errors_through():
    original = ValidationError("bad")

    assert process_error(original, {"path": "/x"}) is original
    assert original.context["path"] == "/x"


def test_process_error_maps_known_exceptions():
    assert process_error(jwt.ExpiredSignatureError()).code == "TOKEN_EXPIRED"
    assert process_error(jwt.InvalidTokenError()).code == "INVALID_TOKEN"
    assert process_error(requests.Timeout()).code == "TIMEOUT_ERROR"
    assert process_error(requests.ConnectionError()).retryable is True

    unique = process_error(IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")))
    assert isinstance(unique, DatabaseConstraintError)
    assert unique.code == "DATABASE_UNIQUE_VIOLATION"
    assert unique.status_code == 409

    fk = process_error(IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed")))
    assert fk.code == "DATABASE_FOREIGN_KEY_VIOLATION"

    assert isinstance(process_error(OperationalError("SELECT", {}, Exception("down"))), DatabaseConnectionError)
    assert process_error(RuntimeError("boom")).code == "INTERNAL_SERVER_ERROR"


def test_process_error_converts_pydantic_errors():
    class Model(BaseModel):
        count: int

    with pytest.raises(Exception) as excinfo:
        Model(count="not-a-number")

    error = process_error(excinfo.value)
    assert error.code == "VALIDATION_ERROR"
    assert error.metadata["errors"][0]["field"] == "count"


def _create_app() -> FastAPI:
    app = FastAPI()
    install_error_handlers(app)

    @app.get("/missing")
    async def missing():
        raise ResourceNotFoundError("Customer", "c-1")

    @app.get("/limited")
    async def limited():
        raise RateLimitExceededError(retry_after=30)

    @app.get("/crash")
    async def crash():
        raise RuntimeError("secret internals")

    return app


def test_handlers_render_base_errors():
    client = TestClient(_create_app(), raise_server_exceptions=False)

    res = client.get("/missing")
    assert res.status_code == 404
    body = res.json()
    assert body["success"] is False
    assert body["error"]["code"] == "CUSTOMER_NOT_FOUND"
    assert body["error"]["metadata"] == {"resourceId": "c-1"}


def test_handlers_set_retry_after_header():
    client = TestClient(_create_app(), raise_server_exceptions=False)

    res = client.get("/limited")
    assert res.status_code == 429
    assert res.headers["Retry-After"] == "30"
    assert res.json()["error"]["retryable"] is True


def test_handlers_hide_unexpected_errors():
    client = TestClient(_create_app(), raise_server_exceptions=False)

    res = client.get("/crash")
    assert res.status_code == 500
    body = res.json()
    assert body["error"]["code"] == "INTERNAL_SERVER_ERROR"
    assert "secret internals" not in body["error"]["message"]
