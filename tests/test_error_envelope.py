"""Tests for the error envelope format and exception handlers.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from credvault.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from credvault.api.routes import _http_error
from credvault.api.schemas import Envelope, ErrorBody
from credvault.service.errors import (
    InvalidCredentials,
    RefreshReuseDetected,
    ServiceUnavailableError,
    TransientStoreFailure,
)
from credvault.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="Too many requests"),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["code"] == "rate_limited"
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "unavailable"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_a_valid_error_code(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["details"] is None
        assert data["request_id"]


@pytest.fixture
def app_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/invalid-credentials")
    async def invalid_credentials():
        raise InvalidCredentials()

    @app.get("/reuse")
    async def reuse():
        raise RefreshReuseDetected()

    @app.get("/store-down")
    async def store_down():
        raise TransientStoreFailure()

    @app.get("/unconfigured")
    async def unconfigured():
        raise ServiceUnavailableError("google sign-in is not configured")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"fields": ["email"]})

    @app.get("/rate-limited")
    async def rate_limited():
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)

    @app.get("/plain-http")
    async def plain_http():
        raise HTTPException(status_code=404, detail="nothing here", headers={"X-Hint": "1"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_service_error_carries_kind(self, app_client):
        response = app_client.get("/invalid-credentials")
        assert response.status_code == 401
        error = response.json()["error"]
        assert error == {
            "code": "unauthorized",
            "message": "invalid credentials",
            "details": {"kind": "invalid_credentials"},
        }

    def test_reuse_detected(self, app_client):
        response = app_client.get("/reuse")
        assert response.status_code == 401
        assert response.json()["error"]["details"]["kind"] == "refresh_reuse_detected"

    def test_transient_store_failure_is_503(self, app_client):
        response = app_client.get("/store-down")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "unavailable"

    def test_unconfigured_provider_is_503(self, app_client):
        response = app_client.get("/unconfigured")
        assert response.status_code == 503
        assert response.json()["error"]["message"] == "google sign-in is not configured"

    def test_constraint_violation_is_conflict(self, app_client):
        response = app_client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"fields": ["email"]}

    def test_envelope_shaped_http_exception(self, app_client):
        response = app_client.get("/rate-limited")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_plain_http_exception_keeps_headers(self, app_client):
        response = app_client.get("/plain-http")
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "nothing here"
        assert response.headers["X-Hint"] == "1"

    def test_unhandled_exception_hides_internals(self, app_client):
        response = app_client.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "secret" not in body["error"]["message"]
