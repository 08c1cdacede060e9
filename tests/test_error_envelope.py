"""Tests for the error envelope format and error handling.

Error responses share one envelope:
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
from fastapi import APIRouter, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from claimdesk.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from claimdesk.api.schemas import Envelope, ErrorBody
from claimdesk.app import create_app
from claimdesk.service.errors import (
    AccountLockedError,
    BadRequestError,
    ServerError,
)
from claimdesk.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid token")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="slow down")

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_a_valid_error_code(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "invalid username or password")
        assert response.status_code == 401
        data = json.loads(response.body)
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_error_response_custom_code(self):
        response = _error_response(409, "duplicate", code="conflict")
        assert json.loads(response.body)["error"]["code"] == "conflict"


@pytest.fixture
def failing_client(runtime):
    """App with extra routes that raise each kind of error."""
    app = create_app(settings=runtime.settings, runtime=runtime)
    probe = APIRouter(prefix="/probe")

    @probe.get("/locked")
    async def locked():
        raise AccountLockedError(runtime.auth._now())

    @probe.get("/bad")
    async def bad():
        raise BadRequestError("bad input", detail={"field": "email"})

    @probe.get("/server")
    async def server():
        raise ServerError("signing failed")

    @probe.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @probe.get("/http")
    async def http():
        raise HTTPException(status_code=404, detail="nothing here")

    @probe.get("/crash")
    async def crash():
        raise RuntimeError("boom")

    app.include_router(probe)
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


class TestExceptionHandlers:
    def test_locked_error_carries_unlock_time(self, failing_client, runtime):
        response = failing_client.get("/probe/locked")
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["details"] == {"locked_until": runtime.auth._now().isoformat()}

    def test_service_error_details(self, failing_client):
        response = failing_client.get("/probe/bad")
        assert response.status_code == 400
        assert response.json()["error"] == {
            "code": "validation_error",
            "message": "bad input",
            "details": {"field": "email"},
        }

    def test_server_error(self, failing_client):
        response = failing_client.get("/probe/server")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"

    def test_constraint_violation_is_conflict(self, failing_client):
        response = failing_client.get("/probe/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_http_exception_wrapped(self, failing_client):
        response = failing_client.get("/probe/http")
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "nothing here"

    def test_uncaught_exception_hides_detail(self, failing_client):
        response = failing_client.get("/probe/crash")
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["message"] == "internal server error"
        assert "boom" not in response.text

    def test_request_id_is_echoed(self, failing_client):
        response = failing_client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
