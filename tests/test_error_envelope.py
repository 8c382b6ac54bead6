"""Tests for the error envelope format and error handling.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tokensmith import app as app_module
from tokensmith.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from tokensmith.api.schemas import Envelope, ErrorBody
from tokensmith.service.errors import (
    ERROR_CODES,
    ServerError,
    UpstreamTimeoutError,
    error_for_status,
)
from tokensmith.service.runtime import get_runtime


class RaisingChannel:
    def __init__(self, exc):
        self.exc = exc

    async def request(self, operation, payload=None):
        raise self.exc

    async def close(self):
        return None


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestErrorBody:
    def test_error_body_accepts_stable_codes(self):
        for code in ERROR_CODES:
            assert ErrorBody(code=code, message="m").code == code

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="m")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok", data={"a": 1}).request_id


class TestStatusMapping:
    def test_every_mapped_code_is_stable(self):
        assert set(_STATUS_TO_CODE.values()) <= ERROR_CODES

    def test_unmapped_statuses(self):
        assert _error_code_for_status(504) == "upstream_timeout"
        assert _error_code_for_status(418) == "validation_error"
        assert _error_code_for_status(503) == "server_error"

    def test_error_response_body(self):
        response = _error_response(409, "email already exists", {"field": "email"}, code="conflict")

        body = json.loads(response.body)
        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "conflict",
            "message": "email already exists",
            "details": {"field": "email"},
        }

    def test_error_for_status_rebuilds_subclasses(self):
        assert isinstance(error_for_status(504, "upstream unavailable"), UpstreamTimeoutError)
        assert isinstance(error_for_status(500, "boom"), ServerError)
        assert error_for_status(403, "no", error_code="forbidden").error_code == "forbidden"


class TestHttpErrors:
    def test_unknown_route_is_not_found_envelope(self, client):
        response = client.get("/nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_upstream_timeout_maps_to_504(self, client):
        get_runtime().gateway.channel = RaisingChannel(UpstreamTimeoutError("upstream unavailable"))

        response = client.post("/auth/login", json={"email": "a@example.com", "password": "pw"})

        assert response.status_code == 504
        assert response.json()["error"] == {
            "code": "upstream_timeout",
            "message": "upstream unavailable",
            "details": None,
        }

    def test_unexpected_error_is_opaque_500(self):
        get_runtime().gateway.channel = RaisingChannel(RuntimeError("/var/lib/secret exploded"))
        client = TestClient(app_module.app, raise_server_exceptions=False)

        response = client.post("/auth/login", json={"email": "a@example.com", "password": "pw"})

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert body["error"]["message"] == "internal server error"
        assert "secret" not in response.text

    def test_request_id_header_is_echoed(self, client):
        response = client.post(
            "/auth/refresh", json={}, headers={"X-Request-ID": "req-123"}
        )

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"
