"""Error envelope format: {status, error: {code, message, details}, request_id}."""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tokenward.api.error_handling import _error_code_for_status, _error_response
from tokenward.api.schemas import Envelope, ErrorBody
from tokenward.app import app
from tokenward.logging import set_correlation_id
from tokenward.service.errors import AuthenticationError, RateLimitedError


class TestErrorBody:
    def test_defaults(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.details is None

    def test_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


@pytest.mark.parametrize(
    "status_code,expected",
    [
        (400, "validation_error"),
        (401, "unauthorized"),
        (404, "not_found"),
        (405, "validation_error"),
        (409, "conflict"),
        (429, "rate_limited"),
        (503, "unavailable"),
        (502, "server_error"),
    ],
)
def test_status_to_code(status_code, expected):
    assert _error_code_for_status(status_code) == expected


def test_error_response_uses_correlation_id_and_challenge():
    set_correlation_id("req-42")

    response = _error_response(401, "invalid token")
    body = json.loads(response.body)

    assert body["status"] == "error"
    assert body["request_id"] == "req-42"
    assert body["error"] == {"code": "unauthorized", "message": "invalid token", "details": None}
    assert response.headers["www-authenticate"] == "Bearer"


def test_error_headers_come_from_the_exception():
    error = RateLimitedError("too many attempts", retry_after=42)

    response = _error_response(
        error.status_code, error.message, error.detail, code=error.error_code, headers=error.headers
    )
    body = json.loads(response.body)

    assert response.status_code == 429
    assert response.headers["retry-after"] == "42"
    assert body["error"]["details"] == {"retry_after": 42}
    assert AuthenticationError("invalid token").headers == {"WWW-Authenticate": "Bearer"}


def test_unknown_route_is_wrapped():
    with TestClient(app) as client:
        response = client.get("/v1/nowhere")

    assert response.status_code == 404
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "not_found"


def test_malformed_json_is_validation_error():
    with TestClient(app) as client:
        response = client.post(
            "/v1/auth/login",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"
