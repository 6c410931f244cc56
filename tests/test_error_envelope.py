"""Tests for the JSON error envelope and RFC 6749 error bodies.

Non-OAuth failures share one envelope:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
The token, authorize and revoke endpoints answer protocol errors with
``{"error": ..., "error_description": ...}`` instead.
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tenantauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    oauth_error_response,
)
from tenantauth.api.schemas import Envelope, ErrorBody
from tenantauth.service.errors import OAuthError

from conftest import USER_EMAIL


@pytest.fixture
def client():
    from tenantauth.app import app

    return TestClient(app, follow_redirects=False)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.details is None

    def test_details_may_be_a_list(self):
        error = ErrorBody(
            code="validation_error", message="bad", details=[{"field": "email"}, {"field": "pw"}]
        )
        assert len(error.details) == 2

    def test_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="error occurred")

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_provider_codes_accepted(self):
        assert ErrorBody(code="not_configured", message="x").code == "not_configured"
        assert ErrorBody(code="upstream_error", message="x").code == "upstream_error"


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="slow down", details={"retry_after": 60}),
            request_id="req-1",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["request_id"] == "req-1"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (502, "upstream_error"),
        ],
    )
    def test_status_maps_to_code(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_a_valid_envelope_code(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestResponseFactories:
    def test_error_response_envelope(self):
        response = _error_response(404, "not found", details=None)
        data = json.loads(response.body)
        assert response.status_code == 404
        assert data["status"] == "error"
        assert data["error"] == {"code": "not_found", "message": "not found", "details": None}
        assert data["request_id"]

    def test_oauth_error_body(self):
        response = oauth_error_response(OAuthError("invalid_grant", "code already used"))
        assert response.status_code == 400
        assert json.loads(response.body) == {
            "error": "invalid_grant",
            "error_description": "code already used",
        }
        assert response.headers["cache-control"] == "no-store"
        assert "www-authenticate" not in response.headers

    def test_invalid_client_is_401_with_challenge(self):
        response = oauth_error_response(OAuthError("invalid_client", "bad secret"))
        assert response.status_code == 401
        assert response.headers["www-authenticate"].startswith("Basic")


class TestHandlers:
    def test_unknown_tenant_is_enveloped_404(self, client):
        resp = client.get("/tenant/ghost/.well-known/openid-configuration")
        assert resp.status_code == 404
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    def test_request_validation_is_400(self, client):
        resp = client.post("/login", json={"email": USER_EMAIL})
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_bad_credentials_are_401(self, client, seeded_user):
        resp = client.post("/login", json={"email": USER_EMAIL, "password": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_rate_limit_is_enveloped_429(self, client, runtime, seeded_user, monkeypatch):
        monkeypatch.setattr(runtime.settings, "login_rate_limit_per_minute", 1)
        client.post("/login", json={"email": USER_EMAIL, "password": "wrong"})
        resp = client.post("/login", json={"email": USER_EMAIL, "password": "wrong"})
        assert resp.status_code == 429
        body = resp.json()
        assert body["error"]["code"] == "rate_limited"
        assert body["error"]["details"]["retry_after"] > 0

    def test_token_endpoint_uses_oauth_body(self, client):
        resp = client.post("/oauth/token", data={"grant_type": "password"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "unsupported_grant_type"
        assert resp.headers["cache-control"] == "no-store"

    def test_missing_bearer_is_401(self, client):
        resp = client.get("/2fa/status")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_security_headers(self, client):
        resp = client.get("/.well-known/openid-configuration")
        assert resp.headers["x-frame-options"] == "DENY"
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["x-request-id"]
