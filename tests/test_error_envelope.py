"""Tests for the error envelope format and exception handlers.

Error responses look like:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from mobileauth import app as app_module
from mobileauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from mobileauth.api.schemas import Envelope, ErrorBody
from mobileauth.service import errors as service_errors
from mobileauth.service.runtime import get_runtime
from mobileauth.storage.errors import StoreUnavailableError


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    @pytest.mark.parametrize(
        "code", ["invalid_refresh_token", "invalid_credentials", "user_not_found"]
    )
    def test_auth_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        assert len(Envelope(status="ok").request_id) == 36

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
            (503, "service_unavailable"),
        ],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_mapping_codes_are_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["request_id"]

    def test_unknown_code_falls_back_to_status(self):
        response = _error_response(401, "bad token", code="token_expired")
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "unauthorized"


class TestHandlers:
    def test_store_outage_is_503(self, monkeypatch):
        runtime = get_runtime()

        def _down(*args, **kwargs):
            raise StoreUnavailableError("connection refused")

        monkeypatch.setattr(runtime.store, "get_user_by_username", _down)
        client = TestClient(app_module.app)
        response = client.post(
            "/v1/auth/login", json={"username": "someone", "password": "whatever1"}
        )

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "service_unavailable"
        assert "connection refused" not in error["message"]

    def test_refresh_outage_is_not_a_credential_error(self, monkeypatch):
        runtime = get_runtime()

        def _down(*args, **kwargs):
            raise StoreUnavailableError("connection refused")

        monkeypatch.setattr(runtime.store, "list_live_refresh_tokens", _down)
        client = TestClient(app_module.app)
        response = client.post("/v1/auth/refresh", json={"refresh_token": "u.abc"})
        assert response.status_code == 503

    def test_uncaught_is_500(self, monkeypatch):
        runtime = get_runtime()

        def _boom(*args, **kwargs):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(runtime.store, "get_user_by_username", _boom)
        client = TestClient(app_module.app, raise_server_exceptions=False)
        response = client.post(
            "/v1/auth/login", json={"username": "someone", "password": "whatever1"}
        )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"

    def test_validation_error_is_400(self):
        client = TestClient(app_module.app)
        response = client.post("/v1/auth/refresh", json={})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)


class TestErrorTaxonomy:
    def test_service_errors_are_client_errors(self):
        exported = [getattr(service_errors, name) for name in service_errors.__all__]
        for cls in exported:
            assert issubclass(cls, service_errors.ServiceError)
            assert 400 <= cls.status_code < 500, cls.__name__
