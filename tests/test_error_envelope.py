"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from deckexc.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from deckexc.api.schemas import Envelope, ErrorBody
from deckexc.service.errors import (
    AccountLockedError,
    DecryptionFailedError,
    DuplicateCardError,
    UpstreamTimeoutError,
)
from deckexc.storage.errors import ConstraintViolation, StoreTimeout


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id

    def test_status_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize("status_code,code", sorted(_STATUS_TO_CODE.items()))
    def test_known_statuses(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_falls_back(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(404, "missing")
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "missing", "details": None}


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(95)

    @app.get("/duplicate-card")
    async def duplicate_card():
        raise DuplicateCardError("card number is already registered")

    @app.get("/decrypt")
    async def decrypt():
        raise DecryptionFailedError("could not decrypt field")

    @app.get("/captcha-timeout")
    async def captcha_timeout():
        raise UpstreamTimeoutError("captcha verification timed out")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/store-timeout")
    async def store_timeout():
        raise StoreTimeout("database statement timed out")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("card 4111111111111111 leaked")

    @app.get("/items/{item_id}")
    async def item(item_id: int):
        return {"item_id": item_id}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_account_locked_carries_remaining_seconds(self, client):
        response = client.get("/locked")
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "account_locked"
        assert error["details"] == {"remaining_seconds": 95}

    def test_duplicate_card(self, client):
        response = client.get("/duplicate-card")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "duplicate_card"

    def test_decryption_failure_is_server_side(self, client):
        response = client.get("/decrypt")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "decryption_failed"

    def test_upstream_timeout(self, client):
        response = client.get("/captcha-timeout")
        assert response.status_code == 504
        assert response.json()["error"]["code"] == "upstream_timeout"

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_store_timeout(self, client):
        response = client.get("/store-timeout")
        assert response.status_code == 504
        assert response.json()["error"]["code"] == "upstream_timeout"

    def test_unhandled_exception_hides_message(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
        assert "4111" not in response.text

    def test_request_validation_is_400(self, client):
        response = client.get("/items/abc")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["path", "item_id"]

    def test_unknown_route_is_404_envelope(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
