"""Tests for the JSON error envelope and request schemas.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<id>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from catalogauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from catalogauth.api.routes import _http_error
from catalogauth.api.schemas import Envelope, ErrorBody, RegisterRequest
from catalogauth.logging import sanitize_error_message
from catalogauth.service.errors import ConflictError, NotFoundError, TransientError
from catalogauth.storage.errors import ConstraintViolation


class _Body(BaseModel):
    password: str
    count: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/not-found")
    async def not_found():
        raise NotFoundError("user not found")

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("email already exists", detail={"field": "email"})

    @app.get("/transient")
    async def transient():
        raise TransientError("session store temporarily unavailable")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("username already exists", {"field": "username"})

    @app.get("/http")
    async def http():
        raise _http_error("forbidden", "signup disabled", status_code=403)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    @app.post("/validate")
    async def validate(body: _Body):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestErrorBody:
    def test_known_code_accepted(self):
        body = ErrorBody(code="unauthorized", message="nope")
        assert body.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_status_mapping(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _error_code_for_status(503) == "service_unavailable"
        assert _error_code_for_status(418) == "server_error"

    def test_envelope_generates_request_id(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id

    def test_envelope_status_is_constrained(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")


class TestHandlers:
    @pytest.mark.parametrize(
        "path,status_code,code",
        [
            ("/not-found", 404, "not_found"),
            ("/conflict", 409, "conflict"),
            ("/transient", 503, "service_unavailable"),
            ("/constraint", 409, "conflict"),
            ("/http", 403, "forbidden"),
            ("/boom", 500, "server_error"),
            ("/missing-route", 404, "not_found"),
        ],
    )
    def test_errors_use_envelope(self, client, path, status_code, code):
        response = client.get(path)
        assert response.status_code == status_code
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["request_id"]

    def test_details_carried(self, client):
        assert client.get("/conflict").json()["error"]["details"] == {"field": "email"}

    def test_internal_errors_are_opaque(self, client):
        body = client.get("/boom").json()
        assert body["error"]["message"] == "internal server error"
        assert "secret internals" not in str(body)

    def test_validation_errors_are_400_without_values(self, client):
        response = client.post("/validate", json={"password": "hunter2!", "count": "many"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["field"] == "count"
        assert "hunter2!" not in response.text


class TestRequestSchemas:
    def test_register_normalizes_input(self):
        body = RegisterRequest(
            username="  alice\u200b ", email="Alice@Example.COM ", password="P@ssw0rd1"
        )
        assert body.username == "alice"
        assert body.email == "alice@example.com"

    def test_oversized_password_rejected(self):
        with pytest.raises(PydanticValidationError):
            RegisterRequest(username="alice", email="alice@example.com", password="x" * 5000)


class TestSanitizeErrorMessage:
    def test_strips_sql_and_paths(self):
        message = sanitize_error_message("SELECT * FROM app_user failed at /srv/catalogauth/state")
        assert "app_user" not in message
        assert "/srv/catalogauth" not in message

    def test_strips_credentials(self):
        assert "hunter2" not in sanitize_error_message("password=hunter2 rejected")

    def test_plain_messages_untouched(self):
        assert sanitize_error_message("Not Found") == "Not Found"
        assert sanitize_error_message("") == "An error occurred"
