"""Tests for the error envelope format and exception mapping.

Every failure leaves the API as:
{
    "success": false,
    "message": "<human readable>",
    "code": "<stable code>",
    "stack": "<traceback, server errors outside production only>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from edugate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from edugate.api.schemas import Envelope, ErrorBody
from edugate.config import reset_settings_cache
from edugate.service import errors
from edugate.service.runtime import get_runtime
from edugate.storage.errors import ConstraintViolation


class _Payload(BaseModel):
    name: str


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @app.get("/forbidden")
    async def forbidden():
        raise errors.ForbiddenError("Accés denegat")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.post("/payload")
    async def payload(body: _Payload):
        return {"name": body.name}

    return app


@pytest.fixture
def client():
    return TestClient(_build_app(), raise_server_exceptions=False)


class TestErrorBody:
    def test_required_fields(self):
        body = ErrorBody(message="Credencials invàlides", code="invalid_credentials")
        assert body.success is False
        assert body.stack is None

    def test_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error")

    def test_envelope_defaults_to_success(self):
        assert Envelope(data={"x": 1}).model_dump() == {
            "success": True,
            "data": {"x": 1},
            "message": None,
        }


class TestErrorResponse:
    def test_stack_is_omitted_below_500(self):
        response = _error_response(403, "no", exc=RuntimeError("x"))

        assert json.loads(response.body) == {
            "success": False,
            "message": "no",
            "code": "forbidden",
        }

    def test_stack_is_attached_to_server_errors(self):
        try:
            raise RuntimeError("kaboom")
        except RuntimeError as exc:
            response = _error_response(500, "Error intern del servidor", exc=exc)

        body = json.loads(response.body)
        assert body["code"] == "server_error"
        assert "RuntimeError: kaboom" in body["stack"]

    def test_stack_hidden_in_production(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        reset_settings_cache()
        try:
            raise RuntimeError("kaboom")
        except RuntimeError as exc:
            response = _error_response(500, "Error intern del servidor", exc=exc)

        assert "stack" not in json.loads(response.body)

    @pytest.mark.parametrize("status,code", sorted(_STATUS_TO_CODE.items()))
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc_cls,status,code",
        [
            (errors.ValidationError, 400, "validation_error"),
            (errors.InvalidCredentialsError, 401, "invalid_credentials"),
            (errors.SessionExpiredError, 401, "session_expired"),
            (errors.ExpiredTokenError, 401, "expired_token"),
            (errors.ForbiddenError, 403, "forbidden"),
            (errors.ConflictError, 409, "conflict"),
            (errors.RateLimitedError, 429, "rate_limited"),
            (errors.InternalError, 500, "server_error"),
        ],
    )
    def test_class_defaults(self, exc_cls, status, code):
        exc = exc_cls("missatge")
        assert exc.status_code == status
        assert exc.error_code == code
        assert exc.detail == {}

    def test_overrides(self):
        exc = errors.ServiceError("x", status_code=418, error_code="teapot", detail={"a": 1})
        assert (exc.status_code, exc.error_code, exc.detail) == (418, "teapot", {"a": 1})


class TestHandlers:
    def test_service_error(self, client):
        response = client.get("/forbidden")

        assert response.status_code == 403
        assert response.json() == {
            "success": False,
            "message": "Accés denegat",
            "code": "forbidden",
        }

    def test_constraint_violation_is_409(self, client):
        response = client.get("/conflict")

        assert response.status_code == 409
        assert response.json()["code"] == "conflict"

    def test_request_validation_is_400(self, client):
        response = client.post("/payload", json={})

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"
        assert "name" in response.json()["message"]

    def test_unknown_route(self, client):
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["message"] == "Ruta no trobada"

    def test_uncaught_exception_is_500_and_recorded(self, client):
        response = client.get("/boom", headers={"User-Agent": "pytest"})

        assert response.status_code == 500
        body = response.json()
        assert body["message"] == "Error intern del servidor"
        assert body["code"] == "server_error"
        assert "kaboom" in body["stack"]

        entries = get_runtime().store.list_activity(action="SYSTEM_ERROR")
        assert len(entries) == 1
        assert entries[0].new_data["error"] == "RuntimeError"
        assert entries[0].new_data["path"] == "/boom"
        assert entries[0].user_agent == "pytest"
