"""Error envelope format and the kind-to-status mapping at the HTTP boundary.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<error kind>", "message": "<safe text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from tenantauth.api.error_handling import KIND_TO_STATUS, register_exception_handlers, status_for
from tenantauth.api.schemas import Envelope, ErrorBody
from tenantauth.service.errors import (
    AccountLocked,
    ErrorKind,
    InvalidCredentials,
    LookupFailed,
    MfaLocked,
    PasswordPolicyViolation,
    TenantInactive,
    TokenRevoked,
)
from tenantauth.storage.errors import ConstraintViolation


class LoginBody(BaseModel):
    identity: str
    password: str


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/invalid-credentials")
    async def invalid_credentials():
        raise InvalidCredentials()

    @app.get("/locked")
    async def locked():
        raise AccountLocked(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))

    @app.get("/tenant-inactive")
    async def tenant_inactive():
        raise TenantInactive()

    @app.get("/revoked")
    async def revoked():
        raise TokenRevoked()

    @app.get("/mfa-locked")
    async def mfa_locked():
        raise MfaLocked()

    @app.get("/weak-password")
    async def weak_password():
        raise PasswordPolicyViolation(["Password must contain at least one number"])

    @app.get("/lookup-failed")
    async def lookup_failed():
        raise LookupFailed("redis timeout at 10.0.0.5:6379")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.post("/login")
    async def login(body: LoginBody):
        return {"status": "ok"}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("password=hunter2 leaked in driver error")

    return app


@pytest.fixture
def client():
    return TestClient(_app(), raise_server_exceptions=False)


class TestErrorBody:
    def test_known_codes_are_accepted(self):
        body = ErrorBody(code="invalid_credentials", message="Invalid credentials")
        assert body.details is None

    def test_unknown_code_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="pending")
        assert len(Envelope(status="ok").request_id) == 36


class TestStatusMapping:
    def test_every_kind_has_a_status(self):
        assert set(KIND_TO_STATUS) == set(ErrorKind)

    @pytest.mark.parametrize(
        "kind,status",
        [
            (ErrorKind.INVALID_CREDENTIALS, 401),
            (ErrorKind.ACCOUNT_LOCKED, 403),
            (ErrorKind.TOKEN_EXPIRED, 401),
            (ErrorKind.MFA_LOCKED, 429),
            (ErrorKind.PASSWORD_POLICY_VIOLATION, 400),
            (ErrorKind.LOOKUP_FAILED, 503),
            (ErrorKind.CONFLICT, 409),
        ],
    )
    def test_status_for(self, kind, status):
        assert status_for(kind) == status


class TestHandlers:
    def test_invalid_credentials(self, client):
        resp = client.get("/invalid-credentials")
        assert resp.status_code == 401
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "invalid_credentials",
            "message": "Invalid credentials",
            "details": None,
        }
        assert body["request_id"]

    def test_account_locked_carries_expiry(self, client):
        resp = client.get("/locked")
        assert resp.status_code == 403
        assert resp.json()["error"]["details"] == {"locked_until": "2026-03-02T09:30:00+00:00"}

    def test_tenant_inactive_is_unauthorized(self, client):
        resp = client.get("/tenant-inactive")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "tenant_inactive"

    def test_revoked_and_mfa_locked(self, client):
        assert client.get("/revoked").json()["error"]["code"] == "token_revoked"
        assert client.get("/mfa-locked").status_code == 429

    def test_policy_violation_lists_reasons(self, client):
        resp = client.get("/weak-password")
        assert resp.status_code == 400
        assert resp.json()["error"]["details"] == {
            "reasons": ["Password must contain at least one number"]
        }

    def test_lookup_failure_is_generic(self, client):
        resp = client.get("/lookup-failed")
        assert resp.status_code == 503
        error = resp.json()["error"]
        assert error["code"] == "lookup_failed"
        assert "redis" not in error["message"]

    def test_constraint_violation_is_conflict(self, client):
        resp = client.get("/conflict")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_request_validation(self, client):
        resp = client.post("/login", json={"identity": "root"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert isinstance(error["details"], list)

    def test_unhandled_exception_hides_detail(self, client):
        resp = client.get("/boom")
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error == {"code": "server_error", "message": "internal server error", "details": None}
