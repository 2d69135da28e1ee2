"""Error envelope format and exception handler behaviour.

Every failure leaves the API as:
{
    "status": "error",
    "code": <numeric response code>,
    "error": {"code": <int>, "name": "<CODE_NAME>", "message": "...", "details": ...},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authcore.api.error_handling import _error_response, register_exception_handlers
from authcore.api.schemas import Envelope, ErrorBody
from authcore.app import app
from authcore.service.errors import RateLimitedError, ResponseCode, ServiceError, http_status_for
from authcore.storage.errors import ConstraintViolation


class TestResponseCodes:
    @pytest.mark.parametrize(
        "code, status",
        [
            (ResponseCode.OK, 200),
            (ResponseCode.INVALID_INPUT, 400),
            (ResponseCode.SESSION_EXPIRED, 401),
            (ResponseCode.FORBIDDEN, 403),
            (ResponseCode.VERIFICATION_UID_NOT_FOUND, 404),
            (ResponseCode.NOTIFICATION_NOT_FOUND, 404),
            (ResponseCode.USER_ALREADY_REGISTERED, 409),
            (ResponseCode.FAILED_DEPENDENCY, 424),
            (ResponseCode.TOO_MANY_REQUESTS, 429),
            (ResponseCode.SERVER_ERROR, 500),
        ],
    )
    def test_http_status_is_code_prefix(self, code, status):
        assert code.http_status == status
        assert http_status_for(int(code)) == status

    def test_every_code_has_a_message(self):
        for code in ResponseCode:
            assert code.message


class TestErrorBody:
    def test_requires_known_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code=12345, name="NOPE", message="unknown")

    def test_rejects_ok_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code=20000, name="OK", message="fine")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id


class TestErrorResponse:
    def test_shape(self):
        response = _error_response(ResponseCode.USER_NOT_FOUND)
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["code"] == 40401
        assert body["error"] == {
            "code": 40401,
            "name": "USER_NOT_FOUND",
            "message": "User not found",
            "details": None,
        }
        assert body["request_id"]

    def test_status_override(self):
        response = _error_response(ResponseCode.UNAUTHORIZED, "csrf", status_code=403)

        assert response.status_code == 403
        assert json.loads(response.body)["code"] == 40100


@pytest.fixture
def handler_client():
    sample_app = FastAPI()
    register_exception_handlers(sample_app)

    @sample_app.get("/service-error")
    async def raise_service_error():
        raise ServiceError(ResponseCode.INVALID_UID)

    @sample_app.get("/rate-limited")
    async def raise_rate_limited():
        raise RateLimitedError(retry_after=17)

    @sample_app.get("/constraint")
    async def raise_constraint():
        raise ConstraintViolation("duplicate", {"field": "email"}, constraint="user_email")

    @sample_app.get("/boom")
    async def raise_unexpected():
        raise RuntimeError("database password=hunter2 leaked")

    return TestClient(sample_app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_service_error(self, handler_client):
        resp = handler_client.get("/service-error")

        assert resp.status_code == 401
        assert resp.json()["error"]["name"] == "INVALID_UID"

    def test_rate_limited_sets_retry_after(self, handler_client):
        resp = handler_client.get("/rate-limited")

        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "17"
        assert resp.json()["code"] == 42900

    def test_constraint_violation_is_conflict(self, handler_client):
        resp = handler_client.get("/constraint")

        assert resp.status_code == 409
        assert resp.json()["code"] == 40900

    def test_unhandled_exception_hides_detail(self, handler_client):
        resp = handler_client.get("/boom")

        assert resp.status_code == 500
        assert resp.json()["code"] == 50000
        assert "hunter2" not in resp.text


class TestRequestValidation:
    def test_invalid_body_is_invalid_input(self):
        client = TestClient(app)

        resp = client.post(
            "/v1/auth/login",
            json={"authType": "password", "email": "not-an-email", "password": "Passw0rd!"},
        )

        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == 40001
        assert any("email" in ".".join(d["loc"]) for d in body["error"]["details"])

    def test_validation_details_omit_submitted_values(self):
        client = TestClient(app)

        resp = client.post(
            "/v1/auth/register",
            json={"authType": "password", "email": "a@x.com", "password": "short"},
        )

        assert resp.status_code == 400
        assert "short" not in json.dumps(resp.json()["error"]["details"])

    def test_unknown_route_uses_envelope(self):
        client = TestClient(app)

        resp = client.get("/v1/nope")

        assert resp.status_code == 404
        assert resp.json()["status"] == "error"
