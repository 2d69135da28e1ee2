"""End-to-end HTTP tests through the FastAPI app with the in-memory store."""

import pytest
from fastapi.testclient import TestClient

from authcore.app import app
from authcore.service.runtime import get_runtime

PASSWORD = "Passw0rd!"
MOBILE = {"X-Client-Type": "mobile"}


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def outbox(email_sender, sms_sender):
    """Route the runtime's notifications to recording senders."""
    runtime = get_runtime()
    runtime.auth.email = email_sender
    runtime.auth.sms = sms_sender
    return email_sender


def _register(client, email="a@x.com", headers=MOBILE):
    return client.post(
        "/v1/auth/register",
        json={"authType": "password", "email": email, "password": PASSWORD},
        headers=headers,
    )


def _bearer(tokens):
    return {"Authorization": f"Bearer {tokens['accessToken']}", **MOBILE}


class TestMobileFlows:
    def test_register_login_refresh_logout(self, client, outbox):
        registered = _register(client)
        assert registered.status_code == 201
        body = registered.json()
        assert body["status"] == "ok"
        assert body["code"] == 20000
        assert body["data"]["user"]["email"] == "a@x.com"
        assert body["data"]["user"]["emailVerified"] is False
        assert "passwordHash" not in body["data"]["user"]

        login = client.post(
            "/v1/auth/login",
            json={"authType": "password", "email": "a@x.com", "password": PASSWORD},
            headers=MOBILE,
        )
        assert login.status_code == 200
        tokens = login.json()["data"]["tokens"]
        assert tokens["accessToken"] and tokens["refreshToken"]

        me = client.get("/v1/users/me", headers=_bearer(tokens))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "a@x.com"

        refreshed = client.post(
            "/v1/auth/refresh", headers={"Refresh-Token": tokens["refreshToken"], **MOBILE}
        )
        assert refreshed.status_code == 200
        new_tokens = refreshed.json()["data"]

        replay = client.post(
            "/v1/auth/refresh", headers={"Refresh-Token": tokens["refreshToken"], **MOBILE}
        )
        assert replay.status_code == 401
        assert replay.json()["code"] == 40101

        assert client.post("/v1/auth/logout", headers=_bearer(new_tokens)).status_code == 200
        after = client.get("/v1/users/me", headers=_bearer(new_tokens))
        assert after.status_code == 401
        assert after.json()["error"]["name"] == "SESSION_EXPIRED"

    def test_wrong_password(self, client, outbox):
        _register(client)

        resp = client.post(
            "/v1/auth/login",
            json={"authType": "password", "email": "a@x.com", "password": "wrong-password"},
            headers=MOBILE,
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == 40002

    def test_duplicate_registration(self, client, outbox):
        _register(client)

        resp = _register(client)
        assert resp.status_code == 409
        assert resp.json()["error"]["name"] == "USER_ALREADY_REGISTERED"

    def test_verify_email_link(self, client, outbox):
        _register(client)
        link_token = outbox.last_link_token()

        resp = client.post("/v1/auth/verify-email", json={"uid": link_token})
        assert resp.status_code == 200
        assert resp.json()["data"]["emailVerified"] is True

        replay = client.post("/v1/auth/verify-email", json={"uid": link_token})
        assert replay.status_code == 404
        assert replay.json()["code"] == 40402

    def test_malformed_uid(self, client, outbox):
        resp = client.post("/v1/auth/verify-email", json={"uid": "no-slash-here"})

        assert resp.status_code == 401
        assert resp.json()["code"] == 40104

    def test_password_reset(self, client, outbox):
        _register(client)
        assert client.post("/v1/auth/password/forgot", json={"email": "a@x.com"}).status_code == 200

        reset = client.post(
            "/v1/auth/password/reset",
            json={"uid": outbox.last_link_token(), "password": "NewPassw0rd!"},
        )
        assert reset.status_code == 200

        login = client.post(
            "/v1/auth/login",
            json={"authType": "password", "email": "a@x.com", "password": "NewPassw0rd!"},
            headers=MOBILE,
        )
        assert login.status_code == 200

    def test_login_code_with_trusted_device(self, client, outbox):
        _register(client)
        assert client.post("/v1/auth/resendLoginCode", json={"email": "a@x.com"}).status_code == 200
        code = outbox.sent[-1]["data"]["code"]

        verified = client.post(
            "/v1/auth/verifyLoginCode",
            json={"loginCode": code, "email": "a@x.com", "dontAskOnThisDevice": True},
            headers=MOBILE,
        )
        assert verified.status_code == 200
        data = verified.json()["data"]
        assert len(data["deviceToken"]) == 64
        assert data["accessToken"]

        trusted = client.post(
            "/v1/auth/trusted-device",
            json={"email": "a@x.com", "deviceToken": data["deviceToken"]},
            headers=MOBILE,
        )
        assert trusted.status_code == 200
        assert trusted.json()["data"]["tokens"]["accessToken"]

        unknown = client.post(
            "/v1/auth/trusted-device",
            json={"email": "a@x.com", "deviceToken": "f" * 64},
            headers=MOBILE,
        )
        assert unknown.status_code == 401
        assert unknown.json()["code"] == 40101

    def test_phone_verification(self, client, outbox, sms_sender):
        tokens = _register(client).json()["data"]["tokens"]

        sent = client.post(
            "/v1/auth/send-phone-verification",
            json={"phoneNumber": "(555) 555-0100"},
            headers=_bearer(tokens),
        )
        assert sent.status_code == 200

        verified = client.post(
            "/v1/auth/verify-phone", json={"code": sms_sender.last_code()}, headers=_bearer(tokens)
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["phoneVerified"] is True
        assert verified.json()["data"]["phoneNumber"] == "+15555550100"

    def test_notifications_and_delete(self, client, outbox):
        tokens = _register(client).json()["data"]["tokens"]

        updated = client.patch(
            "/v1/users/me/notifications", json={"enabled": False}, headers=_bearer(tokens)
        )
        assert updated.json()["data"]["notifications"] is False

        assert client.delete("/v1/users/me", headers=_bearer(tokens)).status_code == 200
        assert client.get("/v1/users/me", headers=_bearer(tokens)).status_code == 401
        assert _register(client).status_code == 201

    def test_email_outage_is_failed_dependency(self, client, outbox):
        _register(client)
        outbox.fail = True

        resp = client.post("/v1/auth/password/forgot", json={"email": "a@x.com"})
        assert resp.status_code == 424
        assert resp.json()["code"] == 42400


class TestBrowserFlows:
    def test_cookies_and_csrf(self, client, outbox):
        """Browsers get httponly cookies and must echo the CSRF cookie on writes."""
        registered = _register(client, headers={})
        assert registered.status_code == 201
        tokens = registered.json()["data"]["tokens"]
        assert tokens["accessToken"] is None
        assert client.cookies.get("access_token")
        assert client.cookies.get("refresh_token")
        csrf = client.cookies.get("csrf_token")
        assert csrf

        assert client.get("/v1/users/me").status_code == 200

        assert blocked.status_code == 403
        assert blocked.json()["code"] == 40300
        assert blocked.status_code == 403

        allowed = client.post("/v1/auth/logout", headers={"X-CSRF-Token": csrf})
        assert allowed.status_code == 200

    def test_cookie_refresh(self, client, outbox):
        _register(client, headers={})
        csrf = client.cookies.get("csrf_token")
        old_refresh = client.cookies.get("refresh_token")

        resp = client.post("/v1/auth/refresh", headers={"X-CSRF-Token": csrf})
        assert resp.status_code == 200
        assert client.cookies.get("refresh_token") != old_refresh


class TestRateLimits:
    def test_login_rate_limit(self, client, outbox, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "login_rate_limit_per_minute", 2)
        payload = {"authType": "password", "email": "a@x.com", "password": PASSWORD}

        statuses = [
            client.post("/v1/auth/login", json=payload, headers=MOBILE).status_code
            for _ in range(3)
        ]
        assert statuses[-1] == 429
        limited = client.post("/v1/auth/login", json=payload, headers=MOBILE)
        assert limited.json()["code"] == 42900
        assert limited.headers["Retry-After"]


class TestHealth:
    def test_healthz(self, client):
        resp = client.get("/healthz")

        assert resp.status_code == 200
        assert resp.json()["checks"]["database"]["type"] == "memory"
        assert resp.headers["X-Request-ID"]
