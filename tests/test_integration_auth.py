"""Integration tests for the HTTP authentication flow.

Tests the complete flow including:
- Registration and login
- Lockout with Retry-After
- Bearer token checks and sliding refresh via X-New-Token
- Password reset by emailed code
- Profile changes, deactivation and the admin role endpoint
"""

import pytest
from fastapi.testclient import TestClient

from gatekeep import app as app_module
from gatekeep.api.routes import FORGOT_PASSWORD_MESSAGE, NEW_TOKEN_HEADER
from gatekeep.service.runtime import set_runtime


@pytest.fixture
def client(runtime):
    """Test client bound to a runtime with a frozen clock and recording notifier."""
    set_runtime(runtime)
    return TestClient(app_module.app)


def _register(client, username="alice", email="alice@x.com", password="secret1"):
    response = client.post(
        "/api/auth/register",
        json={"username": username, "email": email, "password": password, "phone": "1234567890"},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _login(client, identifier="alice", password="secret1"):
    return client.post("/api/auth/login", json={"identifier": identifier, "password": password})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_returns_token_and_account(self, client):
        data = _register(client)

        assert data["token_type"] == "bearer"
        assert data["token"]
        assert data["account"]["username"] == "alice"
        assert data["account"]["email"] == "alice@x.com"
        assert "password_hash" not in data["account"]

    def test_duplicate_email_is_conflict(self, client):
        _register(client)

        response = client.post(
            "/api/auth/register",
            json={"username": "alice2", "email": "alice@x.com", "password": "secret1"},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"
        assert body["error"]["details"] == {"field": "email"}

    def test_weak_password_is_validation_error(self, client):
        response = client.post(
            "/api/auth/register",
            json={"username": "alice", "email": "alice@x.com", "password": "abc"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_missing_field_is_validation_error(self, client):
        response = client.post("/api/auth/register", json={"username": "alice"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)


class TestLoginAndLockout:
    def test_login_success(self, client):
        _register(client)

        response = _login(client)

        assert response.status_code == 200
        assert response.json()["data"]["account"]["last_login_at"] is not None

    def test_wrong_password_and_unknown_user_match(self, client):
        _register(client)

        wrong = _login(client, password="wrong")
        unknown = _login(client, identifier="nobody")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_lockout_returns_423_with_retry_after(self, client, clock):
        _register(client)
        for _ in range(5):
            assert _login(client, password="wrong").status_code == 401

        locked = _login(client)

        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "locked"
        assert locked.json()["error"]["details"]["remaining_seconds"] == 600
        assert locked.headers["Retry-After"] == "600"

        clock.advance(minutes=10)
        assert _login(client).status_code == 200


class TestBearerTokens:
    def test_me_requires_token(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_me_with_token(self, client):
        token = _register(client)["token"]

        response = client.get("/api/auth/me", headers=_auth(token))

        assert response.status_code == 200
        assert response.json()["data"]["username"] == "alice"
        assert NEW_TOKEN_HEADER not in response.headers

    def test_near_expiry_token_gets_new_token_header(self, client, clock):
        token = _register(client)["token"]
        clock.advance(days=6)

        response = client.get("/api/auth/me", headers=_auth(token))

        assert response.status_code == 200
        fresh = response.headers[NEW_TOKEN_HEADER]
        assert fresh and fresh != token
        assert client.get("/api/auth/me", headers=_auth(fresh)).status_code == 200

    def test_expired_token_rejected(self, client, clock):
        token = _register(client)["token"]
        clock.advance(days=8)

        response = client.get("/api/auth/me", headers=_auth(token))

        assert response.status_code == 401

    def test_logout(self, client):
        token = _register(client)["token"]

        response = client.post("/api/auth/logout", headers=_auth(token))

        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestPasswordReset:
    def test_forgot_password_responses_are_identical(self, client, notifier):
        _register(client)

        known = client.post("/api/auth/forgot-password", json={"email": "alice@x.com"})
        unknown = client.post("/api/auth/forgot-password", json={"email": "nobody@x.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"] == {
            "message": FORGOT_PASSWORD_MESSAGE
        }
        assert len(notifier.messages) == 1

    def test_delivery_failure_is_503(self, client, notifier):
        _register(client)
        notifier.fail = True

        response = client.post("/api/auth/forgot-password", json={"email": "alice@x.com"})

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"

    def test_full_reset_flow(self, client, notifier, clock):
        old_token = _register(client)["token"]
        client.post("/api/auth/forgot-password", json={"email": "alice@x.com"})
        code = notifier.last_code
        clock.advance(seconds=30)

        verify = client.post(
            "/api/auth/verify-reset-code", json={"email": "alice@x.com", "code": code}
        )
        assert verify.status_code == 200
        assert verify.json()["data"] == {"valid": True}

        reset = client.post(
            "/api/auth/reset-password",
            json={"email": "alice@x.com", "code": code, "new_password": "secret2"},
        )
        assert reset.status_code == 200

        assert client.get("/api/auth/me", headers=_auth(old_token)).status_code == 401
        assert _login(client, password="secret2").status_code == 200

        replay = client.post(
            "/api/auth/reset-password",
            json={"email": "alice@x.com", "code": code, "new_password": "secret3"},
        )
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "validation_error"

    def test_bad_code_rejected(self, client):
        _register(client)

        response = client.post(
            "/api/auth/verify-reset-code", json={"email": "alice@x.com", "code": "123456"}
        )

        assert response.status_code == 400


class TestProfile:
    def test_get_and_update_profile(self, client):
        token = _register(client)["token"]

        assert client.get("/api/user/profile", headers=_auth(token)).status_code == 200

        response = client.put(
            "/api/user/profile", headers=_auth(token), json={"phone": "0987654321"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["account"]["phone"] == "0987654321"
        assert response.json()["data"]["token"] is None

    def test_password_change_returns_new_token(self, client, clock):
        token = _register(client)["token"]
        clock.advance(seconds=5)

        response = client.put(
            "/api/user/profile",
            headers=_auth(token),
            json={"current_password": "secret1", "new_password": "secret2"},
        )

        assert response.status_code == 200
        fresh = response.json()["data"]["token"]
        assert response.headers[NEW_TOKEN_HEADER] == fresh
        assert client.get("/api/auth/me", headers=_auth(token)).status_code == 401
        assert client.get("/api/auth/me", headers=_auth(fresh)).status_code == 200

    def test_deactivate_account(self, client):
        token = _register(client)["token"]

        wrong = client.post("/api/user/account", headers=_auth(token), json={"password": "nope"})
        assert wrong.status_code == 400

        response = client.post(
            "/api/user/account", headers=_auth(token), json={"password": "secret1"}
        )
        assert response.status_code == 200
        assert client.get("/api/auth/me", headers=_auth(token)).status_code == 401
        _register(client)


class TestAdminRole:
    def test_non_admin_forbidden(self, client):
        data = _register(client)

        response = client.put(
            f"/api/admin/users/{data['account']['id']}/role",
            headers=_auth(data["token"]),
            json={"role": "admin"},
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_can_change_role(self, client, runtime, clock):
        admin = _register(client)
        runtime.store.update_account(admin["account"]["id"], now=clock.now, role="admin")
        bob = _register(client, username="bob", email="bob@x.com")

        response = client.put(
            f"/api/admin/users/{bob['account']['id']}/role",
            headers=_auth(admin["token"]),
            json={"role": "trainer"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["role"] == "trainer"


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "healthy"

    def test_healthz_reports_store_outage(self, client, runtime, monkeypatch):
        def _down():
            raise ConnectionError("refused")

        monkeypatch.setattr(runtime.store, "ping", _down)

        response = client.get("/healthz")

        assert response.status_code == 503
        assert response.json()["checks"]["store"]["status"] == "unhealthy"
        assert response.json()["checks"]["store"]["reason"] == "unreachable"

    def test_security_headers(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
