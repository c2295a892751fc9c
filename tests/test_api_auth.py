"""Integration tests for the auth endpoints.

Tests the complete flow over HTTP:
- Registration and login
- Token refresh and rotation
- Logout and logout-all
- Password change
- Error envelope shape
"""

import pytest
from fastapi.testclient import TestClient

from clinauth import app as app_module
from clinauth.service.runtime import get_runtime

from conftest import STRONG_PASSWORD, fast_hasher


@pytest.fixture
def client():
    """Create a test client backed by the in-memory runtime."""
    get_runtime().auth.hasher = fast_hasher()
    return TestClient(app_module.app)


def _register(client, email="alice@example.com", password=STRONG_PASSWORD, **extra):
    return client.post(
        "/v1/auth/register", json={"email": email, "password": password, **extra}
    )


def _bearer(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestRegister:
    def test_register_returns_tokens(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["role"] == "patient"
        assert {"access_token", "refresh_token", "session_id", "user_id"} <= set(data)

    def test_duplicate_email_is_conflict(self, client):
        _register(client)

        response = _register(client, email="Alice@Example.com")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "user_exists"

    def test_invalid_email(self, client):
        response = _register(client, email="invalid-email")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_email"
        assert error["details"] == {"field": "email"}

    def test_weak_password_lists_unmet_requirements(self, client):
        response = _register(client, password="weakpass")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "weak_password"
        assert "uppercase" in error["details"]["requirements"]

    def test_missing_field_is_validation_error(self, client):
        response = client.post("/v1/auth/register", json={"email": "a@example.com"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["field"] == "password"

    def test_self_registration_cannot_pick_privileged_role(self, client):
        response = _register(client, role="admin")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "insufficient_permissions"

    def test_admin_may_register_staff_accounts(self, client):
        runtime = get_runtime()
        runtime.credentials.create_user(
            "root@example.com", runtime.auth.hasher.hash(STRONG_PASSWORD), role="admin"
        )
        admin = client.post(
            "/v1/auth/login",
            json={"email": "root@example.com", "password": STRONG_PASSWORD},
        ).json()["data"]

        response = client.post(
            "/v1/auth/register",
            json={"email": "dr@example.com", "password": STRONG_PASSWORD, "role": "doctor"},
            headers=_bearer(admin),
        )

        assert response.status_code == 201
        assert response.json()["data"]["role"] == "doctor"


class TestLogin:
    def test_login_succeeds(self, client):
        _register(client)

        response = client.post(
            "/v1/auth/login",
            json={"email": "alice@example.com", "password": STRONG_PASSWORD},
        )

        assert response.status_code == 200
        assert response.json()["data"]["access_token"]

    def test_unknown_user_and_wrong_password_look_the_same(self, client):
        _register(client)

        unknown = client.post(
            "/v1/auth/login",
            json={"email": "ghost@example.com", "password": STRONG_PASSWORD},
        )
        wrong = client.post(
            "/v1/auth/login",
            json={"email": "alice@example.com", "password": "Wr0ng!Password"},
        )

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]
        assert unknown.headers["WWW-Authenticate"] == "Bearer"

    def test_account_locks_after_repeated_failures(self, client):
        _register(client)
        for _ in range(5):
            client.post(
                "/v1/auth/login",
                json={"email": "alice@example.com", "password": "Wr0ng!Password"},
            )

        response = client.post(
            "/v1/auth/login",
            json={"email": "alice@example.com", "password": STRONG_PASSWORD},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "account_locked"


class TestTokenLifecycle:
    def test_me_lists_current_session(self, client):
        tokens = _register(client).json()["data"]

        response = client.get("/v1/auth/me", headers=_bearer(tokens))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user_id"] == tokens["user_id"]
        assert "read:own_profile" in data["permissions"]
        assert [s["current"] for s in data["sessions"]] == [True]

    def test_refresh_rotates_and_old_token_dies(self, client):
        tokens = _register(client).json()["data"]

        first = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        replay = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert first.status_code == 200
        assert first.json()["data"]["session_id"] != tokens["session_id"]
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_session"
        # Replay of a rotated token revokes the rotated session too
        rotated = first.json()["data"]
        assert client.get("/v1/auth/me", headers=_bearer(rotated)).status_code == 401

    def test_logout_then_refresh_fails(self, client):
        tokens = _register(client).json()["data"]

        assert client.post(
            "/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]}
        ).status_code == 200
        assert client.post(
            "/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]}
        ).status_code == 200

        response = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_session"

    def test_access_token_dies_with_its_session(self, client):
        tokens = _register(client).json()["data"]
        client.post("/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})

        response = client.get("/v1/auth/me", headers=_bearer(tokens))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_session"

    def test_logout_all(self, client):
        tokens = _register(client).json()["data"]
        client.post(
            "/v1/auth/login",
            json={"email": "alice@example.com", "password": STRONG_PASSWORD},
        )

        response = client.post("/v1/auth/logout-all", headers=_bearer(tokens))

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 2

    def test_garbage_refresh_token(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "x.y.z"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_refresh_token"


class TestPasswordChange:
    def test_change_password_ends_sessions(self, client):
        tokens = _register(client).json()["data"]

        response = client.post(
            "/v1/auth/password",
            json={"current_password": STRONG_PASSWORD, "new_password": "N3w!Passw0rd"},
            headers=_bearer(tokens),
        )

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        assert client.get("/v1/auth/me", headers=_bearer(tokens)).status_code == 401
        assert client.post(
            "/v1/auth/login",
            json={"email": "alice@example.com", "password": "N3w!Passw0rd"},
        ).status_code == 200


class TestEnvelope:
    def test_missing_token(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "auth_required"
        assert body["request_id"]

    def test_malformed_authorization_header(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Basic abc"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "auth_required"

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_healthz(self, client):
        assert client.get("/healthz").json()["status"] == "ok"
