"""End-to-end tests for the /api/auth endpoints and guarded admin pages."""

from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_PASSWORD, ADMIN_USERNAME
from vitrine.app import app


@pytest.fixture
def client(runtime, email):
    with TestClient(app) as test_client:
        page = test_client.get("/admin/login")
        assert page.status_code == 200
        test_client.headers["X-CSRF-Token"] = test_client.cookies["csrfToken"]
        yield test_client


def _login(client, password=ADMIN_PASSWORD):
    return client.post(
        "/api/auth/login", json={"username": ADMIN_USERNAME, "password": password}
    )


def _set_cookie_headers(response, name):
    return [h for h in response.headers.get_list("set-cookie") if h.startswith(f"{name}=")]


def _enable_two_factor(runtime, admin):
    runtime.store.set_admin_two_factor(
        admin.id, enabled=True, email="owner@example.com", verified=True
    )


class TestLogin:
    def test_login_sets_http_only_cookies(self, client, admin):
        response = _login(client)
        assert response.status_code == 200
        body = response.json()
        assert body == {
            "success": True,
            "requires2fa": False,
            "user": {"id": admin.id, "username": ADMIN_USERNAME, "role": "admin"},
        }
        for name in ("accessToken", "refreshToken"):
            (header,) = _set_cookie_headers(response, name)
            assert "HttpOnly" in header
            assert "samesite=lax" in header.lower()
            assert "Path=/" in header

    def test_wrong_password(self, client, admin):
        response = _login(client, "wrong password")
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "invalid_credentials"
        assert error["message"] == "Invalid username or password"
        assert not _set_cookie_headers(response, "accessToken")

    def test_unknown_user_looks_the_same(self, client, admin):
        response = client.post("/api/auth/login", json={"username": "ghost", "password": "x" * 12})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid username or password"

    def test_eleventh_attempt_rate_limited(self, client, admin):
        for _ in range(10):
            assert _login(client, "wrong password").status_code == 401
        response = _login(client)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "900"
        assert response.json()["error"]["code"] == "rate_limited"

    def test_empty_body_is_validation_error(self, client, admin):
        response = client.post("/api/auth/login", json={})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestCsrf:
    def test_missing_header_rejected(self, client, admin):
        del client.headers["X-CSRF-Token"]
        response = _login(client)
        assert response.status_code == 403
        assert response.json()["success"] is False

    def test_mismatched_header_rejected(self, client, admin):
        response = client.post(
            "/api/auth/login",
            json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD},
            headers={"X-CSRF-Token": "forged"},
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_safe_methods_pass_without_token(self, client, admin):
        _login(client)
        response = client.get("/api/auth/session", headers={"X-CSRF-Token": ""})
        assert response.status_code == 200


class TestTwoFactorLogin:
    def test_cookies_only_after_code(self, client, admin, runtime, email):
        _enable_two_factor(runtime, admin)
        response = _login(client)
        assert response.status_code == 200
        body = response.json()
        assert body["requires2fa"] is True
        assert body["delivery"] == "ow***@example.com"
        assert not _set_cookie_headers(response, "accessToken")
        assert not _set_cookie_headers(response, "refreshToken")

        verified = client.post(
            "/api/auth/2fa/verify-login",
            json={"challengeId": body["challengeId"], "code": email.last_code("login")},
        )
        assert verified.status_code == 200
        assert verified.json()["user"]["id"] == admin.id
        assert _set_cookie_headers(verified, "accessToken")
        assert client.get("/api/auth/session").status_code == 200

    def test_wrong_code(self, client, admin, runtime, email):
        _enable_two_factor(runtime, admin)
        body = _login(client).json()
        wrong = "000000" if email.last_code() != "000000" else "999999"
        response = client.post(
            "/api/auth/2fa/verify-login", json={"challengeId": body["challengeId"], "code": wrong}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_code"
        assert response.json()["error"]["details"] == {"attempts_remaining": 4}

    def test_resend_inside_cooldown(self, client, admin, runtime, clock):
        _enable_two_factor(runtime, admin)
        body = _login(client).json()
        clock.advance(seconds=20)
        response = client.post("/api/auth/2fa/resend-login", json={"challengeId": body["challengeId"]})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "40"
        assert response.json()["error"]["code"] == "cooldown_active"

    def test_resend_after_cooldown(self, client, admin, runtime, clock, email):
        _enable_two_factor(runtime, admin)
        body = _login(client).json()
        clock.advance(seconds=61)
        response = client.post("/api/auth/2fa/resend-login", json={"challengeId": body["challengeId"]})
        assert response.status_code == 200
        assert response.json()["challengeId"] == body["challengeId"]
        assert response.json()["resendAvailableIn"] == 60

    def test_undeliverable_code(self, client, admin, runtime, email):
        _enable_two_factor(runtime, admin)
        email.fail = True
        response = _login(client)
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "email_unavailable"


class TestRefreshAndLogout:
    def test_refresh_rotates_cookie(self, client, admin):
        _login(client)
        old_refresh = client.cookies["refreshToken"]
        response = client.post("/api/auth/refresh")
        assert response.status_code == 200
        assert response.cookies["refreshToken"] != old_refresh

    def test_replayed_refresh_clears_session(self, client, admin):
        _login(client)
        old_refresh = client.cookies["refreshToken"]
        csrf = client.cookies["csrfToken"]
        assert client.post("/api/auth/refresh").status_code == 200

        client.cookies.clear()
        client.cookies.set("csrfToken", csrf)
        client.cookies.set("refreshToken", old_refresh)
        response = client.post("/api/auth/refresh")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        for name in ("accessToken", "refreshToken"):
            (header,) = _set_cookie_headers(response, name)
            assert "Max-Age=0" in header

    def test_refresh_without_cookie(self, client, admin):
        response = client.post("/api/auth/refresh")
        assert response.status_code == 401

    def test_logout_is_idempotent(self, client, admin):
        _login(client)
        refresh_token = client.cookies["refreshToken"]
        first = client.post("/api/auth/logout")
        second = client.post("/api/auth/logout")
        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json() == {"success": True}
        assert "refreshToken" not in client.cookies

        client.cookies.set("refreshToken", refresh_token)
        assert client.post("/api/auth/refresh").status_code == 401


class TestSession:
    def test_valid_access_token_never_reads_store(self, client, admin, runtime):
        _login(client)
        real_store = runtime.tokens.store
        runtime.tokens.store = MagicMock()
        try:
            response = client.get("/api/auth/session")
        finally:
            store_mock, runtime.tokens.store = runtime.tokens.store, real_store
        assert response.status_code == 200
        assert response.json()["user"]["username"] == ADMIN_USERNAME
        assert store_mock.method_calls == []

    def test_expired_access_token_rotates_both_cookies(self, client, admin, clock):
        _login(client)
        old_access = client.cookies["accessToken"]
        old_refresh = client.cookies["refreshToken"]
        clock.advance(minutes=20)
        response = client.get("/api/auth/session")
        assert response.status_code == 200
        assert response.cookies["accessToken"] != old_access
        assert response.cookies["refreshToken"] != old_refresh
        assert client.get("/api/auth/session").status_code == 200

    def test_rotation_survives_handler_failure(self, client, admin, runtime, clock):
        _login(client)
        old_refresh = client.cookies["refreshToken"]
        clock.advance(minutes=20)
        with patch.object(runtime.auth, "get_two_factor_settings", side_effect=RuntimeError("boom")):
            response = client.get("/api/auth/2fa")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert _set_cookie_headers(response, "accessToken")
        assert response.cookies["refreshToken"] != old_refresh
        assert client.get("/api/auth/session").status_code == 200

    def test_no_session(self, client, admin):
        response = client.get("/api/auth/session")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestAccountEndpoints:
    def test_change_password_keeps_this_session(self, client, admin):
        _login(client)
        response = client.post(
            "/api/auth/change-password",
            json={
                "currentPassword": ADMIN_PASSWORD,
                "newPassword": "a different passphrase",
                "confirmPassword": "a different passphrase",
            },
        )
        assert response.status_code == 200
        assert client.post("/api/auth/refresh").status_code == 200

    def test_change_password_mismatch(self, client, admin):
        _login(client)
        response = client.post(
            "/api/auth/change-password",
            json={
                "currentPassword": ADMIN_PASSWORD,
                "newPassword": "a different passphrase",
                "confirmPassword": "not the same",
            },
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "confirmPassword"}

    def test_two_factor_setup_flow(self, client, admin, email):
        _login(client)
        assert client.get("/api/auth/2fa").json()["enabled"] is False
        sent = client.post("/api/auth/2fa/send-setup", json={"email": "Owner@Example.com"})
        assert sent.status_code == 200
        assert email.sent[-1]["to"] == "owner@example.com"
        confirmed = client.post(
            "/api/auth/2fa/confirm-setup",
            json={"challengeId": sent.json()["challengeId"], "code": email.last_code("setup")},
        )
        assert confirmed.status_code == 200
        assert confirmed.json() == {
            "success": True,
            "enabled": True,
            "email": "owner@example.com",
            "verified": True,
        }

    def test_send_setup_rejects_bad_email(self, client, admin):
        _login(client)
        response = client.post("/api/auth/2fa/send-setup", json={"email": "nope"})
        assert response.status_code == 400

    def test_disable_two_factor(self, client, admin, runtime):
        _login(client)
        _enable_two_factor(runtime, admin)
        wrong = client.post("/api/auth/2fa/disable", json={"password": "wrong password"})
        assert wrong.status_code == 400
        response = client.post("/api/auth/2fa/disable", json={"password": ADMIN_PASSWORD})
        assert response.status_code == 200
        assert response.json()["enabled"] is False


class TestAdminPages:
    def test_dashboard_redirects_to_login(self, client, admin):
        response = client.get("/admin", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/admin/login"

    def test_guarded_page_redirects(self, client, admin):
        response = client.get("/admin/orders", follow_redirects=False)
        assert response.status_code == 303

    def test_login_assets_are_open(self, client, admin):
        assert client.get("/admin/styles.css").status_code == 200

    def test_pages_served_after_login(self, client, admin):
        _login(client)
        assert client.get("/admin").text == "<h1>Dashboard</h1>"
        assert client.get("/admin/orders").text == "<h1>Orders</h1>"
        assert client.get("/admin/missing", follow_redirects=False).status_code == 404

    def test_replayed_session_redirect_clears_cookies(self, client, admin):
        _login(client)
        old_refresh = client.cookies["refreshToken"]
        assert client.post("/api/auth/refresh").status_code == 200
        client.cookies.clear()
        client.cookies.set("refreshToken", old_refresh)
        response = client.get("/admin", follow_redirects=False)
        assert response.status_code == 303
        assert "Max-Age=0" in _set_cookie_headers(response, "refreshToken")[0]


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "MemoryStore"
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Frame-Options"] == "DENY"
