"""Integration tests for api/routes/v1/auth.py through the real ASGI stack.

Covers:
- registration: role forced to "user", password policy, duplicates, validation
- username availability check
- login: cookie attributes, JWT body, no-store, identical failures
- bearer JWT resolves through the session store and dies with the session
- sliding expiry as seen by an HTTP client, cookie re-issued on each use
- MFA-pending sessions are refused outside the MFA routes
- logout idempotency, me, change-password
- login rate limit
"""

from __future__ import annotations

import pytest

from api.limiter import limiter
from api.main import app
from auth.tokens import SESSION_COOKIE_NAME
from conftest import STRONG_PASSWORD, login


class TestRegister:
    def test_register_creates_user_role(self, app_client):
        resp = app_client.post(
            "/api/v1/auth/register",
            json={
                "username": "  NewBie ",
                "password": STRONG_PASSWORD,
                "email": "NewBie@Example.com",
                "fullName": "New Bie",
                "role": "admin",
                "securityAnswers": {"q1": "a", "q2": "b", "q3": "c"},
            },
        )
        assert resp.status_code == 201
        assert resp.json()["user"]["role"] == "user"
        stored = app.state.user_store.get_by_username("newbie")
        assert stored.role == "user"
        assert stored.email == "newbie@example.com"
        assert stored.full_name == "New Bie"
        assert set(stored.security_answers) == {"q1", "q2", "q3"}

    def test_weak_password_rejected(self, app_client):
        resp = app_client.post("/api/v1/auth/register", json={"username": "bob", "password": "password"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "weak_password"

    def test_duplicate_username_is_generic_400(self, app_client, make_user):
        make_user("taken")
        resp = app_client.post("/api/v1/auth/register", json={"username": "TAKEN", "password": STRONG_PASSWORD})
        assert resp.status_code == 400
        assert resp.json()["error"] == {"code": "registration_failed", "message": "Registration failed."}

    def test_short_username_is_validation_error(self, app_client):
        resp = app_client.post("/api/v1/auth/register", json={"username": "ab", "password": STRONG_PASSWORD})
        assert resp.status_code == 400
        body = resp.json()["error"]
        assert body["code"] == "validation_error"
        assert STRONG_PASSWORD not in (body.get("detail") or "")

    def test_bad_email_rejected(self, app_client):
        resp = app_client.post(
            "/api/v1/auth/register",
            json={"username": "carol", "password": STRONG_PASSWORD, "email": "not-an-email"},
        )
        assert resp.status_code == 400


class TestCheckUsername:
    def test_available_and_taken(self, app_client, make_user):
        make_user("alice")
        assert app_client.get("/api/v1/auth/check-username/Alice").json()["available"] is False
        assert app_client.get("/api/v1/auth/check-username/zed").json()["available"] is True
        assert app_client.get("/api/v1/auth/check-username/zz").json()["available"] is False


class TestLogin:
    def test_success_sets_cookie_and_returns_jwt(self, app_client, make_user):
        user = make_user("alice")
        resp = login(app_client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["mfaRequired"] is False
        assert body["user"] == {"id": user.id, "username": "alice", "role": "user"}
        assert body["token"].count(".") == 2
        assert resp.headers["cache-control"] == "no-store"
        cookie = resp.headers["set-cookie"]
        assert cookie.startswith(f"{SESSION_COOKIE_NAME}=")
        assert "HttpOnly" in cookie
        assert "Max-Age=3600" in cookie
        assert "SameSite=lax" in cookie
        assert app.state.user_store.get_by_id(user.id).last_login is not None

    @pytest.mark.parametrize(
        "username,password,extra",
        [
            ("alice", "wrong-password-1", {}),
            ("ghost", STRONG_PASSWORD, {}),
            ("alice", STRONG_PASSWORD, {"role": "admin"}),
            ("disabled", STRONG_PASSWORD, {}),
        ],
    )
    def test_failures_are_indistinguishable(self, app_client, make_user, username, password, extra):
        make_user("alice")
        make_user("disabled", status="disabled")
        resp = login(app_client, username, password, **extra)
        assert resp.status_code == 401
        assert resp.json() == {"error": {"code": "bad_credentials", "message": "Invalid credentials."}}
        assert "set-cookie" not in resp.headers

    def test_matching_role_hint_accepted(self, app_client, make_user):
        make_user("sam", role="staff")
        assert login(app_client, "sam", role="staff").status_code == 200


class TestSessionResolution:
    def test_me_with_cookie(self, app_client, make_user):
        make_user("sam", role="staff")
        login(app_client, "sam")
        resp = app_client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["role"] == "staff"
        assert resp.json()["landing"] == "/dashboards/staff/staff-dashboard.html"

    def test_me_with_bearer_token(self, app_client, make_user):
        make_user()
        token = login(app_client).json()["token"]
        app_client.cookies.clear()
        resp = app_client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["username"] == "alice"

    def test_bearer_dies_with_session(self, app_client, make_user):
        make_user()
        token = login(app_client).json()["token"]
        app_client.cookies.clear()
        headers = {"Authorization": f"Bearer {token}"}
        assert app_client.post("/api/v1/auth/logout", headers=headers).status_code == 200
        assert app_client.get("/api/v1/auth/me", headers=headers).status_code == 401

    def test_me_without_session(self, app_client):
        resp = app_client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_sliding_expiry_over_http(self, app_client, make_user, clock):
        make_user()
        login(app_client)
        clock.advance(59 * 60)
        assert app_client.get("/api/v1/auth/me").status_code == 200
        clock.advance(59 * 60)
        assert app_client.get("/api/v1/auth/me").status_code == 200
        clock.advance(61 * 60)
        assert app_client.get("/api/v1/auth/me").status_code == 401

    def test_cookie_request_reissues_cookie(self, app_client, make_user, clock):
        make_user()
        sid = login(app_client).cookies[SESSION_COOKIE_NAME]
        clock.advance(30 * 60)
        resp = app_client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        cookie = resp.headers["set-cookie"]
        assert cookie.startswith(f"{SESSION_COOKIE_NAME}={sid};")
        assert "Max-Age=3600" in cookie
        assert "HttpOnly" in cookie

    def test_bearer_request_sets_no_cookie(self, app_client, make_user):
        make_user()
        token = login(app_client).json()["token"]
        app_client.cookies.clear()
        resp = app_client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert "set-cookie" not in resp.headers

    def test_mfa_pending_session_is_refused(self, app_client, make_user):
        make_user(mfa_enabled=True)
        body = login(app_client).json()
        assert body["mfaRequired"] is True
        resp = app_client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "mfa_required"
        assert app_client.get("/api/v1/dashboard/user-dashboard").status_code == 401


class TestLogout:
    def test_logout_destroys_session_and_clears_cookie(self, app_client, make_user):
        make_user()
        resp = login(app_client)
        sid = resp.cookies[SESSION_COOKIE_NAME]
        out = app_client.post("/api/v1/auth/logout")
        assert out.status_code == 200
        cookies = [c for c in out.headers.get_list("set-cookie") if c.startswith(f"{SESSION_COOKIE_NAME}=")]
        assert len(cookies) == 1
        assert "Max-Age=0" in cookies[0]
        assert app.state.session_store.get(sid) is None

    def test_logout_without_session_is_ok(self, app_client):
        assert app_client.post("/api/v1/auth/logout").status_code == 200
        assert app_client.post("/api/v1/auth/logout").status_code == 200


class TestChangePassword:
    def test_change_password_logs_out_other_devices(self, app_client, make_user):
        make_user()
        other_sid = login(app_client).cookies[SESSION_COOKIE_NAME]
        app_client.cookies.clear()
        login(app_client)

        resp = app_client.post(
            "/api/v1/auth/change-password",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": "fresh-password-2024"},
        )
        assert resp.status_code == 200
        assert app.state.session_store.get(other_sid) is None
        assert app_client.get("/api/v1/auth/me").status_code == 200
        assert login(app_client, password="fresh-password-2024").status_code == 200

    def test_wrong_current_password(self, app_client, make_user):
        make_user()
        login(app_client)
        resp = app_client.post(
            "/api/v1/auth/change-password",
            json={"currentPassword": "wrong-password-1", "newPassword": "fresh-password-2024"},
        )
        assert resp.status_code == 400

    def test_requires_session(self, app_client):
        resp = app_client.post(
            "/api/v1/auth/change-password",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": "fresh-password-2024"},
        )
        assert resp.status_code == 401


class TestRateLimit:
    def test_login_limited_per_ip(self, app_client, make_user):
        make_user()
        limiter.reset()
        limiter.enabled = True
        try:
            codes = [login(app_client, password="wrong-password-1").status_code for _ in range(6)]
        finally:
            limiter.enabled = False
            limiter.reset()
        assert codes[:5] == [401] * 5
        assert codes[5] == 429


def test_providers_empty_without_credentials(app_client):
    resp = app_client.get("/api/v1/auth/providers")
    assert resp.status_code == 200
    assert resp.json() == []
