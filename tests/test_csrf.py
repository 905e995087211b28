"""Tests for auth/csrf.py and the csrf_protect dependency.

Covers:
- tokens validate exactly once and expire after their TTL
- non-string / empty tokens are rejected without touching the cache
- with CSRF enabled: safe methods pass, state-changing requests need a token
  from the x-csrf-token header or a csrfToken JSON field, replays get 403
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.csrf import CSRFTokenManager
from cache.store import MemoryTTLStore
from conftest import _patch_lifespan, make_settings


@pytest.fixture
def manager(clock) -> CSRFTokenManager:
    return CSRFTokenManager(MemoryTTLStore(clock=clock), ttl=1800, clock=clock)


class TestCSRFTokenManager:
    def test_token_is_single_use(self, manager):
        token = manager.issue()
        assert manager.validate(token) is True
        assert manager.validate(token) is False

    def test_tokens_are_distinct(self, manager):
        assert manager.issue() != manager.issue()

    def test_expired_token_rejected(self, manager, clock):
        token = manager.issue()
        clock.advance(1800)
        assert manager.validate(token) is False

    def test_just_before_expiry_accepted(self, manager, clock):
        token = manager.issue()
        clock.advance(1799)
        assert manager.validate(token) is True

    @pytest.mark.parametrize("bad", [None, "", 123, ["x"], "unknown-token"])
    def test_invalid_inputs(self, manager, bad):
        assert manager.validate(bad) is False


@pytest.fixture
def csrf_client(tmp_path, clock):
    app.router.lifespan_context = _patch_lifespan(make_settings(tmp_path, csrf_enabled=True), clock)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


def _token(client: TestClient) -> str:
    resp = client.get("/api/v1/auth/csrf-token")
    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    return resp.json()["csrfToken"]


class TestCsrfProtect:
    def test_missing_token_is_forbidden(self, csrf_client):
        resp = csrf_client.post("/api/v1/auth/logout")
        assert resp.status_code == 403
        assert resp.json() == {"error": {"code": "forbidden", "message": "Access denied."}}

    def test_header_token_accepted_once(self, csrf_client):
        token = _token(csrf_client)
        assert csrf_client.post("/api/v1/auth/logout", headers={"x-csrf-token": token}).status_code == 200
        assert csrf_client.post("/api/v1/auth/logout", headers={"x-csrf-token": token}).status_code == 403

    def test_body_token_accepted(self, csrf_client):
        token = _token(csrf_client)
        resp = csrf_client.post(
            "/api/v1/auth/forgot-password",
            json={"identity": "nobody", "csrfToken": token},
        )
        assert resp.status_code == 200

    def test_forged_token_rejected(self, csrf_client):
        resp = csrf_client.post("/api/v1/auth/logout", headers={"x-csrf-token": "f" * 64})
        assert resp.status_code == 403

    def test_expired_token_rejected(self, csrf_client, clock):
        token = _token(csrf_client)
        clock.advance(1801)
        assert csrf_client.post("/api/v1/auth/logout", headers={"x-csrf-token": token}).status_code == 403

    def test_safe_methods_exempt(self, csrf_client):
        assert csrf_client.get("/api/v1/auth/check-username/someone").status_code == 200
