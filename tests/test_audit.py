"""Unit tests for auth/audit.py -- audit and security log channels.

Covers:
- e-mail and IP masking in production, pass-through in development
- log_auth_event() is gated by LOG_AUTH_ATTEMPTS
- log_security_event() always emits at WARNING
- login attempts never put the password in a log line
"""

from __future__ import annotations

import json
import logging

import pytest

from auth import audit
from auth.audit import log_auth_event, log_security_event, mask_email, mask_ip
from conftest import make_settings


class TestMasking:
    @pytest.mark.parametrize(
        "email,expected",
        [
            ("user@example.com", "u***r@e****e.com"),
            ("ab@example.co.uk", "***@e****e.co.uk"),
            ("nodomain", "***@***.***"),
        ],
    )
    def test_mask_email_in_production(self, email, expected):
        assert mask_email(email, production=True) == expected

    def test_mask_email_dev_passthrough(self):
        assert mask_email("user@example.com", production=False) == "user@example.com"

    @pytest.mark.parametrize(
        "ip,expected",
        [
            ("192.168.1.100", "192.168.1.xxx"),
            ("::ffff:10.0.0.7", "10.0.0.xxx"),
            ("2001:db8::1", "2001:db8::1"),
            (None, None),
        ],
    )
    def test_mask_ip_in_production(self, ip, expected):
        assert mask_ip(ip, production=True) == expected

    def test_mask_ip_dev_passthrough(self):
        assert mask_ip("192.168.1.100", production=False) == "192.168.1.100"


class TestChannels:
    def test_auth_events_off_by_default(self, tmp_path, monkeypatch, caplog):
        monkeypatch.setattr(audit, "get_settings", lambda: make_settings(tmp_path))
        with caplog.at_level(logging.INFO, logger="movex.auth.audit"):
            log_auth_event("login_failed", username="alice")
        assert caplog.records == []

    def test_auth_events_when_enabled(self, tmp_path, monkeypatch, caplog):
        settings = make_settings(tmp_path, log_auth_attempts=True, production=True, secure_cookies=True)
        monkeypatch.setattr(audit, "get_settings", lambda: settings)
        with caplog.at_level(logging.INFO, logger="movex.auth.audit"):
            log_auth_event("login_failed", ip="10.1.2.3", email="alice@example.com", reason="bad_password")
        [record] = caplog.records
        payload = json.loads(record.getMessage().removeprefix("[AUTH] "))
        assert payload == {
            "event": "login_failed",
            "ip": "10.1.2.xxx",
            "email": "a***e@e****e.com",
            "reason": "bad_password",
        }

    def test_security_events_always_on(self, caplog):
        with caplog.at_level(logging.WARNING, logger="movex.security"):
            log_security_event("csrf_failed", path="/api/v1/auth/logout", method="POST")
        [record] = caplog.records
        assert record.levelno == logging.WARNING
        assert record.getMessage().startswith("[SECURITY] ")
        assert '"event": "csrf_failed"' in record.getMessage()


def test_login_never_logs_password(app_client, make_user, monkeypatch, caplog, tmp_path):
    monkeypatch.setattr(audit, "get_settings", lambda: make_settings(tmp_path, log_auth_attempts=True))
    make_user()
    secret = "do-not-log-me-123"
    with caplog.at_level(logging.DEBUG):
        app_client.post("/api/v1/auth/login", json={"username": "alice", "password": secret})
    assert caplog.records
    assert all(secret not in r.getMessage() for r in caplog.records)
