"""
auth/audit.py -- Authentication and security event logging.

Two channels on the standard logging tree:
  movex.auth.audit     -- login/registration/logout/reset/MFA outcomes.
                          Only emitted when LOG_AUTH_ATTEMPTS=true.
  movex.security       -- CSRF failures, rate limits, OAuth state rejections.
                          Always emitted at WARNING.

In production, e-mail addresses and client IPs are masked before they reach
a log line. Passwords, tokens, hashes and MFA codes are never accepted here.
"""

from __future__ import annotations

import json
import logging

from core.config import get_settings

_audit_logger = logging.getLogger("movex.auth.audit")
_security_logger = logging.getLogger("movex.security")


def mask_email(email: str | None, *, production: bool | None = None) -> str | None:
    """user@example.com -> u***r@e****e.com (production only)."""
    if production is None:
        production = get_settings().production
    if not email or not production:
        return email
    local, _, domain = email.partition("@")
    if not domain:
        return "***@***.***"
    masked_local = f"{local[0]}***{local[-1]}" if len(local) > 2 else "***"
    head, _, rest = domain.partition(".")
    masked_head = f"{head[0]}****{head[-1]}" if len(head) > 2 else "****"
    return f"{masked_local}@{masked_head}.{rest}" if rest else f"{masked_local}@{masked_head}"


def mask_ip(ip: str | None, *, production: bool | None = None) -> str | None:
    """192.168.1.100 -> 192.168.1.xxx (production only). IPv6 passes through."""
    if production is None:
        production = get_settings().production
    if not ip or not production:
        return ip
    if ip.startswith("::ffff:"):
        ip = ip[7:]
    parts = ip.split(".")
    if len(parts) == 4:
        parts[3] = "xxx"
        return ".".join(parts)
    return ip


def _entry(event: str, **details) -> str:
    payload = {"event": event}
    payload.update({k: v for k, v in details.items() if v is not None})
    return json.dumps(payload, sort_keys=True)


def log_auth_event(
    event: str,
    *,
    ip: str | None = None,
    username: str | None = None,
    email: str | None = None,
    user_id: int | None = None,
    reason: str | None = None,
) -> None:
    """Record an authentication outcome, e.g. log_auth_event("login_failed", reason="bad_password")."""
    settings = get_settings()
    if not settings.log_auth_attempts:
        return
    _audit_logger.info(
        "[AUTH] %s",
        _entry(
            event,
            ip=mask_ip(ip, production=settings.production),
            username=username,
            email=mask_email(email, production=settings.production),
            user_id=user_id,
            reason=reason,
        ),
    )


def log_security_event(
    event: str,
    *,
    ip: str | None = None,
    path: str | None = None,
    method: str | None = None,
    message: str | None = None,
) -> None:
    _security_logger.warning(
        "[SECURITY] %s",
        _entry(event, ip=mask_ip(ip), path=path, method=method, message=message),
    )
