"""
auth/dependencies.py -- FastAPI Depends() helpers for sessions, roles and CSRF.

Session resolution, in priority order:
  1. "movex.sid" cookie -- set by the login and OAuth callback flows.
  2. Authorization: Bearer <JWT> -- for cross-origin clients that cannot keep
     the cookie. The JWT only names a session (sid claim); the session itself
     is still looked up in SessionStore, so a destroyed session kills the JWT.

Every lookup goes through SessionStore.get(), which slides the expiry and
turns storage errors into "no session".

try_get_session()      -- soft variant, returns None.
require_session()      -- 401 if no session; accepts MFA-pending sessions.
                          Only the MFA routes use it; logout needs no session.
get_current_session()  -- 401 unless the session is fully authenticated.
authorize(session, res) -- RoleGuard allow-list check, 403 with role and landing on deny.
csrf_protect()         -- 403 on state-changing requests without a valid token.

Layer rule: auth/dependencies.py may import from fastapi because it is part of
the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.audit import log_security_event
from auth.csrf import SAFE_METHODS
from auth.models import Session
from auth.rbac import can_access, landing_for
from auth.tokens import SESSION_COOKIE_NAME, decode_access_token

CSRF_HEADER = "x-csrf-token"
CSRF_BODY_FIELD = "csrfToken"


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def bearer_session_token(request: Request) -> str | None:
    """Return the sid carried by a valid Bearer JWT, if any."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    payload = decode_access_token(auth_header[7:])
    return payload["sid"] if payload else None


def try_get_session(request: Request) -> Session | None:
    """Resolve the caller's session. Never raises.

    The result is memoised on request.state so several dependencies on one
    request touch the session row once.
    """
    if hasattr(request.state, "auth_session"):
        return request.state.auth_session

    session_store = request.app.state.session_store
    session = session_store.get(request.cookies.get(SESSION_COOKIE_NAME))
    if session is not None:
        # The store just slid expires_at; api.main re-issues the cookie to match.
        request.state.refresh_session_token = session.token
    else:
        sid = bearer_session_token(request)
        if sid:
            session = session_store.get(sid)

    request.state.auth_session = session
    return session


def require_session(request: Request) -> Session:
    """Require a session, including one still waiting for its MFA challenge."""
    session = try_get_session(request)
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return session


def get_current_session(request: Request) -> Session:
    """Require a fully authenticated session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: Session = Depends(get_current_session)): ...
    """
    session = require_session(request)
    if session.mfa_pending:
        raise HTTPException(
            status_code=401,
            detail={"code": "mfa_required", "message": "MFA verification required."},
        )
    return session


def authorize(session: Session, resource: str) -> None:
    """Raise 403 unless session.role is on the allow-list for resource.

    The denial carries the caller's real role and the landing page for that
    role so the client can redirect.
    """
    if not can_access(session.role, resource):
        raise HTTPException(
            status_code=403,
            detail={
                "code": "forbidden",
                "message": "Forbidden.",
                "role": session.role,
                "landing": landing_for(session.role),
            },
        )


async def _csrf_token_from_body(request: Request) -> str | None:
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        body = await request.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        token = body.get(CSRF_BODY_FIELD)
        return token if isinstance(token, str) else None
    return None


async def csrf_protect(request: Request) -> None:
    """Reject state-changing requests that lack a valid single-use CSRF token.

    Safe methods are exempt by method. The token comes from the x-csrf-token
    header or a csrfToken field in a JSON body. Missing, expired and replayed
    tokens all get the same 403.
    """
    if not request.app.state.settings.csrf_enabled or request.method in SAFE_METHODS:
        return
    token = request.headers.get(CSRF_HEADER) or await _csrf_token_from_body(request)
    if not request.app.state.csrf.validate(token):
        log_security_event(
            "csrf_failed",
            ip=client_ip(request),
            path=request.url.path,
            method=request.method,
        )
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Access denied."},
        )
