"""
api/routes/v1/oauth.py -- Social login through authlib.

Routes:
  GET /api/v1/auth/oauth/{provider}           -- redirect to the provider
  GET /api/v1/auth/oauth/{provider}/callback  -- finish login, set session cookie

Every outcome of the callback is a redirect. Failures carry only an error
code in the query string; no identity data is ever put in a URL.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse
from httpx import HTTPError

from auth.audit import log_auth_event, log_security_event
from auth.dependencies import client_ip
from auth.oauth import SUPPORTED_PROVIDERS, get_oauth_user_info, resolve_oauth_user
from auth.rbac import landing_for
from auth.tokens import set_session_cookie

logger = logging.getLogger("movex.api.oauth")

router = APIRouter()


def _fail(error: str) -> RedirectResponse:
    return RedirectResponse(f"/?error={error}", status_code=302)


def _client_for(request: Request, provider: str):
    if provider not in SUPPORTED_PROVIDERS:
        return None
    return request.app.state.oauth.create_client(provider)


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    Only registered providers are accepted, so a spoofed provider name
    cannot turn this into an open redirect.
    """
    client = _client_for(request, provider)
    if client is None:
        return _fail("oauth_failed")

    state = request.app.state.oauth_states.issue()
    base = request.app.state.settings.oauth_callback_base.rstrip("/")
    redirect_uri = base + request.app.url_path_for("oauth_callback", provider=provider)
    return await client.authorize_redirect(request, redirect_uri, state=state)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider callback and start a session.

    Flow:
      1. Provider-reported error (user pressed "deny") -> oauth_denied.
      2. Consume the state nonce -> invalid_state if unknown, replayed or stale.
      3. Exchange the code for a token (authlib).
      4. Extract (email, subject) -- raises ValueError if the email is unverified.
      5. Resolve or create the local account; disabled accounts are refused.
      6. Create the session, set the cookie, redirect to the role landing page.
    """
    client = _client_for(request, provider)
    if client is None:
        return _fail("oauth_failed")
    ip = client_ip(request)

    if request.query_params.get("error"):
        log_auth_event("oauth_denied", ip=ip, reason=provider)
        return _fail("oauth_denied")

    if not request.app.state.oauth_states.consume(request.query_params.get("state")):
        log_security_event("oauth_invalid_state", ip=ip, path=request.url.path, method=request.method)
        return _fail("invalid_state")

    try:
        token = await client.authorize_access_token(request)
        email, subject = await get_oauth_user_info(client, provider, token)
    except (OAuthError, HTTPError):
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _fail("oauth_failed")
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        return _fail("oauth_failed")

    user_store = request.app.state.user_store
    try:
        user = resolve_oauth_user(user_store, provider, subject, email)
    except ValueError as exc:
        log_auth_event("oauth_failed", ip=ip, email=email, reason=str(exc))
        return _fail("oauth_failed")

    session = request.app.state.session_store.create(user, mfa_pending=user.mfa_enabled)
    if session is None:
        return _fail("oauth_failed")
    user_store.update_last_login(user.id)
    log_auth_event("oauth_login_success", ip=ip, user_id=user.id, reason=provider)

    target = "/?mfa_required=true" if session.mfa_pending else f"{landing_for(user.role)}?oauth_success=true"
    settings = request.app.state.settings
    resp = RedirectResponse(target, status_code=302)
    set_session_cookie(
        resp,
        session.token,
        max_age=settings.session_idle_timeout_seconds,
        secure=settings.cookie_secure,
        samesite=settings.effective_samesite,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp
