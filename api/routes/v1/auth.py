"""
api/routes/v1/auth.py -- Login, registration, session and CSRF endpoints.

Routes:
  POST /api/v1/auth/register                  -- self-registration (role is always "user")
  GET  /api/v1/auth/check-username/{username} -- availability check for the sign-up form
  POST /api/v1/auth/login                     -- password login; sets session cookie
  POST /api/v1/auth/logout                    -- destroys the session; clears cookie
  GET  /api/v1/auth/me                        -- current user info (requires auth)
  POST /api/v1/auth/change-password           -- requires auth; logs out other devices
  GET  /api/v1/auth/csrf-token                -- issue a single-use CSRF token
  GET  /api/v1/auth/providers                 -- list enabled OAuth providers (public)

Security:
  login, register are rate-limited per IP (LOGIN_RATE_LIMIT, REGISTER_RATE_LIMIT).
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on every response that carries a credential.
  Unknown user, wrong password, disabled account and role mismatch all return
  the same 401 body.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from api.limiter import limiter, login_limit, register_limit
from api.models import (
    ChangePasswordRequest,
    CsrfTokenResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    OAuthProviderInfo,
    RegisterRequest,
    SessionUser,
    UsernameAvailability,
)
from auth.audit import log_auth_event
from auth.dependencies import bearer_session_token, client_ip, csrf_protect, get_current_session
from auth.models import Session, User
from auth.oauth import get_enabled_providers
from auth.password_reset import hash_security_answers
from auth.rbac import USER, landing_for
from auth.store import UserStore, normalize_username
from auth.tokens import (
    SESSION_COOKIE_NAME,
    authenticate_user,
    clear_session_cookie,
    create_access_token,
    hash_password,
    is_strong_password,
    set_session_cookie,
)

logger = logging.getLogger("movex.api.auth")

PASSWORD_POLICY_MESSAGE = (
    "Password must be 12 to 72 bytes long and contain at least one letter and one number."
)

# Auth policy:
# - register, check-username, login, csrf-token, providers: public
# - logout: public -- ending a session needs no prior auth
# - me, change-password: fully authenticated session (get_current_session)
# Every state-changing route passes csrf_protect when CSRF_ENABLED=true.
router = APIRouter(dependencies=[Depends(csrf_protect)])


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(register_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a self-service account. The role is always "user".

    A taken username gets the same 400 as any other refusal so the response
    does not double as an account-existence oracle beyond check-username.
    """
    if not is_strong_password(body.password):
        raise HTTPException(
            status_code=400,
            detail={"code": "weak_password", "message": PASSWORD_POLICY_MESSAGE},
        )
    user_store: UserStore = request.app.state.user_store
    answers = hash_security_answers(body.security_answers.model_dump()) if body.security_answers else {}
    new_user = User(
        username=body.username,
        role=USER,
        email=body.email,
        hashed_password=hash_password(body.password),
        full_name=body.full_name,
        phone=body.phone,
        security_answers=answers,
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError:
        log_auth_event("register_failed", ip=client_ip(request), username=normalize_username(body.username))
        raise HTTPException(
            status_code=400,
            detail={"code": "registration_failed", "message": "Registration failed."},
        ) from None

    log_auth_event("register_success", ip=client_ip(request), user_id=user_id, email=body.email)
    return JSONResponse(
        status_code=201,
        content={
            "message": "Registration successful.",
            "user": SessionUser(id=user_id, username=normalize_username(body.username), role=USER).model_dump(),
        },
    )


@router.get("/auth/check-username/{username}", response_model=UsernameAvailability)
def check_username(request: Request, username: str) -> UsernameAvailability:
    name = normalize_username(username)
    if len(name) < 3:
        return UsernameAvailability(available=False, message="Username must be at least 3 characters.")
    if request.app.state.user_store.get_by_username(name) is not None:
        return UsernameAvailability(available=False, message="Username is already taken.")
    return UsernameAvailability(available=True, message="Username is available.")


@limiter.limit(login_limit)  # brute-force mitigation
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; create a session and set the cookie.

    Accounts with MFA enabled get a session flagged mfa_pending. That session
    is accepted by the /mfa routes only, until /mfa/verify promotes it.

    The JSON body also carries a JWT naming the session for clients that
    cannot rely on the cookie. The JWT is useless once the session is gone.
    """
    settings = request.app.state.settings
    user_store: UserStore = request.app.state.user_store
    ip = client_ip(request)

    user = authenticate_user(user_store, body.username, body.password)
    if user is None or (body.role and body.role.lower() != user.role):
        log_auth_event("login_failed", ip=ip, username=normalize_username(body.username))
        return _no_store(
            JSONResponse(
                status_code=401,
                content={"error": {"code": "bad_credentials", "message": "Invalid credentials."}},
            )
        )

    session = request.app.state.session_store.create(user, mfa_pending=user.mfa_enabled)
    if session is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "unavailable", "message": "Login is temporarily unavailable."},
        )
    user_store.update_last_login(user.id)
    log_auth_event("login_success", ip=ip, username=user.username, user_id=user.id)

    resp = JSONResponse(
        content=LoginResponse(
            message="MFA verification required." if session.mfa_pending else "Login successful.",
            token=create_access_token(user.username, user.role, session.token),
            mfa_required=session.mfa_pending,
            user=SessionUser(id=user.id, username=user.username, role=user.role),
        ).model_dump(by_alias=True),
    )
    set_session_cookie(
        resp,
        session.token,
        max_age=settings.session_idle_timeout_seconds,
        secure=settings.cookie_secure,
        samesite=settings.effective_samesite,
    )
    return _no_store(resp)


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Destroy the caller's session and clear the cookie. Always 200."""
    settings = request.app.state.settings
    token = request.cookies.get(SESSION_COOKIE_NAME) or bearer_session_token(request)
    if token:
        try:
            request.app.state.session_store.destroy(token)
        except SQLAlchemyError:
            logger.exception("Session destroy failed during logout")
        log_auth_event("logout", ip=client_ip(request))
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp, secure=settings.cookie_secure, samesite=settings.effective_samesite)
    return _no_store(resp)


@router.get("/auth/csrf-token", response_model=CsrfTokenResponse)
def csrf_token(request: Request) -> JSONResponse:
    """Issue a single-use CSRF token for the next state-changing request."""
    token = request.app.state.csrf.issue()
    return _no_store(JSONResponse(content=CsrfTokenResponse(csrf_token=token).model_dump(by_alias=True)))


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers; empty when none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, session: Session = Depends(get_current_session)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    user = request.app.state.user_store.get_by_id(session.user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return MeResponse(
        user_id=user.id,
        username=user.username,
        role=user.role,
        landing=landing_for(user.role),
        oauth_provider=user.oauth_provider,
    )


@router.post("/auth/change-password")
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    session: Session = Depends(get_current_session),
) -> JSONResponse:
    """Change the password; every other session of this user is destroyed."""
    if not is_strong_password(body.new_password):
        raise HTTPException(
            status_code=400,
            detail={"code": "weak_password", "message": PASSWORD_POLICY_MESSAGE},
        )
    changed = request.app.state.password_reset.change_password(
        session.user_id,
        body.current_password,
        body.new_password,
        keep_session=session.token,
    )
    if not changed:
        log_auth_event("change_password_failed", ip=client_ip(request), user_id=session.user_id)
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_password", "message": "Current password is incorrect."},
        )
    log_auth_event("change_password_success", ip=client_ip(request), user_id=session.user_id)
    return _no_store(JSONResponse(content={"message": "Password changed."}))
