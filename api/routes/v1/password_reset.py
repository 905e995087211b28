"""
api/routes/v1/password_reset.py -- Self-service password recovery.

Routes:
  POST /api/v1/auth/forgot-password            -- e-mail a reset link (always 200)
  POST /api/v1/auth/forgot-password-check      -- is self-service recovery offered?
  POST /api/v1/auth/reset-password-security    -- security answers -> reset token
  POST /api/v1/auth/reset-password             -- redeem a token with a new password

Disclosure rules:
  - forgot-password answers identically for unknown, disabled and real
    accounts; the mail goes out as a background task after the response is
    decided, so delivery failures cannot change it either.
  - reset-password collapses every failure (unknown, used, expired token,
    weak password, storage error) into one 400.
  - Restricted roles (admin, franchisee, staff) are told "Contact
    Administrator." by the check and security-question routes. This is the
    one place an account's role is deliberately revealed.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, recovery_limit
from api.models import (
    ForgotPasswordCheckRequest,
    ForgotPasswordRequest,
    MessageResponse,
    ResetPasswordRequest,
    SecurityResetRequest,
    SecurityResetResponse,
)
from auth.audit import log_auth_event
from auth.dependencies import client_ip, csrf_protect
from auth.mailer import dispatch
from auth.password_reset import PasswordResetService, RestrictedAccountError
from auth.store import normalize_username
from auth.tokens import clear_session_cookie

logger = logging.getLogger("movex.api.reset")

FORGOT_PASSWORD_MESSAGE = "If the account exists, you will receive a reset link."

router = APIRouter(dependencies=[Depends(csrf_protect)])


def _contact_admin() -> HTTPException:
    return HTTPException(
        status_code=403,
        detail={"code": "contact_admin", "message": "Contact Administrator."},
    )


@limiter.limit(recovery_limit)
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
) -> MessageResponse:
    """Issue a reset token for a username or e-mail and mail the link."""
    service: PasswordResetService = request.app.state.password_reset
    issued = service.request_reset(body.identity)
    if issued is not None:
        if issued.user.email:
            link = f"{request.app.state.settings.frontend_reset_url}?token={issued.raw_token}"
            background_tasks.add_task(
                dispatch,
                request.app.state.mailer.send_password_reset,
                issued.user.email,
                link,
                service.ttl_minutes,
                user_id=issued.user.id,
            )
        else:
            logger.warning("Reset token issued for user_id=%s but no e-mail on file", issued.user.id)
        log_auth_event("reset_requested", ip=client_ip(request), user_id=issued.user.id)
    else:
        log_auth_event("reset_requested", ip=client_ip(request), reason="no_active_account")
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/forgot-password-check", response_model=MessageResponse)
def forgot_password_check(request: Request, body: ForgotPasswordCheckRequest) -> MessageResponse:
    """Tell the client whether to show the self-service recovery form."""
    service: PasswordResetService = request.app.state.password_reset
    if not service.check_eligibility(body.username):
        raise _contact_admin()
    return MessageResponse(message="Eligible.")


@limiter.limit(recovery_limit)
@router.post("/auth/reset-password-security", response_model=SecurityResetResponse)
def reset_password_security(request: Request, body: SecurityResetRequest) -> JSONResponse:
    """Exchange three correct security answers for a reset token.

    The token is the same kind the e-mail flow issues and is redeemed through
    /auth/reset-password.
    """
    service: PasswordResetService = request.app.state.password_reset
    username = normalize_username(body.username)
    try:
        issued = service.verify_security_answers(username, body.security_answers.model_dump())
    except RestrictedAccountError:
        log_auth_event("reset_security_refused", ip=client_ip(request), username=username, reason="restricted_role")
        raise _contact_admin() from None
    if issued is None:
        log_auth_event("reset_security_failed", ip=client_ip(request), username=username)
        raise HTTPException(
            status_code=400,
            detail={"code": "verification_failed", "message": "Verification failed."},
        )
    log_auth_event("reset_security_success", ip=client_ip(request), user_id=issued.user.id)
    resp = JSONResponse(
        content=SecurityResetResponse(message="Verification successful.", reset_token=issued.raw_token).model_dump(
            by_alias=True
        )
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Redeem a reset token. Every session of the account is destroyed on success."""
    service: PasswordResetService = request.app.state.password_reset
    if not service.redeem(body.token, body.new_password):
        log_auth_event("reset_failed", ip=client_ip(request))
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_token", "message": "Invalid or expired token."},
        )
    log_auth_event("reset_success", ip=client_ip(request))
    settings = request.app.state.settings
    resp = JSONResponse(content={"message": "Password has been reset. Please log in."})
    clear_session_cookie(resp, secure=settings.cookie_secure, samesite=settings.effective_samesite)
    return resp
