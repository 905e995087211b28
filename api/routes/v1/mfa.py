"""
api/routes/v1/mfa.py -- One-time code second factor.

Routes:
  POST /api/v1/mfa/initiate  -- issue (or replace) the caller's challenge
  POST /api/v1/mfa/verify    -- check a code; promotes an mfa_pending session
  GET  /api/v1/mfa/status    -- is MFA enabled on this account?

The user is always the session's user. Request bodies never name a user, so
one account cannot start or answer another account's challenge.

These routes accept mfa_pending sessions (require_session). Every other
authenticated route rejects them until verify succeeds.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from api.models import MfaInitiateResponse, MfaStatusResponse, MfaVerifyRequest, MfaVerifyResponse
from auth.audit import log_auth_event
from auth.dependencies import client_ip, csrf_protect, require_session
from auth.mailer import dispatch
from auth.mfa import MFAChallengeService
from auth.models import Session

router = APIRouter(dependencies=[Depends(csrf_protect)])


def _invalid_code() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "invalid_code", "message": "Invalid or expired code."},
    )


@router.post("/mfa/initiate", response_model=MfaInitiateResponse, response_model_exclude_none=True)
def initiate(
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(require_session),
) -> MfaInitiateResponse:
    """Issue a fresh code for the session's user; any earlier code stops working.

    Outside production the code is echoed as devCode so the flow can be
    exercised without a mail server.
    """
    mfa: MFAChallengeService = request.app.state.mfa
    code = mfa.initiate(session.user_id)

    user = request.app.state.user_store.get_by_id(session.user_id)
    if user is not None and user.email:
        background_tasks.add_task(
            dispatch,
            request.app.state.mailer.send_mfa_code,
            user.email,
            code,
            max(1, int(mfa.code_ttl // 60)),
            user_id=user.id,
        )
    log_auth_event("mfa_initiated", ip=client_ip(request), user_id=session.user_id)

    return MfaInitiateResponse(
        success=True,
        message="Verification code sent.",
        dev_code=None if request.app.state.settings.production else code,
    )


@router.post("/mfa/verify", response_model=MfaVerifyResponse)
def verify(
    request: Request,
    body: MfaVerifyRequest,
    session: Session = Depends(require_session),
) -> MfaVerifyResponse:
    """Check the code. Wrong, expired, missing and exhausted all answer the same 401."""
    mfa: MFAChallengeService = request.app.state.mfa
    if not mfa.verify(session.user_id, body.code):
        log_auth_event("mfa_failed", ip=client_ip(request), user_id=session.user_id)
        raise _invalid_code()
    if session.mfa_pending and not request.app.state.session_store.mark_mfa_verified(session.token):
        raise _invalid_code()
    log_auth_event("mfa_verified", ip=client_ip(request), user_id=session.user_id)
    return MfaVerifyResponse(success=True, message="MFA verification successful.")


@router.get("/mfa/status", response_model=MfaStatusResponse)
def status(request: Request, session: Session = Depends(require_session)) -> MfaStatusResponse:
    user = request.app.state.user_store.get_by_id(session.user_id)
    enabled = bool(user and user.mfa_enabled)
    return MfaStatusResponse(enabled=enabled, method="code" if enabled else None)
