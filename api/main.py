"""
api/main.py -- FastAPI application entry point for the MoveX auth service.

Serves the login, registration, password recovery, MFA and OAuth endpoints
the MoveX dashboards call, plus a role-guarded probe the dashboards use to
decide whether a page may be shown.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost; Starlette puts the last one added
outside the rest):
  1. security_headers       -- frame, sniffing, referrer, CSP and HSTS headers
  2. limit_body_size        -- 413 when Content-Length exceeds max_body_bytes
  3. refresh_session_cookie -- re-issues movex.sid after a cookie session slid
  4. log_requests           -- one access log line per request
  5. SessionMiddleware      -- authlib's scratch space during the OAuth redirect
  6. SlowAPIMiddleware      -- enforces per-route rate limits from api.limiter
  7. CORSMiddleware         -- adds CORS headers for allowed browser origins
  8. TrustedHostMiddleware  -- rejects requests with unexpected Host headers

Lifespan handles startup (engine, stores, services, background sweeps) and
shutdown (stop sweeps, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.dashboard import router as dashboard_router
from api.routes.v1.mfa import router as mfa_router
from api.routes.v1.oauth import router as oauth_router
from api.routes.v1.password_reset import router as password_reset_router
from auth.audit import log_security_event
from auth.csrf import CSRFTokenManager
from auth.mailer import ResetMailer
from auth.mfa import MFAChallengeService
from auth.oauth import OAuthStateStore
from auth.oauth import oauth as oauth_client
from auth.password_reset import PasswordResetService, ResetTokenStore
from auth.schema import create_auth_engine
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import SESSION_COOKIE_NAME, set_session_cookie
from cache.store import create_ttl_store
from core.config import Settings, get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("movex.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------


def init_app_state(app: FastAPI, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
    """Build every store and service and hang it on app.state.

    Shared by the real lifespan and the test lifespan, so tests exercise the
    same wiring with their own settings, database and clock.
    """
    app.state.settings = settings

    engine = create_auth_engine(settings.database_url)
    app.state.engine = engine
    app.state.user_store = UserStore(engine, clock)
    app.state.session_store = SessionStore(
        engine,
        idle_timeout=settings.session_idle_timeout_seconds,
        cleanup_interval=settings.session_cleanup_interval_seconds,
        cleanup_initial_delay=settings.session_cleanup_initial_delay_seconds,
        clock=clock,
    )
    app.state.password_reset = PasswordResetService(
        app.state.user_store,
        app.state.session_store,
        ResetTokenStore(engine, clock),
        ttl_minutes=settings.reset_token_ttl_minutes,
        clock=clock,
    )

    cache = create_ttl_store(settings.cache_url, clock)
    app.state.cache = cache
    app.state.csrf = CSRFTokenManager(cache, ttl=settings.csrf_token_ttl_seconds, clock=clock)
    app.state.mfa = MFAChallengeService(
        cache,
        code_ttl=settings.mfa_code_ttl_seconds,
        max_attempts=settings.mfa_max_attempts,
        clock=clock,
    )
    app.state.oauth_states = OAuthStateStore(cache, ttl=settings.oauth_state_ttl_seconds, clock=clock)
    app.state.oauth = oauth_client
    app.state.mailer = ResetMailer.from_settings(settings)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop expired cache entries and reset tokens every cache_purge_interval.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(app.state.settings.cache_purge_interval_seconds)
        try:
            purged = await asyncio.to_thread(app.state.cache.purge_expired)
            tokens = await asyncio.to_thread(app.state.password_reset.purge_expired)
        except SQLAlchemyError:
            logger.exception("Reset token purge failed")
            continue
        if purged or tokens:
            logger.debug("Purged %d cache entries, %d reset tokens", purged, tokens)


async def start_background_tasks(app: FastAPI) -> None:
    app.state.session_store.start()
    app.state.purge_task = asyncio.create_task(_purge_loop(app), name="cache-purge")


async def stop_background_tasks(app: FastAPI) -> None:
    await app.state.session_store.stop()
    app.state.purge_task.cancel()
    try:
        await app.state.purge_task
    except asyncio.CancelledError:
        pass


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Background sweeps start last because they reference the
    stores built by init_app_state().
    """
    logger.info("MoveX auth API starting up")
    init_app_state(app, get_settings())
    logger.info(
        "Auth initialized (users=%s, csrf_enabled=%s)",
        app.state.user_store.has_users(),
        app.state.settings.csrf_enabled,
    )
    await start_background_tasks(app)

    yield

    await stop_background_tasks(app)
    app.state.engine.dispose()
    logger.info("MoveX auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="MoveX Auth API",
    description="Sessions, password recovery, MFA and role checks for the MoveX shipment dashboards.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None if _settings.production else "/docs",
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each add_middleware call wraps the ones before it, so a request meets
# Session -> SlowAPI -> CORS -> TrustedHost on the way in.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps its own state copy in the Starlette session between the
# authorization redirect and the callback.
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    https_only=_settings.cookie_secure,
    max_age=_settings.oauth_state_ttl_seconds,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Sliding session cookie, body size cap, security headers
#
# Each @app.middleware wraps the ones declared before it, so security_headers
# is outermost and also decorates the 413 from limit_body_size.
# ---------------------------------------------------------------------------


def _sets_session_cookie(response) -> bool:
    prefix = f"{SESSION_COOKIE_NAME}="
    return any(value.startswith(prefix) for value in response.headers.getlist("set-cookie"))


@app.middleware("http")
async def refresh_session_cookie(request: Request, call_next):
    """Re-issue movex.sid whenever the request's cookie session was touched.

    SessionStore.get() slides expires_at on the server; without this the
    browser would still drop the cookie one idle timeout after login.
    Responses that already set or clear the cookie are left alone.
    """
    response = await call_next(request)
    token = getattr(request.state, "refresh_session_token", None)
    if token and not _sets_session_cookie(response):
        settings = request.app.state.settings
        set_session_cookie(
            response,
            token,
            max_age=settings.session_idle_timeout_seconds,
            secure=settings.cookie_secure,
            samesite=settings.effective_samesite,
        )
    return response


@app.middleware("http")
async def limit_body_size(request: Request, call_next):
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > request.app.state.settings.max_body_bytes:
        return JSONResponse(
            status_code=413,
            content=ErrorResponse(
                error=ErrorDetail(code="payload_too_large", message="Payload too large.")
            ).model_dump(),
        )
    return await call_next(request)


_CSP = "default-src 'none'; frame-ancestors 'none'"


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    # The interactive docs page loads its own scripts and styles.
    if not request.url.path.startswith("/docs"):
        response.headers["Content-Security-Policy"] = _CSP
    if request.app.state.settings.production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(password_reset_router, prefix="/api/v1", tags=["Password Reset"])
app.include_router(oauth_router, prefix="/api/v1", tags=["OAuth"])
app.include_router(mfa_router, prefix="/api/v1", tags=["MFA"])
app.include_router(dashboard_router, prefix="/api/v1", tags=["Dashboard"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Plain def: SlowAPIMiddleware calls this handler directly without awaiting.
    """
    log_security_event(
        "rate_limited",
        ip=request.client.host if request.client else None,
        path=request.url.path,
        method=request.method,
        message=str(exc.detail),
    )
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many attempts. Please try again later.",
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with structured error when request body or path params fail validation.

    Only field locations and messages are echoed; submitted values (which may
    be passwords) are not.
    """
    fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or "body" for err in exc.errors())
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=f"Invalid fields: {fields}" if fields else None,
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return API liveness, version and whether the database answers."""
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check database probe failed")
        return JSONResponse(
            status_code=503,
            content=HealthResponse(status="degraded", version=VERSION, database="unavailable").model_dump(),
        )
    return JSONResponse(content=HealthResponse(version=VERSION).model_dump())
