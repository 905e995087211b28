"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for MoveX auth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning; production
      mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. HMAC, JWT and
  Starlette session signing all rely on key entropy.

  Without DEBUG=true a missing SECRET_KEY is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("movex.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'movex_auth.db'}"

_SAMESITE_VALUES = {"", "lax", "strict", "none"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Gates Secure cookies, SameSite=None and the MFA devCode echo.
    production: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    database_url: str = _DEFAULT_DB_URL
    # "memory://" keeps CSRF tokens, MFA challenges and OAuth state in this
    # process only. Multi-instance deployments must point this at Redis.
    cache_url: str = "memory://"

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    # Requests declaring a larger Content-Length are refused with 413.
    max_body_bytes: int = 10 * 1024

    # ------------------------------------------------------------------
    # Sessions and cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Empty means derive from `production`: "none" for cross-origin prod, "lax" in dev.
    cookie_samesite: str = ""
    session_idle_timeout_seconds: int = 3600
    session_cleanup_interval_seconds: int = 900
    session_cleanup_initial_delay_seconds: int = 60
    # JWT fallback for clients that cannot keep the cookie (cross-origin).
    access_token_expire_seconds: int = 7200

    # ------------------------------------------------------------------
    # CSRF, password reset, MFA, OAuth state
    # ------------------------------------------------------------------

    csrf_enabled: bool = False
    csrf_token_ttl_seconds: int = 1800

    reset_token_ttl_minutes: int = 15
    frontend_reset_url: str = "http://localhost:4000/reset-password.html"

    mfa_code_ttl_seconds: int = 300
    mfa_max_attempts: int = 5

    oauth_state_ttl_seconds: int = 600
    cache_purge_interval_seconds: int = 60

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    oauth_callback_base: str = "http://localhost:4000"

    # ------------------------------------------------------------------
    # Outbound mail (reset links, MFA codes)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = ""

    # ------------------------------------------------------------------
    # Rate limiting and audit logging
    # ------------------------------------------------------------------

    login_rate_limit: str = "5/15minutes"
    register_rate_limit: str = "3/15minutes"
    forgot_password_rate_limit: str = "3/15minutes"
    log_auth_attempts: bool = False

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def cookie_secure(self) -> bool:
        return self.production or self.secure_cookies

    @property
    def effective_samesite(self) -> str:
        if self.cookie_samesite:
            return self.cookie_samesite
        return "none" if self.production else "lax"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions signed with it will not survive restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_cookie_policy(self) -> "Settings":
        """SameSite=None is only honoured by browsers on Secure cookies."""
        self.cookie_samesite = self.cookie_samesite.lower()
        if self.cookie_samesite not in _SAMESITE_VALUES:
            raise ValueError(f"COOKIE_SAMESITE must be one of lax, strict, none (got {self.cookie_samesite!r}).")
        if self.effective_samesite == "none" and not self.cookie_secure:
            raise ValueError("COOKIE_SAMESITE=none requires SECURE_COOKIES=true or PRODUCTION=true.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
