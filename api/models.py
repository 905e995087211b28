"""
API request and response models for the MoveX auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names are camelCase (newPassword, securityAnswers, devCode, ...) because
the browser client predates this service; Python attribute names stay
snake_case through Field aliases.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Login / registration
# ---------------------------------------------------------------------------


class SecurityAnswers(BaseModel):
    """Answers are bcrypt-hashed, so each is capped at bcrypt's 72-byte input."""

    q1: str = ""
    q2: str = ""
    q3: str = ""

    @field_validator("q1", "q2", "q3")
    @classmethod
    def fits_bcrypt(cls, v: str) -> str:
        if len(v.strip().encode("utf-8")) > 72:
            raise ValueError("answer too long")
        return v


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    role is optional; when given it must match the account's role or the
    login fails with the same generic error as a wrong password.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=1024)
    role: Optional[str] = None


class SessionUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message: str
    token: str
    mfa_required: bool = Field(alias="mfaRequired")
    user: SessionUser


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register. Role is never accepted."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    username: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=1024)
    email: Optional[str] = Field(default=None, max_length=254)
    full_name: Optional[str] = Field(default=None, alias="fullName", max_length=200)
    phone: Optional[str] = Field(default=None, max_length=40)
    security_answers: Optional[SecurityAnswers] = Field(default=None, alias="securityAnswers")

    @field_validator("email")
    @classmethod
    def email_shape(cls, v: Optional[str]) -> Optional[str]:
        if v in (None, ""):
            return None
        local, sep, domain = v.partition("@")
        if not sep or not local or "." not in domain:
            raise ValueError("invalid email address")
        return v.lower()


class UsernameAvailability(BaseModel):
    model_config = ConfigDict(frozen=True)

    available: bool
    message: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user_id: int = Field(alias="userId")
    username: str
    role: str
    landing: str
    oauth_provider: Optional[str] = Field(default=None, alias="oauthProvider")


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(alias="currentPassword", max_length=1024)
    new_password: str = Field(alias="newPassword", max_length=1024)


class CsrfTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    csrf_token: str = Field(alias="csrfToken")


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    identity: str = Field(min_length=1, max_length=254)


class ForgotPasswordCheckRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=254)


class SecurityResetRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    username: str = Field(min_length=1, max_length=254)
    security_answers: SecurityAnswers = Field(alias="securityAnswers")


class SecurityResetResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message: str
    reset_token: str = Field(alias="resetToken")


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password.

    Both fields are plain strings with no policy here: every failure,
    including a weak password, must collapse into the same 400 in the route.
    """

    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(default="", max_length=512)
    new_password: str = Field(default="", alias="newPassword", max_length=1024)


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class MfaVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(default="", max_length=32)


class MfaInitiateResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    success: bool
    message: str
    dev_code: Optional[str] = Field(default=None, alias="devCode")


class MfaVerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    message: str


class MfaStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    method: Optional[str] = None


# ---------------------------------------------------------------------------
# Dashboard probe
# ---------------------------------------------------------------------------


class DashboardAccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    resource: str
    user: dict
