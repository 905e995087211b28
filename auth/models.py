"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only carry shape.

All timestamps are epoch seconds (float, UTC) so they compare directly with
the injectable clocks used by the stores.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class User:
    """A MoveX account.

    username is normalised (stripped, lower-case) before it reaches the store.
    hashed_password is None for OAuth-only users. security_answers maps
    "q1".."q3" to bcrypt hashes of the normalised answers; it is empty for
    accounts that never enrolled in question-based recovery.
    """

    username: str
    role: str  # "admin", "franchisee", "staff", "user", "customer"
    id: int | None = None
    email: str | None = None
    hashed_password: str | None = None
    status: str = "active"
    full_name: str | None = None
    phone: str | None = None
    security_answers: dict[str, str] = field(default_factory=dict)
    mfa_enabled: bool = False
    oauth_provider: str | None = None  # "github", "google"
    oauth_subject: str | None = None  # provider's stable user ID
    created_at: float | None = None
    last_login: float | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class Session:
    """A server-side login session, keyed by an opaque random token.

    Sliding expiry: every successful read sets last_accessed_at = now and
    expires_at = now + idle timeout. mfa_pending marks a session that passed
    the password check but has not yet completed the MFA challenge.
    """

    token: str
    user_id: int
    username: str
    role: str
    created_at: float
    expires_at: float
    last_accessed_at: float
    mfa_pending: bool = False


@dataclass
class PasswordResetToken:
    """Stored half of a password reset token. The raw token is never persisted.

    channel records which front door issued it ("email" or
    "security_questions"); both are redeemed by the same code path.
    """

    user_id: int
    token_hash: str  # SHA-256 hex of the raw token
    expires_at: float
    channel: str = "email"
    id: int | None = None
    created_at: float | None = None
    used: bool = False


@dataclass
class IssuedResetToken:
    """Result of a successful reset request: the raw token plus its recipient.

    Only ever held in memory long enough to hand to the mailer or the
    security-question response.
    """

    raw_token: str
    user: User
    expires_at: float


@dataclass
class MFAChallenge:
    """A pending one-time code for one user. Lives in the TTL cache."""

    user_id: int
    code: str
    expires_at: float
    attempts: int = 0
