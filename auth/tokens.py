"""
auth/tokens.py -- Credential primitives: passwords, random tokens, JWT, cookies.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Cost factor makes brute
       force expensive for low-entropy secrets. _DUMMY_HASH enables timing
       equalization in authenticate_user() so response time does not reveal
       whether a username exists.

  Password policy: one rule for registration, reset and change-password:
       12+ characters, at least one letter and one digit, at most 72 UTF-8
       bytes (bcrypt rejects longer input).

  Random tokens: secrets.token_hex. Session tokens carry 192 bits, reset
       tokens 384 bits, CSRF tokens 256 bits. Reset tokens are stored as
       SHA-256 digests -- high-entropy input needs no slow hash, and a DB leak
       does not expose redeemable tokens.

  constant_time_equals(): the only sanctioned way to compare a secret the
       caller supplied (MFA codes). Operands are padded to equal length and
       compared with hmac.compare_digest, so the comparison never exits early
       on the first differing byte or on a length mismatch.

  JWT: python-jose HS256 carrying sub, role and sid (the session token). It
       exists for clients that cannot hold the cookie. The sid is always
       re-resolved through SessionStore, so logout and password reset revoke
       the JWT along with the cookie.

  SECRET_KEY: sourced from core.config.get_settings().

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("movex.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE_NAME = "movex.sid"

MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_BYTES = 72

_LETTER_RE = re.compile(r"[A-Za-z]")
_DIGIT_RE = re.compile(r"\d")


# ---------------------------------------------------------------------------
# Password hashing and policy
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash (cost 12) of the given plaintext."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def is_strong_password(password: object) -> bool:
    if not isinstance(password, str):
        return False
    if len(password) < MIN_PASSWORD_LENGTH or len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return False
    return bool(_LETTER_RE.search(password) and _DIGIT_RE.search(password))


# Timing equalization dummy hash. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("movex_timing_dummy_0")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification on nothing, for code paths with no real hash."""
    verify_password(plain, _DUMMY_HASH)


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Authenticate a username/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure (including disabled accounts).
    """
    user = store.get_by_username(username)
    if user is None or user.hashed_password is None:
        burn_password_check(password)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Random tokens and hashing
# ---------------------------------------------------------------------------


def generate_session_token() -> str:
    return secrets.token_hex(24)


def generate_reset_token() -> str:
    return secrets.token_hex(48)


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def hash_reset_token(raw_token: str) -> str:
    """SHA-256 hex of a raw reset token -- the only form that is persisted."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def constant_time_equals(expected: str, supplied: str) -> bool:
    """Compare two secrets without leaking where (or whether) they first differ.

    Both operands are right-padded with NUL bytes to the same width before
    hmac.compare_digest, and the length check is folded in afterwards, so the
    work done does not depend on how many leading characters matched.
    """
    a = expected.encode("utf-8")
    b = supplied.encode("utf-8")
    width = max(len(a), len(b), 1)
    same = hmac.compare_digest(a.ljust(width, b"\0"), b.ljust(width, b"\0"))
    return same and len(a) == len(b)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(username: str, role: str, session_token: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT that names the server-side session it belongs to."""
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "role": role,
        "sid": session_token,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not isinstance(payload.get("sid"), str):
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, session_token: str, *, max_age: int, secure: bool, samesite: str) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite: "lax" in dev, "none" for cross-origin production deployments.
    secure: required whenever samesite="none"; always on in production.
    max_age: matches the session idle timeout.
    """
    response.set_cookie(
        SESSION_COOKIE_NAME,
        value=session_token,
        httponly=True,
        samesite=samesite,
        secure=secure,
        path="/",
        max_age=max_age,
    )


def clear_session_cookie(response, *, secure: bool, samesite: str) -> None:
    """Expire the session cookie using the same attributes it was set with."""
    response.delete_cookie(
        SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        samesite=samesite,
        secure=secure,
    )
