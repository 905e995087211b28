"""
auth/password_reset.py -- Password reset tokens and the credential-change transaction.

One token model, two front doors:
  request_reset()            -- identity (username or e-mail) -> token mailed as a link.
  verify_security_answers()  -- username + three answers -> token returned to the caller.
Both go through _issue(), and both kinds of token are redeemed by redeem().

Token rules:
  - Only SHA-256(raw token) is stored.
  - At most one unused token per user: issuing marks every earlier unused
    token of that user as used in the same transaction as the insert.
  - `used` only ever goes 0 -> 1.
  - Redemption is a conditional UPDATE ... WHERE used = 0 AND expires_at > now.
    Of two concurrent redemptions of one token exactly one sees rowcount 1;
    the other gets "invalid or expired".

Redeem transaction: token flip, password update and deletion of every session
of the user run on one connection inside engine.begin(). Any failure rolls
all three back, so a token can never be left unused after its password change
went through.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy import select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import IssuedResetToken, PasswordResetToken, User
from auth.rbac import RESTRICTED_RECOVERY_ROLES
from auth.schema import password_reset_tokens as _tokens
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import (
    burn_password_check,
    generate_reset_token,
    hash_password,
    hash_reset_token,
    is_strong_password,
    verify_password,
)

logger = logging.getLogger("movex.auth.reset")

DEFAULT_TTL_MINUTES = 15

SECURITY_QUESTION_KEYS = ("q1", "q2", "q3")


class RestrictedAccountError(Exception):
    """Self-service recovery is not offered to this account's role."""


class _ResetAborted(Exception):
    pass


def normalize_answer(answer: str) -> str:
    return answer.strip().lower()


def hash_security_answers(answers: dict[str, str]) -> dict[str, str]:
    """Hash q1..q3 for storage. Missing or blank answers are not enrolled."""
    return {
        key: hash_password(normalize_answer(answers[key]))
        for key in SECURITY_QUESTION_KEYS
        if answers.get(key) and answers[key].strip()
    }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ResetTokenStore:
    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time) -> None:
        self.engine = engine
        self._clock = clock

    def issue(self, token: PasswordResetToken) -> int:
        """Invalidate the user's unused tokens and insert this one, atomically."""
        with self.engine.begin() as conn:
            self.invalidate_for_user(token.user_id, conn=conn)
            result = conn.execute(
                _tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    channel=token.channel,
                    created_at=self._clock(),
                    expires_at=token.expires_at,
                    used=0,
                )
            )
            return result.inserted_primary_key[0]

    def invalidate_for_user(self, user_id: int, *, conn: Connection) -> int:
        return conn.execute(
            update(_tokens).where((_tokens.c.user_id == user_id) & (_tokens.c.used == 0)).values(used=1)
        ).rowcount

    def find_valid(self, token_hash: str) -> PasswordResetToken | None:
        """Unused, unexpired token with this hash, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select().where(
                    (_tokens.c.token_hash == token_hash)
                    & (_tokens.c.used == 0)
                    & (_tokens.c.expires_at > self._clock())
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def list_for_user(self, user_id: int) -> list[PasswordResetToken]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tokens.select().where(_tokens.c.user_id == user_id).order_by(_tokens.c.id)
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def claim(self, conn: Connection, token_hash: str, now: float) -> int | None:
        """Flip used 0 -> 1 for a live token and return its user_id.

        The UPDATE is the first statement so SQLite takes the write lock
        before reading; a concurrent claimer waits, then matches zero rows.
        """
        result = conn.execute(
            update(_tokens)
            .where((_tokens.c.token_hash == token_hash) & (_tokens.c.used == 0) & (_tokens.c.expires_at > now))
            .values(used=1)
        )
        if result.rowcount != 1:
            return None
        return conn.execute(select(_tokens.c.user_id).where(_tokens.c.token_hash == token_hash)).scalar()

    def purge_expired(self) -> int:
        """Delete tokens past their expiry (used or not). Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expires_at <= self._clock()))
        return result.rowcount


def _row_to_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        channel=row.channel,
        created_at=row.created_at,
        expires_at=row.expires_at,
        used=bool(row.used),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class PasswordResetService:
    """Issues and redeems reset tokens; owns every password-change transaction."""

    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        tokens: ResetTokenStore,
        *,
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._users = users
        self._sessions = sessions
        self.tokens = tokens
        self.ttl_minutes = ttl_minutes
        self._clock = clock

    # ------------------------------------------------------------------
    # Front doors
    # ------------------------------------------------------------------

    def request_reset(self, identity: str) -> IssuedResetToken | None:
        """Issue an e-mail reset token if identity names an active account.

        Returns None for unknown or disabled accounts and on storage errors.
        The caller's response must not depend on which.
        """
        try:
            user = self._users.get_by_identity(identity)
            if user is None or not user.is_active:
                return None
            return self._issue(user, channel="email")
        except SQLAlchemyError:
            logger.exception("Reset request failed")
            return None

    def check_eligibility(self, username: str) -> bool:
        """False only for restricted roles; unknown usernames are 'eligible'."""
        user = self._users.get_by_username(username)
        return user is None or user.role not in RESTRICTED_RECOVERY_ROLES

    def verify_security_answers(self, username: str, answers: dict[str, str]) -> IssuedResetToken | None:
        """Issue a reset token when all three answers match.

        Raises RestrictedAccountError for admin/franchisee/staff accounts.
        Unknown user, unenrolled user and wrong answers all return None after
        the same three bcrypt verifications.
        """
        user = self._users.get_by_username(username)
        if user is not None and user.role in RESTRICTED_RECOVERY_ROLES:
            raise RestrictedAccountError(user.role)

        stored = user.security_answers if user is not None and user.is_active else {}
        results = []
        for key in SECURITY_QUESTION_KEYS:
            supplied = normalize_answer(answers.get(key) or "")
            if key in stored:
                results.append(verify_password(supplied, stored[key]))
            else:
                burn_password_check(supplied)
                results.append(False)
        if user is None or not all(results):
            return None
        return self._issue(user, channel="security_questions")

    def _issue(self, user: User, *, channel: str) -> IssuedResetToken:
        raw = generate_reset_token()
        expires_at = self._clock() + self.ttl_minutes * 60
        self.tokens.issue(
            PasswordResetToken(user_id=user.id, token_hash=hash_reset_token(raw), expires_at=expires_at, channel=channel)
        )
        logger.info("Reset token issued for user_id=%s via %s", user.id, channel)
        return IssuedResetToken(raw_token=raw, user=user, expires_at=expires_at)

    # ------------------------------------------------------------------
    # Redemption and password change
    # ------------------------------------------------------------------

    def redeem(self, raw_token: object, new_password: object) -> bool:
        """Set a new password with a reset token. True at most once per token."""
        if not isinstance(raw_token, str) or not raw_token or not is_strong_password(new_password):
            return False
        new_hash = hash_password(new_password)
        token_hash = hash_reset_token(raw_token)
        now = self._clock()
        try:
            with self.tokens.engine.begin() as conn:
                user_id = self.tokens.claim(conn, token_hash, now)
                if user_id is None:
                    return False
                if not self._users.update_password(user_id, new_hash, conn=conn):
                    raise _ResetAborted(f"user_id={user_id} no longer exists")
                revoked = self._sessions.destroy_for_user(user_id, conn=conn)
        except _ResetAborted as exc:
            logger.warning("Password reset rolled back: %s", exc)
            return False
        except SQLAlchemyError:
            logger.exception("Password reset transaction failed; rolled back")
            return False
        logger.info("Password reset completed for user_id=%s (%d sessions revoked)", user_id, revoked)
        return True

    def change_password(self, user_id: int, current_password: str, new_password: str, *, keep_session: str) -> bool:
        """Change a logged-in user's password and log out their other devices.

        Returns False when the current password is wrong or the new one fails
        the policy. Outstanding reset tokens are invalidated in the same
        transaction.
        """
        user = self._users.get_by_id(user_id)
        if user is None or user.hashed_password is None:
            burn_password_check(current_password)
            return False
        if not verify_password(current_password, user.hashed_password):
            return False
        if not is_strong_password(new_password):
            return False
        new_hash = hash_password(new_password)
        with self.tokens.engine.begin() as conn:
            self._users.update_password(user_id, new_hash, conn=conn)
            self.tokens.invalidate_for_user(user_id, conn=conn)
            self._sessions.destroy_for_user(user_id, keep=keep_session, conn=conn)
        logger.info("Password changed for user_id=%s", user_id)
        return True

    def purge_expired(self) -> int:
        return self.tokens.purge_expired()
