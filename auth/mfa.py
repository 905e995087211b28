"""
auth/mfa.py -- One-time 6-digit codes that gate promotion of a session.

Flow: password login of an MFA-enabled account creates a session with
mfa_pending=True. The holder of that session calls initiate(), receives the
code out of band, and calls verify(). Success clears mfa_pending.

Rules:
  - The user is always taken from the resolved session, never from the
    request body, so nobody can start or answer a challenge for someone else.
  - One active challenge per user. initiate() overwrites the previous one,
    which also resets the attempt counter.
  - verify() is one atomic update of the challenge: it bumps `attempts`,
    compares, and deletes the challenge on a match or once attempts exceeds
    max_attempts (even if the code supplied on that call is right). A
    concurrent initiate() either lands before it or replaces what it left.
  - Codes are compared with constant_time_equals().
  - Every failure looks the same to the caller (False).

Scalability: challenges live in the TTL cache; with the in-memory backend a
challenge started on one worker process is unknown to the others.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable

from auth.models import MFAChallenge
from auth.tokens import constant_time_equals
from cache.store import TTLStore

logger = logging.getLogger("movex.auth.mfa")

CODE_MIN = 100000
CODE_MAX = 999999
DEFAULT_CODE_TTL = 5 * 60
DEFAULT_MAX_ATTEMPTS = 5

_PREFIX = "mfa:"


def generate_code() -> str:
    """Uniform over 100000..999999 inclusive."""
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


class MFAChallengeService:
    def __init__(
        self,
        cache: TTLStore,
        *,
        code_ttl: float = DEFAULT_CODE_TTL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self.code_ttl = code_ttl
        self.max_attempts = max_attempts
        self._clock = clock

    def initiate(self, user_id: int) -> str:
        """Create (or replace) the challenge for user_id and return its code."""
        code = generate_code()
        self._cache.set(
            f"{_PREFIX}{user_id}",
            {"code": code, "expires_at": self._clock() + self.code_ttl, "attempts": 0},
            ttl=self.code_ttl,
        )
        logger.info("MFA challenge issued for user_id=%s", user_id)
        return code

    def get_challenge(self, user_id: int) -> MFAChallenge | None:
        record = self._cache.get(f"{_PREFIX}{user_id}")
        if record is None:
            return None
        return MFAChallenge(user_id=user_id, **record)

    def verify(self, user_id: int, supplied_code: object) -> bool:
        supplied = supplied_code.strip() if isinstance(supplied_code, str) else None
        now = self._clock()
        outcome = {"passed": False, "exhausted": False}

        # Runs under the cache's atomic update; a Redis WATCH conflict re-runs it.
        def _attempt(record: dict) -> dict | None:
            outcome["passed"] = outcome["exhausted"] = False
            attempts = record["attempts"] + 1
            if record["expires_at"] <= now:
                return None
            if attempts > self.max_attempts:
                outcome["exhausted"] = True
                return None
            if supplied is not None and constant_time_equals(record["code"], supplied):
                outcome["passed"] = True
                return None
            record["attempts"] = attempts
            return record

        self._cache.update(f"{_PREFIX}{user_id}", _attempt)
        if outcome["exhausted"]:
            logger.warning("MFA challenge exhausted for user_id=%s", user_id)
        return outcome["passed"]
