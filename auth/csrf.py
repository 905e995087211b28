"""
auth/csrf.py -- Single-use anti-forgery tokens for state-changing requests.

issue() stores a random 256-bit token in the TTL cache with an absolute
expiry. validate() takes the token out of the cache with one atomic pop, so
of any number of concurrent validations of the same token exactly one can
see it. There is no separate check-then-delete step.

Failures (missing, expired, already used, wrong type) all return False; the
caller answers 403 with one message for every cause.

Scope: the request dependency in auth/dependencies.py exempts GET, HEAD and
OPTIONS by method, whether or not a token is present.

Scalability: with the default in-memory cache, tokens only exist in the
process that issued them. See cache/store.py.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from auth.tokens import generate_csrf_token
from cache.store import TTLStore

DEFAULT_TTL = 30 * 60  # 30 minutes

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

_PREFIX = "csrf:"


class CSRFTokenManager:
    def __init__(
        self,
        cache: TTLStore,
        *,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self.ttl = ttl
        self._clock = clock

    def issue(self) -> str:
        token = generate_csrf_token()
        self._cache.set(_PREFIX + token, {"expires_at": self._clock() + self.ttl}, ttl=self.ttl)
        return token

    def validate(self, token: object) -> bool:
        """True exactly once per issued, unexpired token."""
        if not token or not isinstance(token, str):
            return False
        record = self._cache.pop(_PREFIX + token)
        if record is None:
            return False
        return record["expires_at"] > self._clock()
