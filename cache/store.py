"""
cache/store.py -- Short-lived key-value storage with per-entry expiry.

Holds the single-use secrets of the auth core: CSRF tokens, pending MFA
challenges and OAuth state nonces. Callers only see the TTLStore interface,
so the backend can change without touching them.

Backends:
  MemoryTTLStore -- dict in this process. Correct for tests and single-instance
      deployments only: a second worker process has its own dict, so a token
      issued by one worker is unknown to the other.
  RedisTTLStore  -- shared Redis. Required once the app runs behind more than
      one process or host.

Usage:
    store = create_ttl_store("memory://")
    store.set("csrf:abc", {"expires_at": 123.0}, ttl=1800)
    store.pop("csrf:abc")      # atomic take -- a second pop returns None
    store.purge_expired()      # call periodically to trim old entries
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from collections.abc import Callable
from typing import Any, Optional

logger = logging.getLogger("movex.cache")

Mutator = Callable[[dict], Optional[dict]]


class TTLStore:
    """Interface shared by every backend.

    Values are JSON-compatible dicts. `ttl` is in seconds and is the absolute
    lifetime from the moment of `set`. `update` keeps the remaining lifetime.
    """

    def set(self, key: str, value: dict, ttl: float) -> None:
        raise NotImplementedError

    def get(self, key: str) -> Optional[dict]:
        raise NotImplementedError

    def pop(self, key: str) -> Optional[dict]:
        """Return and delete the entry in one step. None if absent or expired."""
        raise NotImplementedError

    def update(self, key: str, fn: Mutator) -> Optional[dict]:
        """Atomically replace the entry with fn(current).

        fn returning None deletes the entry. Returns the new value, or None
        when the key was absent/expired or fn deleted it.
        """
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def purge_expired(self) -> int:
        return 0

    def close(self) -> None:
        pass


class MemoryTTLStore(TTLStore):
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, dict]] = {}
        # Sync route handlers run in a thread pool; every read-modify-write
        # happens under this lock.
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[tuple[float, dict]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[0] <= self._clock():
            del self._entries[key]
            return None
        return entry

    def set(self, key: str, value: dict, ttl: float) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl, dict(value))

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            entry = self._live(key)
            return dict(entry[1]) if entry else None

    def pop(self, key: str) -> Optional[dict]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._entries[key]
            return entry[1]

    def update(self, key: str, fn: Mutator) -> Optional[dict]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            expires_at, value = entry
            new_value = fn(dict(value))
            if new_value is None:
                del self._entries[key]
                return None
            self._entries[key] = (expires_at, new_value)
            return dict(new_value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisTTLStore(TTLStore):
    """Redis backend. Expiry is delegated to Redis key TTLs.

    Needs Redis >= 6.2 (GETDEL, SET KEEPTTL).
    """

    def __init__(self, client: Any, prefix: str = "movex:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisTTLStore":
        from redis import Redis

        return cls(Redis.from_url(url, decode_responses=True, socket_timeout=5.0, socket_connect_timeout=5.0))

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def set(self, key: str, value: dict, ttl: float) -> None:
        self._client.set(self._k(key), json.dumps(value), ex=max(1, math.ceil(ttl)))

    def get(self, key: str) -> Optional[dict]:
        raw = self._client.get(self._k(key))
        return json.loads(raw) if raw is not None else None

    def pop(self, key: str) -> Optional[dict]:
        raw = self._client.getdel(self._k(key))
        return json.loads(raw) if raw is not None else None

    def update(self, key: str, fn: Mutator) -> Optional[dict]:
        full_key = self._k(key)

        def _apply(pipe) -> Optional[dict]:
            raw = pipe.get(full_key)
            if raw is None:
                return None
            new_value = fn(json.loads(raw))
            pipe.multi()
            if new_value is None:
                pipe.delete(full_key)
            else:
                pipe.set(full_key, json.dumps(new_value), keepttl=True)
            return new_value

        # transaction() re-runs _apply if full_key changes between WATCH and EXEC.
        return self._client.transaction(_apply, full_key, value_from_callable=True)

    def delete(self, key: str) -> None:
        self._client.delete(self._k(key))

    def close(self) -> None:
        self._client.close()


def create_ttl_store(url: str, clock: Callable[[], float] = time.time) -> TTLStore:
    """Build the backend named by CACHE_URL."""
    if url.startswith(("redis://", "rediss://", "unix://")):
        logger.info("TTL cache backend: redis")
        return RedisTTLStore.from_url(url)
    if url == "memory://":
        logger.info("TTL cache backend: in-process memory (single instance only)")
        return MemoryTTLStore(clock=clock)
    raise ValueError(f"Unsupported CACHE_URL scheme: {url!r}")
