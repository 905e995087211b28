"""Unit tests for cache/store.py -- TTL key-value backends.

Covers:
- MemoryTTLStore expiry follows the injected clock
- pop() hands an entry out exactly once, also under thread contention
- update() is read-modify-write and keeps the original expiry
- purge_expired() drops only dead entries
- RedisTTLStore maps operations onto GETDEL / SET KEEPTTL / transaction()
- create_ttl_store() backend selection
"""

from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from cache.store import MemoryTTLStore, RedisTTLStore, create_ttl_store
from conftest import FakeClock


@pytest.fixture
def store(clock: FakeClock) -> MemoryTTLStore:
    return MemoryTTLStore(clock=clock)


class TestMemoryTTLStore:
    def test_get_returns_copy_until_expiry(self, store, clock):
        store.set("k", {"a": 1}, ttl=10)
        got = store.get("k")
        got["a"] = 99
        assert store.get("k") == {"a": 1}
        clock.advance(9.9)
        assert store.get("k") == {"a": 1}
        clock.advance(0.1)
        assert store.get("k") is None

    def test_pop_is_single_use(self, store):
        store.set("k", {"v": "x"}, ttl=10)
        assert store.pop("k") == {"v": "x"}
        assert store.pop("k") is None
        assert store.get("k") is None

    def test_pop_of_expired_entry_returns_none(self, store, clock):
        store.set("k", {"v": "x"}, ttl=5)
        clock.advance(5)
        assert store.pop("k") is None

    def test_concurrent_pop_has_one_winner(self, store):
        store.set("k", {"v": "x"}, ttl=60)
        barrier = threading.Barrier(8)

        def _take():
            barrier.wait()
            return store.pop("k")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: _take(), range(8)))
        assert sum(r is not None for r in results) == 1

    def test_update_keeps_expiry(self, store, clock):
        store.set("k", {"n": 0}, ttl=10)
        clock.advance(6)
        assert store.update("k", lambda v: {"n": v["n"] + 1}) == {"n": 1}
        clock.advance(4)
        assert store.get("k") is None

    def test_update_returning_none_deletes(self, store):
        store.set("k", {"n": 0}, ttl=10)
        assert store.update("k", lambda v: None) is None
        assert store.get("k") is None

    def test_update_missing_key_does_not_call_fn(self, store):
        fn = MagicMock()
        assert store.update("missing", fn) is None
        fn.assert_not_called()

    def test_purge_expired_counts_removed(self, store, clock):
        store.set("short", {}, ttl=1)
        store.set("long", {}, ttl=100)
        clock.advance(2)
        assert store.purge_expired() == 1
        assert len(store) == 1
        assert store.get("long") == {}


class TestRedisTTLStore:
    def test_set_uses_prefix_and_whole_second_ttl(self):
        client = MagicMock()
        RedisTTLStore(client).set("csrf:abc", {"expires_at": 1.0}, ttl=0.4)
        client.set.assert_called_once_with("movex:csrf:abc", json.dumps({"expires_at": 1.0}), ex=1)

    def test_pop_uses_getdel(self):
        client = MagicMock()
        client.getdel.return_value = json.dumps({"code": "123456"})
        assert RedisTTLStore(client).pop("mfa:1") == {"code": "123456"}
        client.getdel.assert_called_once_with("movex:mfa:1")

    def test_pop_missing_returns_none(self):
        client = MagicMock()
        client.getdel.return_value = None
        assert RedisTTLStore(client).pop("mfa:1") is None

    def test_update_runs_in_transaction_with_keepttl(self):
        client = MagicMock()
        pipe = MagicMock()
        pipe.get.return_value = json.dumps({"attempts": 1})
        client.transaction.side_effect = lambda fn, *keys, **kw: fn(pipe)

        result = RedisTTLStore(client).update("mfa:7", lambda v: {"attempts": v["attempts"] + 1})

        assert result == {"attempts": 2}
        args, kwargs = client.transaction.call_args
        assert args[1] == "movex:mfa:7"
        assert kwargs == {"value_from_callable": True}
        pipe.multi.assert_called_once()
        pipe.set.assert_called_once_with("movex:mfa:7", json.dumps({"attempts": 2}), keepttl=True)


class TestCreateTTLStore:
    def test_memory_url(self, clock):
        assert isinstance(create_ttl_store("memory://", clock), MemoryTTLStore)

    def test_redis_url(self, monkeypatch):
        fake = MagicMock()
        monkeypatch.setattr(RedisTTLStore, "from_url", classmethod(lambda cls, url: fake))
        assert create_ttl_store("redis://cache:6379/0") is fake

    def test_unknown_scheme_rejected(self):
        with pytest.raises(ValueError):
            create_ttl_store("memcached://localhost")
