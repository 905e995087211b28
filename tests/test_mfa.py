"""Unit tests for auth/mfa.py -- one-time code challenges.

Covers:
- code shape and range
- correct code verifies once; the challenge is consumed
- re-initiate replaces the earlier code
- expiry at the TTL boundary
- attempt cap: five wrong codes exhaust the challenge, even for the right code
- concurrent correct answers: exactly one succeeds; a racing initiate() survives
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from auth.mfa import MFAChallengeService, generate_code
from cache.store import MemoryTTLStore


@pytest.fixture
def mfa(clock) -> MFAChallengeService:
    return MFAChallengeService(MemoryTTLStore(clock=clock), code_ttl=300, max_attempts=5, clock=clock)


def _wrong(code: str) -> str:
    return "100000" if code != "100000" else "100001"


class TestGenerateCode:
    def test_six_digits_in_range(self):
        for _ in range(200):
            code = generate_code()
            assert len(code) == 6 and code.isdigit()
            assert 100000 <= int(code) <= 999999

    def test_bounds_reachable(self):
        with patch("auth.mfa.secrets.randbelow", return_value=0):
            assert generate_code() == "100000"
        with patch("auth.mfa.secrets.randbelow", return_value=899999):
            assert generate_code() == "999999"


class TestVerify:
    def test_correct_code_once(self, mfa):
        code = mfa.initiate(1)
        assert mfa.verify(1, code) is True
        assert mfa.verify(1, code) is False
        assert mfa.get_challenge(1) is None

    def test_whitespace_around_code_is_ignored(self, mfa):
        code = mfa.initiate(1)
        assert mfa.verify(1, f" {code}\n") is True

    def test_no_challenge(self, mfa):
        assert mfa.verify(42, "123456") is False

    def test_other_users_code_does_not_work(self, mfa):
        code_a = mfa.initiate(1)
        code_b = mfa.initiate(2)
        if code_a != code_b:
            assert mfa.verify(2, code_a) is False
        assert mfa.verify(2, code_b) is True

    @pytest.mark.parametrize("bad", [None, 123456, ""])
    def test_non_string_or_empty_code(self, mfa, bad):
        mfa.initiate(1)
        assert mfa.verify(1, bad) is False

    def test_reinitiate_replaces_code(self, mfa):
        with patch("auth.mfa.generate_code", side_effect=["111111", "222222"]):
            mfa.initiate(1)
            mfa.initiate(1)
        assert mfa.verify(1, "111111") is False
        assert mfa.verify(1, "222222") is True

    def test_wrong_attempts_are_counted(self, mfa):
        code = mfa.initiate(1)
        mfa.verify(1, _wrong(code))
        mfa.verify(1, _wrong(code))
        assert mfa.get_challenge(1).attempts == 2


class TestExpiry:
    def test_valid_just_before_ttl(self, mfa, clock):
        code = mfa.initiate(1)
        clock.advance(299)
        assert mfa.verify(1, code) is True

    def test_expired_at_ttl(self, mfa, clock):
        code = mfa.initiate(1)
        clock.advance(300)
        assert mfa.verify(1, code) is False


class TestAttemptCap:
    def test_five_wrong_then_right_is_rejected(self, mfa):
        code = mfa.initiate(1)
        for _ in range(5):
            assert mfa.verify(1, _wrong(code)) is False
        assert mfa.verify(1, code) is False
        assert mfa.get_challenge(1) is None

    def test_four_wrong_then_right_succeeds(self, mfa):
        code = mfa.initiate(1)
        for _ in range(4):
            assert mfa.verify(1, _wrong(code)) is False
        assert mfa.verify(1, code) is True

    def test_new_challenge_resets_attempts(self, mfa):
        code = mfa.initiate(1)
        for _ in range(5):
            mfa.verify(1, _wrong(code))
        code = mfa.initiate(1)
        assert mfa.verify(1, code) is True


class TestConcurrency:
    def test_parallel_correct_answers_single_success(self, mfa):
        code = mfa.initiate(1)
        barrier = threading.Barrier(4)

        def _attempt(_):
            barrier.wait()
            return mfa.verify(1, code)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(_attempt, range(4)))
        assert results.count(True) == 1

    def test_reinitiate_during_correct_answer_keeps_new_challenge(self, clock):
        cache = MemoryTTLStore(clock=clock)
        mfa = MFAChallengeService(cache, code_ttl=300, max_attempts=5, clock=clock)
        code = mfa.initiate(1)
        real_update = cache.update
        fresh = []

        def _update_then_reinitiate(key, fn):
            result = real_update(key, fn)
            fresh.append(mfa.initiate(1))
            return result

        with patch.object(cache, "update", side_effect=_update_then_reinitiate):
            assert mfa.verify(1, code) is True
        assert mfa.get_challenge(1) is not None
        assert mfa.verify(1, fresh[0]) is True
