# test_ratelimit.py
from unittest.mock import AsyncMock, MagicMock

import pytest

from ratelimit import AdmissionGate, RateDecision, RedisAdmissionGate

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _gate(limit=5, window=60, **kwargs):
    clock = kwargs.pop("clock", FakeClock())
    return AdmissionGate(limit, window, clock=clock, **kwargs), clock


def _redis(incr_return=1, ttl_return=42):
    """Return a mock async Redis client with controllable INCR/TTL values."""
    r = MagicMock()
    r.incr = AsyncMock(return_value=incr_return)
    r.expire = AsyncMock(return_value=True)
    r.ttl = AsyncMock(return_value=ttl_return)
    return r


# ---------------------------------------------------------------------------
# AdmissionGate: fixed window
# ---------------------------------------------------------------------------

class TestAdmissionGate:
    async def test_sixth_request_in_window_rejected(self):
        gate, clock = _gate(limit=5, window=60)
        results = []
        for _ in range(6):
            results.append(await gate.admit("10.0.0.1"))
            clock.advance(1)
        assert results == [True] * 5 + [False]

    async def test_window_resets_after_expiry(self):
        gate, clock = _gate(limit=5, window=60)
        for _ in range(5):
            assert await gate.admit("10.0.0.1")
        assert await gate.admit("10.0.0.1") is False

        clock.advance(61)
        decision = await gate.check("10.0.0.1")
        assert decision.allowed is True
        assert decision.remaining == 4  # count reset to 1

    async def test_window_still_live_at_exact_boundary(self):
        gate, clock = _gate(limit=1, window=60)
        assert await gate.admit("k")
        clock.advance(60)
        assert await gate.admit("k") is False
        clock.advance(0.001)
        assert await gate.admit("k") is True

    async def test_rejections_do_not_extend_count(self):
        gate, clock = _gate(limit=2, window=60)
        await gate.admit("k")
        await gate.admit("k")
        for _ in range(10):
            assert await gate.admit("k") is False
        clock.advance(61)
        assert await gate.admit("k") is True

    async def test_keys_are_independent(self):
        gate, _ = _gate(limit=1, window=60)
        assert await gate.admit("a")
        assert await gate.admit("b")
        assert await gate.admit("a") is False
        assert await gate.admit("b") is False

    async def test_explicit_now_argument(self):
        gate, _ = _gate(limit=1, window=60)
        assert await gate.admit("k", now=1000.0)
        assert await gate.admit("k", now=1030.0) is False
        assert await gate.admit("k", now=1061.0) is True

    async def test_boundary_burst_is_possible(self):
        """Fixed windows admit up to 2x the limit across a window edge."""
        gate, clock = _gate(limit=3, window=60)
        await gate.admit("k")
        clock.advance(59)
        assert await gate.admit("k")
        assert await gate.admit("k")
        clock.advance(2)
        assert all([await gate.admit("k") for _ in range(3)])

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            AdmissionGate(0, 60)
        with pytest.raises(ValueError):
            AdmissionGate(5, 0)


class TestDecision:
    async def test_remaining_counts_down(self):
        gate, _ = _gate(limit=3, window=60)
        remaining = [(await gate.check("k")).remaining for _ in range(4)]
        assert remaining == [2, 1, 0, 0]

    async def test_reset_after_tracks_window_start(self):
        gate, clock = _gate(limit=3, window=60)
        await gate.check("k")
        clock.advance(20.5)
        decision = await gate.check("k")
        assert decision.reset_after == 40

    def test_headers_on_admit(self):
        d = RateDecision(allowed=True, limit=300, remaining=12, reset_after=30)
        assert d.headers() == {
            "RateLimit-Limit": "300",
            "RateLimit-Remaining": "12",
            "RateLimit-Reset": "30",
        }

    def test_headers_on_reject_include_retry_after(self):
        d = RateDecision(allowed=False, limit=300, remaining=0, reset_after=30)
        assert d.headers()["Retry-After"] == "30"

    def test_truthiness(self):
        assert RateDecision(True, 1, 0, 1)
        assert not RateDecision(False, 1, 0, 1)


# ---------------------------------------------------------------------------
# AdmissionGate: eviction
# ---------------------------------------------------------------------------

class TestEviction:
    async def test_stale_windows_evicted_after_grace(self):
        gate, clock = _gate(limit=5, window=60, grace=10)
        for i in range(50):
            await gate.admit(f"10.0.0.{i}")
        assert len(gate) == 50
        clock.advance(71)
        assert len(gate) == 0

    async def test_live_windows_kept_during_grace(self):
        gate, clock = _gate(limit=5, window=60, grace=10)
        await gate.admit("k")
        clock.advance(65)
        assert len(gate) == 1

    async def test_size_bound_holds_under_many_keys(self):
        gate, _ = _gate(limit=5, window=60, max_keys=100)
        for i in range(1000):
            await gate.admit(f"client-{i}")
        assert len(gate) <= 100

    async def test_reset_window_gets_fresh_ttl(self):
        gate, clock = _gate(limit=5, window=60, grace=10)
        await gate.admit("k")
        clock.advance(61)
        await gate.admit("k")  # new window starts here
        clock.advance(65)
        assert len(gate) == 1


# ---------------------------------------------------------------------------
# RedisAdmissionGate
# ---------------------------------------------------------------------------

class TestRedisAdmissionGate:
    async def test_first_request_sets_expire(self):
        r = _redis(incr_return=1)
        gate = RedisAdmissionGate(r, limit=5, window=60)
        decision = await gate.check("10.0.0.1")
        r.expire.assert_awaited_once_with("rl:ip:10.0.0.1", 60)
        assert decision.allowed is True
        assert decision.remaining == 4
        assert decision.reset_after == 60

    async def test_subsequent_request_reads_ttl(self):
        r = _redis(incr_return=3, ttl_return=42)
        gate = RedisAdmissionGate(r, limit=5, window=60)
        decision = await gate.check("10.0.0.1")
        r.expire.assert_not_awaited()
        assert decision.reset_after == 42
        assert decision.remaining == 2

    async def test_at_limit_admitted(self):
        gate = RedisAdmissionGate(_redis(incr_return=5), limit=5, window=60)
        assert await gate.admit("k") is True

    async def test_over_limit_rejected(self):
        gate = RedisAdmissionGate(_redis(incr_return=6), limit=5, window=60)
        decision = await gate.check("k")
        assert decision.allowed is False
        assert decision.remaining == 0

    async def test_key_without_ttl_is_repaired(self):
        r = _redis(incr_return=2, ttl_return=-1)
        gate = RedisAdmissionGate(r, limit=5, window=60)
        decision = await gate.check("k")
        r.expire.assert_awaited_once_with("rl:ip:k", 60)
        assert decision.reset_after == 60
