# ratelimit.py
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from cachetools import TTLCache

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: int  # seconds until the current window ends

    def __bool__(self) -> bool:
        return self.allowed

    def headers(self) -> dict[str, str]:
        """IETF draft RateLimit-* headers, plus Retry-After on rejection."""
        h = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_after),
        }
        if not self.allowed:
            h["Retry-After"] = str(self.reset_after)
        return h


@dataclass
class RateWindow:
    start: float
    count: int = 0


class AdmissionGate:
    """In-process fixed-window limiter keyed by client address.

    A key gets ``limit`` requests per ``window`` seconds, counted from its first
    request. Bursts of up to 2x ``limit`` are possible across a window boundary.
    Windows are kept in a TTL cache so stale keys are dropped ``grace`` seconds
    after their window ends, and at most ``max_keys`` windows are held.
    """

    def __init__(
        self,
        limit: int,
        window: float,
        *,
        max_keys: int = 100_000,
        grace: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1 or window <= 0:
            raise ValueError("limit and window must be positive")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: TTLCache = TTLCache(maxsize=max_keys, ttl=window + grace, timer=clock)

    def __len__(self) -> int:
        with self._lock:
            self._windows.expire()
            return len(self._windows)

    def _reset_after(self, w: RateWindow, now: float) -> int:
        return max(0, math.ceil(w.start + self.window - now))

    def hit(self, key: str, now: float | None = None) -> RateDecision:
        """Count one request for ``key`` and decide whether it is admitted."""
        if now is None:
            now = self._clock()
        with self._lock:
            w = self._windows.get(key)
            if w is None or now > w.start + self.window:
                # New windows are re-inserted so the cache TTL restarts with them.
                w = RateWindow(start=now, count=1)
                self._windows[key] = w
                return RateDecision(True, self.limit, self.limit - 1, self._reset_after(w, now))
            if w.count >= self.limit:
                return RateDecision(False, self.limit, 0, self._reset_after(w, now))
            w.count += 1
            return RateDecision(True, self.limit, self.limit - w.count, self._reset_after(w, now))

    async def check(self, key: str, now: float | None = None) -> RateDecision:
        return self.hit(key, now)

    async def admit(self, key: str, now: float | None = None) -> bool:
        return self.hit(key, now).allowed


class RedisAdmissionGate:
    """Fixed-window limiter shared by every process pointing at one Redis.

    The window starts at the key's first INCR; Redis expiry ends it.
    """

    def __init__(self, r: "aioredis.Redis", limit: int, window: int) -> None:
        self.r = r
        self.limit = limit
        self.window = int(window)

    async def check(self, key: str, now: float | None = None) -> RateDecision:
        rkey = f"rl:ip:{key}"
        val = await self.r.incr(rkey)
        if val == 1:
            await self.r.expire(rkey, self.window)
            ttl = self.window
        else:
            ttl = await self.r.ttl(rkey)
            if ttl < 0:
                # Key lost its expiry (crash between INCR and EXPIRE); restart it.
                await self.r.expire(rkey, self.window)
                ttl = self.window
        if val > self.limit:
            return RateDecision(False, self.limit, 0, ttl)
        return RateDecision(True, self.limit, self.limit - val, ttl)

    async def admit(self, key: str, now: float | None = None) -> bool:
        return (await self.check(key, now)).allowed
