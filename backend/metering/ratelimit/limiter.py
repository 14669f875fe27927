"""Fixed-window request counting.

Windows are clock-aligned: the key for a request is
``identifier:floor(now / window_seconds)`` and every window ends on a
multiple of ``window_seconds``. Counters live in this process only, so each
server instance enforces its own limit; a multi-instance deployment needs the
counters in a shared store with atomic increments.
"""

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from metering.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierLimit:
    window_seconds: int
    max_requests: int
    daily_max: int


_WINDOW = settings.RATE_LIMIT_WINDOW_SECONDS

TIER_LIMITS: dict[str, TierLimit] = {
    "free": TierLimit(window_seconds=_WINDOW, max_requests=10, daily_max=100),
    "starter": TierLimit(window_seconds=_WINDOW, max_requests=30, daily_max=1000),
    "pro": TierLimit(window_seconds=_WINDOW, max_requests=60, daily_max=5000),
    "enterprise": TierLimit(window_seconds=_WINDOW, max_requests=300, daily_max=100000),
}
TIER_LIMITS["anonymous"] = TIER_LIMITS["free"]


def get_tier_limits(tier: str | None = None) -> TierLimit:
    return TIER_LIMITS.get(tier or "free", TIER_LIMITS["free"])


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    count: int
    reset_seconds: int


class FixedWindowRateLimiter:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, identifier: str, *, max_requests: int, window_seconds: int) -> RateLimitDecision:
        now = self._clock()
        index = math.floor(now / window_seconds)
        key = f"{identifier}:{index}"

        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = _Window(count=0, reset_at=(index + 1) * window_seconds)
                self._windows[key] = window
            window.count += 1
            count = window.count

        return RateLimitDecision(
            allowed=count <= max_requests,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            count=count,
            reset_seconds=max(1, math.ceil(window.reset_at - now)),
        )

    def sweep(self) -> int:
        """Drop windows that have ended. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if window.reset_at <= now]
            for key in expired:
                self._windows.pop(key, None)
        return len(expired)


async def sweep_forever(limiter: FixedWindowRateLimiter, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        removed = limiter.sweep()
        if removed:
            logger.debug("Evicted %s expired rate limit windows", removed)
