"""Failure-rate circuit breakers for outbound calls.

A breaker opens once at least ``volume_threshold`` calls have completed within
the last ``rolling_window_s`` seconds and the failure share among them reaches
``error_threshold_pct``. After ``reset_timeout_s`` it lets one trial call
through (half-open) and rejects the rest until that call finishes; success
closes it, failure reopens it.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitOpenError(RuntimeError):
    def __init__(self, name: str):
        super().__init__(f"Circuit '{name}' is open")
        self.name = name


@dataclass
class BreakerCounters:
    fires: int = 0
    successes: int = 0
    failures: int = 0
    rejects: int = 0


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        error_threshold_pct: int = 50,
        volume_threshold: int = 5,
        reset_timeout_s: float = 30.0,
        rolling_window_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.error_threshold_pct = error_threshold_pct
        self.volume_threshold = max(1, volume_threshold)
        self.reset_timeout_s = reset_timeout_s
        self.rolling_window_s = rolling_window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False
        # (finished_at, ok) for calls completed while closed
        self._outcomes: deque[tuple[float, bool]] = deque()
        self.counters = BreakerCounters()

    @property
    def state(self) -> str:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> str:
        if self._state == OPEN and self._clock() - self._opened_at >= self.reset_timeout_s:
            self._state = HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit %s half-open, allowing a trial call", self.name)
        return self._state

    def call(self, fn: Callable[[], T]) -> T:
        with self._lock:
            self.counters.fires += 1
            state = self._current_state()
            if state == OPEN or (state == HALF_OPEN and self._trial_in_flight):
                self.counters.rejects += 1
                raise CircuitOpenError(self.name)
            if state == HALF_OPEN:
                self._trial_in_flight = True

        try:
            result = fn()
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _prune(self, now: float) -> None:
        cutoff = now - self.rolling_window_s
        while self._outcomes and self._outcomes[0][0] <= cutoff:
            self._outcomes.popleft()

    def _record_success(self) -> None:
        with self._lock:
            self.counters.successes += 1
            if self._state == HALF_OPEN:
                self._close()
                return
            if self._state == CLOSED:
                now = self._clock()
                self._outcomes.append((now, True))
                self._prune(now)

    def _record_failure(self) -> None:
        with self._lock:
            self.counters.failures += 1
            if self._state == HALF_OPEN:
                self._open()
                return
            if self._state != CLOSED:
                return
            now = self._clock()
            self._outcomes.append((now, False))
            self._prune(now)
            calls = len(self._outcomes)
            failures = sum(1 for _, ok in self._outcomes if not ok)
            if calls >= self.volume_threshold and failures * 100 >= self.error_threshold_pct * calls:
                self._open()

    def _open(self) -> None:
        self._state = OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._outcomes.clear()
        logger.warning("Circuit %s opened, failing fast for %ss", self.name, self.reset_timeout_s)

    def _close(self) -> None:
        self._state = CLOSED
        self._trial_in_flight = False
        self._outcomes.clear()
        logger.info("Circuit %s closed", self.name)

    def reset(self) -> None:
        with self._lock:
            self._close()

    def stats(self) -> dict:
        with self._lock:
            state = self._current_state()
            return {
                "name": self.name,
                "state": state,
                "stats": {
                    "fires": self.counters.fires,
                    "successes": self.counters.successes,
                    "failures": self.counters.failures,
                    "rejects": self.counters.rejects,
                },
            }


class BreakerRegistry:
    """Named breakers shared by one application instance."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_or_create(self, name: str, **options) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, clock=self._clock, **options)
                self._breakers[name] = breaker
            return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def stats(self) -> list[dict]:
        return [b.stats() for b in list(self._breakers.values())]

    def reset(self, name: str) -> bool:
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in list(self._breakers.values()):
            breaker.reset()
