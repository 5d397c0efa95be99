"""Per-item requeue rate limiting with exponential backoff and a global bucket."""

from __future__ import annotations

import time
from typing import Callable, Hashable

DEFAULT_BASE_DELAY = 0.005
DEFAULT_MAX_DELAY = 1000.0
DEFAULT_QPS = 10.0
DEFAULT_BURST = 100
DEFAULT_MAX_WAIT = 30.0


class RateLimiter:
    """Delays requeues: the larger of per-item exponential backoff and a
    shared token bucket, never longer than max_wait seconds."""

    def __init__(
        self,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        qps: float = DEFAULT_QPS,
        burst: int = DEFAULT_BURST,
        max_wait: float = DEFAULT_MAX_WAIT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.qps = qps
        self.burst = burst
        self.max_wait = max_wait
        self._clock = clock
        self._failures: dict[Hashable, int] = {}
        self._tokens = float(burst)
        self._last = clock()

    def _backoff(self, item: Hashable) -> float:
        failures = self._failures.get(item, 0)
        self._failures[item] = failures + 1
        try:
            delay = self.base_delay * (2.0 ** failures)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def _reserve(self) -> float:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._last = now
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)
        self._tokens -= 1.0
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self.qps

    def when(self, item: Hashable) -> float:
        """Return the delay in seconds before the item should be retried."""
        delay = max(self._backoff(item), self._reserve())
        return min(delay, self.max_wait)

    def forget(self, item: Hashable) -> None:
        """Stop tracking failures for the item."""
        self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        """Number of times the item has been requeued since last forgotten."""
        return self._failures.get(item, 0)


def default_rate_limiter() -> RateLimiter:
    """Rate limiter with the default controller settings, capped at 30 seconds."""
    return RateLimiter()