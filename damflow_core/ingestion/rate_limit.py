from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from damflow_core.errors import RateLimitExceeded


@dataclass
class TokenBucket:
    capacity: float
    refill_per_sec: float
    tokens: float
    last_refill: float
    clock: Callable[[], float] = time.monotonic
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def per_minute(
        cls,
        rate_per_min: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> "TokenBucket":
        return cls(
            capacity=float(rate_per_min),
            refill_per_sec=float(rate_per_min) / 60.0,
            tokens=float(rate_per_min),
            last_refill=clock(),
            clock=clock,
        )

    def _refill(self) -> None:
        now = self.clock()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(
                self.capacity,
                self.tokens + elapsed * self.refill_per_sec,
            )
            self.last_refill = now

    def allow(self, cost: float = 1.0) -> bool:
        with self._lock:
            self._refill()
            if self.tokens >= cost:
                self.tokens -= cost
                return True
            return False

    def wait_time(self, cost: float = 1.0) -> float:
        with self._lock:
            self._refill()
            missing = cost - self.tokens
        if missing <= 0:
            return 0.0
        return missing / self.refill_per_sec


class ModelRateLimiter:
    """Blocking limiter shared by every model call in the process.

    A rate of zero or less disables limiting.
    """

    def __init__(
        self,
        rate_per_min: int,
        *,
        max_wait_s: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate_per_min = rate_per_min
        self.max_wait_s = max_wait_s
        self._sleep = sleep
        self._bucket = (
            TokenBucket.per_minute(rate_per_min, clock=clock)
            if rate_per_min > 0
            else None
        )

    def acquire(self, cost: float = 1.0) -> None:
        if self._bucket is None:
            return
        waited = 0.0
        while not self._bucket.allow(cost=cost):
            delay = max(self._bucket.wait_time(cost=cost), 0.01)
            if waited + delay > self.max_wait_s:
                raise RateLimitExceeded(
                    f"Model rate limit of {self.rate_per_min}/min exceeded"
                )
            self._sleep(delay)
            waited += delay
