from __future__ import annotations

import threading
import time
from typing import Callable


class DispatchRateLimiter:
    """Spaces call starts so no more than ``rate_per_second`` begin each second."""

    def __init__(
        self,
        rate_per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self.interval_seconds = 1.0 / float(rate_per_second)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self) -> float:
        """Block until this caller's slot; returns the seconds waited."""
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.interval_seconds
        wait = slot - now
        if wait > 0:
            self._sleep(wait)
        return max(0.0, wait)
