from __future__ import annotations

import threading
import time
from typing import Callable


class IntervalLimiter:
    """Enforces a minimum spacing between consecutive mutating calls."""

    def __init__(
        self,
        interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.interval_seconds = max(0.0, float(interval_seconds))
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: float | None = None

    @classmethod
    def from_milliseconds(cls, pacing_ms: int) -> "IntervalLimiter":
        return cls(max(0, int(pacing_ms)) / 1000.0)

    def wait(self) -> float:
        """Block until the next call is allowed; returns the seconds slept."""
        with self._lock:
            slept = 0.0
            now = self._clock()
            if self._last_call is not None and self.interval_seconds > 0:
                remaining = self._last_call + self.interval_seconds - now
                if remaining > 0:
                    self._sleep(remaining)
                    slept = remaining
                    now = self._clock()
            self._last_call = now
            return slept


def unlimited() -> IntervalLimiter:
    return IntervalLimiter(0)
