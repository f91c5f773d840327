"""Clock sources used by the stores and gates.

Every component reads time through a zero-argument callable returning epoch
milliseconds, so tests can drive window and expiry boundaries exactly.
"""

import threading
import time
from typing import Callable

Clock = Callable[[], int]


def system_clock() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


class ManualClock:
    """Settable clock for tests and simulations.

    Example:
        >>> clock = ManualClock(1_000)
        >>> clock.advance(seconds=1.5)
        >>> clock()
        2500
    """

    def __init__(self, now_ms: int = 0) -> None:
        self._now = int(now_ms)
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            return self._now

    def set(self, now_ms: int) -> None:
        with self._lock:
            self._now = int(now_ms)

    def advance(self, ms: int = 0, seconds: float = 0.0) -> int:
        """Move the clock forward and return the new time."""
        with self._lock:
            self._now += int(ms) + int(round(seconds * 1000))
            return self._now
