"""
Logical Clock.

Per-key millisecond clock used to stamp local writes.  A tick is the wall
clock time, pushed forward when needed so that it is strictly greater than
any timestamp this device has already observed for the same key (its own
earlier writes, server-assigned timestamps, applied remote records).
Because the remote assigns ``greatest(now_ms, previous + 1)`` the two
clocks share one unit and one ordering.
"""

from __future__ import annotations

import time
from typing import Callable, Optional


def wall_clock_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class LogicalClock:
    """Monotonic per-key timestamp source.

    Parameters
    ----------
    time_source:
        Returns the current wall-clock time in milliseconds.
    """

    def __init__(self, time_source: Callable[[], int] = wall_clock_ms) -> None:
        self._time_source = time_source
        self._last: dict[str, int] = {}

    def tick(self, key: str) -> int:
        """Return a new timestamp for *key*, greater than any seen before."""
        timestamp = max(self._time_source(), self._last.get(key, 0) + 1)
        self._last[key] = timestamp
        return timestamp

    def observe(self, key: str, timestamp: int) -> None:
        """Record that *timestamp* exists for *key*.  Never moves backward."""
        if timestamp > self._last.get(key, 0):
            self._last[key] = timestamp

    def last(self, key: str) -> Optional[int]:
        """Highest timestamp observed for *key*, or ``None``."""
        return self._last.get(key)
