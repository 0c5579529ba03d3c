"""Time sources for the rate limiting core.

Algorithms work on wall-clock epoch seconds (floats) because window buckets
must line up across engine instances sharing one store. Elapsed-time logic
that never leaves the process (circuit breaker, caches) uses the monotonic
reading instead.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):
    """Wall and monotonic time provider."""

    @abstractmethod
    def now(self) -> float:
        """Current wall-clock time as epoch seconds."""

    @abstractmethod
    def monotonic(self) -> float:
        """Monotonic seconds, only meaningful as differences."""


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """Clock that only moves when told to.

    Used by tests and simulations to step through window boundaries
    deterministically. The monotonic reading advances in lockstep with the
    wall reading.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = float(start)
        self._monotonic = 0.0
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._monotonic

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self._now += seconds
            self._monotonic += seconds
            return self._now

    def set(self, timestamp: float) -> None:
        """Jump the wall clock to ``timestamp`` (forward only)."""
        with self._lock:
            if timestamp < self._now:
                raise ValueError("ManualClock cannot move backwards")
            self._monotonic += timestamp - self._now
            self._now = float(timestamp)


def to_datetime(timestamp: float) -> datetime:
    """Convert epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)
