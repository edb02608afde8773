"""Time sources for the admission engine.

The gateway reads the clock once per request and hands the reading to every
policy, so all policies judge a request at the same instant.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod


class Clock(ABC):
    """Supplies the current time in seconds."""

    @abstractmethod
    def now(self) -> float:
        """Return the current reading; never lower than a previous reading."""


class MonotonicClock(Clock):
    """Process-local monotonic time, for stores that live in this process."""

    def now(self) -> float:
        return time.monotonic()


class WallClock(Clock):
    """Epoch time, for stores shared between processes or hosts.

    Readings are clamped so the clock never goes backwards within a process,
    even if the system time is stepped.
    """

    def __init__(self) -> None:
        self._last = 0.0
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            self._last = max(self._last, time.time())
            return self._last


class FakeClock(Clock):
    """Deterministic clock for tests."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("FakeClock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, timestamp: float) -> float:
        if timestamp < self._now:
            raise ValueError("FakeClock cannot move backwards")
        self._now = float(timestamp)
        return self._now
