"""
Window Algorithms

Pure functions of a post-increment window snapshot, the quota and the
current time. Algorithms never touch the store; the store's increment is the
only mutation in the admission path.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .value_objects import RateLimitAlgorithm, RateLimitQuota, WindowSnapshot

# Slack for float error in the weighted estimate.
_TOLERANCE = 1e-6


@dataclass(frozen=True, slots=True)
class WindowVerdict:
    """Outcome of evaluating a single window."""
    admitted: bool
    remaining: int
    retry_after: Optional[float] = None


class WindowAlgorithm(ABC):
    """Decides admission for a key given its window snapshot."""

    kind: RateLimitAlgorithm

    @abstractmethod
    def evaluate(self, snapshot: WindowSnapshot, quota: RateLimitQuota, now: float) -> WindowVerdict:
        """Evaluate a post-increment snapshot against the quota."""


class FixedWindowAlgorithm(WindowAlgorithm):
    """
    Counts events in a window that starts at the first event for the key.

    Up to twice the quota can pass across a window boundary: a full window
    just before the boundary and a full window just after it.
    """

    kind = RateLimitAlgorithm.FIXED_WINDOW

    def evaluate(self, snapshot: WindowSnapshot, quota: RateLimitQuota, now: float) -> WindowVerdict:
        if snapshot.is_expired(now, quota.window_seconds):
            # Store handed back a window that ended before `now`; the event
            # opens a fresh window.
            return WindowVerdict(admitted=True, remaining=quota.max_requests - 1)

        remaining = max(0, quota.max_requests - snapshot.count)
        if snapshot.count <= quota.max_requests:
            return WindowVerdict(admitted=True, remaining=remaining)

        retry_after = quota.window_seconds - snapshot.elapsed(now)
        return WindowVerdict(admitted=False, remaining=0, retry_after=retry_after)


class SlidingWindowAlgorithm(WindowAlgorithm):
    """
    Approximates a sliding log using the current and the previous window.

    The look-back interval is `[now - window, now]`. The previous window's
    count is weighted by the fraction of it that still lies inside that
    interval, on the assumption that its events were spread evenly.
    """

    kind = RateLimitAlgorithm.SLIDING_WINDOW

    @staticmethod
    def previous_weight(snapshot: WindowSnapshot, window_seconds: float, now: float) -> float:
        """Fraction of the previous window inside the look-back interval"""
        if snapshot.previous_start is None or snapshot.previous_count == 0:
            return 0.0
        previous_end = snapshot.previous_start + window_seconds
        overlap = previous_end - (now - window_seconds)
        return min(max(overlap, 0.0), window_seconds) / window_seconds

    def estimate(self, snapshot: WindowSnapshot, quota: RateLimitQuota, now: float) -> float:
        weight = self.previous_weight(snapshot, quota.window_seconds, now)
        return snapshot.count + snapshot.previous_count * weight

    def evaluate(self, snapshot: WindowSnapshot, quota: RateLimitQuota, now: float) -> WindowVerdict:
        if snapshot.is_expired(now, quota.window_seconds):
            return WindowVerdict(admitted=True, remaining=quota.max_requests - 1)

        estimated = self.estimate(snapshot, quota, now)
        remaining = max(0, math.floor(quota.max_requests - estimated + _TOLERANCE))
        if estimated <= quota.max_requests + _TOLERANCE:
            return WindowVerdict(admitted=True, remaining=remaining)

        retry_after = self.admit_at(snapshot, quota) - now
        return WindowVerdict(admitted=False, remaining=0, retry_after=max(retry_after, 1e-3))

    @staticmethod
    def admit_at(snapshot: WindowSnapshot, quota: RateLimitQuota) -> float:
        """
        Earliest time at which the key's next event would be admitted.

        The next event is counted on top of `snapshot.count`. While that fits
        the quota, only the previous window's weight has to fade, which
        happens before the current window ends. Otherwise the current window
        becomes the previous one at full weight when it rolls over, and the
        next window's first event waits until that weight has faded enough.
        """
        window = quota.window_seconds
        next_count = snapshot.count + 1

        if next_count <= quota.max_requests and snapshot.previous_start is not None:
            weight = (quota.max_requests - next_count) / snapshot.previous_count
            return snapshot.previous_start + 2 * window - window * weight

        weight = (quota.max_requests - 1) / snapshot.count
        return snapshot.window_start + 2 * window - window * weight


def create_algorithm(algorithm: RateLimitAlgorithm) -> WindowAlgorithm:
    """Factory for window algorithms."""
    if algorithm is RateLimitAlgorithm.FIXED_WINDOW:
        return FixedWindowAlgorithm()
    if algorithm is RateLimitAlgorithm.SLIDING_WINDOW:
        return SlidingWindowAlgorithm()
    raise ValueError(f"Unsupported algorithm: {algorithm}")
