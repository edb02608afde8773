"""
In-memory counter store.

Windows live in a fixed number of shards, each guarded by its own
`threading.Lock` and chosen by a hash of the key. Increments for different
keys rarely contend, and the critical sections never await, so each one is
atomic for coroutines on one loop and for threads driving separate loops.

Counts are process-local; use the Redis store when several processes must
share one budget.
"""

from __future__ import annotations

import threading
import zlib
from typing import Any, Dict, List, Optional

from structlog import get_logger

from turnstile.core.exceptions import InvalidConfigurationError
from turnstile.domain.rate_limiting.repositories import CounterStore
from turnstile.domain.rate_limiting.value_objects import WindowSnapshot

logger = get_logger(__name__)

DEFAULT_STRIPES = 64


class _WindowRecord:
    __slots__ = ("start", "count", "previous_start", "previous_count", "window_seconds")

    def __init__(self, start: float, window_seconds: float):
        self.start = start
        self.count = 1
        self.previous_start: Optional[float] = None
        self.previous_count = 0
        self.window_seconds = window_seconds

    def roll(self, now: float, window_seconds: float) -> None:
        """Open a new window at `now`, keeping the old one while it can still overlap."""
        if now - self.start < 2 * window_seconds:
            self.previous_start = self.start
            self.previous_count = self.count
        else:
            self.previous_start = None
            self.previous_count = 0
        self.start = now
        self.count = 1
        self.window_seconds = window_seconds

    def snapshot(self) -> WindowSnapshot:
        return WindowSnapshot(
            count=self.count,
            window_start=self.start,
            previous_count=self.previous_count,
            previous_start=self.previous_start,
        )


class _Shard:
    __slots__ = ("lock", "records")

    def __init__(self):
        self.lock = threading.Lock()
        self.records: Dict[str, _WindowRecord] = {}


class InMemoryCounterStore(CounterStore):
    """Process-local counter store with striped locking."""

    def __init__(self, stripes: int = DEFAULT_STRIPES):
        if stripes < 1:
            raise InvalidConfigurationError("stripes must be at least 1")
        self._shards: List[_Shard] = [_Shard() for _ in range(stripes)]

    @property
    def stripes(self) -> int:
        return len(self._shards)

    def _shard_for(self, key: str) -> _Shard:
        # crc32 is stable across processes, unlike hash() on str.
        return self._shards[zlib.crc32(key.encode("utf-8")) % len(self._shards)]

    def increment_sync(self, key: str, now: float, window_seconds: float) -> WindowSnapshot:
        """Blocking form of `increment`, for callers outside an event loop."""
        shard = self._shard_for(key)
        with shard.lock:
            record = shard.records.get(key)
            if record is None:
                record = _WindowRecord(now, window_seconds)
                shard.records[key] = record
            elif now - record.start >= window_seconds:
                record.roll(now, window_seconds)
            else:
                record.count += 1
            return record.snapshot()

    async def increment(self, key: str, now: float, window_seconds: float) -> WindowSnapshot:
        return self.increment_sync(key, now, window_seconds)

    async def peek(self, key: str, now: float, window_seconds: float) -> Optional[WindowSnapshot]:
        shard = self._shard_for(key)
        with shard.lock:
            record = shard.records.get(key)
            if record is None or now - record.start >= window_seconds:
                return None
            return record.snapshot()

    async def reset(self, key: str) -> None:
        shard = self._shard_for(key)
        with shard.lock:
            shard.records.pop(key, None)

    async def cleanup_expired(self, now: float) -> int:
        removed = 0
        for shard in self._shards:
            with shard.lock:
                stale = [
                    key
                    for key, record in shard.records.items()
                    if now - record.start >= 2 * record.window_seconds
                ]
                for key in stale:
                    del shard.records[key]
                removed += len(stale)
        if removed:
            logger.debug("memory_store_cleanup", removed=removed)
        return removed

    def __len__(self) -> int:
        return sum(len(shard.records) for shard in self._shards)

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "backend": "memory",
            "keys": len(self),
            "stripes": self.stripes,
        }
