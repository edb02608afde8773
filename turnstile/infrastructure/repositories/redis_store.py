"""
Redis counter store.

Each key is a Redis hash (`start`, `count`, `prev_start`, `prev_count`).
The reset-or-increment step runs as one Lua script, so it is atomic on the
server and no client-side lock is ever held across the network. Records
expire two windows after their last write, so Redis reclaims them on its
own and `cleanup_expired` has nothing to do.

Timestamps come from the caller's clock; every process sharing the store
must use a wall clock (`WallClock`).
"""

from __future__ import annotations

import hashlib
import math
import time
from typing import Any, Dict, Optional, Union

import redis.asyncio as redis
from redis.exceptions import RedisError
from structlog import get_logger

from turnstile.core.exceptions import StoreUnavailableError
from turnstile.domain.rate_limiting.repositories import CounterStore
from turnstile.domain.rate_limiting.value_objects import WindowSnapshot

logger = get_logger(__name__)

DEFAULT_KEY_PREFIX = "turnstile:rl:"

# KEYS[1] = record key
# ARGV[1] = now (seconds), ARGV[2] = window (seconds), ARGV[3] = ttl (ms)
# Start times travel as the caller's strings; Lua would truncate numbers
# in replies to integers.
INCREMENT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local state = redis.call('HMGET', key, 'start', 'count', 'prev_start', 'prev_count')
local start = state[1]
local count = tonumber(state[2]) or 0
local prev_start = state[3] or ''
local prev_count = tonumber(state[4]) or 0

if not start then
    start = ARGV[1]
    count = 1
    prev_start = ''
    prev_count = 0
else
    local elapsed = now - tonumber(start)
    if elapsed >= window then
        if elapsed < 2 * window then
            prev_start = start
            prev_count = count
        else
            prev_start = ''
            prev_count = 0
        end
        start = ARGV[1]
        count = 1
    else
        count = count + 1
    end
end

redis.call('HSET', key, 'start', start, 'count', tostring(count),
    'prev_start', prev_start, 'prev_count', tostring(prev_count))
redis.call('PEXPIRE', key, ARGV[3])
return {start, count, prev_start, prev_count}
"""


def _text(value: Union[bytes, str, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _digest(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def _snapshot_from(start: Any, count: Any, prev_start: Any, prev_count: Any) -> WindowSnapshot:
    previous = _text(prev_start)
    return WindowSnapshot(
        count=int(count),
        window_start=float(_text(start)),
        previous_count=int(prev_count or 0),
        previous_start=float(previous) if previous else None,
    )


class RedisCounterStore(CounterStore):
    """Counter store shared by every process connected to one Redis."""

    def __init__(
        self,
        client: redis.Redis,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        owns_client: bool = False,
    ):
        self.client = client
        self.key_prefix = key_prefix
        self.owns_client = owns_client
        self._increment = client.register_script(INCREMENT_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @staticmethod
    def _ttl_ms(window_seconds: float) -> int:
        return max(1, math.ceil(2 * window_seconds * 1000))

    async def increment(self, key: str, now: float, window_seconds: float) -> WindowSnapshot:
        try:
            start, count, prev_start, prev_count = await self._increment(
                keys=[self._key(key)],
                args=[repr(float(now)), repr(float(window_seconds)), self._ttl_ms(window_seconds)],
            )
        except (RedisError, OSError) as e:
            logger.warning("redis_increment_failed", key_digest=_digest(key), error=str(e))
            raise StoreUnavailableError("Redis counter store unavailable") from e
        return _snapshot_from(start, count, prev_start, prev_count)

    async def peek(self, key: str, now: float, window_seconds: float) -> Optional[WindowSnapshot]:
        try:
            start, count, prev_start, prev_count = await self.client.hmget(
                self._key(key), "start", "count", "prev_start", "prev_count"
            )
        except (RedisError, OSError) as e:
            raise StoreUnavailableError("Redis counter store unavailable") from e
        if start is None:
            return None
        snapshot = _snapshot_from(start, count, prev_start, prev_count)
        if snapshot.is_expired(now, window_seconds):
            return None
        return snapshot

    async def reset(self, key: str) -> None:
        try:
            await self.client.delete(self._key(key))
        except (RedisError, OSError) as e:
            raise StoreUnavailableError("Redis counter store unavailable") from e

    async def cleanup_expired(self, now: float) -> int:
        # Records carry a TTL of two windows.
        return 0

    async def health_check(self) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            await self.client.ping()
        except (RedisError, OSError) as e:
            logger.warning("redis_health_check_failed", error=str(e))
            return {"status": "unhealthy", "backend": "redis", "error": type(e).__name__}
        return {
            "status": "healthy",
            "backend": "redis",
            "latency_ms": round((time.perf_counter() - started) * 1000, 3),
        }

    async def close(self) -> None:
        if self.owns_client:
            await self.client.aclose()
