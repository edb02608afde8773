"""
Rate Limiting Domain Repositories

The counter store contract. Implementations live in
`turnstile.infrastructure.repositories`; the domain depends only on this
abstraction.

Keys passed to a store are already encoded strings; a store never sees
request attributes.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .value_objects import WindowSnapshot


class CounterStore(ABC):
    """
    Repository interface for per-key window accounting.

    Implementations must make `increment` linearizable per key: concurrent
    increments for one key are never lost or double counted, and a window
    is never reset while another increment for the same key is in flight.
    Increments for different keys must not contend on a single lock.
    """

    @abstractmethod
    async def increment(self, key: str, now: float, window_seconds: float) -> WindowSnapshot:
        """
        Atomically count one event against the key's current window.

        Args:
            key: Encoded rate limit key
            now: Current clock reading in seconds
            window_seconds: Length of the key's window

        Returns:
            The post-increment snapshot. An absent or expired window is
            replaced by a new one starting at `now` with a count of 1.

        Raises:
            StoreUnavailableError: When the backing store cannot be reached
        """

    @abstractmethod
    async def peek(self, key: str, now: float, window_seconds: float) -> Optional[WindowSnapshot]:
        """
        Read the key's live window without modifying it.

        Returns:
            The snapshot, or None when no live window exists

        Raises:
            StoreUnavailableError: When the backing store cannot be reached
        """

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Remove all state for a key."""

    @abstractmethod
    async def cleanup_expired(self, now: float) -> int:
        """
        Reclaim memory held by stale windows.

        A record is stale once its window expired and it has stayed
        unaccessed for at least one more full window. Correctness never
        depends on this running.

        Returns:
            Number of records removed
        """

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Report store health (status, latency, backend)."""

    async def close(self) -> None:
        """Release connections held by the store."""
        return None
