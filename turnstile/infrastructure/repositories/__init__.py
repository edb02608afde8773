"""Counter store implementations."""

from .memory import InMemoryCounterStore
from .redis_store import RedisCounterStore

__all__ = ["InMemoryCounterStore", "RedisCounterStore"]
