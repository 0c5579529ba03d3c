"""Counter store implementations."""

from .memory import InMemoryCounterStore
from .redis import RedisCounterStore

__all__ = ["InMemoryCounterStore", "RedisCounterStore"]
