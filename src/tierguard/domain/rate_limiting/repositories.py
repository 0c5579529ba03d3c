"""
Rate Limiting Domain Repositories

The counter store contract every algorithm engine runs against. It follows the
Repository pattern: the domain depends on this abstraction and the
infrastructure layer provides in-memory and Redis implementations.

Every mutating operation is a single atomic store operation. Engines never
read a value in one call and write it back in another, so concurrent requests
for the same key (from one process or many) cannot both observe the last unit
of capacity.

Design Principles:
- Interface Segregation: one operation per algorithm primitive
- Dependency Inversion: Domain depends on abstractions, not implementations
- Testability: Interfaces can be easily mocked for testing
- Lazy expiry: reads after a key's TTL behave as if the key were absent
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from tierguard.core.exceptions import (
    CounterStoreError,
    StoreDataError,
    StoreTimeoutError,
    StoreUnavailableError,
)

from .entities import ActiveSlot
from .value_objects import CounterKey

__all__ = [
    "CounterStore",
    "CounterIncrement",
    "WeightedCount",
    "TokenBucketState",
    "LogAppend",
    "SlotAcquisition",
    "CounterStoreError",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "StoreDataError",
]


@dataclass(frozen=True)
class CounterIncrement:
    """Outcome of a conditional increment."""
    value: int
    applied: bool


@dataclass(frozen=True)
class WeightedCount:
    """Outcome of a segmented sliding window check.

    ``weighted`` is the count observed before this request was accounted.
    """
    applied: bool
    weighted: float
    current_segment: int


@dataclass(frozen=True)
class TokenBucketState:
    """Token bucket state after refill and (if allowed) consumption."""
    allowed: bool
    tokens: float


@dataclass(frozen=True)
class LogAppend:
    """Outcome of a sliding log check; ``oldest`` is None for an empty log."""
    applied: bool
    count: int
    oldest: Optional[float]


@dataclass(frozen=True)
class SlotAcquisition:
    """Outcome of a slot acquisition attempt.

    ``next_expiry`` is the earliest expiry among active slots when the
    acquisition was refused.
    """
    acquired: bool
    active: int
    next_expiry: Optional[float] = None


class CounterStore(ABC):
    """
    Repository interface for rate limiting counters.

    Implementations handle the specific storage technology and must make each
    method one atomic operation with respect to concurrent callers. All
    methods receive the caller's ``now`` so that window arithmetic stays
    consistent with the engine's clock; TTLs are seconds of inactivity after
    which the key behaves as absent.

    Raises:
        StoreUnavailableError: the store cannot be reached
        StoreTimeoutError: the call exceeded its time budget
        StoreDataError: the store replied with something unreadable
    """

    @abstractmethod
    async def increment(
        self,
        key: CounterKey,
        ttl_seconds: float,
        now: float,
        amount: int = 1,
        ceiling: Optional[int] = None,
    ) -> CounterIncrement:
        """
        Atomically add ``amount`` to a counter and refresh its expiry.

        Args:
            key: Counter to increment (created at 0 when absent)
            ttl_seconds: Inactivity period after which the counter expires
            now: Caller's current time
            amount: Increment size
            ceiling: When set, the increment is skipped if it would push the
                counter above this value

        Returns:
            CounterIncrement with the resulting value and whether it changed
        """
        pass

    @abstractmethod
    async def decrement(self, key: CounterKey, now: float, amount: int = 1) -> int:
        """
        Atomically subtract ``amount`` from a counter, never going below 0.

        The counter's expiry is left unchanged and an absent counter is not
        created.

        Returns:
            The counter value after the decrement
        """
        pass

    @abstractmethod
    async def get(self, key: CounterKey, now: float) -> int:
        """Read a counter; absent or expired counters read as 0."""
        pass

    @abstractmethod
    async def weighted_increment(
        self,
        key: CounterKey,
        segments: Sequence[int],
        expiring_weight: float,
        limit: int,
        ttl_seconds: float,
        now: float,
    ) -> WeightedCount:
        """
        Segmented sliding window check-and-increment.

        The weighted count is ``count(segments[0]) * expiring_weight`` plus the
        full counts of ``segments[1:]``. The last segment is the current one and
        is incremented only when the weighted count is below ``limit``.
        Segments older than ``segments[0]`` are discarded.
        """
        pass

    @abstractmethod
    async def decrement_segment(self, key: CounterKey, segment: int, now: float) -> int:
        """
        Take one count back from a sliding window segment, never below 0.

        Returns:
            The segment count after the decrement
        """
        pass

    @abstractmethod
    async def take_token(
        self,
        key: CounterKey,
        capacity: int,
        refill_rate: float,
        ttl_seconds: float,
        now: float,
    ) -> TokenBucketState:
        """
        Refill a token bucket and consume one token if at least one is available.

        A bucket seen for the first time starts at full capacity.
        """
        pass

    @abstractmethod
    async def return_token(self, key: CounterKey, capacity: int, now: float) -> Optional[float]:
        """
        Put one consumed token back, capped at ``capacity``.

        Returns:
            Tokens after the refund, or None when the bucket no longer exists
        """
        pass

    @abstractmethod
    async def append_log(
        self,
        key: CounterKey,
        entry_id: str,
        now: float,
        window_seconds: float,
        limit: int,
        ttl_seconds: float,
    ) -> LogAppend:
        """
        Prune timestamps at or before ``now - window_seconds`` and append ``now``
        (identified by ``entry_id``) only when fewer than ``limit`` remain.
        """
        pass

    @abstractmethod
    async def remove_log_entry(self, key: CounterKey, entry_id: str, now: float) -> bool:
        """
        Drop one entry from a sliding log.

        Returns:
            True if the entry was present
        """
        pass

    @abstractmethod
    async def acquire_slot(
        self,
        key: CounterKey,
        slot: ActiveSlot,
        max_slots: int,
        now: float,
    ) -> SlotAcquisition:
        """
        Reclaim expired slots, then register ``slot`` if fewer than
        ``max_slots`` remain active.
        """
        pass

    @abstractmethod
    async def release_slot(self, key: CounterKey, slot_id: str, now: float) -> bool:
        """
        Release a slot by its owner token.

        Returns:
            True if released, False if the slot was unknown or already expired
        """
        pass

    @abstractmethod
    async def reset(self, key: CounterKey) -> int:
        """
        Delete every counter of ``key``'s client/endpoint/algorithm scope,
        all window buckets included.

        Returns:
            Number of stored keys removed
        """
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check on the store.

        Returns:
            Health status information including latency and errors
        """
        pass

    async def close(self) -> None:
        """Release connections held by the store."""
        return None
