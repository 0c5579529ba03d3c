"""
Rate Limiting Algorithm Engines

One engine per AlgorithmKind, all sharing the ``check(key, policy, now)``
contract. Engines hold no per-key state of their own: every decision is one
atomic call into the CounterStore, which makes an engine safe to share between
concurrent tasks and between processes pointed at the same store.

Engines:
- FixedWindowEngine: Conditional counter per aligned window
- SlidingWindowEngine: Segmented approximation of a sliding window
- TokenBucketEngine: Continuous refill with bounded burst capacity
- SlidingLogEngine: Exact log of admitted timestamps
- ConcurrencySlotEngine: Bounded in-flight requests with expiring leases

Every engine can also ``refund`` an admission, so that a request denied by a
later stacked policy leaves no trace in the counters of earlier ones.

The set is closed; ``build_algorithm_engines`` is the only place that maps an
AlgorithmKind to its engine.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar, Dict, Optional, Tuple, Type
from uuid import uuid4

import structlog

from .entities import ActiveSlot, Decision, RateLimitPolicy, SlotLease
from .repositories import CounterStore, SlotAcquisition
from .value_objects import AlgorithmKind, CounterKey

if TYPE_CHECKING:
    from tierguard.core.rate_limiting.config import RateLimitingConfig

logger = structlog.get_logger(__name__)

DEFAULT_GRACE_SECONDS = 1.0
DEFAULT_SLIDING_WINDOW_SEGMENTS = 10


class RateLimitAlgorithmEngine(ABC):
    """
    Base class for algorithm engines.

    Args:
        store: Counter store holding the algorithm's state
        grace_seconds: Extra lifetime given to counters beyond their window
    """

    kind: ClassVar[AlgorithmKind]

    def __init__(self, store: CounterStore, grace_seconds: float = DEFAULT_GRACE_SECONDS):
        self.store = store
        self.grace_seconds = grace_seconds

    def ttl_for(self, policy: RateLimitPolicy) -> float:
        """Inactivity period after which a counter of this policy may vanish."""
        return policy.window_seconds + self.grace_seconds

    @abstractmethod
    async def check(
        self,
        key: CounterKey,
        policy: RateLimitPolicy,
        now: float,
        request_id: Optional[str] = None,
    ) -> Decision:
        """
        Decide one request against ``policy`` and account it if admitted.

        Args:
            key: Counter identity (client, endpoint, algorithm)
            policy: Resolved policy; its algorithm must match this engine
            now: Current wall-clock time in epoch seconds
            request_id: Identity of the request, used where the state keeps
                one entry per request

        Raises:
            CounterStoreError: The store failed; callers decide how to degrade
        """
        pass

    @abstractmethod
    async def refund(
        self,
        key: CounterKey,
        policy: RateLimitPolicy,
        now: float,
        request_id: str,
    ) -> None:
        """
        Give back what an admitting ``check`` took for ``request_id``.

        Called when a later policy of the same request denies it. ``now`` must
        be the time passed to ``check``. Capacity already reclaimed by expiry
        is not given back twice.
        """
        pass

    def _log_denied(self, key: CounterKey, policy: RateLimitPolicy, retry_after: float) -> None:
        logger.debug(
            "algorithm_denied",
            algorithm=self.kind.value,
            key=str(key),
            limit=policy.limit,
            window_seconds=policy.window_seconds,
            retry_after=round(retry_after, 3),
        )


class FixedWindowEngine(RateLimitAlgorithmEngine):
    """
    Count requests in windows aligned to multiples of the window length.

    Bursts of up to twice the limit are possible across a window boundary:
    a client may spend its whole quota at the end of one window and again at
    the start of the next.
    """

    kind = AlgorithmKind.FIXED_WINDOW

    async def check(self, key, policy, now, request_id=None) -> Decision:
        window = policy.window_seconds
        bucket = math.floor(now / window)
        window_end = (bucket + 1) * window

        result = await self.store.increment(
            key.for_bucket(bucket),
            ttl_seconds=self.ttl_for(policy),
            now=now,
            ceiling=policy.limit,
        )
        if result.applied:
            return Decision.allow(
                remaining=policy.limit - result.value,
                reset_at=window_end,
                algorithm=self.kind,
            )

        retry_after = window_end - now
        self._log_denied(key, policy, retry_after)
        return Decision.deny(retry_after=retry_after, reset_at=window_end, algorithm=self.kind)

    async def refund(self, key, policy, now, request_id) -> None:
        bucket = math.floor(now / policy.window_seconds)
        await self.store.decrement(key.for_bucket(bucket), now=now)


class SlidingWindowEngine(RateLimitAlgorithmEngine):
    """
    Segmented sliding window.

    The window is split into ``segments`` equal parts. The weighted count sums
    the ``segments`` most recent parts (the current one included) and adds the
    part that is sliding out, weighted by how much of the current segment is
    still ahead. With one segment this is the classic
    ``previous * (1 - elapsed) + current`` estimate.
    """

    kind = AlgorithmKind.SLIDING_WINDOW

    def __init__(
        self,
        store: CounterStore,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        segments: int = DEFAULT_SLIDING_WINDOW_SEGMENTS,
    ):
        super().__init__(store, grace_seconds)
        if segments < 1:
            raise ValueError("segments must be at least 1")
        self.segments = segments

    def ttl_for(self, policy: RateLimitPolicy) -> float:
        # The expiring segment is still read one segment after the window closes
        return policy.window_seconds + policy.window_seconds / self.segments + self.grace_seconds

    def segment_position(self, policy: RateLimitPolicy, now: float) -> Tuple[int, float, float]:
        """Return (current segment index, elapsed fraction, segment end time)."""
        segment_length = policy.window_seconds / self.segments
        current = math.floor(now / segment_length)
        elapsed_fraction = (now - current * segment_length) / segment_length
        return current, min(1.0, max(0.0, elapsed_fraction)), (current + 1) * segment_length

    async def check(self, key, policy, now, request_id=None) -> Decision:
        current, elapsed_fraction, segment_end = self.segment_position(policy, now)
        result = await self.store.weighted_increment(
            key,
            segments=range(current - self.segments, current + 1),
            expiring_weight=1.0 - elapsed_fraction,
            limit=policy.limit,
            ttl_seconds=self.ttl_for(policy),
            now=now,
        )
        if result.applied:
            return Decision.allow(
                remaining=math.floor(policy.limit - result.weighted - 1),
                reset_at=segment_end,
                algorithm=self.kind,
            )

        retry_after = (segment_end - now) * (result.weighted / policy.limit)
        self._log_denied(key, policy, retry_after)
        return Decision.deny(retry_after=retry_after, reset_at=segment_end, algorithm=self.kind)

    async def refund(self, key, policy, now, request_id) -> None:
        current, _, _ = self.segment_position(policy, now)
        await self.store.decrement_segment(key, current, now=now)


class TokenBucketEngine(RateLimitAlgorithmEngine):
    """
    Token bucket: refill at ``limit / window`` tokens per second up to the
    policy capacity (``limit * burst_multiplier``), one token per request.
    """

    kind = AlgorithmKind.TOKEN_BUCKET

    def ttl_for(self, policy: RateLimitPolicy) -> float:
        # An idle bucket is full again after capacity / rate seconds
        refill_time = policy.capacity / policy.refill_rate
        return max(policy.window_seconds, refill_time) + self.grace_seconds

    async def check(self, key, policy, now, request_id=None) -> Decision:
        capacity = policy.capacity
        rate = policy.refill_rate
        state = await self.store.take_token(
            key,
            capacity=capacity,
            refill_rate=rate,
            ttl_seconds=self.ttl_for(policy),
            now=now,
        )
        if state.allowed:
            return Decision.allow(
                remaining=math.floor(state.tokens),
                reset_at=now + (capacity - state.tokens) / rate,
                algorithm=self.kind,
            )

        retry_after = (1.0 - state.tokens) / rate
        self._log_denied(key, policy, retry_after)
        return Decision.deny(retry_after=retry_after, reset_at=now + retry_after, algorithm=self.kind)

    async def refund(self, key, policy, now, request_id) -> None:
        await self.store.return_token(key, capacity=policy.capacity, now=now)


class SlidingLogEngine(RateLimitAlgorithmEngine):
    """
    Exact sliding window kept as a log of admitted timestamps.

    Storage grows with the number of requests admitted within one window.
    """

    kind = AlgorithmKind.SLIDING_LOG

    async def check(self, key, policy, now, request_id=None) -> Decision:
        window = policy.window_seconds
        result = await self.store.append_log(
            key,
            entry_id=request_id or uuid4().hex,
            now=now,
            window_seconds=window,
            limit=policy.limit,
            ttl_seconds=self.ttl_for(policy),
        )
        oldest = result.oldest if result.oldest is not None else now
        reset_at = oldest + window

        if result.applied:
            return Decision.allow(
                remaining=policy.limit - result.count,
                reset_at=reset_at,
                algorithm=self.kind,
            )

        retry_after = reset_at - now
        self._log_denied(key, policy, retry_after)
        return Decision.deny(retry_after=retry_after, reset_at=reset_at, algorithm=self.kind)

    async def refund(self, key, policy, now, request_id) -> None:
        await self.store.remove_log_entry(key, request_id, now=now)


class ConcurrencySlotEngine(RateLimitAlgorithmEngine):
    """
    Bound the number of requests in flight.

    A granted slot is returned as a SlotLease that the caller releases when
    the request finishes. Slots that are never released expire after their
    lease duration and are reclaimed on the next acquisition.
    """

    kind = AlgorithmKind.CONCURRENCY

    async def _acquire(
        self,
        key: CounterKey,
        max_slots: int,
        lease_seconds: float,
        now: float,
        request_id: Optional[str],
    ) -> Tuple[SlotLease, SlotAcquisition]:
        slot = ActiveSlot(
            request_id=request_id or uuid4().hex,
            acquired_at=now,
            expires_at=now + lease_seconds,
        )
        acquisition = await self.store.acquire_slot(key, slot, max_slots=max_slots, now=now)
        return SlotLease(key=key, slot=slot), acquisition

    async def acquire(
        self,
        key: CounterKey,
        max_slots: int,
        lease_seconds: float,
        now: float,
        request_id: Optional[str] = None,
    ) -> Tuple[Optional[SlotLease], bool]:
        """
        Try to take one of ``max_slots`` slots for ``lease_seconds``.

        Returns:
            (lease, True) when granted, (None, False) when all slots are held
        """
        lease, acquisition = await self._acquire(key, max_slots, lease_seconds, now, request_id)
        if acquisition.acquired:
            return lease, True
        return None, False

    async def release(self, lease: SlotLease, now: float) -> bool:
        """
        Hand a slot back.

        Returns:
            False when the slot had already expired or been released
        """
        released = await self.store.release_slot(lease.key, lease.token, now=now)
        if not released:
            logger.debug("slot_already_gone", key=str(lease.key), token=lease.token)
        return released

    async def refund(self, key, policy, now, request_id) -> None:
        # Slots are registered under the request id, which is the lease token
        await self.store.release_slot(key, request_id, now=now)

    async def check(self, key, policy, now, request_id=None) -> Decision:
        lease, acquisition = await self._acquire(
            key, policy.limit, policy.window_seconds, now, request_id
        )
        if acquisition.acquired:
            return Decision.allow(
                remaining=policy.limit - acquisition.active,
                reset_at=lease.slot.expires_at,
                algorithm=self.kind,
                leases=(lease,),
            )

        next_expiry = acquisition.next_expiry
        if next_expiry is None:
            next_expiry = now + policy.window_seconds
        retry_after = next_expiry - now
        self._log_denied(key, policy, retry_after)
        return Decision.deny(retry_after=retry_after, reset_at=next_expiry, algorithm=self.kind)


ENGINE_TYPES: Dict[AlgorithmKind, Type[RateLimitAlgorithmEngine]] = {
    AlgorithmKind.FIXED_WINDOW: FixedWindowEngine,
    AlgorithmKind.SLIDING_WINDOW: SlidingWindowEngine,
    AlgorithmKind.TOKEN_BUCKET: TokenBucketEngine,
    AlgorithmKind.SLIDING_LOG: SlidingLogEngine,
    AlgorithmKind.CONCURRENCY: ConcurrencySlotEngine,
}


def build_algorithm_engines(
    store: CounterStore,
    config: Optional[RateLimitingConfig] = None,
) -> Dict[AlgorithmKind, RateLimitAlgorithmEngine]:
    """
    Create one engine per AlgorithmKind over a shared store.

    Args:
        store: Counter store every engine uses
        config: Supplies the grace period and sliding window segment count;
            defaults apply when omitted

    Returns:
        Mapping of every AlgorithmKind to its engine
    """
    grace = config.counter_grace_seconds if config else DEFAULT_GRACE_SECONDS
    segments = config.sliding_window_segments if config else DEFAULT_SLIDING_WINDOW_SEGMENTS

    engines: Dict[AlgorithmKind, RateLimitAlgorithmEngine] = {}
    for kind, engine_type in ENGINE_TYPES.items():
        if engine_type is SlidingWindowEngine:
            engines[kind] = SlidingWindowEngine(store, grace_seconds=grace, segments=segments)
        else:
            engines[kind] = engine_type(store, grace_seconds=grace)
    return engines
