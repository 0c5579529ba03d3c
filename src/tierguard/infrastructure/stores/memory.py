"""In-process counter store.

Keeps every counter in a dictionary guarded by one lock. Each operation runs
as a single critical section with no awaits inside it, which makes it atomic
with respect to other tasks and threads of the same process. Expiry is lazy:
entries are dropped when touched after their deadline, with no background
sweep.

Suitable for single-instance deployments and tests; engines sharing counters
across processes need the Redis store.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Sequence

import structlog

from tierguard.domain.rate_limiting.entities import ActiveSlot
from tierguard.domain.rate_limiting.repositories import (
    CounterIncrement,
    CounterStore,
    LogAppend,
    SlotAcquisition,
    TokenBucketState,
    WeightedCount,
)
from tierguard.domain.rate_limiting.value_objects import CounterKey

logger = structlog.get_logger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float


class InMemoryCounterStore(CounterStore):
    """Dictionary-backed CounterStore with lazy expiry."""

    def __init__(self, key_prefix: str = "tierguard"):
        self.key_prefix = key_prefix
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _live(self, storage_key: str, now: float) -> Optional[_Entry]:
        entry = self._entries.get(storage_key)
        if entry is None:
            return None
        if now >= entry.expires_at:
            del self._entries[storage_key]
            return None
        return entry

    def _key(self, key: CounterKey) -> str:
        return key.storage_key(self.key_prefix)

    async def increment(
        self,
        key: CounterKey,
        ttl_seconds: float,
        now: float,
        amount: int = 1,
        ceiling: Optional[int] = None,
    ) -> CounterIncrement:
        storage_key = self._key(key)
        with self._lock:
            entry = self._live(storage_key, now)
            current = entry.value if entry else 0
            if ceiling is not None and current + amount > ceiling:
                return CounterIncrement(value=current, applied=False)
            self._entries[storage_key] = _Entry(current + amount, now + ttl_seconds)
            return CounterIncrement(value=current + amount, applied=True)

    async def decrement(self, key: CounterKey, now: float, amount: int = 1) -> int:
        with self._lock:
            entry = self._live(self._key(key), now)
            if entry is None:
                return 0
            entry.value = max(0, entry.value - amount)
            return entry.value

    async def get(self, key: CounterKey, now: float) -> int:
        with self._lock:
            entry = self._live(self._key(key), now)
            return int(entry.value) if entry else 0

    async def weighted_increment(
        self,
        key: CounterKey,
        segments: Sequence[int],
        expiring_weight: float,
        limit: int,
        ttl_seconds: float,
        now: float,
    ) -> WeightedCount:
        storage_key = self._key(key)
        oldest, current = segments[0], segments[-1]
        with self._lock:
            entry = self._live(storage_key, now)
            counts: Dict[int, int] = dict(entry.value) if entry else {}
            counts = {segment: count for segment, count in counts.items() if segment >= oldest}

            weighted = counts.get(oldest, 0) * expiring_weight
            weighted += sum(counts.get(segment, 0) for segment in segments[1:])

            applied = weighted < limit
            if applied:
                counts[current] = counts.get(current, 0) + 1
                self._entries[storage_key] = _Entry(counts, now + ttl_seconds)
            elif entry is not None:
                # Persist the pruned map without extending its lifetime
                entry.value = counts
            return WeightedCount(
                applied=applied,
                weighted=weighted,
                current_segment=counts.get(current, 0),
            )

    async def decrement_segment(self, key: CounterKey, segment: int, now: float) -> int:
        with self._lock:
            entry = self._live(self._key(key), now)
            if entry is None or entry.value.get(segment, 0) <= 0:
                return 0
            entry.value[segment] -= 1
            return entry.value[segment]

    async def take_token(
        self,
        key: CounterKey,
        capacity: int,
        refill_rate: float,
        ttl_seconds: float,
        now: float,
    ) -> TokenBucketState:
        storage_key = self._key(key)
        with self._lock:
            entry = self._live(storage_key, now)
            if entry is None:
                tokens, last_refill = float(capacity), now
            else:
                tokens, last_refill = entry.value

            elapsed = max(0.0, now - last_refill)
            tokens = min(float(capacity), tokens + elapsed * refill_rate)
            allowed = tokens >= 1.0
            if allowed:
                tokens -= 1.0

            self._entries[storage_key] = _Entry((tokens, max(now, last_refill)), now + ttl_seconds)
            return TokenBucketState(allowed=allowed, tokens=tokens)

    async def return_token(self, key: CounterKey, capacity: int, now: float) -> Optional[float]:
        with self._lock:
            entry = self._live(self._key(key), now)
            if entry is None:
                return None
            tokens, last_refill = entry.value
            tokens = min(float(capacity), tokens + 1.0)
            entry.value = (tokens, last_refill)
            return tokens

    async def append_log(
        self,
        key: CounterKey,
        entry_id: str,
        now: float,
        window_seconds: float,
        limit: int,
        ttl_seconds: float,
    ) -> LogAppend:
        storage_key = self._key(key)
        cutoff = now - window_seconds
        with self._lock:
            entry = self._live(storage_key, now)
            log = [(ts, member) for ts, member in (entry.value if entry else []) if ts > cutoff]

            applied = len(log) < limit
            if applied:
                log.append((now, entry_id))
                log.sort()
                self._entries[storage_key] = _Entry(log, now + ttl_seconds)
            elif entry is not None:
                entry.value = log

            oldest = log[0][0] if log else None
            return LogAppend(applied=applied, count=len(log), oldest=oldest)

    async def remove_log_entry(self, key: CounterKey, entry_id: str, now: float) -> bool:
        with self._lock:
            entry = self._live(self._key(key), now)
            if entry is None:
                return False
            kept = [(ts, member) for ts, member in entry.value if member != entry_id]
            removed = len(kept) != len(entry.value)
            entry.value = kept
            return removed

    async def acquire_slot(
        self,
        key: CounterKey,
        slot: ActiveSlot,
        max_slots: int,
        now: float,
    ) -> SlotAcquisition:
        storage_key = self._key(key)
        with self._lock:
            entry = self._live(storage_key, now)
            slots: Dict[str, ActiveSlot] = {
                slot_id: active
                for slot_id, active in (entry.value.items() if entry else ())
                if not active.is_expired(now)
            }

            if len(slots) >= max_slots:
                next_expiry = min((active.expires_at for active in slots.values()), default=None)
                if entry is not None:
                    entry.value = slots
                return SlotAcquisition(acquired=False, active=len(slots), next_expiry=next_expiry)

            slots[slot.request_id] = slot
            expires_at = max(active.expires_at for active in slots.values())
            self._entries[storage_key] = _Entry(slots, expires_at)
            return SlotAcquisition(acquired=True, active=len(slots))

    async def release_slot(self, key: CounterKey, slot_id: str, now: float) -> bool:
        storage_key = self._key(key)
        with self._lock:
            entry = self._live(storage_key, now)
            if entry is None:
                return False
            active = entry.value.pop(slot_id, None)
            if active is None:
                return False
            return not active.is_expired(now)

    async def reset(self, key: CounterKey) -> int:
        base = replace(key, window_bucket=None).storage_key(self.key_prefix)
        with self._lock:
            doomed = [k for k in self._entries if k == base or k.startswith(base + ":")]
            for storage_key in doomed:
                del self._entries[storage_key]
        logger.info("counters_reset", scope=base, removed=len(doomed))
        return len(doomed)

    async def health_check(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._entries)
        return {
            "status": "healthy",
            "backend": "memory",
            "keys": size,
            "timestamp": time.time(),
        }
