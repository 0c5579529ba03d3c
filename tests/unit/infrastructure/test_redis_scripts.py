"""Runs the Redis counter store's Lua scripts against fakeredis.

Mirrors the in-memory store tests so both backends are held to the same
behaviour. Counters expire on Redis TTLs, which follow the real clock, so
lazy expiry is checked through the TTL the scripts set instead.
"""

import asyncio

import fakeredis
import pytest

from tierguard.domain.rate_limiting.entities import ActiveSlot
from tierguard.domain.rate_limiting.value_objects import AlgorithmKind, CounterKey
from tierguard.infrastructure.stores.redis import RedisCounterStore

NOW = 1_700_000_040.0


@pytest.fixture
def client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store(client):
    return RedisCounterStore(client, key_prefix="rl")


@pytest.fixture
def key():
    return CounterKey("client-a", "/items", AlgorithmKind.FIXED_WINDOW)


class TestIncrement:
    @pytest.mark.asyncio
    async def test_counts_up_to_ceiling(self, store, key):
        results = [await store.increment(key, ttl_seconds=60, now=NOW, ceiling=2) for _ in range(3)]

        assert [r.value for r in results] == [1, 2, 2]
        assert [r.applied for r in results] == [True, True, False]
        assert await store.get(key, NOW) == 2

    @pytest.mark.asyncio
    async def test_unconditional_increment(self, store, key):
        await store.increment(key, ttl_seconds=60, now=NOW, amount=5)
        result = await store.increment(key, ttl_seconds=60, now=NOW, amount=5)

        assert result.value == 10
        assert result.applied is True

    @pytest.mark.asyncio
    async def test_counter_carries_ttl(self, store, client, key):
        await store.increment(key, ttl_seconds=10, now=NOW)

        assert 0 < await client.pttl("rl:fixed_window:{client-a|%2Fitems}") <= 10_000

    @pytest.mark.asyncio
    async def test_concurrent_increments_never_exceed_ceiling(self, store, key):
        results = await asyncio.gather(
            *(store.increment(key, ttl_seconds=60, now=NOW, ceiling=10) for _ in range(50))
        )

        assert sum(r.applied for r in results) == 10
        assert await store.get(key, NOW) == 10


class TestWeightedIncrement:
    @pytest.mark.asyncio
    async def test_expiring_segment_is_weighted(self, store, key):
        await store.weighted_increment(key, range(0, 2), 1.0, limit=10, ttl_seconds=60, now=NOW)
        await store.weighted_increment(key, range(0, 2), 1.0, limit=10, ttl_seconds=60, now=NOW)

        result = await store.weighted_increment(
            key, range(1, 3), 0.5, limit=10, ttl_seconds=60, now=NOW
        )

        assert result.weighted == pytest.approx(1.0)
        assert result.applied is True
        assert result.current_segment == 1

    @pytest.mark.asyncio
    async def test_segments_older_than_window_are_dropped(self, store, client, key):
        await store.weighted_increment(key, range(0, 2), 1.0, limit=10, ttl_seconds=60, now=NOW)

        result = await store.weighted_increment(
            key, range(5, 7), 1.0, limit=10, ttl_seconds=60, now=NOW
        )

        assert result.weighted == 0.0
        assert await client.hkeys("rl:fixed_window:{client-a|%2Fitems}") == ["6"]

    @pytest.mark.asyncio
    async def test_denied_request_is_not_counted(self, store, key):
        await store.weighted_increment(key, range(0, 2), 1.0, limit=1, ttl_seconds=60, now=NOW)

        result = await store.weighted_increment(key, range(0, 2), 1.0, limit=1, ttl_seconds=60, now=NOW)

        assert result.applied is False
        assert result.current_segment == 1

    @pytest.mark.asyncio
    async def test_fractional_weight_survives_the_reply(self, store, key):
        for _ in range(3):
            await store.weighted_increment(key, range(0, 2), 1.0, limit=10, ttl_seconds=60, now=NOW)

        result = await store.weighted_increment(
            key, range(1, 3), 0.25, limit=10, ttl_seconds=60, now=NOW
        )

        assert result.weighted == pytest.approx(0.75)


class TestTokenBucket:
    @pytest.mark.asyncio
    async def test_starts_full_and_refills(self, store, key):
        states = [
            await store.take_token(key, capacity=2, refill_rate=1.0, ttl_seconds=60, now=NOW)
            for _ in range(3)
        ]

        assert [s.allowed for s in states] == [True, True, False]
        assert states[1].tokens == 0.0

        refilled = await store.take_token(key, capacity=2, refill_rate=1.0, ttl_seconds=60, now=NOW + 1)
        assert refilled.allowed is True

    @pytest.mark.asyncio
    async def test_refill_is_capped_at_capacity(self, store, key):
        await store.take_token(key, capacity=3, refill_rate=1.0, ttl_seconds=600, now=NOW)

        state = await store.take_token(key, capacity=3, refill_rate=1.0, ttl_seconds=600, now=NOW + 100)

        assert state.tokens == 2.0

    @pytest.mark.asyncio
    async def test_refill_time_keeps_sub_millisecond_precision(self, store, key):
        start = NOW + 0.00004
        await store.take_token(key, capacity=1, refill_rate=1.0, ttl_seconds=60, now=start)

        # Just short of one full token since the exact refill time
        state = await store.take_token(
            key, capacity=1, refill_rate=1.0, ttl_seconds=60, now=start + 0.99998
        )

        assert state.allowed is False
        assert state.tokens == pytest.approx(0.99998, abs=1e-5)


class TestSlidingLog:
    @pytest.mark.asyncio
    async def test_log_reports_oldest_entry(self, store, key):
        await store.append_log(key, "r1", NOW, window_seconds=10, limit=2, ttl_seconds=11)
        await store.append_log(key, "r2", NOW + 1, window_seconds=10, limit=2, ttl_seconds=11)

        denied = await store.append_log(key, "r3", NOW + 2, window_seconds=10, limit=2, ttl_seconds=11)

        assert denied.applied is False
        assert denied.count == 2
        assert denied.oldest == NOW

    @pytest.mark.asyncio
    async def test_entries_leave_the_window(self, store, key):
        await store.append_log(key, "r1", NOW, window_seconds=10, limit=1, ttl_seconds=11)

        result = await store.append_log(key, "r2", NOW + 10, window_seconds=10, limit=1, ttl_seconds=11)

        assert result.applied is True
        assert result.count == 1
        assert result.oldest == NOW + 10

    @pytest.mark.asyncio
    async def test_window_edge_keeps_sub_millisecond_precision(self, store, key):
        await store.append_log(key, "r1", NOW + 0.00002, window_seconds=10, limit=1, ttl_seconds=11)

        inside = await store.append_log(
            key, "r2", NOW + 10.00001, window_seconds=10, limit=1, ttl_seconds=11
        )
        outside = await store.append_log(
            key, "r3", NOW + 10.00004, window_seconds=10, limit=1, ttl_seconds=11
        )

        assert inside.applied is False
        assert inside.oldest == NOW + 0.00002
        assert outside.applied is True
        assert outside.oldest == NOW + 10.00004


class TestSlots:
    """Concurrency slot bookkeeping."""

    @pytest.mark.asyncio
    async def test_acquire_until_full(self, store, key):
        first = await store.acquire_slot(key, ActiveSlot("r1", NOW, NOW + 30), max_slots=1, now=NOW)
        second = await store.acquire_slot(key, ActiveSlot("r2", NOW, NOW + 30), max_slots=1, now=NOW)

        assert first.acquired is True
        assert second.acquired is False
        assert second.next_expiry == NOW + 30

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, store, key):
        await store.acquire_slot(key, ActiveSlot("r1", NOW, NOW + 30), max_slots=1, now=NOW)

        assert await store.release_slot(key, "r1", NOW + 1) is True
        assert await store.release_slot(key, "r1", NOW + 1) is False
        assert await store.release_slot(key, "unknown", NOW + 1) is False

    @pytest.mark.asyncio
    async def test_expired_slots_are_reclaimed(self, store, key):
        await store.acquire_slot(key, ActiveSlot("r1", NOW, NOW + 30), max_slots=1, now=NOW)

        result = await store.acquire_slot(
            key, ActiveSlot("r2", NOW + 30, NOW + 60), max_slots=1, now=NOW + 30
        )

        assert result.acquired is True
        assert result.active == 1

    @pytest.mark.asyncio
    async def test_concurrent_acquires_never_exceed_max(self, store, key):
        results = await asyncio.gather(
            *(
                store.acquire_slot(key, ActiveSlot(f"r{i}", NOW, NOW + 30), max_slots=3, now=NOW)
                for i in range(20)
            )
        )

        assert sum(r.acquired for r in results) == 3


class TestUndo:
    """Operations that give back an admission."""

    @pytest.mark.asyncio
    async def test_decrement_floors_at_zero(self, store, key):
        await store.increment(key, ttl_seconds=60, now=NOW, amount=2)

        assert await store.decrement(key, NOW) == 1
        assert await store.decrement(key, NOW, amount=5) == 0
        assert await store.decrement(key, NOW) == 0

    @pytest.mark.asyncio
    async def test_decrement_does_not_create_counter(self, store, client, key):
        assert await store.decrement(key, NOW) == 0
        assert await client.dbsize() == 0

    @pytest.mark.asyncio
    async def test_decrement_segment(self, store, key):
        await store.weighted_increment(key, range(0, 2), 1.0, limit=10, ttl_seconds=60, now=NOW)

        assert await store.decrement_segment(key, 1, NOW) == 0
        assert await store.decrement_segment(key, 1, NOW) == 0

        result = await store.weighted_increment(key, range(0, 2), 1.0, limit=10, ttl_seconds=60, now=NOW)
        assert result.weighted == 0.0

    @pytest.mark.asyncio
    async def test_return_token_is_capped_at_capacity(self, store, key):
        await store.take_token(key, capacity=2, refill_rate=1.0, ttl_seconds=60, now=NOW)

        assert await store.return_token(key, capacity=2, now=NOW) == 2.0
        assert await store.return_token(key, capacity=2, now=NOW) == 2.0

    @pytest.mark.asyncio
    async def test_return_token_to_missing_bucket(self, store, client, key):
        assert await store.return_token(key, capacity=2, now=NOW) is None
        assert await client.dbsize() == 0

    @pytest.mark.asyncio
    async def test_remove_log_entry_frees_room(self, store, key):
        await store.append_log(key, "r1", NOW, window_seconds=10, limit=1, ttl_seconds=11)

        assert await store.remove_log_entry(key, "r1", NOW) is True
        assert await store.remove_log_entry(key, "r1", NOW) is False

        result = await store.append_log(key, "r2", NOW, window_seconds=10, limit=1, ttl_seconds=11)
        assert result.applied is True


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_reset_removes_every_bucket(self, store, key):
        await store.increment(key.for_bucket(1), ttl_seconds=60, now=NOW)
        await store.increment(key.for_bucket(2), ttl_seconds=60, now=NOW)
        other = CounterKey("client-b", "/items", AlgorithmKind.FIXED_WINDOW)
        await store.increment(other.for_bucket(1), ttl_seconds=60, now=NOW)

        removed = await store.reset(key.for_bucket(1))

        assert removed == 2
        assert await store.get(other.for_bucket(1), NOW) == 1

    @pytest.mark.asyncio
    async def test_health_check_lists_loaded_scripts(self, store, key):
        await store.increment(key, ttl_seconds=60, now=NOW)

        health = await store.health_check()

        assert health["status"] == "healthy"
        assert health["backend"] == "redis"
        assert health["scripts_loaded"] == ["increment"]
