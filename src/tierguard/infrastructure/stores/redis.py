"""
Redis Counter Store

CounterStore implementation backed by Redis. Every operation that reads and
writes a key runs as one Lua script, so concurrent engine instances sharing the
same Redis never interleave between the read and the write.

Scripts are registered with SCRIPT LOAD once per process and invoked through
EVALSHA; a NOSCRIPT reply (after a Redis restart or failover) reloads the
script and retries the call once. Fractional values (token counts, weighted
counts) are returned from Lua as strings because Redis truncates Lua numbers
to integers in replies.

Keys are written with PEXPIRE on every successful write, so an idle counter
disappears after its window plus grace period.

**Security Note**: Ensure the Redis URL uses TLS (rediss://) when the store is
reached over an untrusted network. Connection details are never logged.
"""

from __future__ import annotations

import math
import time
from typing import Any, Dict, List, Optional, Sequence

import structlog
from redis.asyncio import Redis
from redis.exceptions import NoScriptError, RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tierguard.core.exceptions import (
    StoreDataError,
    StoreTimeoutError,
    StoreUnavailableError,
)
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

# KEYS[1] counter; ARGV amount, ttl_ms, ceiling ('' for none)
INCREMENT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local amount = tonumber(ARGV[1])
local ceiling = tonumber(ARGV[3])
if ceiling and current + amount > ceiling then
    return {current, 0}
end
local value = redis.call('INCRBY', KEYS[1], amount)
redis.call('PEXPIRE', KEYS[1], ARGV[2])
return {value, 1}
"""

# KEYS[1] counter; ARGV amount
DECREMENT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current <= 0 then
    return 0
end
return redis.call('DECRBY', KEYS[1], math.min(current, tonumber(ARGV[1])))
"""

# KEYS[1] hash of segment -> count; ARGV oldest, current, weight, limit, ttl_ms
SLIDING_WINDOW_SCRIPT = """
local oldest = tonumber(ARGV[1])
local current = tonumber(ARGV[2])
local weight = tonumber(ARGV[3])
local limit = tonumber(ARGV[4])
local fields = redis.call('HGETALL', KEYS[1])
local weighted = 0
local current_count = 0
for i = 1, #fields, 2 do
    local segment = tonumber(fields[i])
    local count = tonumber(fields[i + 1])
    if segment < oldest then
        redis.call('HDEL', KEYS[1], fields[i])
    elseif segment == oldest then
        weighted = weighted + count * weight
    elseif segment <= current then
        weighted = weighted + count
    end
    if segment == current then
        current_count = count
    end
end
local applied = 0
if weighted < limit then
    current_count = redis.call('HINCRBY', KEYS[1], ARGV[2], 1)
    redis.call('PEXPIRE', KEYS[1], ARGV[5])
    applied = 1
end
return {applied, string.format('%.17g', weighted), current_count}
"""

# KEYS[1] hash of segment -> count; ARGV segment
DECREMENT_SEGMENT_SCRIPT = """
local count = tonumber(redis.call('HGET', KEYS[1], ARGV[1]) or '0')
if count <= 0 then
    return 0
end
return redis.call('HINCRBY', KEYS[1], ARGV[1], -1)
"""

# KEYS[1] bucket hash; ARGV capacity, refill_rate, now, ttl_ms
# last_refill keeps the caller's exact timestamp string
TOKEN_BUCKET_SCRIPT = """
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local state = redis.call('HMGET', KEYS[1], 'tokens', 'last_refill')
local tokens = tonumber(state[1])
local last_refill = tonumber(state[2])
local refill_mark = ARGV[3]
if tokens == nil or last_refill == nil then
    tokens = capacity
    last_refill = now
elseif last_refill > now then
    refill_mark = state[2]
end
local elapsed = math.max(0, now - last_refill)
tokens = math.min(capacity, tokens + elapsed * rate)
local allowed = 0
if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
end
local encoded = string.format('%.17g', tokens)
redis.call('HSET', KEYS[1], 'tokens', encoded, 'last_refill', refill_mark)
redis.call('PEXPIRE', KEYS[1], ARGV[4])
return {allowed, encoded}
"""

# KEYS[1] bucket hash; ARGV capacity
RETURN_TOKEN_SCRIPT = """
local tokens = tonumber(redis.call('HGET', KEYS[1], 'tokens'))
if tokens == nil then
    return false
end
local encoded = string.format('%.17g', math.min(tonumber(ARGV[1]), tokens + 1))
redis.call('HSET', KEYS[1], 'tokens', encoded)
return encoded
"""

# KEYS[1] sorted set of timestamps; ARGV now, cutoff, limit, member, ttl_ms
# Entries scored at or below the cutoff have left the window
SLIDING_LOG_SCRIPT = """
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[2])
local count = redis.call('ZCARD', KEYS[1])
local applied = 0
if count < limit then
    redis.call('ZADD', KEYS[1], ARGV[1], ARGV[4])
    redis.call('PEXPIRE', KEYS[1], ARGV[5])
    count = count + 1
    applied = 1
end
local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
local oldest_score = ''
if #oldest > 0 then
    oldest_score = oldest[2]
end
return {applied, count, oldest_score}
"""

# KEYS[1] sorted set of slot id -> expiry; ARGV now, max_slots, slot_id, expires_at
ACQUIRE_SLOT_SCRIPT = """
local now = tonumber(ARGV[1])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local active = redis.call('ZCARD', KEYS[1])
if active >= tonumber(ARGV[2]) then
    local earliest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
    return {0, active, earliest[2] or ''}
end
redis.call('ZADD', KEYS[1], ARGV[4], ARGV[3])
local latest = redis.call('ZRANGE', KEYS[1], -1, -1, 'WITHSCORES')
redis.call('PEXPIRE', KEYS[1], math.max(1, math.ceil((tonumber(latest[2]) - now) * 1000)))
return {1, redis.call('ZCARD', KEYS[1]), ''}
"""

# KEYS[1] sorted set of slot id -> expiry; ARGV slot_id, now
RELEASE_SLOT_SCRIPT = """
local expires_at = redis.call('ZSCORE', KEYS[1], ARGV[1])
if not expires_at then
    return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
if tonumber(expires_at) <= tonumber(ARGV[2]) then
    return 0
end
return 1
"""

SCRIPTS: Dict[str, str] = {
    "increment": INCREMENT_SCRIPT,
    "decrement": DECREMENT_SCRIPT,
    "sliding_window": SLIDING_WINDOW_SCRIPT,
    "decrement_segment": DECREMENT_SEGMENT_SCRIPT,
    "token_bucket": TOKEN_BUCKET_SCRIPT,
    "return_token": RETURN_TOKEN_SCRIPT,
    "sliding_log": SLIDING_LOG_SCRIPT,
    "acquire_slot": ACQUIRE_SLOT_SCRIPT,
    "release_slot": RELEASE_SLOT_SCRIPT,
}


def _ttl_ms(seconds: float) -> int:
    return max(1, math.ceil(seconds * 1000))


def _float_or_none(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


class RedisCounterStore(CounterStore):
    """
    Redis-backed CounterStore.

    Args:
        redis: An asyncio Redis client created with ``decode_responses=True``
        key_prefix: Namespace for every key the store writes
    """

    def __init__(self, redis: Redis, key_prefix: str = "tierguard"):
        self.redis = redis
        self.key_prefix = key_prefix
        self._script_shas: Dict[str, str] = {}

    def _key(self, key: CounterKey) -> str:
        return key.storage_key(self.key_prefix)

    async def _load_script(self, name: str) -> str:
        sha = await self.redis.script_load(SCRIPTS[name])
        self._script_shas[name] = sha
        return sha

    async def _run_script(self, name: str, keys: List[str], args: List[Any]) -> Any:
        """Invoke a registered script, reloading it once on NOSCRIPT."""
        try:
            sha = self._script_shas.get(name) or await self._load_script(name)
            try:
                return await self.redis.evalsha(sha, len(keys), *keys, *args)
            except NoScriptError:
                logger.warning("redis_script_missing", script=name)
                sha = await self._load_script(name)
                return await self.redis.evalsha(sha, len(keys), *keys, *args)
        except RedisTimeoutError as e:
            raise StoreTimeoutError(f"Redis timed out running {name}") from e
        except RedisError as e:
            raise StoreUnavailableError(f"Redis failed running {name}: {e}") from e

    @staticmethod
    def _data_error(name: str, reply: Any, error: Exception) -> StoreDataError:
        logger.error("redis_reply_unreadable", script=name, reply=repr(reply), error=str(error))
        return StoreDataError(f"Unreadable reply from {name}: {reply!r}")

    async def increment(
        self,
        key: CounterKey,
        ttl_seconds: float,
        now: float,
        amount: int = 1,
        ceiling: Optional[int] = None,
    ) -> CounterIncrement:
        args = [amount, _ttl_ms(ttl_seconds), "" if ceiling is None else ceiling]
        reply = await self._run_script("increment", [self._key(key)], args)
        try:
            return CounterIncrement(value=int(reply[0]), applied=bool(int(reply[1])))
        except (TypeError, ValueError, IndexError) as e:
            raise self._data_error("increment", reply, e) from e

    async def decrement(self, key: CounterKey, now: float, amount: int = 1) -> int:
        reply = await self._run_script("decrement", [self._key(key)], [amount])
        try:
            return int(reply)
        except (TypeError, ValueError) as e:
            raise self._data_error("decrement", reply, e) from e

    async def get(self, key: CounterKey, now: float) -> int:
        try:
            value = await self.redis.get(self._key(key))
        except RedisTimeoutError as e:
            raise StoreTimeoutError("Redis timed out reading counter") from e
        except RedisError as e:
            raise StoreUnavailableError(f"Redis failed reading counter: {e}") from e
        if value is None:
            return 0
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise self._data_error("get", value, e) from e

    async def weighted_increment(
        self,
        key: CounterKey,
        segments: Sequence[int],
        expiring_weight: float,
        limit: int,
        ttl_seconds: float,
        now: float,
    ) -> WeightedCount:
        args = [
            int(segments[0]),
            int(segments[-1]),
            repr(float(expiring_weight)),
            limit,
            _ttl_ms(ttl_seconds),
        ]
        reply = await self._run_script("sliding_window", [self._key(key)], args)
        try:
            return WeightedCount(
                applied=bool(int(reply[0])),
                weighted=float(reply[1]),
                current_segment=int(reply[2]),
            )
        except (TypeError, ValueError, IndexError) as e:
            raise self._data_error("sliding_window", reply, e) from e

    async def decrement_segment(self, key: CounterKey, segment: int, now: float) -> int:
        reply = await self._run_script("decrement_segment", [self._key(key)], [int(segment)])
        try:
            return int(reply)
        except (TypeError, ValueError) as e:
            raise self._data_error("decrement_segment", reply, e) from e

    async def take_token(
        self,
        key: CounterKey,
        capacity: int,
        refill_rate: float,
        ttl_seconds: float,
        now: float,
    ) -> TokenBucketState:
        args = [capacity, repr(float(refill_rate)), repr(float(now)), _ttl_ms(ttl_seconds)]
        reply = await self._run_script("token_bucket", [self._key(key)], args)
        try:
            return TokenBucketState(allowed=bool(int(reply[0])), tokens=float(reply[1]))
        except (TypeError, ValueError, IndexError) as e:
            raise self._data_error("token_bucket", reply, e) from e

    async def return_token(self, key: CounterKey, capacity: int, now: float) -> Optional[float]:
        reply = await self._run_script("return_token", [self._key(key)], [capacity])
        try:
            return _float_or_none(reply)
        except (TypeError, ValueError) as e:
            raise self._data_error("return_token", reply, e) from e

    async def append_log(
        self,
        key: CounterKey,
        entry_id: str,
        now: float,
        window_seconds: float,
        limit: int,
        ttl_seconds: float,
    ) -> LogAppend:
        args = [
            repr(float(now)),
            repr(float(now - window_seconds)),
            limit,
            entry_id,
            _ttl_ms(ttl_seconds),
        ]
        reply = await self._run_script("sliding_log", [self._key(key)], args)
        try:
            return LogAppend(
                applied=bool(int(reply[0])),
                count=int(reply[1]),
                oldest=_float_or_none(reply[2]),
            )
        except (TypeError, ValueError, IndexError) as e:
            raise self._data_error("sliding_log", reply, e) from e

    async def remove_log_entry(self, key: CounterKey, entry_id: str, now: float) -> bool:
        try:
            removed = await self.redis.zrem(self._key(key), entry_id)
        except RedisTimeoutError as e:
            raise StoreTimeoutError("Redis timed out removing a log entry") from e
        except RedisError as e:
            raise StoreUnavailableError(f"Redis failed removing a log entry: {e}") from e
        return bool(removed)

    async def acquire_slot(
        self,
        key: CounterKey,
        slot: ActiveSlot,
        max_slots: int,
        now: float,
    ) -> SlotAcquisition:
        args = [repr(float(now)), max_slots, slot.request_id, repr(float(slot.expires_at))]
        reply = await self._run_script("acquire_slot", [self._key(key)], args)
        try:
            return SlotAcquisition(
                acquired=bool(int(reply[0])),
                active=int(reply[1]),
                next_expiry=_float_or_none(reply[2]),
            )
        except (TypeError, ValueError, IndexError) as e:
            raise self._data_error("acquire_slot", reply, e) from e

    async def release_slot(self, key: CounterKey, slot_id: str, now: float) -> bool:
        reply = await self._run_script("release_slot", [self._key(key)], [slot_id, repr(float(now))])
        try:
            return bool(int(reply))
        except (TypeError, ValueError) as e:
            raise self._data_error("release_slot", reply, e) from e

    async def reset(self, key: CounterKey) -> int:
        base = self._key(CounterKey(key.client_id, key.endpoint, key.algorithm))
        try:
            doomed = [base]
            async for bucket_key in self.redis.scan_iter(match=f"{base}:*"):
                doomed.append(bucket_key)
            removed = await self.redis.delete(*doomed)
        except RedisTimeoutError as e:
            raise StoreTimeoutError("Redis timed out resetting counters") from e
        except RedisError as e:
            raise StoreUnavailableError(f"Redis failed resetting counters: {e}") from e
        logger.info("counters_reset", scope=base, removed=removed)
        return int(removed)

    async def health_check(self) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            await self.redis.ping()
        except RedisError as e:
            logger.warning("redis_health_check_failed", error=str(e))
            return {
                "status": "unhealthy",
                "backend": "redis",
                "error": str(e),
                "timestamp": time.time(),
            }
        return {
            "status": "healthy",
            "backend": "redis",
            "latency_ms": round((time.perf_counter() - start) * 1000, 3),
            "scripts_loaded": sorted(self._script_shas),
            "timestamp": time.time(),
        }

    async def close(self) -> None:
        await self.redis.aclose()
        logger.debug("redis_connection_closed")
