"""
Redis Connection Module

This module provides the asynchronous Redis client used by the Redis counter
store. The connection is configured from the application's settings.

**Security Note**: Ensure that the Redis connection URL (REDIS_URL) includes SSL/TLS parameters if
connecting over an insecure network to prevent data interception. Use strong passwords and
restrict access to Redis instances to trusted clients only. Connection details (e.g., passwords)
are never logged.

Functions:
    create_redis_client: Build an asynchronous Redis client from settings.
"""

import structlog
from redis.asyncio import Redis

from tierguard.core.config.settings import Settings

logger = structlog.get_logger(__name__)


def create_redis_client(settings: Settings) -> Redis:
    """
    Provides an asynchronous Redis client.

    Socket timeouts bound every round-trip so that a stalled Redis surfaces as
    a timeout error rather than a hung decision. Replies are decoded to
    ``str``, which the counter store's reply parsing relies on.

    Args:
        settings: Application settings carrying REDIS_URL and REDIS_SOCKET_TIMEOUT.

    Returns:
        Redis: An asynchronous Redis client instance. The caller owns it and
        must close it (``RedisCounterStore.close`` does).
    """
    redis = Redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
    )
    logger.debug("redis_connection_created", ssl=settings.REDIS_SSL, db=settings.REDIS_DB)
    return redis
