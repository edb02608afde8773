"""
Redis Connection Module

Builds the asynchronous Redis client behind the shared counter store.

**Security Note**: Ensure that the Redis connection URL (REDIS_URL) uses
`rediss://` when Redis is reached over an untrusted network, and never log
the URL itself since it may carry the password.

Functions:
    create_redis_client: Build a `redis.asyncio.Redis` from settings.
"""

import logging

from redis.asyncio import Redis

from turnstile.core.config.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def create_redis_client(settings: Settings | None = None) -> Redis:
    """
    Create an asynchronous Redis client for the counter store.

    Socket timeouts come from `REDIS_SOCKET_TIMEOUT` so a stalled server
    fails the round trip instead of holding the request.

    Args:
        settings: Settings to read; the process-wide singleton by default.

    Returns:
        Redis: A client that has not connected yet (connections are lazy).
    """
    settings = settings or default_settings
    client = Redis.from_url(
        settings.REDIS_URL,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
        decode_responses=True,
    )
    logger.debug("Redis client created")
    return client
