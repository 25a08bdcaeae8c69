"""Redis client construction.

The client is optional everywhere: callers receive None when REDIS_URL is
unset or the server is unreachable, and every consumer treats Redis as
best-effort.
"""

import redis

from harmony.logging import get_logger

logger = get_logger(__name__)


def create_redis_client(redis_url: str | None):
    """Build a sync Redis client, or return None when unavailable."""
    if not redis_url:
        return None
    try:
        client = redis.Redis.from_url(redis_url, decode_responses=True, socket_timeout=5)
        client.ping()
        logger.info("redis_client_initialized", redis_url=redis_url[:30] + "...")
        return client
    except redis.RedisError as e:
        logger.warning("redis_client_init_failed", error=str(e))
        return None


def close_redis_client(client) -> None:
    if client is None:
        return
    try:
        client.close()
    except redis.RedisError as e:
        logger.debug("redis_client_close_failed", error=str(e))
