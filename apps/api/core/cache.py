"""
Redis connection.

Shared by the attempt limiter and the health check. Includes graceful
degradation if Redis is unavailable: callers get ``None`` and decide how to
degrade.
"""
import logging
import time
from typing import Optional

import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from core.config import settings

logger = logging.getLogger(__name__)

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None
# Monotonic time before which we do not retry a failed connection.
_retry_after: float = 0.0
_RECONNECT_BACKOFF_S = 30.0


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client, _retry_after

    if _redis_client is not None:
        return _redis_client
    if time.monotonic() < _retry_after:
        return None

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        # Test connection
        client.ping()
        logger.info("Redis connection established")
        _redis_client = client
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}")
        _retry_after = time.monotonic() + _RECONNECT_BACKOFF_S
        return None


def close_redis_client() -> None:
    global _redis_client
    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None
