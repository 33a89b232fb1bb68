"""Redis client, shared by the reminder sweep lock and health checks."""

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Key prefixes for namespace organization
LOCK_PREFIX = "lock:"

# Timeout for Redis operations (2 seconds)
REDIS_TIMEOUT = 2.0


async def create_redis(url: str) -> Optional[redis.Redis]:
    """Create a Redis client with connection pooling.

    Returns None when no URL is configured.

    Raises:
        Exception: If the connection cannot be validated
    """
    if not url:
        logger.info("REDIS_URL not set, running without Redis")
        return None

    client = redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
        socket_connect_timeout=5,
        socket_keepalive=True,
    )

    try:
        await asyncio.wait_for(client.ping(), timeout=REDIS_TIMEOUT)
    except Exception as e:
        logger.error(f"Failed to initialize Redis connection: {e}")
        await client.aclose()
        raise

    logger.info("Redis connection initialized and validated")
    return client


async def close_redis(client: Optional[redis.Redis]) -> None:
    """Close Redis connection."""
    if client:
        await client.aclose()
        logger.info("Redis connection closed")


async def check_redis_health(client: Optional[redis.Redis]) -> bool:
    """Test Redis connectivity.

    Returns:
        True if Redis is accessible, False otherwise
    """
    if not client:
        logger.error("Redis client not initialized")
        return False

    try:
        await asyncio.wait_for(client.ping(), timeout=REDIS_TIMEOUT)
        logger.debug("Redis health check: OK")
        return True
    except asyncio.TimeoutError:
        logger.error("Redis health check timed out")
        return False
    except redis.RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False

