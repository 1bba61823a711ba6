"""Redis connection — shared by the rate-limit middleware and health check.

Learn: Redis is optional. The auth core keeps all of its state (codes,
challenges, counters) in the database; Redis only backs per-IP request
throttling. If it isn't reachable at startup the app runs without it.
"""

from typing import Optional

import redis.asyncio as aioredis

from latchkey.config import settings

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
