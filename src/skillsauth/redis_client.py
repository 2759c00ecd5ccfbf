"""Redis connection: optional, only backs per-IP rate limiting.

Learn: The pool is opened in the app lifespan. If Redis is down at
startup the service still runs; get_redis() returns None and the rate
limiter steps aside. Correctness never depends on Redis: all one-time
state (codes, tokens, poll throttling) lives in the database.
"""

from typing import Optional

import redis.asyncio as aioredis

from skillsauth.config import settings

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool and verify it answers."""
    global _redis
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await client.ping()
    _redis = client
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> Optional[aioredis.Redis]:
    return _redis
