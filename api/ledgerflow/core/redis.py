import redis.asyncio as aioredis

from ledgerflow.core.config import settings

# Shared async Redis client (created once, reused across requests and sync tasks)
_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    """Drop the shared client (Celery tasks run each sync in a fresh event loop)."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
