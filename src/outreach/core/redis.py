"""Redis connection pool for the scheduling change feed."""

from __future__ import annotations

import redis.asyncio as aioredis

from src.outreach.config import get_settings

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis | None:
    """Get or create the Redis client singleton. None when REDIS_URL is unset."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        if not settings.REDIS_URL:
            return None
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None
