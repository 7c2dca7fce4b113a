"""
Redis connection layer — lazily created async client.

Used by the redis-backed tenant lease (sync/lease.py) and the readiness
probe. Nothing connects until the first call, so the default in-memory
lease backend never touches redis.

Usage:
    from backend.feedsync.core.cache import get_redis

    client = await get_redis()
    await client.set("feedsync:lease:t1", token, nx=True, px=120_000)
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis

from backend.feedsync.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client — initialised on first use
_redis_client: Optional[aioredis.Redis] = None


async def get_redis() -> aioredis.Redis:
    """Get or create async Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
        logger.info("Redis client created: %s", _redacted(settings.REDIS_URL))
    return _redis_client


async def ping_redis() -> bool:
    """True when the server answers PING."""
    try:
        client = await get_redis()
        return bool(await client.ping())
    except aioredis.RedisError as e:
        logger.warning("Redis ping failed: %s", e)
        return False


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


def _redacted(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url
