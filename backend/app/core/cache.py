"""
Redis cache layer — async Redis client with typed helpers.

Provides:
    • Lazily created async client
    • JSON serialisation cache helpers
    • TTL-aware get/set with namespace prefixes
    • Prefix invalidation (after corrupted readings are purged)

Usage:
    from backend.app.core.cache import cache_get, cache_set

    await cache_set("series:261000402A:2025-01-01:2025-03-31", rows, ttl=900)
    cached = await cache_get("series:261000402A:2025-01-01:2025-03-31")

The cache is an optimisation only: every failure degrades to a miss.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client — initialised on first use
_redis_client: Optional[aioredis.Redis] = None


def _get_redis() -> aioredis.Redis:
    """Get or create async Redis client (connects on first command)."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
        logger.info("Redis client created: %s", settings.REDIS_URL.split("@")[-1])
    return _redis_client


async def cache_get(key: str) -> Optional[Any]:
    """Get a cached value by key. Returns None on miss or error."""
    try:
        raw = await _get_redis().get(key)
        if raw is not None:
            return json.loads(raw)
    except (RedisError, OSError, ValueError) as e:
        logger.warning("Cache GET error for %s: %s", key, e)
    return None


async def cache_set(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    """Set a cached value with optional TTL (seconds)."""
    try:
        serialised = json.dumps(value, default=str)
        await _get_redis().set(key, serialised, ex=ttl or settings.SERIES_CACHE_TTL)
        return True
    except (RedisError, OSError, TypeError) as e:
        logger.warning("Cache SET error for %s: %s", key, e)
        return False


async def cache_clear_prefix(prefix: str) -> int:
    """Delete all keys matching a prefix pattern."""
    try:
        client = _get_redis()
        keys = [key async for key in client.scan_iter(f"{prefix}*")]
        if keys:
            await client.delete(*keys)
        return len(keys)
    except (RedisError, OSError) as e:
        logger.warning("Cache CLEAR error for %s*: %s", prefix, e)
        return 0


async def ping_redis() -> bool:
    """Round-trip to Redis; raises on failure (used by the health probe)."""
    return bool(await _get_redis().ping())


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
