"""
Redis cache layer — async Redis client with JSON helpers.

Used for reverse-geocode results, which are expensive (paid API) and
stable for a given coordinate. Every helper degrades to a cache miss when
Redis is unreachable; callers never see a cache error.

Usage:
    from backend.app.core.cache import cache_get, cache_set

    await cache_set("geocode:28.7041:77.1025", {"address": "..."}, ttl=86400)
    cached = await cache_get("geocode:28.7041:77.1025")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client, initialised on first use
_redis_client: Optional[aioredis.Redis] = None


async def _get_redis() -> Optional[aioredis.Redis]:
    """Get or create async Redis client."""
    global _redis_client
    if _redis_client is None:
        try:
            _redis_client = aioredis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=1.0,
            )
            logger.info("Redis client created: %s", settings.REDIS_URL)
        except Exception as e:
            logger.warning("Redis unavailable: %s — caching disabled", e)
            return None
    return _redis_client


async def cache_get(key: str) -> Optional[Any]:
    """Get a cached value by key. Returns None on miss or error."""
    client = await _get_redis()
    if not client:
        return None
    try:
        raw = await client.get(key)
        if raw is not None:
            return json.loads(raw)
    except Exception as e:
        logger.warning("Cache GET error for %s: %s", key, e)
    return None


async def cache_set(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    """Set a cached value with optional TTL (seconds)."""
    client = await _get_redis()
    if not client:
        return False
    try:
        serialised = json.dumps(value, default=str)
        await client.set(key, serialised, ex=ttl or settings.REDIS_CACHE_TTL)
        return True
    except Exception as e:
        logger.warning("Cache SET error for %s: %s", key, e)
        return False


async def ping_redis() -> bool:
    """True when Redis answers PING; raises on connection failure."""
    client = await _get_redis()
    if not client:
        return False
    return bool(await client.ping())


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
