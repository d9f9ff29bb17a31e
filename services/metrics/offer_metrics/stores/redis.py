"""Redis store for the session cache.

Handles:
- Connection lifecycle (init on startup, close on shutdown)
- Generic string get/set with TTL
- Prefix purge (used when the cache schema version changes)

TTL policies:
- Offer metrics snapshot slices: cache_ttl_s (5 minutes by default)
"""

import logging

import redis.asyncio as redis

from offer_metrics.settings import get_settings

# Redis client (initialized on startup)
_redis: redis.Redis | None = None
logger = logging.getLogger("uvicorn.error")


async def init_redis() -> None:
    """Initialize Redis connection."""
    global _redis
    settings = get_settings()
    _redis = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    # Validate connectivity early (especially for `rediss://` in production).
    await _redis.ping()
    logger.info("Redis connected")


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def _get_redis() -> redis.Redis:
    """Get Redis client instance."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


# ============================================================
# Generic cache operations
# ============================================================


async def cache_get(key: str) -> str | None:
    """Get value from cache.

    Args:
        key: Cache key.

    Returns:
        Cached value or None if not found.
    """
    return await _get_redis().get(key)


async def cache_set(key: str, value: str, ttl: int | None = None) -> None:
    """Set value in cache, with TTL when given.

    Args:
        key: Cache key.
        value: Value to cache.
        ttl: Time-to-live in seconds (None keeps the key until deleted).
    """
    if ttl:
        await _get_redis().setex(key, ttl, value)
    else:
        await _get_redis().set(key, value)


async def cache_delete(key: str) -> None:
    await _get_redis().delete(key)


async def cache_delete_prefix(prefix: str) -> int:
    """Delete every key under ``prefix``. Returns the number removed."""
    client = _get_redis()
    keys = [key async for key in client.scan_iter(match=f"{prefix}*")]
    if not keys:
        return 0
    return await client.delete(*keys)


# ============================================================
# CacheStorage backend
# ============================================================


class RedisCacheStorage:
    """``CacheStorage`` backed by the module-level Redis connection."""

    async def get(self, key: str) -> str | None:
        return await cache_get(key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        await cache_set(key, value, ttl)

    async def delete(self, key: str) -> None:
        await cache_delete(key)

    async def delete_prefix(self, prefix: str) -> int:
        removed = await cache_delete_prefix(prefix)
        logger.info(f"Redis: purged {removed} keys under '{prefix}'")
        return removed
