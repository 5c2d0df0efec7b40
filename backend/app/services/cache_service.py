"""
Redis caching service for availability listings.

CACHING STRATEGY
================

What we cache:
  - Slot listing responses (JSON-serialized), per date range and session type
  - Cache key pattern:
    "availability:slots:start={start}&end={end}&type={session_type_id}"

Why:
  - The booking calendar re-requests the same week on every page view
  - Resolving a week means reading templates, exceptions, settings and every
    occupying booking in range

Invalidation strategy:
  - On booking create / cancel / reschedule: delete all availability keys
  - On template, exception or settings change: delete all availability keys
  - Short TTL as safety net, since "now" moves the bookable window forward

  All keys start with "availability:" so we can SCAN and delete them.

The cache is advisory. Booking creation never reads it: capacity is always
re-checked against the database under the version claim. Any Redis failure
is logged and treated as a miss.
"""

import json
from typing import Optional

import redis.asyncio as redis
from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.metrics import record_cache_operation, redis_connection_errors

logger = get_logger(__name__)
settings = get_settings()

AVAILABILITY_PREFIX = "availability:"

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create Redis connection. Returns None if Redis is disabled."""
    global _redis_client

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await _redis_client.ping()
            logger.info("redis_connected", url=settings.REDIS_URL)
        except (redis.RedisError, OSError) as e:
            logger.error("redis_connection_failed", error=str(e))
            redis_connection_errors.inc()
            _redis_client = None
            return None

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def make_availability_key(start_date: str, end_date: str, session_type_id: Optional[int]) -> str:
    return f"{AVAILABILITY_PREFIX}slots:start={start_date}&end={end_date}&type={session_type_id or 'any'}"


async def get_cached_availability(start_date: str, end_date: str, session_type_id: Optional[int]) -> Optional[dict]:
    client = await get_redis()
    if not client:
        return None

    key = make_availability_key(start_date, end_date, session_type_id)
    try:
        data = await client.get(key)
        record_cache_operation("get", hit=bool(data))
        if data:
            logger.debug("cache_hit", key=key)
            return json.loads(data)
        logger.debug("cache_miss", key=key)
    except (redis.RedisError, ValueError) as e:
        logger.error("cache_get_error", key=key, error=str(e))

    return None


async def set_cached_availability(
    start_date: str,
    end_date: str,
    session_type_id: Optional[int],
    data: dict,
) -> None:
    client = await get_redis()
    if not client:
        return

    key = make_availability_key(start_date, end_date, session_type_id)
    try:
        await client.setex(key, settings.REDIS_CACHE_TTL, json.dumps(data, default=str))
        logger.debug("cache_set", key=key, ttl=settings.REDIS_CACHE_TTL)
    except redis.RedisError as e:
        logger.error("cache_set_error", key=key, error=str(e))


async def invalidate_availability_cache() -> None:
    """Drop every cached availability listing."""
    client = await get_redis()
    if not client:
        return

    try:
        deleted = 0
        async for key in client.scan_iter(match=f"{AVAILABILITY_PREFIX}*", count=100):
            await client.delete(key)
            deleted += 1
        logger.info("cache_invalidated", keys_deleted=deleted)
    except redis.RedisError as e:
        logger.error("cache_invalidation_error", error=str(e))


async def get_cache_stats() -> dict:
    """Get Redis cache statistics for monitoring."""
    client = await get_redis()
    if not client:
        return {"status": "disabled"}

    try:
        info = await client.info("stats")
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        return {
            "status": "connected",
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
        }
    except redis.RedisError as e:
        return {"status": "error", "error": str(e)}
