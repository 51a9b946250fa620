"""
Redis connection shared by sessions, throttles, CSRF tokens and the analytics cache
"""
import redis.asyncio as redis
from typing import Optional
import json
import logging
from functools import wraps

from lessonpulse.config import REDIS_URL, CACHE_TTL

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


async def get_cache() -> redis.Redis:
    """Get Redis client instance"""
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20
        )
        logger.info("Redis client created")

    return _redis_client


def set_cache(client: Optional[redis.Redis]):
    """Install a ready-made client, e.g. an in-memory one in tests"""
    global _redis_client
    _redis_client = client


async def ping_cache() -> bool:
    cache = await get_cache()
    return bool(await cache.ping())


async def close_cache():
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def school_key(prefix: str, school: str, *parts) -> str:
    """Keys use the exact school name, the same way every query scopes by school"""
    suffix = ":".join(str(part) for part in parts if part is not None)
    return f"{prefix}:{school}:{suffix}" if suffix else f"{prefix}:{school}"


def cached_per_school(prefix: str, ttl: int = CACHE_TTL):
    """
    Cache a service method whose first argument is the school name.
    Usage:
        @cached_per_school("analytics", ttl=120)
        async def feedback_overview(self, school, teacher_id=None):
            ...
    Results must be JSON serialisable; Redis failures fall through to the wrapped call.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, school: str, *args, **kwargs):
            key = school_key(prefix, school, func.__name__, *args, *(v for _, v in sorted(kwargs.items())))

            cache = None
            try:
                cache = await get_cache()
                hit = await cache.get(key)
                if hit is not None:
                    logger.debug(f"Cache hit: {key}")
                    return json.loads(hit)
            except Exception as e:
                logger.warning(f"Cache read failed for {key}: {e}")
                cache = None

            result = await func(self, school, *args, **kwargs)

            if cache is not None:
                try:
                    await cache.setex(key, ttl, json.dumps(result, default=str))
                except Exception as e:
                    logger.warning(f"Cache write failed for {key}: {e}")
            return result

        return wrapper
    return decorator


async def invalidate_school(prefix: str, school: str) -> int:
    """Drop every cached entry under prefix for one school"""
    try:
        cache = await get_cache()
        keys = [key async for key in cache.scan_iter(match=f"{school_key(prefix, school)}:*")]
        if keys:
            await cache.delete(*keys)
            logger.info(f"Invalidated {len(keys)} {prefix} entries for {school}")
        return len(keys)
    except Exception as e:
        logger.error(f"Failed to invalidate {prefix} cache for {school}: {e}")
        return 0
