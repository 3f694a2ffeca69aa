"""Redis connection and caching utilities.

Redis client is created lazily to avoid import-time side effects.
Cache errors are logged and read as misses so an unavailable Redis never
breaks a refresh.
"""

import json
import logging
from datetime import timedelta
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError


logger = logging.getLogger(__name__)

# Redis client - initialized lazily
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get Redis client instance.

    Client is created on first access, not at import time.
    """
    global _redis_client
    if _redis_client is None:
        from trusted_stake.core.config import get_settings
        settings = get_settings()
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


class Cache:
    """JSON cache on top of Redis with prefixed keys."""

    def __init__(self, prefix: str = "trusted_stake"):
        self.prefix = prefix

    def _key(self, key: str) -> str:
        """Generate prefixed cache key."""
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        try:
            client = await get_redis()
            value = await client.get(self._key(key))
        except (RedisError, OSError) as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            return None
        if value is None:
            return None
        return json.loads(value)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[timedelta] = None
    ) -> None:
        """Set value in cache with optional TTL."""
        serialized = json.dumps(value, default=str)
        try:
            client = await get_redis()
            if ttl:
                await client.setex(self._key(key), ttl, serialized)
            else:
                await client.set(self._key(key), serialized)
        except (RedisError, OSError) as e:
            logger.warning("Cache write failed for %s: %s", key, e)


# Default cache instance
cache = Cache()
