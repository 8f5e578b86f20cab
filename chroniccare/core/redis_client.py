"""Redis client configuration and slot-cache helpers."""

import json
from typing import Any, cast
from uuid import UUID

import redis
import redis.asyncio as aioredis

from chroniccare.config import settings

# Global Redis client instances
_redis_client: redis.Redis | None = None
_async_redis_client: aioredis.Redis | None = None


def get_redis_client() -> redis.Redis:
    """
    Get or create the synchronous Redis client used for caching.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )

    return _redis_client


def get_async_redis_client() -> aioredis.Redis:
    """
    Get or create the asyncio Redis client used by the notification queue.

    Returns:
        Async Redis client instance
    """
    global _async_redis_client

    if _async_redis_client is None:
        _async_redis_client = aioredis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )

    return _async_redis_client


async def check_redis_connection() -> bool:
    """
    Check if Redis connection is healthy.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        client = get_redis_client()
        client.ping()
        return True
    except Exception:
        return False


async def close_redis_connection() -> None:
    """Close Redis connections."""
    global _redis_client, _async_redis_client

    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None

    if _async_redis_client is not None:
        await _async_redis_client.aclose()
        _async_redis_client = None


def slot_cache_key(
    tenant_id: UUID,
    provider_id: UUID | None,
    facility_id: UUID | None,
    appointment_type: str | None,
    start_date: Any,
    end_date: Any,
) -> str:
    """Build the cache key of one slot listing."""
    return (
        f"slots:{tenant_id}:{provider_id or '*'}:{facility_id or '*'}:"
        f"{appointment_type or '*'}:{start_date}:{end_date}"
    )


def slot_cache_pattern(tenant_id: UUID) -> str:
    """Pattern matching every slot listing of a tenant."""
    return f"slots:{tenant_id}:*"


class CacheManager:
    """
    Redis-based cache for read projections.

    Every operation fails open: a Redis outage degrades to cache misses and
    never breaks the request that tried to use the cache.
    """

    def __init__(self, redis_client: redis.Redis):
        """Initialize cache manager with Redis client."""
        self.redis = redis_client

    def get_json(self, key: str) -> Any | None:
        """
        Get JSON value from cache and deserialize.

        Args:
            key: Cache key

        Returns:
            Deserialized object or None
        """
        try:
            value = cast(str | None, self.redis.get(key))
            if value:
                return json.loads(value)
            return None
        except Exception:
            return None

    def set_json(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> bool:
        """
        Serialize and set JSON value in cache.

        Args:
            key: Cache key
            value: Value to serialize and cache
            ttl: Time to live in seconds

        Returns:
            True if successful, False otherwise
        """
        try:
            json_value = json.dumps(value, default=str)
            if ttl:
                self.redis.setex(key, ttl, json_value)
            else:
                self.redis.set(key, json_value)
            return True
        except Exception:
            return False

    def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a pattern.

        Args:
            pattern: Redis key pattern (e.g., 'slots:<tenant>:*')

        Returns:
            Number of keys deleted
        """
        try:
            keys = list(self.redis.scan_iter(match=pattern, count=500))
            if keys:
                return cast(int, self.redis.delete(*keys))
            return 0
        except Exception:
            return 0
