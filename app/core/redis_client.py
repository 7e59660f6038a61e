"""Redis client and the availability rule cache."""

import json
from typing import Any, cast

import redis
import structlog

from app.config import settings

logger = structlog.get_logger()

# Global Redis client instance
_redis_client: redis.Redis | None = None


def get_redis_client() -> redis.Redis:
    """
    Get or create Redis client instance.

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


async def check_redis_connection() -> bool:
    """True when Redis answers a ping."""
    try:
        get_redis_client().ping()
        return True
    except redis.RedisError:
        return False


def close_redis_connection() -> None:
    global _redis_client

    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None


class CacheManager:
    """
    JSON cache over Redis.

    Every operation fails open: a Redis error is logged and reported as a
    miss, so callers fall back to the database.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def get_json(self, key: str) -> Any | None:
        try:
            value = cast(str | None, self.redis.get(key))
        except redis.RedisError as e:
            logger.warning("cache_read_failed", key=key, error=str(e))
            return None
        if not value:
            return None
        try:
            return json.loads(value)
        except ValueError:
            logger.warning("cache_entry_corrupt", key=key)
            return None

    def set_json(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> bool:
        """
        Serialize and store a value.

        Args:
            key: Cache key
            value: JSON-serializable value; dates and decimals go through ``str``
            ttl: Time to live in seconds

        Returns:
            True if stored
        """
        try:
            payload = json.dumps(value, default=str)
            if ttl:
                self.redis.setex(key, ttl, payload)
            else:
                self.redis.set(key, payload)
            return True
        except redis.RedisError as e:
            logger.warning("cache_write_failed", key=key, error=str(e))
            return False

    def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a pattern.

        Args:
            pattern: Redis key pattern (e.g., 'availability:rules:7:*')

        Returns:
            Number of keys deleted
        """
        try:
            keys = cast(list[str], list(self.redis.scan_iter(match=pattern)))
            if keys:
                return cast(int, self.redis.delete(*keys))
            return 0
        except redis.RedisError as e:
            logger.warning("cache_invalidation_failed", pattern=pattern, error=str(e))
            return 0


def get_cache_manager() -> CacheManager | None:
    """Cache backed by the shared client, or None when caching is switched off."""
    if not settings.availability_cache_enabled:
        return None
    return CacheManager(get_redis_client())
