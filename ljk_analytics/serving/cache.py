"""
Redis Cache Module

Short-lived cache for read-side report projections:
- Connection pooling
- Automatic serialization
- TTL management
- Cache invalidation patterns

The cache is optional. When Redis is not initialized or unreachable every
lookup is a miss and reports are built from the database.
"""

import json
from typing import Any, Optional, Union
from datetime import timedelta

import structlog
from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import RedisError

from ljk_analytics.aggregation.increments import GradeSubjectKey
from ljk_analytics.config import get_settings

logger = structlog.get_logger(__name__)

# Global Redis connection
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Initialize Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()
    _redis_pool = ConnectionPool.from_url(
        settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        decode_responses=settings.redis.decode_responses,
    )
    client = Redis(connection_pool=_redis_pool)

    try:
        await client.ping()
    except RedisError as e:
        logger.error("Redis connection failed", error=str(e))
        await _redis_pool.disconnect()
        _redis_pool = None
        raise

    _redis_client = client
    logger.info("Redis connection established")
    return _redis_client


async def close_redis() -> None:
    """Close Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None

    logger.info("Redis connection closed")


async def connect_redis_optional() -> bool:
    """
    Connect to Redis for processes that can run without it.

    Returns:
        False when Redis is unreachable; the report cache is then disabled
    """
    try:
        await init_redis()
    except (RedisError, OSError) as e:
        logger.warning("Redis init failed, report cache disabled", error=str(e))
        return False
    return True


def get_redis() -> Redis:
    """Get Redis client instance"""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def cache_get(key: str) -> Optional[Any]:
    """
    Get value from cache.

    Returns:
        Cached value, or None when missing or Redis is unavailable
    """
    if _redis_client is None:
        return None

    try:
        value = await _redis_client.get(key)
    except RedisError as e:
        logger.warning("Cache read failed", key=key, error=str(e))
        return None

    if value is None:
        return None

    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


async def cache_set(
    key: str,
    value: Any,
    ttl: Optional[Union[int, timedelta]] = None,
) -> bool:
    """
    Set value in cache.

    Args:
        key: Cache key
        value: Value to cache (will be JSON serialized)
        ttl: Time-to-live in seconds or timedelta

    Returns:
        True if stored
    """
    if _redis_client is None:
        return False

    try:
        serialized = json.dumps(value, default=str)
    except (TypeError, ValueError) as e:
        logger.warning("Failed to serialize value for cache", key=key, error=str(e))
        return False

    if isinstance(ttl, timedelta):
        ttl = int(ttl.total_seconds())

    try:
        if ttl:
            await _redis_client.setex(key, ttl, serialized)
        else:
            await _redis_client.set(key, serialized)
    except RedisError as e:
        logger.warning("Cache write failed", key=key, error=str(e))
        return False

    return True


async def cache_delete(key: str) -> bool:
    """Delete key from cache"""
    if _redis_client is None:
        return False
    try:
        return await _redis_client.delete(key) > 0
    except RedisError as e:
        logger.warning("Cache delete failed", key=key, error=str(e))
        return False


async def cache_delete_pattern(pattern: str) -> int:
    """Delete all keys matching pattern"""
    if _redis_client is None:
        return 0

    deleted = 0
    try:
        async for key in _redis_client.scan_iter(match=pattern):
            deleted += await _redis_client.delete(key)
    except RedisError as e:
        logger.warning("Cache pattern delete failed", pattern=pattern, error=str(e))
    return deleted


class CacheManager:
    """
    Cache manager with namespace support and automatic key generation.

    Example:
        cache = CacheManager("reports")
        await cache.set("uts:s1:k7:mtk", report, ttl=30)
        report = await cache.get("uts:s1:k7:mtk")
    """

    def __init__(self, namespace: str, default_ttl: int = 3600):
        self.namespace = namespace
        self.default_ttl = default_ttl

    def _key(self, key: str) -> str:
        """Generate namespaced key"""
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache"""
        return await cache_get(self._key(key))

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
    ) -> bool:
        """Set value in cache"""
        return await cache_set(self._key(key), value, ttl or self.default_ttl)

    async def delete(self, key: str) -> bool:
        """Delete key from cache"""
        return await cache_delete(self._key(key))

    async def invalidate_prefix(self, prefix: str) -> int:
        """Invalidate every key in the namespace starting with prefix"""
        return await cache_delete_pattern(f"{self.namespace}:{prefix}*")


reports_cache = CacheManager("reports", default_ttl=get_settings().cache.report_ttl)


async def invalidate_report(key: GradeSubjectKey) -> None:
    """Drop the cached report of one statistics document after a fold"""
    if await reports_cache.delete(key.path):
        logger.debug("Report cache invalidated", path=key.path)


async def invalidate_exam_reports(exam_id: str) -> int:
    """Drop every cached report of an exam"""
    return await reports_cache.invalidate_prefix(f"exams/{exam_id}/")
