"""
Redis client configuration with connection pooling and async support.

This module provides the async Redis client used for caching order progress
views, with connection pooling, retry with exponential backoff, health checks
and cache key management utilities.
"""

import json
from typing import Any, Optional, Union

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from orderflow.core.config import get_settings
from orderflow.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Async Redis client with connection pooling and retry logic.

    Attributes:
        cache_hits: Number of GETs that found a value
        cache_misses: Number of GETs that found nothing
    """

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        health_check_interval: int = 30,
    ):
        """
        Initialize Redis client settings; the pool is created on connect.

        Args:
            url: Redis connection URL (defaults to settings.redis_url)
            max_connections: Maximum pool connections (defaults to settings)
            socket_timeout: Socket operation timeout in seconds
            socket_connect_timeout: Socket connection timeout in seconds
            health_check_interval: Health check interval in seconds
        """
        settings = get_settings()
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._health_check_interval = health_check_interval

        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_connected = False

        self.cache_hits = 0
        self.cache_misses = 0

    @staticmethod
    def _sanitize_url(url: str) -> str:
        """Strip credentials from a Redis URL before logging it."""
        if "://" in url and "@" in url:
            protocol, rest = url.split("://", 1)
            _, host_part = rest.rsplit("@", 1)
            return f"{protocol}://***@{host_part}"
        return url

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self) -> None:
        """
        Create the connection pool and verify connectivity with ping.

        Raises:
            ConnectionError: If connection cannot be established
        """
        if self._is_connected:
            logger.warning("Redis client already connected")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                health_check_interval=self._health_check_interval,
                retry=Retry(ExponentialBackoff(base=0.1, cap=2.0), retries=3),
                retry_on_timeout=True,
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()
            self._is_connected = True

            logger.info(
                "Redis connection established",
                url=self._sanitize_url(self._url),
                pool_size=self._max_connections,
            )

        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                error=str(e),
                url=self._sanitize_url(self._url),
            )
            await self._release()
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def _release(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
        self._is_connected = False

    async def disconnect(self) -> None:
        """Close the connection pool and release resources."""
        if not self._is_connected:
            return
        await self._release()
        logger.info("Redis connection closed")

    async def health_check(self) -> bool:
        """
        Ping Redis.

        Returns:
            True if Redis is healthy and responsive, False otherwise
        """
        if not self._is_connected or self._client is None:
            logger.warning("Redis health check failed: not connected")
            return False

        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.error(
                "Redis health check failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    def _ensure_connected(self) -> Redis:
        if not self._is_connected or self._client is None:
            raise ConnectionError("Redis client is not connected")
        return self._client

    async def get(self, key: str) -> Optional[str]:
        """
        Get value from Redis by key.

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        client = self._ensure_connected()

        try:
            value = await client.get(key)
        except RedisError as e:
            logger.error("Redis GET operation failed", key=key, error=str(e))
            raise

        if value is not None:
            self.cache_hits += 1
        else:
            self.cache_misses += 1
        logger.debug("Redis GET operation", key=key, found=value is not None)
        return value

    async def set(
        self,
        key: str,
        value: Union[str, bytes, int, float],
        ex: Optional[int] = None,
    ) -> bool:
        """
        Set value in Redis with optional expiration in seconds.

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        client = self._ensure_connected()

        try:
            result = await client.set(key, value, ex=ex)
        except RedisError as e:
            logger.error("Redis SET operation failed", key=key, error=str(e))
            raise

        logger.debug("Redis SET operation", key=key, ex=ex, success=bool(result))
        return bool(result)

    async def delete(self, *keys: str) -> int:
        """
        Delete one or more keys from Redis.

        Returns:
            Number of keys deleted

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        if not keys:
            return 0
        client = self._ensure_connected()

        try:
            count = await client.delete(*keys)
        except RedisError as e:
            logger.error("Redis DELETE operation failed", keys=keys, error=str(e))
            raise

        logger.debug("Redis DELETE operation", keys=keys, count=count)
        return count

    async def incr(self, key: str, amount: int = 1) -> int:
        """
        Increment key value by amount, starting from 0 for a missing key.

        Returns:
            New value after increment

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        client = self._ensure_connected()

        try:
            value = await client.incrby(key, amount)
        except RedisError as e:
            logger.error("Redis INCR operation failed", key=key, error=str(e))
            raise

        logger.debug("Redis INCR operation", key=key, amount=amount, new_value=value)
        return value

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a glob pattern.

        Args:
            pattern: Redis key pattern (e.g., "orderflow:list:orders*")

        Returns:
            Number of keys deleted

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        client = self._ensure_connected()

        try:
            keys = [key async for key in client.scan_iter(match=pattern)]
        except RedisError as e:
            logger.error("Redis DELETE pattern failed", pattern=pattern, error=str(e))
            raise

        if not keys:
            return 0
        return await self.delete(*keys)

    async def get_json(self, key: str) -> Optional[dict[str, Any]]:
        """
        Get a JSON value from Redis by key.

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
            json.JSONDecodeError: If the stored value is not valid JSON
        """
        value = await self.get(key)
        if value is None:
            return None

        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.error("Failed to decode JSON from cache", key=key, error=str(e))
            raise

    async def set_json(
        self,
        key: str,
        value: dict[str, Any],
        ex: Optional[int] = None,
    ) -> bool:
        """
        Store a dictionary as JSON with optional expiration in seconds.

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
            TypeError: If value is not JSON serializable
        """
        return await self.set(key, json.dumps(value), ex=ex)

    def get_cache_stats(self) -> dict[str, Any]:
        """Hit and miss counts of GET operations."""
        lookups = self.cache_hits + self.cache_misses
        hit_rate = self.cache_hits / lookups * 100 if lookups else 0.0
        return {
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "hit_rate_percent": round(hit_rate, 2),
        }


class CacheKeyManager:
    """
    Builds namespaced cache keys.

    Example:
        >>> CacheKeyManager("app").make_key("order", 123, "summary")
        'app:order:123:summary'
    """

    def __init__(self, namespace: Optional[str] = None):
        self.namespace = namespace or get_settings().cache_namespace

    def make_key(self, *parts: Union[str, int]) -> str:
        key_parts = [str(part) for part in parts if part]
        return ":".join([self.namespace] + key_parts)

    def order_key(self, order_id: Any) -> str:
        """Generate cache key for order detail data."""
        return self.make_key("order", order_id)

    def order_progress_key(self, order_id: Any) -> str:
        """Generate cache key for an order's stage records."""
        return self.make_key("order", order_id, "progress")

    def order_generation_key(self, order_id: Any) -> str:
        """Generate key of the counter bumped on every invalidation of an order."""
        return self.make_key("order", order_id, "generation")

    def order_summary_key(self, order_id: Any, generation: str) -> str:
        """
        Generate cache key for an order's progress summary.

        A summary stored under one generation is never read once the
        order's generation counter has moved on.
        """
        return self.make_key("order", order_id, "summary", f"g{generation}")

    def list_key(self, entity_type: str, filters: Optional[dict[str, Any]] = None) -> str:
        """
        Generate cache key for list queries.

        Args:
            entity_type: Type of entity (e.g., "orders")
            filters: Optional filter parameters
        """
        parts = ["list", entity_type]
        if filters:
            parts.append(":".join(f"{k}={v}" for k, v in sorted(filters.items())))
        return self.make_key(*parts)


_redis_client: Optional[RedisClient] = None
_cache_key_manager: Optional[CacheKeyManager] = None


async def get_redis_client() -> RedisClient:
    """
    Get or create the global Redis client instance.

    Raises:
        ConnectionError: If Redis connection fails
    """
    global _redis_client

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


def get_cache_key_manager() -> CacheKeyManager:
    """Get or create the global cache key manager instance."""
    global _cache_key_manager

    if _cache_key_manager is None:
        _cache_key_manager = CacheKeyManager()

    return _cache_key_manager


async def close_redis_client() -> None:
    """Close the global Redis client connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
