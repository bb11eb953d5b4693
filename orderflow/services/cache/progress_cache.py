"""
Order progress caching with cache-aside reads and invalidation.

Progress summaries are cached per order under the order's current cache
generation. Every stage mutation and terminal transition bumps the
generation after the transaction commits, which retires the cached views.
Cache failures never fail a workflow operation: they are logged and the
caller falls back to the database.
"""

from typing import Any, Optional
from uuid import UUID

from redis.exceptions import RedisError

from orderflow.cache.redis_client import (
    CacheKeyManager,
    RedisClient,
    get_cache_key_manager,
    get_redis_client,
)
from orderflow.core.config import get_settings
from orderflow.core.logging import get_logger

logger = get_logger(__name__)

_CACHE_ERRORS = (RedisError, ValueError, TypeError)


class ProgressCache:
    """
    Cache of order progress views.

    Attributes:
        ttl: Expiration of cached summaries in seconds
        enabled: When False every operation is a no-op
    """

    ORDER_LIST_ENTITY = "orders"

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        key_manager: Optional[CacheKeyManager] = None,
        ttl: Optional[int] = None,
        enabled: Optional[bool] = None,
    ):
        settings = get_settings()
        self._redis_client = redis_client
        self._key_manager = key_manager or get_cache_key_manager()
        self.ttl = ttl if ttl is not None else settings.progress_cache_ttl_seconds
        self.enabled = settings.progress_cache_enabled if enabled is None else enabled
        self._stats = {"hits": 0, "misses": 0, "invalidations": 0, "errors": 0}

    async def _get_redis_client(self) -> RedisClient:
        if self._redis_client is None:
            self._redis_client = await get_redis_client()
        return self._redis_client

    def _order_keys(self, order_id: UUID) -> list[str]:
        return [
            self._key_manager.order_key(order_id),
            self._key_manager.order_progress_key(order_id),
        ]

    async def get_generation(self, order_id: UUID) -> Optional[str]:
        """
        Read the order's cache generation.

        Callers read it before loading from the database and pass it to
        ``get_summary`` and ``set_summary``. A summary loaded while a
        mutation commits is then stored under a generation that
        ``invalidate_order`` has already retired.

        Returns:
            Generation, "0" if the order was never invalidated, or None when
            disabled or on cache error
        """
        if not self.enabled:
            return None

        key = self._key_manager.order_generation_key(order_id)
        try:
            client = await self._get_redis_client()
            generation = await client.get(key)
        except _CACHE_ERRORS as e:
            self._record_error("get_generation", order_id, e)
            return None
        return "0" if generation is None else str(generation)

    async def get_summary(
        self, order_id: UUID, generation: str
    ) -> Optional[dict[str, Any]]:
        """
        Get the progress summary cached under a generation.

        Returns:
            Cached summary, or None on a miss, when disabled or on cache error
        """
        if not self.enabled:
            return None

        key = self._key_manager.order_summary_key(order_id, generation)
        try:
            client = await self._get_redis_client()
            cached = await client.get_json(key)
        except _CACHE_ERRORS as e:
            self._record_error("get_summary", order_id, e)
            return None

        if cached is None:
            self._stats["misses"] += 1
            logger.debug("Progress summary cache miss", order_id=str(order_id))
            return None

        self._stats["hits"] += 1
        logger.debug("Progress summary cache hit", order_id=str(order_id))
        return cached

    async def set_summary(
        self, order_id: UUID, summary: dict[str, Any], generation: str
    ) -> None:
        """Cache a progress summary under a generation for ``ttl`` seconds."""
        if not self.enabled:
            return

        key = self._key_manager.order_summary_key(order_id, generation)
        try:
            client = await self._get_redis_client()
            await client.set_json(key, summary, ex=self.ttl)
        except _CACHE_ERRORS as e:
            self._record_error("set_summary", order_id, e)

    async def invalidate_order(self, order_id: UUID) -> None:
        """
        Retire every cached view of an order and drop the cached order lists.

        Bumping the generation also retires a summary written after this call
        by a reader that loaded before it. Entries of retired generations
        expire with their TTL.

        Failures are logged at warning level and not raised.
        """
        if not self.enabled:
            return

        try:
            client = await self._get_redis_client()
            generation = await client.incr(
                self._key_manager.order_generation_key(order_id)
            )
            deleted = await client.delete(*self._order_keys(order_id))
            deleted += await client.delete_pattern(
                self._key_manager.list_key(self.ORDER_LIST_ENTITY) + "*"
            )
        except _CACHE_ERRORS as e:
            self._record_error("invalidate_order", order_id, e)
            return

        self._stats["invalidations"] += 1
        logger.debug(
            "Order cache invalidated",
            order_id=str(order_id),
            generation=generation,
            keys_deleted=deleted,
        )

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)

    def _record_error(self, operation: str, order_id: UUID, error: Exception) -> None:
        self._stats["errors"] += 1
        logger.warning(
            "Progress cache operation failed",
            operation=operation,
            order_id=str(order_id),
            error=str(error),
            error_type=type(error).__name__,
        )
