"""
FastAPI dependencies for database sessions and the progress service.

Authentication is handled upstream of this service; handlers receive
already-identified order, stage and payload values.
"""

from typing import Annotated, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.cache.redis_client import RedisClient
from orderflow.core.logging import get_logger
from orderflow.database.connection import get_db
from orderflow.services.cache.progress_cache import ProgressCache
from orderflow.services.progress.service import OrderProgressService

logger = get_logger(__name__)

DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


def get_progress_cache(request: Request) -> Optional[ProgressCache]:
    """
    Progress cache bound to the application's Redis client.

    Returns:
        ProgressCache, or None when Redis is disabled or was unreachable at startup
    """
    redis_client: Optional[RedisClient] = getattr(request.app.state, "redis_client", None)
    if redis_client is None:
        return None
    return ProgressCache(redis_client=redis_client)


async def get_progress_service(
    db: DatabaseSession,
    cache: Annotated[Optional[ProgressCache], Depends(get_progress_cache)],
) -> OrderProgressService:
    """Workflow service bound to the request's database session."""
    return OrderProgressService(db, cache=cache)


ProgressService = Annotated[OrderProgressService, Depends(get_progress_service)]
