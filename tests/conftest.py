"""
Pytest configuration and shared test fixtures.

Provides a mocked async session and in-memory doubles of the order and
progress repositories, so workflow scenarios run end to end without a
database.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_PROGRESS_CACHE_ENABLED", "false")

import fnmatch
import json
import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.database.models import Order, OrderProgress
from orderflow.services.progress.enums import OrderStatus, ProgressStage
from orderflow.services.progress.repository import DuplicateStageProgressError
from orderflow.services.progress.service import OrderProgressService

SHIPPED_AT = "2024-03-01T08:00:00Z"
RECEIVED_AT = "2024-03-04T15:30:00Z"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryOrderRepository:
    """Order repository double keeping orders in a dict."""

    def __init__(self) -> None:
        self.orders: dict[uuid.UUID, Order] = {}
        self.locked: list[uuid.UUID] = []

    def add(self, status: OrderStatus = OrderStatus.PENDING, **fields: Any) -> Order:
        now = _now()
        order = Order(
            id=uuid.uuid4(),
            status=status,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self.orders[order.id] = order
        return order

    async def get_by_id(
        self, order_id: uuid.UUID, for_update: bool = False
    ) -> Optional[Order]:
        if for_update:
            self.locked.append(order_id)
        return self.orders.get(order_id)

    async def get_many(self, order_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, Order]:
        return {oid: self.orders[oid] for oid in order_ids if oid in self.orders}

    async def create(
        self, order_number: Optional[str] = None, notes: Optional[str] = None
    ) -> Order:
        return self.add(order_number=order_number, notes=notes)

    async def update_status(self, order: Order, status: OrderStatus, **fields: Any) -> Order:
        order.status = status
        for name, value in fields.items():
            setattr(order, name, value)
        order.updated_at = _now()
        return order


class InMemoryProgressRepository:
    """Progress repository double enforcing one record per (order, stage)."""

    def __init__(self) -> None:
        self.records: dict[uuid.UUID, OrderProgress] = {}

    async def get_by_id(
        self, progress_id: uuid.UUID, refresh: bool = False
    ) -> Optional[OrderProgress]:
        return self.records.get(progress_id)

    async def find(
        self, order_id: uuid.UUID, stage: ProgressStage
    ) -> Optional[OrderProgress]:
        for record in self.records.values():
            if record.order_id == order_id and record.stage == stage:
                return record
        return None

    async def find_all(self, order_id: uuid.UUID) -> list[OrderProgress]:
        grouped = await self.find_for_orders([order_id])
        return grouped.get(order_id, [])

    async def find_for_orders(
        self, order_ids: Sequence[uuid.UUID]
    ) -> dict[uuid.UUID, list[OrderProgress]]:
        grouped: dict[uuid.UUID, list[OrderProgress]] = {}
        for record in self.records.values():
            if record.order_id in order_ids:
                grouped.setdefault(record.order_id, []).append(record)
        for records in grouped.values():
            records.sort(key=lambda record: ProgressStage(record.stage).index)
        return grouped

    async def create(
        self, order_id: uuid.UUID, stage: ProgressStage, data: dict[str, Any]
    ) -> OrderProgress:
        if await self.find(order_id, stage) is not None:
            raise DuplicateStageProgressError(
                f"Progress for {stage.value} stage already exists",
                order_id=str(order_id),
                stage=stage.value,
            )
        record = OrderProgress(
            id=uuid.uuid4(),
            order_id=order_id,
            stage=stage,
            data=data,
            created_at=_now(),
            updated_at=None,
        )
        self.records[record.id] = record
        return record

    async def update(self, record: OrderProgress, data: dict[str, Any]) -> OrderProgress:
        record.data = data
        record.updated_at = _now()
        return record

    async def delete(self, record: OrderProgress) -> None:
        self.records.pop(record.id, None)


class InMemoryRedisClient:
    """Stand-in for RedisClient holding values in a dict; expiry is ignored."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def get_json(self, key: str) -> Optional[dict[str, Any]]:
        value = self.values.get(key)
        return None if value is None else json.loads(value)

    async def set_json(
        self, key: str, value: dict[str, Any], ex: Optional[int] = None
    ) -> bool:
        self.values[key] = json.dumps(value)
        return True

    async def incr(self, key: str, amount: int = 1) -> int:
        value = int(self.values.get(key, "0")) + amount
        self.values[key] = str(value)
        return value

    async def delete(self, *keys: str) -> int:
        return sum(self.values.pop(key, None) is not None for key in keys)

    async def delete_pattern(self, pattern: str) -> int:
        return await self.delete(
            *[key for key in self.values if fnmatch.fnmatchcase(key, pattern)]
        )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def mock_session() -> AsyncMock:
    """Mock async database session."""
    session = AsyncMock(spec=AsyncSession)
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    return session


@pytest.fixture
def order_repository() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def progress_repository() -> InMemoryProgressRepository:
    return InMemoryProgressRepository()


@pytest.fixture
def progress_service(
    mock_session: AsyncMock,
    order_repository: InMemoryOrderRepository,
    progress_repository: InMemoryProgressRepository,
) -> OrderProgressService:
    """Workflow service backed by the in-memory repositories."""
    return OrderProgressService(
        mock_session,
        progress_repository=progress_repository,
        order_repository=order_repository,
    )


@pytest.fixture
def memory_redis() -> InMemoryRedisClient:
    return InMemoryRedisClient()


@pytest.fixture
def order(order_repository: InMemoryOrderRepository) -> Order:
    """A pending order with no progress."""
    return order_repository.add(order_number="ORD-0001")


@pytest.fixture
def warehouse_payload() -> dict[str, Any]:
    return {"status": True}


@pytest.fixture
def shipped_payload() -> dict[str, Any]:
    return {"status": True, "date_shipping": SHIPPED_AT}


@pytest.fixture
def delivered_payload() -> dict[str, Any]:
    return {"status": True, "date_shipping": SHIPPED_AT, "date_received": RECEIVED_AT}
