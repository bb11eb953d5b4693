"""
Order and progress data access repositories.

Both repositories work inside the caller's session and never commit: the
workflow service owns the transaction. Database failures are logged and
re-raised as repository errors; a unique-constraint violation on
(order_id, stage) is reported separately so the service can surface it as a
conflict instead of a storage failure.
"""

import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order
from orderflow.database.models.order_progress import (
    UNIQUE_ORDER_STAGE_CONSTRAINT,
    OrderProgress,
)
from orderflow.services.progress.enums import OrderStatus, ProgressStage

logger = get_logger(__name__)


class ProgressRepositoryError(Exception):
    """Base exception for progress repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class DuplicateStageProgressError(ProgressRepositoryError):
    """Raised when a record for the (order_id, stage) pair already exists."""

    pass


def _is_duplicate_stage(error: IntegrityError) -> bool:
    detail = str(error.orig) if error.orig is not None else str(error)
    return (
        UNIQUE_ORDER_STAGE_CONSTRAINT in detail
        or "order_progress.order_id, order_progress.stage" in detail
    )


class ProgressRepository:
    """
    Repository for progress record access.

    Attributes:
        session: Async database session owned by the caller
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(
        self, progress_id: uuid.UUID, refresh: bool = False
    ) -> Optional[OrderProgress]:
        """
        Get a progress record by ID.

        Args:
            progress_id: Progress record identifier
            refresh: Overwrite an instance already in the session with the
                row as currently stored

        Raises:
            ProgressRepositoryError: If query fails
        """
        try:
            stmt = select(OrderProgress).where(OrderProgress.id == progress_id)
            if refresh:
                stmt = stmt.execution_options(populate_existing=True)
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch progress record",
                progress_id=str(progress_id),
                error=str(e),
            )
            raise ProgressRepositoryError(
                "Failed to fetch progress record",
                progress_id=str(progress_id),
                error=str(e),
            ) from e

    async def find(
        self, order_id: uuid.UUID, stage: ProgressStage
    ) -> Optional[OrderProgress]:
        """
        Get the record of one stage of an order.

        Raises:
            ProgressRepositoryError: If query fails
        """
        try:
            result = await self.session.execute(
                select(OrderProgress).where(
                    OrderProgress.order_id == order_id,
                    OrderProgress.stage == stage,
                )
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch stage progress",
                order_id=str(order_id),
                stage=stage.value,
                error=str(e),
            )
            raise ProgressRepositoryError(
                "Failed to fetch stage progress",
                order_id=str(order_id),
                stage=stage.value,
                error=str(e),
            ) from e

    async def find_all(self, order_id: uuid.UUID) -> list[OrderProgress]:
        """
        Get every progress record of an order, in workflow order.

        Raises:
            ProgressRepositoryError: If query fails
        """
        records = await self.find_for_orders([order_id])
        return records.get(order_id, [])

    async def find_for_orders(
        self, order_ids: Sequence[uuid.UUID]
    ) -> dict[uuid.UUID, list[OrderProgress]]:
        """
        Get the progress records of several orders in one query.

        Returns:
            Records grouped by order ID; orders without records are absent

        Raises:
            ProgressRepositoryError: If query fails
        """
        if not order_ids:
            return {}
        try:
            result = await self.session.execute(
                select(OrderProgress).where(OrderProgress.order_id.in_(order_ids))
            )
            grouped: dict[uuid.UUID, list[OrderProgress]] = {}
            for record in result.scalars().all():
                grouped.setdefault(record.order_id, []).append(record)
            for records in grouped.values():
                records.sort(key=lambda record: ProgressStage(record.stage).index)
            return grouped
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order progress",
                order_count=len(order_ids),
                error=str(e),
            )
            raise ProgressRepositoryError(
                "Failed to fetch order progress",
                order_ids=[str(order_id) for order_id in order_ids],
                error=str(e),
            ) from e

    async def create(
        self,
        order_id: uuid.UUID,
        stage: ProgressStage,
        data: dict[str, Any],
    ) -> OrderProgress:
        """
        Insert a progress record and flush it.

        Args:
            order_id: Owning order
            stage: Stage of the record
            data: Validated stage payload

        Returns:
            Created progress record

        Raises:
            DuplicateStageProgressError: If the stage already has a record
            ProgressRepositoryError: If the insert fails
        """
        record = OrderProgress(order_id=order_id, stage=stage, data=data)
        try:
            self.session.add(record)
            await self.session.flush()
            await self.session.refresh(record)
        except IntegrityError as e:
            if _is_duplicate_stage(e):
                logger.warning(
                    "Duplicate stage progress rejected by store",
                    order_id=str(order_id),
                    stage=stage.value,
                )
                raise DuplicateStageProgressError(
                    f"Progress for {stage.value} stage already exists",
                    order_id=str(order_id),
                    stage=stage.value,
                ) from e
            logger.error(
                "Progress creation failed - integrity error",
                order_id=str(order_id),
                stage=stage.value,
                error=str(e),
            )
            raise ProgressRepositoryError(
                "Progress creation failed due to data integrity violation",
                order_id=str(order_id),
                stage=stage.value,
                error=str(e),
            ) from e
        except SQLAlchemyError as e:
            logger.error(
                "Progress creation failed - database error",
                order_id=str(order_id),
                stage=stage.value,
                error=str(e),
            )
            raise ProgressRepositoryError(
                "Progress creation failed due to database error",
                order_id=str(order_id),
                stage=stage.value,
                error=str(e),
            ) from e

        logger.info(
            "Stage progress created",
            progress_id=str(record.id),
            order_id=str(order_id),
            stage=stage.value,
        )
        return record

    async def update(
        self, record: OrderProgress, data: dict[str, Any]
    ) -> OrderProgress:
        """
        Replace a record's payload wholesale and stamp ``updated_at``.

        Raises:
            ProgressRepositoryError: If the update fails
        """
        try:
            record.data = data
            record.updated_at = datetime.now(timezone.utc)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Progress update failed",
                progress_id=str(record.id),
                error=str(e),
            )
            raise ProgressRepositoryError(
                "Progress update failed",
                progress_id=str(record.id),
                error=str(e),
            ) from e

        logger.info(
            "Stage progress updated",
            progress_id=str(record.id),
            order_id=str(record.order_id),
            stage=ProgressStage(record.stage).value,
        )
        return record

    async def delete(self, record: OrderProgress) -> None:
        """
        Delete a progress record.

        Raises:
            ProgressRepositoryError: If the delete fails
        """
        try:
            await self.session.delete(record)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Progress deletion failed",
                progress_id=str(record.id),
                error=str(e),
            )
            raise ProgressRepositoryError(
                "Progress deletion failed",
                progress_id=str(record.id),
                error=str(e),
            ) from e

        logger.info(
            "Stage progress deleted",
            progress_id=str(record.id),
            order_id=str(record.order_id),
            stage=ProgressStage(record.stage).value,
        )


class OrderRepository:
    """
    Repository for the order rows whose status the workflow maintains.

    Attributes:
        session: Async database session owned by the caller
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(
        self, order_id: uuid.UUID, for_update: bool = False
    ) -> Optional[Order]:
        """
        Get order by ID.

        Args:
            order_id: Order identifier
            for_update: Lock the row until the transaction ends

        Returns:
            Order if found, None otherwise

        Raises:
            ProgressRepositoryError: If query fails
        """
        try:
            stmt = select(Order).where(Order.id == order_id)
            if for_update:
                stmt = stmt.with_for_update()
            result = await self.session.execute(stmt)
            order = result.scalar_one_or_none()

            logger.debug(
                "Order lookup",
                order_id=str(order_id),
                found=order is not None,
                locked=for_update,
            )
            return order
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            )
            raise ProgressRepositoryError(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def get_many(self, order_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, Order]:
        """
        Get several orders by ID.

        Raises:
            ProgressRepositoryError: If query fails
        """
        if not order_ids:
            return {}
        try:
            result = await self.session.execute(
                select(Order).where(Order.id.in_(order_ids))
            )
            return {order.id: order for order in result.scalars().all()}
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch orders",
                order_count=len(order_ids),
                error=str(e),
            )
            raise ProgressRepositoryError(
                "Failed to fetch orders",
                order_ids=[str(order_id) for order_id in order_ids],
                error=str(e),
            ) from e

    async def create(
        self,
        order_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Create a pending order.

        Raises:
            ProgressRepositoryError: If the insert fails
        """
        order = Order(
            order_number=order_number,
            notes=notes,
            status=OrderStatus.PENDING,
        )
        try:
            self.session.add(order)
            await self.session.flush()
            await self.session.refresh(order)
        except SQLAlchemyError as e:
            logger.error(
                "Order creation failed",
                order_number=order_number,
                error=str(e),
            )
            raise ProgressRepositoryError(
                "Order creation failed",
                order_number=order_number,
                error=str(e),
            ) from e

        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order_number,
        )
        return order

    async def update_status(
        self, order: Order, status: OrderStatus, **fields: Any
    ) -> Order:
        """
        Overwrite the order's status.

        Args:
            order: Order to update
            status: New status
            **fields: Additional columns to set, e.g. ``cancelled_at``

        Returns:
            Updated order

        Raises:
            ProgressRepositoryError: If the update fails
        """
        old_status = order.status
        try:
            order.status = status
            for name, value in fields.items():
                setattr(order, name, value)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to update order status",
                order_id=str(order.id),
                error=str(e),
            )
            raise ProgressRepositoryError(
                "Failed to update order status",
                order_id=str(order.id),
                error=str(e),
            ) from e

        if old_status != status:
            logger.info(
                "Order status updated",
                order_id=str(order.id),
                old_status=OrderStatus(old_status).value if old_status else None,
                new_status=status.value,
            )
        return order
