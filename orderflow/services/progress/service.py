"""
Order progress workflow service.

This module implements the OrderProgressService, the single entry point for
stage progress operations. Every mutation runs as one transaction on the
caller's session:

    lock order -> terminal check -> validate -> prerequisite check
    -> persist -> re-derive order status -> commit -> invalidate cache

Any failure rolls the transaction back, so no partial record or stale status
is left behind. Business-rule rejections propagate as typed
``ProgressWorkflowError`` subclasses; database failures are reported as the
retryable ``ProgressStorageError``.
"""

import uuid
from collections.abc import Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.logging import bind_order_id, get_logger, log_performance
from orderflow.database.models.order import Order
from orderflow.database.models.order_progress import OrderProgress
from orderflow.services.cache.progress_cache import ProgressCache
from orderflow.services.progress.enums import OrderStatus, ProgressStage
from orderflow.services.progress.errors import (
    OrderNotFoundError,
    ProgressConflictError,
    ProgressNotFoundError,
    ProgressStorageError,
    ProgressValidationError,
    ProgressWorkflowError,
)
from orderflow.services.progress.prerequisites import (
    PrerequisiteChecker,
    build_snapshot,
    missing_prerequisites,
)
from orderflow.services.progress.repository import (
    DuplicateStageProgressError,
    OrderRepository,
    ProgressRepository,
    ProgressRepositoryError,
)
from orderflow.services.progress.stages import (
    NOTES_MAX_LENGTH,
    ResultAnalysis,
    StageAnalysis,
    StageSnapshot,
    analyze_stages,
    application_efficiency,
    area_variance,
    has_yield_gain,
    result_analysis,
    stage_completion,
    yield_per_area,
)
from orderflow.services.progress.state_machine import (
    OrderLifecycle,
    derive_order_status,
)
from orderflow.services.progress.validators import parse_stage, validate_stage_payload

logger = get_logger(__name__)

StageLike = Union[str, ProgressStage]


@dataclass(frozen=True)
class ProgressSummary:
    """
    Progress overview of one order.

    ``current_stage`` is the first incomplete stage and ``next_stage`` the one
    after it. ``blocked_by`` lists the unmet prerequisites of the current
    stage when it has no record yet.
    """

    order_id: uuid.UUID
    order_status: OrderStatus
    stage_status: dict[ProgressStage, bool]
    completed_stages: list[ProgressStage]
    current_stage: Optional[ProgressStage]
    next_stage: Optional[ProgressStage]
    percent_complete: int
    is_fully_complete: bool
    blocked_by: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "order_status": self.order_status.value,
            "stage_status": {
                stage.value: done for stage, done in self.stage_status.items()
            },
            "completed_stages": [stage.value for stage in self.completed_stages],
            "current_stage": self.current_stage.value if self.current_stage else None,
            "next_stage": self.next_stage.value if self.next_stage else None,
            "percent_complete": self.percent_complete,
            "is_fully_complete": self.is_fully_complete,
            "blocked_by": list(self.blocked_by),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgressSummary":
        def _stage(value: Optional[str]) -> Optional[ProgressStage]:
            return ProgressStage(value) if value else None

        return cls(
            order_id=uuid.UUID(data["order_id"]),
            order_status=OrderStatus(data["order_status"]),
            stage_status={
                ProgressStage(stage): bool(done)
                for stage, done in data["stage_status"].items()
            },
            completed_stages=[ProgressStage(s) for s in data["completed_stages"]],
            current_stage=_stage(data.get("current_stage")),
            next_stage=_stage(data.get("next_stage")),
            percent_complete=int(data["percent_complete"]),
            is_fully_complete=bool(data["is_fully_complete"]),
            blocked_by=list(data.get("blocked_by") or []),
        )


def build_progress_summary(
    order: Order, records: Sequence[OrderProgress]
) -> ProgressSummary:
    """Compute an order's progress summary from its stage records."""
    snapshot = build_snapshot(records)
    status = stage_completion(snapshot)
    stages = ProgressStage.ordered()

    completed = [stage for stage in stages if status[stage]]
    current = next((stage for stage in stages if not status[stage]), None)
    following = current.following if current else ()
    blocked_by = []
    if current is not None and current not in snapshot:
        blocked_by = missing_prerequisites(snapshot, current)

    return ProgressSummary(
        order_id=order.id,
        order_status=OrderStatus(order.status),
        stage_status=status,
        completed_stages=completed,
        current_stage=current,
        next_stage=following[0] if following else None,
        percent_complete=round(len(completed) / len(stages) * 100),
        is_fully_complete=len(completed) == len(stages),
        blocked_by=blocked_by,
    )


class OrderProgressService:
    """
    Workflow coordinator for staged order progress.

    Attributes:
        session: Async database session; the service commits and rolls back
        progress_repository: Stage record data access
        order_repository: Order data access
        prerequisites: Creation/deletion gating
        lifecycle: Terminal transition guards
        cache: Optional progress view cache
    """

    def __init__(
        self,
        session: AsyncSession,
        cache: Optional[ProgressCache] = None,
        progress_repository: Optional[ProgressRepository] = None,
        order_repository: Optional[OrderRepository] = None,
    ):
        """
        Initialize order progress service.

        Args:
            session: Async database session
            cache: Optional cache invalidated after every committed mutation
            progress_repository: Override of the progress repository
            order_repository: Override of the order repository
        """
        self.session = session
        self.progress_repository = progress_repository or ProgressRepository(session)
        self.order_repository = order_repository or OrderRepository(session)
        self.prerequisites = PrerequisiteChecker(self.progress_repository)
        self.lifecycle = OrderLifecycle()
        self.cache = cache

    # ========================================================================
    # Transaction helpers
    # ========================================================================

    @asynccontextmanager
    async def _transaction(self, operation: str, **context: Any) -> AsyncIterator[None]:
        """Commit on success, roll back and translate storage errors on failure."""
        try:
            yield
            await self.session.commit()
        except DuplicateStageProgressError as e:
            await self.session.rollback()
            raise ProgressConflictError(str(e), **e.context) from e
        except ProgressWorkflowError:
            await self.session.rollback()
            raise
        except (ProgressRepositoryError, SQLAlchemyError) as e:
            await self.session.rollback()
            logger.error(
                "Progress operation failed - storage error",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise ProgressStorageError(
                f"Storage failure during {operation}",
                operation=operation,
                error=str(e),
                **context,
            ) from e
        except Exception:
            await self.session.rollback()
            logger.error(
                "Progress operation failed - unexpected error",
                operation=operation,
                exc_info=True,
                **context,
            )
            raise

    @asynccontextmanager
    async def _reading(self, operation: str, **context: Any) -> AsyncIterator[None]:
        """Translate storage errors raised by read-only operations."""
        try:
            yield
        except (ProgressRepositoryError, SQLAlchemyError) as e:
            logger.error(
                "Progress query failed - storage error",
                operation=operation,
                error=str(e),
                **context,
            )
            raise ProgressStorageError(
                f"Storage failure during {operation}",
                operation=operation,
                error=str(e),
                **context,
            ) from e

    async def _get_order(self, order_id: uuid.UUID, for_update: bool = False) -> Order:
        order = await self.order_repository.get_by_id(order_id, for_update=for_update)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=order_id)
        return order

    async def _get_record(
        self, progress_id: uuid.UUID, refresh: bool = False
    ) -> OrderProgress:
        record = await self.progress_repository.get_by_id(progress_id, refresh=refresh)
        if record is None:
            raise ProgressNotFoundError(
                "Progress record not found", progress_id=progress_id
            )
        return record

    async def _locate_record(self, progress_id: uuid.UUID) -> OrderProgress:
        """
        Find the record to learn which order to lock.

        Only the order ID of the result is trusted. Callers re-read the
        record after locking the order row.
        """
        record = await self._get_record(progress_id)
        bind_order_id(record.order_id)
        return record

    async def _rederive_status(self, order: Order) -> OrderStatus:
        """Recompute the order status from its records and store it."""
        records = await self.progress_repository.find_all(order.id)
        status = derive_order_status(order.id, records)
        await self.order_repository.update_status(order, status)
        return status

    async def _invalidate(self, order_id: uuid.UUID) -> None:
        if self.cache is not None:
            await self.cache.invalidate_order(order_id)

    # ========================================================================
    # Orders
    # ========================================================================

    async def create_order(
        self,
        order_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Create a pending order with no stage progress.

        Raises:
            ProgressStorageError: If the order cannot be stored
        """
        async with self._transaction("create_order", order_number=order_number):
            order = await self.order_repository.create(
                order_number=order_number, notes=notes
            )
        await self._invalidate(order.id)
        return order

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """
        Raises:
            OrderNotFoundError: If the order does not exist
        """
        async with self._reading("get_order", order_id=str(order_id)):
            return await self._get_order(order_id)

    # ========================================================================
    # Stage mutations
    # ========================================================================

    async def create_stage_progress(
        self,
        order_id: uuid.UUID,
        stage: StageLike,
        payload: Any,
    ) -> OrderProgress:
        """
        Record progress for a stage of an order.

        Args:
            order_id: Order identifier
            stage: Stage to create
            payload: Untyped stage payload

        Returns:
            Created progress record

        Raises:
            OrderNotFoundError: If the order does not exist
            TerminalStateError: If the order is completed or cancelled
            ProgressValidationError: If the stage or payload is invalid
            ProgressConflictError: If the stage already has a record
            ProgressPrerequisiteError: If an earlier stage is missing or incomplete
            ProgressStorageError: If the database fails
        """
        stage = parse_stage(stage)
        bind_order_id(order_id)
        context = {"order_id": str(order_id), "stage": stage.value}

        with log_performance(logger, "create_stage_progress", **context):
            async with self._transaction("create_stage_progress", **context):
                order = await self._get_order(order_id, for_update=True)
                self.lifecycle.ensure_stage_mutable(order, "create")
                data = validate_stage_payload(stage, payload)
                await self.prerequisites.ensure_can_create(order_id, stage)
                record = await self.progress_repository.create(order_id, stage, data)
                status = await self._rederive_status(order)

        logger.info(
            "Stage progress recorded",
            progress_id=str(record.id),
            order_status=status.value,
            **context,
        )
        await self._invalidate(order_id)
        return record

    async def update_stage_progress(
        self,
        progress_id: uuid.UUID,
        payload: Any,
    ) -> OrderProgress:
        """
        Replace the payload of an existing stage record.

        The payload is validated against the record's own stage. Prerequisites
        are not re-checked: a stage that was legitimately created stays
        editable.

        Raises:
            ProgressNotFoundError: If the record does not exist
            TerminalStateError: If the owning order is completed or cancelled
            ProgressValidationError: If the payload is invalid
            ProgressStorageError: If the database fails
        """
        context: dict[str, Any] = {"progress_id": str(progress_id)}

        with log_performance(logger, "update_stage_progress", **context):
            async with self._transaction("update_stage_progress", **context):
                record = await self._locate_record(progress_id)
                order = await self._get_order(record.order_id, for_update=True)
                record = await self._get_record(progress_id, refresh=True)
                stage = ProgressStage(record.stage)
                self.lifecycle.ensure_stage_mutable(order, "update")
                data = validate_stage_payload(stage, payload)
                record = await self.progress_repository.update(record, data)
                status = await self._rederive_status(order)

        logger.info(
            "Stage progress replaced",
            order_id=str(record.order_id),
            stage=stage.value,
            order_status=status.value,
            **context,
        )
        await self._invalidate(record.order_id)
        return record

    async def delete_stage_progress(self, progress_id: uuid.UUID) -> OrderStatus:
        """
        Delete a stage record no later stage depends on.

        Returns:
            Order status derived after the deletion

        Raises:
            ProgressNotFoundError: If the record does not exist
            TerminalStateError: If the owning order is completed or cancelled
            ProgressConflictError: If a later stage still has a record
            ProgressStorageError: If the database fails
        """
        context: dict[str, Any] = {"progress_id": str(progress_id)}

        with log_performance(logger, "delete_stage_progress", **context):
            async with self._transaction("delete_stage_progress", **context):
                order_id = (await self._locate_record(progress_id)).order_id
                order = await self._get_order(order_id, for_update=True)
                record = await self._get_record(progress_id, refresh=True)
                stage = ProgressStage(record.stage)
                self.lifecycle.ensure_stage_mutable(order, "delete")
                await self.prerequisites.ensure_can_delete(order_id, stage)
                await self.progress_repository.delete(record)
                status = await self._rederive_status(order)

        logger.info(
            "Stage progress deleted",
            order_id=str(order_id),
            stage=stage.value,
            order_status=status.value,
            **context,
        )
        await self._invalidate(order_id)
        return status

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_stage_progress(
        self, order_id: uuid.UUID, stage: StageLike
    ) -> OrderProgress:
        """
        Get the record of one stage.

        Raises:
            OrderNotFoundError: If the order does not exist
            ProgressNotFoundError: If the stage has no record
            ProgressValidationError: If the stage name is invalid
        """
        stage = parse_stage(stage)
        async with self._reading("get_stage_progress", order_id=str(order_id)):
            await self._get_order(order_id)
            record = await self.progress_repository.find(order_id, stage)
        if record is None:
            raise ProgressNotFoundError(
                f"No {stage.value} progress recorded for order",
                order_id=order_id,
                stage=stage,
            )
        return record

    async def list_stage_progress(self, order_id: uuid.UUID) -> list[OrderProgress]:
        """Get every stage record of an order, in workflow order."""
        async with self._reading("list_stage_progress", order_id=str(order_id)):
            await self._get_order(order_id)
            return await self.progress_repository.find_all(order_id)

    async def get_stage_status(self, order_id: uuid.UUID) -> dict[ProgressStage, bool]:
        """
        Completeness of every stage of an order.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        records = await self.list_stage_progress(order_id)
        return stage_completion(build_snapshot(records))

    async def get_next_available_stage(
        self, order_id: uuid.UUID
    ) -> Optional[ProgressStage]:
        """
        First stage, in workflow order, that is not complete.

        Returns:
            Stage, or None when all four stages are complete
        """
        status = await self.get_stage_status(order_id)
        return next((stage for stage, done in status.items() if not done), None)

    async def get_progress_summary(self, order_id: uuid.UUID) -> ProgressSummary:
        """
        Progress overview of an order, served from cache when available.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        # read before the database so a concurrent invalidation retires our write
        generation = None
        if self.cache is not None:
            generation = await self.cache.get_generation(order_id)
        if generation is not None:
            cached = await self.cache.get_summary(order_id, generation)
            if cached is not None:
                return ProgressSummary.from_dict(cached)

        async with self._reading("get_progress_summary", order_id=str(order_id)):
            order = await self._get_order(order_id)
            records = await self.progress_repository.find_all(order_id)

        summary = build_progress_summary(order, records)
        if generation is not None:
            await self.cache.set_summary(order_id, summary.to_dict(), generation)
        return summary

    async def get_bulk_progress_summary(
        self, order_ids: Sequence[uuid.UUID]
    ) -> dict[uuid.UUID, ProgressSummary]:
        """
        Progress overviews of several orders, loaded in two queries.

        Returns:
            Summaries keyed by order ID, in request order without duplicates

        Raises:
            OrderNotFoundError: If any of the orders does not exist
        """
        unique_ids = list(dict.fromkeys(order_ids))

        with log_performance(logger, "get_bulk_progress_summary", order_count=len(unique_ids)):
            async with self._reading("get_bulk_progress_summary", order_count=len(unique_ids)):
                orders = await self.order_repository.get_many(unique_ids)
                missing = [order_id for order_id in unique_ids if order_id not in orders]
                if missing:
                    raise OrderNotFoundError(
                        "Orders not found",
                        order_ids=[str(order_id) for order_id in missing],
                    )
                records = await self.progress_repository.find_for_orders(unique_ids)

        return {
            order_id: build_progress_summary(orders[order_id], records.get(order_id, []))
            for order_id in unique_ids
        }

    # ========================================================================
    # Analytics
    # ========================================================================

    async def _load_snapshot(self, operation: str, order_id: uuid.UUID) -> StageSnapshot:
        async with self._reading(operation, order_id=str(order_id)):
            await self._get_order(order_id)
            return await self.prerequisites.load_snapshot(order_id)

    async def get_application_efficiency(self, order_id: uuid.UUID) -> Optional[float]:
        """Actual applied area as a percentage of the estimate, None if unrecorded."""
        snapshot = await self._load_snapshot("get_application_efficiency", order_id)
        return application_efficiency(snapshot)

    async def get_area_variance(self, order_id: uuid.UUID) -> Optional[float]:
        snapshot = await self._load_snapshot("get_area_variance", order_id)
        return area_variance(snapshot)

    async def has_yield_gain(self, order_id: uuid.UUID) -> bool:
        snapshot = await self._load_snapshot("has_yield_gain", order_id)
        return has_yield_gain(snapshot)

    async def get_yield_per_area(self, order_id: uuid.UUID) -> Optional[float]:
        snapshot = await self._load_snapshot("get_yield_per_area", order_id)
        return yield_per_area(snapshot)

    async def get_result_analysis(self, order_id: uuid.UUID) -> Optional[ResultAnalysis]:
        """
        Outcome of the application with its yield efficiency band.

        Returns:
            Analysis, or None unless both applied and result are recorded

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        snapshot = await self._load_snapshot("get_result_analysis", order_id)
        return result_analysis(snapshot)

    async def get_stage_analysis(self, order_id: uuid.UUID) -> StageAnalysis:
        """Every analytic of an order, read in one query."""
        snapshot = await self._load_snapshot("get_stage_analysis", order_id)
        return analyze_stages(snapshot)

    # ========================================================================
    # Terminal transitions
    # ========================================================================

    async def complete_order(self, order_id: uuid.UUID) -> Order:
        """
        Mark an order completed. Irreversible.

        Raises:
            OrderNotFoundError: If the order does not exist
            TerminalStateError: If the order is already completed or cancelled
            ProgressPrerequisiteError: If the result stage is not complete
            ProgressStorageError: If the database fails
        """
        bind_order_id(order_id)
        context = {"order_id": str(order_id)}

        async with self._transaction("complete_order", **context):
            order = await self._get_order(order_id, for_update=True)
            snapshot = await self.prerequisites.load_snapshot(order_id)
            self.lifecycle.ensure_can_complete(order, snapshot)
            await self.order_repository.update_status(
                order,
                OrderStatus.COMPLETED,
                completed_at=datetime.now(timezone.utc),
            )

        logger.info("Order completed", **context)
        await self._invalidate(order_id)
        return order

    async def cancel_order(
        self, order_id: uuid.UUID, reason: Optional[str] = None
    ) -> Order:
        """
        Cancel an order, freezing all of its stage progress. Irreversible.

        Args:
            order_id: Order identifier
            reason: Optional cancellation reason

        Raises:
            OrderNotFoundError: If the order does not exist
            TerminalStateError: If the order is already completed or cancelled
            ProgressValidationError: If the reason is too long
            ProgressStorageError: If the database fails
        """
        if reason is not None:
            reason = reason.strip() or None
        if reason is not None and len(reason) > NOTES_MAX_LENGTH:
            raise ProgressValidationError(
                f"Cancellation reason cannot exceed {NOTES_MAX_LENGTH} characters",
                field="reason",
                order_id=order_id,
            )

        bind_order_id(order_id)
        context = {"order_id": str(order_id)}

        async with self._transaction("cancel_order", **context):
            order = await self._get_order(order_id, for_update=True)
            self.lifecycle.ensure_can_cancel(order)
            await self.order_repository.update_status(
                order,
                OrderStatus.CANCELLED,
                cancelled_at=datetime.now(timezone.utc),
                cancellation_reason=reason,
            )

        logger.info("Order cancelled", reason=reason, **context)
        await self._invalidate(order_id)
        return order
