"""Order status derivation and terminal transitions.

The aggregate order status is never tracked incrementally. After every stage
create, update or delete it is recomputed from the order's full set of
progress records by ``derive_order_status`` and written over the stored
status. ``completed`` and ``cancelled`` are outside that cascade: they are
set only through the explicit transitions guarded by ``OrderLifecycle`` and,
once set, freeze the order.
"""

import uuid
from collections.abc import Iterable
from typing import Any, Callable, Optional

from orderflow.core.logging import get_logger
from orderflow.services.progress.enums import OrderStatus, ProgressStage
from orderflow.services.progress.errors import (
    ProgressPrerequisiteError,
    TerminalStateError,
)
from orderflow.services.progress.prerequisites import ProgressRecordLike
from orderflow.services.progress.stages import (
    StageSnapshot,
    is_delivered,
    is_stage_complete,
    shipping_is_complete,
    warehouse_is_complete,
)

logger = get_logger(__name__)


def _order_snapshot(
    order_id: uuid.UUID, records: Iterable[ProgressRecordLike]
) -> dict[ProgressStage, Any]:
    snapshot = {}
    for record in records:
        if record.order_id != order_id:
            continue
        snapshot[ProgressStage(record.stage)] = record.data or {}
    return snapshot


def derive_status_from_snapshot(snapshot: StageSnapshot) -> OrderStatus:
    """
    Evaluate the status cascade over one order's stage payloads.

    The most advanced matching condition wins:
    delivered > shipped > warehouse > pending.
    """
    shipping = snapshot.get(ProgressStage.SHIPPING)
    if shipping is not None:
        if is_delivered(shipping):
            return OrderStatus.DELIVERED
        if shipping_is_complete(shipping) and shipping.get("date_shipping"):
            return OrderStatus.SHIPPED

    warehouse = snapshot.get(ProgressStage.WAREHOUSE)
    if warehouse is not None and warehouse_is_complete(warehouse):
        return OrderStatus.WAREHOUSE

    return OrderStatus.PENDING


def derive_order_status(
    order_id: uuid.UUID, records: Iterable[ProgressRecordLike]
) -> OrderStatus:
    """
    Derive an order's aggregate status from its progress records.

    Args:
        order_id: Order whose status is derived
        records: Progress records; records of other orders are ignored

    Returns:
        Derived status, never COMPLETED or CANCELLED
    """
    return derive_status_from_snapshot(_order_snapshot(order_id, records))


class OrderLifecycle:
    """
    Guards for the explicit, irreversible order transitions.

    Stage mutations are allowed only while the order is not terminal.
    Completion additionally requires a complete result stage.
    """

    def __init__(self) -> None:
        self._guards: dict[OrderStatus, Callable[[Any, StageSnapshot], None]] = {
            OrderStatus.COMPLETED: self._guard_complete,
            OrderStatus.CANCELLED: self._guard_cancel,
        }

    def ensure_stage_mutable(self, order: Any, operation: str = "modify") -> None:
        """
        Reject stage changes on a completed or cancelled order.

        Raises:
            TerminalStateError: If the order is terminal
        """
        status = OrderStatus(order.status)
        if status.is_terminal():
            logger.info(
                "Stage mutation rejected on terminal order",
                order_id=str(order.id),
                status=status.value,
                operation=operation,
            )
            raise TerminalStateError(
                f"Cannot {operation} progress of a {status.value} order",
                order_id=order.id,
                status=status,
            )

    def ensure_can_complete(self, order: Any, snapshot: StageSnapshot) -> None:
        """
        Check that the order may move to COMPLETED.

        Raises:
            TerminalStateError: If the order is already completed or cancelled
            ProgressPrerequisiteError: If the result stage is not complete
        """
        self._check(order, OrderStatus.COMPLETED, snapshot)

    def ensure_can_cancel(self, order: Any) -> None:
        """
        Check that the order may move to CANCELLED.

        Raises:
            TerminalStateError: If the order is already completed or cancelled
        """
        self._check(order, OrderStatus.CANCELLED, {})

    def can_transition(
        self,
        order: Any,
        target: OrderStatus,
        snapshot: Optional[StageSnapshot] = None,
    ) -> bool:
        try:
            self._check(order, target, snapshot or {})
        except (TerminalStateError, ProgressPrerequisiteError):
            return False
        return True

    def _check(self, order: Any, target: OrderStatus, snapshot: StageSnapshot) -> None:
        if target not in self._guards:
            raise ValueError(f"{target.value} is not an explicit transition")

        current = OrderStatus(order.status)
        if current.is_terminal():
            raise TerminalStateError(
                f"Order is already {current.value}",
                order_id=order.id,
                status=current,
                target_status=target,
            )
        self._guards[target](order, snapshot)

    def _guard_complete(self, order: Any, snapshot: StageSnapshot) -> None:
        if not is_stage_complete(ProgressStage.RESULT, snapshot.get(ProgressStage.RESULT)):
            raise ProgressPrerequisiteError(
                "Result must be completed before the order can be completed",
                order_id=order.id,
                required_stage=ProgressStage.RESULT,
            )

    def _guard_cancel(self, order: Any, snapshot: StageSnapshot) -> None:
        return None
