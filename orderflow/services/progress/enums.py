"""Order status and progress stage enums for the fulfillment workflow.

This module defines the order lifecycle statuses and the four fixed progress
stages an order passes through, together with the ordering helpers used by
the prerequisite checks.
"""

from enum import Enum
from typing import Optional


class OrderStatus(str, Enum):
    """Order lifecycle status.

    Derived statuses (recomputed after every stage change):
    - PENDING: no stage has progressed yet
    - WAREHOUSE: goods released from the warehouse
    - SHIPPED: goods shipped, not yet received
    - DELIVERED: goods received by the customer

    Explicit terminal statuses (set only by complete/cancel):
    - COMPLETED
    - CANCELLED

    APPLIED and AMENDED are stored values kept for compatibility with
    existing order rows; the derivation cascade never produces them.
    """

    PENDING = "pending"
    WAREHOUSE = "warehouse"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    APPLIED = "applied"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    AMENDED = "amended"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid order status: {value}. "
                f"Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        """Check if status is terminal (COMPLETED or CANCELLED)."""
        return self in {OrderStatus.COMPLETED, OrderStatus.CANCELLED}

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class ProgressStage(str, Enum):
    """Fulfillment stages in their fixed order.

    warehouse(0) < shipping(1) < applied(2) < result(3)
    """

    WAREHOUSE = "warehouse"
    SHIPPING = "shipping"
    APPLIED = "applied"
    RESULT = "result"

    @classmethod
    def ordered(cls) -> tuple["ProgressStage", ...]:
        """All stages in workflow order."""
        return tuple(cls)

    @classmethod
    def from_string(cls, value: str) -> "ProgressStage":
        """Convert string to ProgressStage enum.

        Raises:
            ValueError: If value is not a valid stage
        """
        try:
            return cls(value.strip().lower())
        except (ValueError, AttributeError):
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid progress stage: {value}. "
                f"Valid values are: {valid_values}"
            )

    @property
    def index(self) -> int:
        """Position of the stage in the workflow, starting at 0."""
        return self.ordered().index(self)

    @property
    def previous(self) -> Optional["ProgressStage"]:
        """Stage immediately before this one, or None for the first stage."""
        if self.index == 0:
            return None
        return self.ordered()[self.index - 1]

    @property
    def following(self) -> tuple["ProgressStage", ...]:
        """Every stage strictly later than this one."""
        return self.ordered()[self.index + 1:]

    @property
    def display_name(self) -> str:
        return self.value.title()


class YieldEfficiency(str, Enum):
    """Band of yield obtained per unit of applied area."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
