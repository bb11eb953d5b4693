"""
Order model for staged fulfillment tracking.

This module defines the Order model whose lifecycle status is derived from
the progress recorded at each fulfillment stage. The order row is the unit
of locking for all stage mutations.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import BaseModel
from orderflow.services.progress.enums import OrderStatus


class Order(BaseModel):
    """
    Customer order tracked through the fulfillment stages.

    Attributes:
        id: Unique order identifier (UUID)
        order_number: Optional human-readable order number
        status: Current lifecycle status (derived or terminal)
        notes: Free-form order notes
        completed_at: When the order was explicitly completed
        cancelled_at: When the order was cancelled
        cancellation_reason: Reason given on cancellation
        created_at: Record creation timestamp (from BaseModel)
        updated_at: Last modification timestamp (from BaseModel)
    """

    __tablename__ = "orders"

    order_number: Mapped[Optional[str]] = mapped_column(
        String(50),
        unique=True,
        nullable=True,
        comment="Human-readable order number",
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            create_constraint=True,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
        comment="Current order status",
    )

    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Additional order notes",
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Timestamp when the order was completed",
    )

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Timestamp when the order was cancelled",
    )

    cancellation_reason: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Reason given for cancellation",
    )

    # fetch server-generated timestamps on flush; async sessions cannot lazy-load them
    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        Index(
            "ix_orders_status_created",
            "status",
            "created_at",
        ),
        {"comment": "Customer orders tracked through fulfillment stages"},
    )

    @property
    def is_terminal(self) -> bool:
        """Check if the order is completed or cancelled."""
        return self.status.is_terminal()
