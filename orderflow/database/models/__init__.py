"""
Database models package initialization.

Models are imported here to ensure they are registered with the Base
metadata for migration generation and foreign key resolution.
"""

from orderflow.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from orderflow.database.models.order import Order
from orderflow.database.models.order_progress import (
    UNIQUE_ORDER_STAGE_CONSTRAINT,
    OrderProgress,
)

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "Order",
    "OrderProgress",
    "UNIQUE_ORDER_STAGE_CONSTRAINT",
]
