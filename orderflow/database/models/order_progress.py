"""
Order progress model storing one payload per fulfillment stage.

Each row captures the state of a single stage for one order. The stage
payload is stored as JSON (JSONB on PostgreSQL) and its shape depends on
the stage. A unique constraint guarantees at most one row per
(order_id, stage).
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import Base, UUIDMixin
from orderflow.services.progress.enums import ProgressStage

UNIQUE_ORDER_STAGE_CONSTRAINT = "uq_order_progress_order_stage"


class OrderProgress(Base, UUIDMixin):
    """
    Progress record for one stage of one order.

    Attributes:
        id: Unique progress identifier (UUID)
        order_id: Owning order
        stage: Fulfillment stage this record describes
        data: Stage payload, replaced wholesale on update
        created_at: When the stage was first recorded
        updated_at: When the payload was last replaced, None if never
    """

    __tablename__ = "order_progress"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="Order this progress belongs to",
    )

    stage: Mapped[ProgressStage] = mapped_column(
        SQLEnum(
            ProgressStage,
            name="progress_stage",
            create_constraint=True,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        comment="Fulfillment stage",
    )

    data: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=dict,
        comment="Stage payload",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when the stage was recorded",
    )

    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        default=None,
        comment="Timestamp of the last payload update",
    )

    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        UniqueConstraint(
            "order_id",
            "stage",
            name=UNIQUE_ORDER_STAGE_CONSTRAINT,
        ),
        Index(
            "ix_order_progress_order",
            "order_id",
        ),
        {"comment": "Per-stage fulfillment progress for orders"},
    )
