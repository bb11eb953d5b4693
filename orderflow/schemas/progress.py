"""
Order progress Pydantic schemas for API request/response validation.

Stage payloads are accepted as untyped objects here and validated by the
workflow engine, so that payload errors come back as field-attributed
workflow validation errors rather than generic request errors.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orderflow.services.progress.enums import (
    OrderStatus,
    ProgressStage,
    YieldEfficiency,
)
from orderflow.services.progress.stages import NOTES_MAX_LENGTH

MAX_BULK_ORDERS = 100


class OrderCreateRequest(BaseModel):
    """Request to open an order for progress tracking."""

    model_config = ConfigDict(str_strip_whitespace=True)

    order_number: Optional[str] = Field(
        None,
        min_length=1,
        max_length=50,
        description="Human-readable order number",
    )
    notes: Optional[str] = Field(
        None,
        max_length=2000,
        description="Additional order notes",
    )


class OrderCancelRequest(BaseModel):
    """Request to cancel an order."""

    model_config = ConfigDict(str_strip_whitespace=True)

    reason: Optional[str] = Field(
        None,
        max_length=NOTES_MAX_LENGTH,
        description="Reason for cancellation",
    )


class OrderResponse(BaseModel):
    """Order with its current lifecycle status."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: Optional[str] = None
    status: OrderStatus
    notes: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class StageProgressRequest(BaseModel):
    """Stage payload for create and update; its shape depends on the stage."""

    data: dict[str, Any] = Field(
        ...,
        description="Stage payload",
        examples=[{"status": True, "date_shipping": "2024-03-01T08:00:00Z"}],
    )


class StageProgressResponse(BaseModel):
    """One stored stage record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    stage: ProgressStage
    data: dict[str, Any]
    created_at: datetime
    updated_at: Optional[datetime] = None


class StageProgressListResponse(BaseModel):
    order_id: UUID
    items: list[StageProgressResponse]
    total: int


class StageDeletionResponse(BaseModel):
    """Outcome of deleting a stage record."""

    progress_id: UUID
    order_status: OrderStatus


class StageStatusResponse(BaseModel):
    """Completeness of every stage and the first incomplete one."""

    order_id: UUID
    stages: dict[ProgressStage, bool]
    next_stage: Optional[ProgressStage] = None


class ProgressSummaryResponse(BaseModel):
    """Progress overview of one order."""

    model_config = ConfigDict(from_attributes=True)

    order_id: UUID
    order_status: OrderStatus
    stage_status: dict[ProgressStage, bool]
    completed_stages: list[ProgressStage]
    current_stage: Optional[ProgressStage] = None
    next_stage: Optional[ProgressStage] = None
    percent_complete: int = Field(..., ge=0, le=100)
    is_fully_complete: bool
    blocked_by: list[str] = Field(default_factory=list)


class ResultAnalysisResponse(BaseModel):
    has_yield: bool
    yield_amount: Optional[float] = None
    applied_area: Optional[float] = None
    yield_per_area: Optional[float] = None
    efficiency: Optional[YieldEfficiency] = None


class StageAnalysisResponse(BaseModel):
    """Application efficiency and yield figures of one order."""

    order_id: UUID
    application_efficiency: Optional[float] = Field(
        None, description="Actual applied area as a percentage of the estimate"
    )
    area_variance: Optional[float] = Field(
        None, description="Actual minus estimated applied area"
    )
    has_yield_gain: bool
    yield_per_area: Optional[float] = None
    result: Optional[ResultAnalysisResponse] = None


class BulkProgressSummaryRequest(BaseModel):
    order_ids: list[UUID] = Field(
        ...,
        min_length=1,
        description="Orders to summarize",
    )

    @field_validator("order_ids")
    @classmethod
    def validate_order_count(cls, v: list[UUID]) -> list[UUID]:
        if len(v) > MAX_BULK_ORDERS:
            raise ValueError(f"At most {MAX_BULK_ORDERS} orders per request")
        return v


class BulkProgressSummaryResponse(BaseModel):
    summaries: dict[UUID, ProgressSummaryResponse]
    total: int


class ErrorResponse(BaseModel):
    """Body returned for every rejected request."""

    error: str
    kind: str
    message: str
    field: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None
