"""
Order lifecycle API endpoints.

Opening an order for tracking, reading its current status, and the two
explicit terminal transitions: completion and cancellation.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, status

from orderflow.api.deps import ProgressService
from orderflow.core.logging import get_logger
from orderflow.schemas.progress import (
    ErrorResponse,
    OrderCancelRequest,
    OrderCreateRequest,
    OrderResponse,
)

logger = get_logger(__name__)

router = APIRouter(
    prefix="/orders",
    tags=["orders"],
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open order for progress tracking",
)
async def create_order(
    request: OrderCreateRequest,
    service: ProgressService,
) -> OrderResponse:
    order = await service.create_order(
        order_number=request.order_number,
        notes=request.notes,
    )
    return OrderResponse.model_validate(order)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(order_id: UUID, service: ProgressService) -> OrderResponse:
    order = await service.get_order(order_id)
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/complete",
    response_model=OrderResponse,
    summary="Complete order",
    description="Mark the order completed. Requires a complete result stage.",
)
async def complete_order(order_id: UUID, service: ProgressService) -> OrderResponse:
    logger.info("Completing order", order_id=str(order_id))
    order = await service.complete_order(order_id)
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    description="Cancel the order. No stage can change afterwards.",
)
async def cancel_order(
    order_id: UUID,
    service: ProgressService,
    request: Optional[OrderCancelRequest] = None,
) -> OrderResponse:
    reason = request.reason if request else None
    logger.info("Cancelling order", order_id=str(order_id), reason=reason)
    order = await service.cancel_order(order_id, reason=reason)
    return OrderResponse.model_validate(order)
