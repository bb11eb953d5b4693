"""
Order progress API endpoints.

Handlers translate HTTP requests into workflow service calls. Workflow
rejections are raised as ``ProgressWorkflowError`` and rendered by the
application's exception handler.
"""

from uuid import UUID

from fastapi import APIRouter, status

from orderflow.api.deps import ProgressService
from orderflow.core.logging import get_logger
from orderflow.schemas.progress import (
    BulkProgressSummaryRequest,
    BulkProgressSummaryResponse,
    ErrorResponse,
    ProgressSummaryResponse,
    StageAnalysisResponse,
    StageDeletionResponse,
    StageProgressListResponse,
    StageProgressRequest,
    StageProgressResponse,
    StageStatusResponse,
)

logger = get_logger(__name__)

router = APIRouter(
    tags=["progress"],
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)


@router.get(
    "/orders/{order_id}/progress",
    response_model=StageProgressListResponse,
    summary="List stage progress",
)
async def list_stage_progress(
    order_id: UUID,
    service: ProgressService,
) -> StageProgressListResponse:
    records = await service.list_stage_progress(order_id)
    return StageProgressListResponse(
        order_id=order_id,
        items=[StageProgressResponse.model_validate(record) for record in records],
        total=len(records),
    )


@router.get(
    "/orders/{order_id}/progress/status",
    response_model=StageStatusResponse,
    summary="Stage completion status",
)
async def get_stage_status(
    order_id: UUID,
    service: ProgressService,
) -> StageStatusResponse:
    """Completeness of every stage plus the first incomplete stage."""
    stages = await service.get_stage_status(order_id)
    next_stage = next((stage for stage, done in stages.items() if not done), None)
    return StageStatusResponse(order_id=order_id, stages=stages, next_stage=next_stage)


@router.get(
    "/orders/{order_id}/progress/summary",
    response_model=ProgressSummaryResponse,
    summary="Progress summary",
)
async def get_progress_summary(
    order_id: UUID,
    service: ProgressService,
) -> ProgressSummaryResponse:
    summary = await service.get_progress_summary(order_id)
    return ProgressSummaryResponse.model_validate(summary)


@router.get(
    "/orders/{order_id}/progress/analysis",
    response_model=StageAnalysisResponse,
    summary="Application and yield analysis",
)
async def get_stage_analysis(
    order_id: UUID,
    service: ProgressService,
) -> StageAnalysisResponse:
    analysis = await service.get_stage_analysis(order_id)
    return StageAnalysisResponse(
        order_id=order_id,
        application_efficiency=analysis.application_efficiency,
        area_variance=analysis.area_variance,
        has_yield_gain=analysis.has_yield_gain,
        yield_per_area=analysis.yield_per_area,
        result=analysis.result.to_dict() if analysis.result else None,
    )


@router.get(
    "/orders/{order_id}/progress/{stage}",
    response_model=StageProgressResponse,
    summary="Get stage progress",
)
async def get_stage_progress(
    order_id: UUID,
    stage: str,
    service: ProgressService,
) -> StageProgressResponse:
    record = await service.get_stage_progress(order_id, stage)
    return StageProgressResponse.model_validate(record)


@router.post(
    "/orders/{order_id}/progress/{stage}",
    response_model=StageProgressResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record stage progress",
    description=(
        "Create the progress record of a stage. The previous stage must be "
        "complete and the stage must not already have a record."
    ),
)
async def create_stage_progress(
    order_id: UUID,
    stage: str,
    request: StageProgressRequest,
    service: ProgressService,
) -> StageProgressResponse:
    logger.info("Recording stage progress", order_id=str(order_id), stage=stage)
    record = await service.create_stage_progress(order_id, stage, request.data)
    return StageProgressResponse.model_validate(record)


@router.put(
    "/progress/{progress_id}",
    response_model=StageProgressResponse,
    summary="Replace stage progress",
)
async def update_stage_progress(
    progress_id: UUID,
    request: StageProgressRequest,
    service: ProgressService,
) -> StageProgressResponse:
    """Replace the payload of a stage record wholesale."""
    record = await service.update_stage_progress(progress_id, request.data)
    return StageProgressResponse.model_validate(record)


@router.delete(
    "/progress/{progress_id}",
    response_model=StageDeletionResponse,
    summary="Delete stage progress",
)
async def delete_stage_progress(
    progress_id: UUID,
    service: ProgressService,
) -> StageDeletionResponse:
    order_status = await service.delete_stage_progress(progress_id)
    return StageDeletionResponse(progress_id=progress_id, order_status=order_status)


@router.post(
    "/progress/summaries",
    response_model=BulkProgressSummaryResponse,
    summary="Progress summaries of several orders",
)
async def get_bulk_progress_summary(
    request: BulkProgressSummaryRequest,
    service: ProgressService,
) -> BulkProgressSummaryResponse:
    summaries = await service.get_bulk_progress_summary(request.order_ids)
    return BulkProgressSummaryResponse(
        summaries={
            order_id: ProgressSummaryResponse.model_validate(summary)
            for order_id, summary in summaries.items()
        },
        total=len(summaries),
    )
