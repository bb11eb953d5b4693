"""Prerequisite checks gating stage creation and deletion.

Creation of a stage is blocked when a record for that stage already exists,
or when the preceding stage is missing or incomplete (plus the delivery and
area gates of the later stages). Deletion is blocked while any later stage
still has a record. Checks read through the progress repository and never
mutate anything.
"""

import uuid
from collections.abc import Iterable, Mapping
from typing import Any, Optional, Protocol

from orderflow.core.logging import get_logger
from orderflow.services.progress.enums import ProgressStage
from orderflow.services.progress.errors import (
    ProgressConflictError,
    ProgressPrerequisiteError,
)
from orderflow.services.progress.stages import StageSnapshot, get_descriptor

logger = get_logger(__name__)


class ProgressRecordLike(Protocol):
    order_id: uuid.UUID
    stage: ProgressStage
    data: Mapping[str, Any]


def build_snapshot(records: Iterable[ProgressRecordLike]) -> dict[ProgressStage, Mapping[str, Any]]:
    """Index an order's progress records by stage."""
    snapshot: dict[ProgressStage, Mapping[str, Any]] = {}
    for record in records:
        snapshot[ProgressStage(record.stage)] = record.data or {}
    return snapshot


def missing_prerequisites(snapshot: StageSnapshot, stage: ProgressStage) -> list[str]:
    """
    List every unmet prerequisite for creating ``stage``.

    Args:
        snapshot: Current progress of the order, keyed by stage
        stage: Stage about to be created

    Returns:
        Stage-specific messages, empty when the stage may be created
    """
    return get_descriptor(stage).prerequisites(snapshot)


def check_can_create(snapshot: StageSnapshot, stage: ProgressStage) -> None:
    """
    Ensure ``stage`` may be created for the order described by ``snapshot``.

    Raises:
        ProgressConflictError: If a record for the stage already exists
        ProgressPrerequisiteError: If an earlier stage gate is unmet
    """
    if stage in snapshot:
        raise ProgressConflictError(
            f"Progress for {stage.value} stage already exists",
            stage=stage.value,
        )

    unmet = missing_prerequisites(snapshot, stage)
    if unmet:
        raise ProgressPrerequisiteError(
            unmet[0],
            stage=stage.value,
            required_stage=stage.previous.value if stage.previous else None,
            unmet=unmet,
        )


def check_can_delete(snapshot: StageSnapshot, stage: ProgressStage) -> None:
    """
    Ensure no later stage depends on ``stage``.

    Raises:
        ProgressConflictError: If a record exists for any later stage
    """
    dependents = [later for later in stage.following if later in snapshot]
    if dependents:
        names = " or ".join(dep.display_name for dep in dependents)
        raise ProgressConflictError(
            f"Cannot delete {stage.value} progress. {names} progress exists.",
            stage=stage.value,
            dependent_stages=[dep.value for dep in dependents],
        )


def can_create(snapshot: StageSnapshot, stage: ProgressStage) -> bool:
    try:
        check_can_create(snapshot, stage)
    except (ProgressConflictError, ProgressPrerequisiteError):
        return False
    return True


def can_delete(snapshot: StageSnapshot, stage: ProgressStage) -> bool:
    try:
        check_can_delete(snapshot, stage)
    except ProgressConflictError:
        return False
    return True


class PrerequisiteChecker:
    """
    Stage gating backed by the progress repository.

    Attributes:
        repository: Progress repository used to load an order's records
    """

    def __init__(self, repository: Any):
        self.repository = repository

    async def load_snapshot(
        self,
        order_id: uuid.UUID,
        records: Optional[Iterable[ProgressRecordLike]] = None,
    ) -> dict[ProgressStage, Mapping[str, Any]]:
        if records is None:
            records = await self.repository.find_all(order_id)
        return build_snapshot(records)

    async def ensure_can_create(
        self,
        order_id: uuid.UUID,
        stage: ProgressStage,
        records: Optional[Iterable[ProgressRecordLike]] = None,
    ) -> None:
        snapshot = await self.load_snapshot(order_id, records)
        try:
            check_can_create(snapshot, stage)
        except (ProgressConflictError, ProgressPrerequisiteError) as e:
            logger.info(
                "Stage creation blocked",
                order_id=str(order_id),
                stage=stage.value,
                kind=e.kind,
                reason=e.message,
            )
            raise

    async def ensure_can_delete(
        self,
        order_id: uuid.UUID,
        stage: ProgressStage,
        records: Optional[Iterable[ProgressRecordLike]] = None,
    ) -> None:
        snapshot = await self.load_snapshot(order_id, records)
        try:
            check_can_delete(snapshot, stage)
        except ProgressConflictError as e:
            logger.info(
                "Stage deletion blocked",
                order_id=str(order_id),
                stage=stage.value,
                reason=e.message,
            )
            raise

    async def can_create(self, order_id: uuid.UUID, stage: ProgressStage) -> bool:
        """Check whether ``stage`` may be created for the order."""
        return can_create(await self.load_snapshot(order_id), stage)

    async def can_delete(self, order_id: uuid.UUID, stage: ProgressStage) -> bool:
        """Check whether the order's ``stage`` record may be deleted."""
        return can_delete(await self.load_snapshot(order_id), stage)
