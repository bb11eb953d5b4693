"""Stage payload validation.

Converts the untyped, JSON-like payload submitted for a stage into the
validated payload stored on the progress record, or rejects it with a
``ProgressValidationError`` naming the first failing field. Validation is
pure: it never touches the database.
"""

from collections.abc import Mapping
from typing import Any, Union

from pydantic import ValidationError

from orderflow.core.logging import get_logger
from orderflow.services.progress.enums import ProgressStage
from orderflow.services.progress.errors import ProgressValidationError
from orderflow.services.progress.stages import StagePayload, get_descriptor

logger = get_logger(__name__)


def parse_stage(value: Union[str, ProgressStage]) -> ProgressStage:
    """
    Convert a raw stage name to a ProgressStage.

    Args:
        value: Stage name or ProgressStage

    Returns:
        Matching ProgressStage

    Raises:
        ProgressValidationError: If the name is not one of the four stages
    """
    if isinstance(value, ProgressStage):
        return value
    try:
        return ProgressStage.from_string(value)
    except ValueError as e:
        raise ProgressValidationError(str(e), field="stage", stage=value) from e


def parse_stage_payload(
    stage: Union[str, ProgressStage], payload: Any
) -> StagePayload:
    """
    Validate a payload against the stage's schema and business rules.

    Args:
        stage: Target stage
        payload: Untyped payload as submitted by the caller

    Returns:
        Validated, immutable payload model

    Raises:
        ProgressValidationError: On the first failing field
    """
    stage = parse_stage(stage)
    descriptor = get_descriptor(stage)

    if not isinstance(payload, Mapping):
        raise ProgressValidationError(
            f"{descriptor.label} progress data must be an object",
            field="data",
            stage=stage.value,
        )

    try:
        return descriptor.payload_model.model_validate(dict(payload))
    except ValidationError as e:
        error = _to_progress_error(stage, e)
        logger.info(
            "Stage payload rejected",
            stage=stage.value,
            field=error.field,
            reason=error.message,
            error_count=e.error_count(),
        )
        raise error from e


def validate_stage_payload(
    stage: Union[str, ProgressStage], payload: Any
) -> dict[str, Any]:
    """
    Validate a payload and return it in its stored form.

    Dates are serialized as ISO-8601 strings and absent optional fields are
    omitted, so the result can be written directly to the JSON column.

    Raises:
        ProgressValidationError: On the first failing field
    """
    model = parse_stage_payload(stage, payload)
    return model.model_dump(mode="json", exclude_none=True)


def _to_progress_error(
    stage: ProgressStage, exc: ValidationError
) -> ProgressValidationError:
    """Translate the first pydantic error into a field-attributed error."""
    label = get_descriptor(stage).label
    first = exc.errors(include_url=False)[0]
    ctx = first.get("ctx") or {}
    field = ctx.get("field") or ".".join(str(part) for part in first["loc"]) or None
    error_type = first["type"]

    if error_type == "value_error" and "error" in ctx:
        message = str(ctx["error"])
    elif error_type == "stage_rule":
        message = first["msg"]
    elif error_type == "missing":
        message = f"{label} {field} is required"
    elif error_type == "extra_forbidden":
        message = f"Unknown {label.lower()} field: {field}"
    else:
        message = f"Invalid {label.lower()} {field}: {first['msg']}"

    return ProgressValidationError(
        message,
        field=field,
        stage=stage.value,
        error_type=error_type,
    )
