"""Stage descriptor set for the fulfillment workflow.

Each of the four stages is described by one entry in ``STAGE_DESCRIPTORS``:
the pydantic model its payload must satisfy, the predicate deciding whether a
stored payload counts as complete, and the prerequisite gate evaluated
against the other stages of the same order. The stage set is closed; adding
a stage means adding a ``ProgressStage`` member and a descriptor.

Payload models hold the per-field types and ranges and the cross-field
rules. Cross-field failures are raised as ``PydanticCustomError`` with a
``field`` entry in the error context so the failing field can be reported.

The analytics at the end of the module derive application efficiency and
yield figures from the applied and result payloads.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic_core import PydanticCustomError

from orderflow.services.progress.enums import ProgressStage, YieldEfficiency

NOTES_MAX_LENGTH = 500
MAX_AREA = 1_000_000
MAX_YIELD_AMOUNT = 1_000_000
MAX_AREA_VARIANCE_RATIO = 0.5

# stage -> stored payload
StageSnapshot = Mapping[ProgressStage, Mapping[str, Any]]


def rule_violation(field: str, message: str) -> PydanticCustomError:
    """Build a cross-field rule error attributed to ``field``."""
    return PydanticCustomError("stage_rule", message, {"field": field})


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _reject_bool(value: Any, message: str) -> Any:
    # bool is an int subclass, so lax float parsing would take True as 1.0
    if isinstance(value, bool):
        raise ValueError(message)
    return value


class StagePayload(BaseModel):
    """Fields shared by every stage payload."""

    model_config = ConfigDict(
        extra="forbid",
        str_strip_whitespace=True,
        allow_inf_nan=False,
        frozen=True,
    )

    notes: Optional[str] = Field(
        None,
        description="Free-form notes for this stage",
    )

    @field_validator("notes")
    @classmethod
    def validate_notes(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v) > NOTES_MAX_LENGTH:
            raise ValueError(f"Notes cannot exceed {NOTES_MAX_LENGTH} characters")
        return v or None


class WarehouseProgressData(StagePayload):
    """Warehouse release: goods have left the warehouse when status is true."""

    status: StrictBool = Field(..., description="Goods released from warehouse")


class ShippingProgressData(StagePayload):
    """Shipping: dispatch and receipt dates of the goods."""

    status: StrictBool = Field(..., description="Goods shipped")
    date_shipping: Optional[datetime] = Field(None, description="Dispatch date")
    date_received: Optional[datetime] = Field(None, description="Receipt date")

    @field_validator("date_shipping", "date_received")
    @classmethod
    def validate_not_in_future(cls, v: Optional[datetime], info) -> Optional[datetime]:
        """Normalize to UTC and reject dates in the future."""
        if v is None:
            return v
        v = _as_utc(v)
        if v > datetime.now(timezone.utc):
            label = "Shipping" if info.field_name == "date_shipping" else "Received"
            raise ValueError(f"{label} date cannot be in the future")
        return v

    @model_validator(mode="after")
    def validate_dates(self) -> "ShippingProgressData":
        if self.status and self.date_shipping is None:
            raise rule_violation(
                "date_shipping", "Shipping date is required when status is true"
            )
        if self.date_received is not None and not self.status:
            raise rule_violation(
                "status",
                "Shipping status must be true when received date is provided",
            )
        if (
            self.date_received is not None
            and self.date_shipping is not None
            and self.date_received < self.date_shipping
        ):
            raise rule_violation(
                "date_received", "Received date must be after shipping date"
            )
        return self


class AppliedProgressData(StagePayload):
    """Field application: estimated and actual treated area."""

    est_applied_area: float = Field(..., description="Estimated applied area")
    actual_applied_area: Optional[float] = Field(
        None, description="Actual applied area"
    )

    @field_validator("est_applied_area", "actual_applied_area", mode="before")
    @classmethod
    def reject_boolean_area(cls, v: Any, info: ValidationInfo) -> Any:
        label = "Estimated" if info.field_name == "est_applied_area" else "Actual"
        return _reject_bool(v, f"{label} applied area must be a number")

    @field_validator("est_applied_area")
    @classmethod
    def validate_estimated_area(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Estimated applied area must be greater than 0")
        if v > MAX_AREA:
            raise ValueError("Estimated applied area cannot exceed 1,000,000")
        return v

    @field_validator("actual_applied_area")
    @classmethod
    def validate_actual_area(cls, v: Optional[float]) -> Optional[float]:
        if v is None:
            return v
        if v < 0:
            raise ValueError("Actual applied area cannot be negative")
        if v > MAX_AREA:
            raise ValueError("Actual applied area cannot exceed 1,000,000")
        return v

    @model_validator(mode="after")
    def validate_variance(self) -> "AppliedProgressData":
        if self.actual_applied_area is None:
            return self
        variance = abs(self.actual_applied_area - self.est_applied_area)
        if variance > self.est_applied_area * MAX_AREA_VARIANCE_RATIO:
            raise rule_violation(
                "actual_applied_area",
                "Actual applied area variance cannot exceed 50% of estimated area",
            )
        return self


class ResultProgressData(StagePayload):
    """Yield result: whether the application produced a yield, and how much."""

    status: StrictBool = Field(..., description="Yield obtained")
    yield_amount: Optional[float] = Field(None, description="Yield amount")

    @model_validator(mode="before")
    @classmethod
    def reject_enum_gated_shape(cls, data: Any) -> Any:
        # {yield_result: "gain" | "no_gain"} is the retired result shape
        if isinstance(data, Mapping) and "yield_result" in data:
            raise rule_violation(
                "yield_result",
                "yield_result is no longer supported; "
                "record the outcome with status and yield_amount",
            )
        return data

    @field_validator("yield_amount", mode="before")
    @classmethod
    def reject_boolean_yield(cls, v: Any) -> Any:
        return _reject_bool(v, "Yield amount must be a number")

    @field_validator("yield_amount")
    @classmethod
    def validate_yield_amount(cls, v: Optional[float]) -> Optional[float]:
        if v is None:
            return v
        if v < 0:
            raise ValueError("Yield amount cannot be negative")
        if v > MAX_YIELD_AMOUNT:
            raise ValueError("Yield amount cannot exceed 1,000,000")
        return v

    @model_validator(mode="after")
    def validate_yield_for_status(self) -> "ResultProgressData":
        if self.status and self.yield_amount is None:
            raise rule_violation(
                "yield_amount", "Yield amount is required when status is true"
            )
        if not self.status and self.yield_amount:
            raise rule_violation(
                "yield_amount", "Yield amount must be 0 when status is false"
            )
        return self


# Completeness predicates over stored payloads


def warehouse_is_complete(data: Mapping[str, Any]) -> bool:
    return data.get("status") is True


def shipping_is_complete(data: Mapping[str, Any]) -> bool:
    return data.get("status") is True


def is_delivered(data: Mapping[str, Any]) -> bool:
    """Check whether the shipping payload records receipt of the goods."""
    return bool(data.get("date_received"))


def applied_is_complete(data: Mapping[str, Any]) -> bool:
    area = data.get("est_applied_area")
    return _is_number(area) and area > 0


def result_is_complete(data: Mapping[str, Any]) -> bool:
    return isinstance(data.get("status"), bool)


# Prerequisite gates: unmet conditions on earlier stages, as messages


def warehouse_prerequisites(snapshot: StageSnapshot) -> list[str]:
    return []


def shipping_prerequisites(snapshot: StageSnapshot) -> list[str]:
    warehouse = snapshot.get(ProgressStage.WAREHOUSE)
    if warehouse is None:
        return ["Warehouse progress must be completed before shipping"]
    if not warehouse_is_complete(warehouse):
        return ["Warehouse must be completed before shipping"]
    return []


def applied_prerequisites(snapshot: StageSnapshot) -> list[str]:
    shipping = snapshot.get(ProgressStage.SHIPPING)
    if shipping is None:
        return ["Shipping progress must be completed before applied"]
    unmet = []
    if not shipping_is_complete(shipping):
        unmet.append("Shipping must be completed before applied")
    if not is_delivered(shipping):
        unmet.append("Item must be delivered before applied")
    return unmet


def result_prerequisites(snapshot: StageSnapshot) -> list[str]:
    applied = snapshot.get(ProgressStage.APPLIED)
    if applied is None:
        return ["Applied progress must be completed before result"]
    if not applied_is_complete(applied):
        return ["Applied area must be greater than 0 before result"]
    return []


@dataclass(frozen=True)
class StageDescriptor:
    """Static behavior of one stage."""

    stage: ProgressStage
    label: str
    payload_model: type[StagePayload]
    is_complete: Callable[[Mapping[str, Any]], bool]
    prerequisites: Callable[[StageSnapshot], list[str]]


STAGE_DESCRIPTORS: dict[ProgressStage, StageDescriptor] = {
    ProgressStage.WAREHOUSE: StageDescriptor(
        stage=ProgressStage.WAREHOUSE,
        label="Warehouse",
        payload_model=WarehouseProgressData,
        is_complete=warehouse_is_complete,
        prerequisites=warehouse_prerequisites,
    ),
    ProgressStage.SHIPPING: StageDescriptor(
        stage=ProgressStage.SHIPPING,
        label="Shipping",
        payload_model=ShippingProgressData,
        is_complete=shipping_is_complete,
        prerequisites=shipping_prerequisites,
    ),
    ProgressStage.APPLIED: StageDescriptor(
        stage=ProgressStage.APPLIED,
        label="Applied",
        payload_model=AppliedProgressData,
        is_complete=applied_is_complete,
        prerequisites=applied_prerequisites,
    ),
    ProgressStage.RESULT: StageDescriptor(
        stage=ProgressStage.RESULT,
        label="Result",
        payload_model=ResultProgressData,
        is_complete=result_is_complete,
        prerequisites=result_prerequisites,
    ),
}


def get_descriptor(stage: ProgressStage) -> StageDescriptor:
    return STAGE_DESCRIPTORS[stage]


def is_stage_complete(stage: ProgressStage, data: Optional[Mapping[str, Any]]) -> bool:
    """Apply the stage's completeness predicate; a missing record is incomplete."""
    if data is None:
        return False
    return STAGE_DESCRIPTORS[stage].is_complete(data)


def stage_completion(snapshot: StageSnapshot) -> dict[ProgressStage, bool]:
    """Completeness of every stage, in workflow order."""
    return {
        stage: is_stage_complete(stage, snapshot.get(stage))
        for stage in ProgressStage.ordered()
    }


# Application and yield analytics. Values that depend on a field not yet
# recorded are None rather than errors.

HIGH_YIELD_PER_AREA = 10
MEDIUM_YIELD_PER_AREA = 5


@dataclass(frozen=True)
class ResultAnalysis:
    """Outcome of an order whose applied and result stages are both recorded."""

    has_yield: bool
    yield_amount: Optional[float]
    applied_area: Optional[float]
    yield_per_area: Optional[float]
    efficiency: Optional[YieldEfficiency]

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_yield": self.has_yield,
            "yield_amount": self.yield_amount,
            "applied_area": self.applied_area,
            "yield_per_area": self.yield_per_area,
            "efficiency": self.efficiency.value if self.efficiency else None,
        }


@dataclass(frozen=True)
class StageAnalysis:
    """Every analytic of one order, computed from a single snapshot."""

    application_efficiency: Optional[float]
    area_variance: Optional[float]
    has_yield_gain: bool
    yield_per_area: Optional[float]
    result: Optional[ResultAnalysis]


def _recorded_number(data: Mapping[str, Any], field: str) -> Optional[float]:
    # zero counts as not recorded
    value = data.get(field)
    if _is_number(value) and value:
        return value
    return None


def application_efficiency(snapshot: StageSnapshot) -> Optional[float]:
    """
    Actual applied area as a percentage of the estimate, to 2 decimals.

    None when the applied stage or its actual area is not recorded.
    """
    applied = snapshot.get(ProgressStage.APPLIED)
    if applied is None:
        return None
    actual = _recorded_number(applied, "actual_applied_area")
    estimated = _recorded_number(applied, "est_applied_area")
    if actual is None or estimated is None:
        return None
    return round(actual / estimated * 100, 2)


def area_variance(snapshot: StageSnapshot) -> Optional[float]:
    """Actual minus estimated applied area; negative when under-applied."""
    applied = snapshot.get(ProgressStage.APPLIED)
    if applied is None:
        return None
    actual = _recorded_number(applied, "actual_applied_area")
    estimated = applied.get("est_applied_area")
    if actual is None or not _is_number(estimated):
        return None
    return actual - estimated


def has_yield_gain(snapshot: StageSnapshot) -> bool:
    result = snapshot.get(ProgressStage.RESULT)
    return result is not None and result.get("status") is True


def yield_per_area(snapshot: StageSnapshot) -> Optional[float]:
    """Yield amount per unit of actual applied area, to 2 decimals."""
    applied = snapshot.get(ProgressStage.APPLIED)
    result = snapshot.get(ProgressStage.RESULT)
    if applied is None or result is None:
        return None
    amount = _recorded_number(result, "yield_amount")
    actual = _recorded_number(applied, "actual_applied_area")
    if amount is None or actual is None:
        return None
    return round(amount / actual, 2)


def yield_efficiency(per_area: Optional[float]) -> Optional[YieldEfficiency]:
    if per_area is None:
        return None
    if per_area >= HIGH_YIELD_PER_AREA:
        return YieldEfficiency.HIGH
    if per_area >= MEDIUM_YIELD_PER_AREA:
        return YieldEfficiency.MEDIUM
    return YieldEfficiency.LOW


def result_analysis(snapshot: StageSnapshot) -> Optional[ResultAnalysis]:
    """
    Summarize the outcome of the application.

    The applied area is the actual area when recorded, the estimate
    otherwise. None unless both the applied and result stages have records.
    """
    applied = snapshot.get(ProgressStage.APPLIED)
    result = snapshot.get(ProgressStage.RESULT)
    if applied is None or result is None:
        return None
    per_area = yield_per_area(snapshot)
    return ResultAnalysis(
        has_yield=result.get("status") is True,
        yield_amount=_recorded_number(result, "yield_amount"),
        applied_area=(
            _recorded_number(applied, "actual_applied_area")
            or _recorded_number(applied, "est_applied_area")
        ),
        yield_per_area=per_area,
        efficiency=yield_efficiency(per_area),
    )


def analyze_stages(snapshot: StageSnapshot) -> StageAnalysis:
    return StageAnalysis(
        application_efficiency=application_efficiency(snapshot),
        area_variance=area_variance(snapshot),
        has_yield_gain=has_yield_gain(snapshot),
        yield_per_area=yield_per_area(snapshot),
        result=result_analysis(snapshot),
    )
