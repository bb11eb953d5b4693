"""Typed errors raised by the order progress workflow.

Every rejection carries a ``kind`` discriminator so callers can tell
"fix your input" (validation) from "the workflow state forbids this"
(prerequisite, conflict, terminal state) and from lookups that found
nothing. Storage failures are the only retryable kind.
"""

from typing import Any, Optional


class ProgressWorkflowError(Exception):
    """Base exception for order progress workflow errors."""

    kind: str = "error"
    retryable: bool = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error as a discriminated result body."""
        return {
            "kind": self.kind,
            "message": self.message,
            "context": {key: _jsonable(value) for key, value in self.context.items()},
        }


class OrderNotFoundError(ProgressWorkflowError):
    """Raised when the referenced order does not exist."""

    kind = "not_found"


class ProgressNotFoundError(ProgressWorkflowError):
    """Raised when the referenced progress record does not exist."""

    kind = "not_found"


class ProgressValidationError(ProgressWorkflowError):
    """Raised when a stage payload fails a schema, range or cross-field rule."""

    kind = "validation"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["field"] = self.field
        return body


class ProgressPrerequisiteError(ProgressWorkflowError):
    """Raised when an earlier stage is missing or incomplete."""

    kind = "prerequisite"


class ProgressConflictError(ProgressWorkflowError):
    """Raised when a stage already exists or a dependent stage blocks deletion."""

    kind = "conflict"


class TerminalStateError(ProgressWorkflowError):
    """Raised when a completed or cancelled order is asked to change."""

    kind = "terminal_state"


class ProgressStorageError(ProgressWorkflowError):
    """Raised when the database fails; callers may retry the operation."""

    kind = "storage"
    retryable = True


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if hasattr(value, "value"):
        return value.value
    return str(value)
