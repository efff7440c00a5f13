"""Typed failures returned to callers of the workflow core.

Every error carries the project it concerns, the status the project was in
when the guard fired and the operation that was attempted, so the UI layer
can render a precise message without re-reading the project.
"""

from __future__ import annotations

from .models import ProjectStatus


class WorkflowError(Exception):
    """Base class for every rejected workflow command."""

    def __init__(
        self,
        message: str,
        *,
        project_id: str | None = None,
        current_status: ProjectStatus | None = None,
        attempted: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.project_id = project_id
        self.current_status = current_status
        self.attempted = attempted

    def to_dict(self) -> dict[str, str | None]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "project_id": self.project_id,
            "current_status": self.current_status.value if self.current_status is not None else None,
            "attempted": self.attempted,
        }


class ValidationError(WorkflowError, ValueError):
    """Malformed input: empty feedback, non-positive amount, unknown plan type."""


class PrerequisiteMissing(WorkflowError):
    """A required predecessor artifact or state is absent."""


class AmountMissing(PrerequisiteMissing):
    """The current costing has no total amount to bill against."""


class PaymentNotVerified(PrerequisiteMissing):
    """The gating payment stage has not been verified."""


class InvalidTransition(WorkflowError):
    """The operation is not legal from the current status."""


class TerminalState(InvalidTransition):
    """The project is completed or cancelled, or a cancellation is in flight."""


class ConflictError(WorkflowError):
    """A concurrent or duplicate operation collided with existing state."""


class NotFound(WorkflowError, LookupError):
    """The referenced project, artifact, version or revision does not exist."""
