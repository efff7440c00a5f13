from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .coordinator import WorkflowCoordinator
from .errors import ValidationError
from .models import (
    ActorRole,
    ArtifactKind,
    ArtifactUpload,
    CostingUpload,
    PaymentPlan,
    PaymentStageLabel,
    PaymentStageStatus,
    Project,
    ProjectDraft,
    RevisionType,
)


class _Command(BaseModel):
    actor: ActorRole | None = None


class _ProjectCommand(_Command):
    project_id: str = Field(min_length=1)


class CreateProject(_Command):
    type: Literal["CreateProject"] = "CreateProject"
    draft: ProjectDraft


class AttachBlueprint(_ProjectCommand):
    type: Literal["AttachBlueprint"] = "AttachBlueprint"
    upload: ArtifactUpload


class AttachCosting(_ProjectCommand):
    type: Literal["AttachCosting"] = "AttachCosting"
    upload: CostingUpload


class SubmitForApproval(_ProjectCommand):
    type: Literal["SubmitForApproval"] = "SubmitForApproval"


class ApproveProject(_ProjectCommand):
    type: Literal["ApproveProject"] = "ApproveProject"
    plan: PaymentPlan


class RequestRevision(_ProjectCommand):
    type: Literal["RequestRevision"] = "RequestRevision"
    feedback: str
    target: ArtifactKind
    revision_type: RevisionType = RevisionType.MINOR


class AdvanceToFabrication(_ProjectCommand):
    type: Literal["AdvanceToFabrication"] = "AdvanceToFabrication"


class RecordFabricationProgress(_ProjectCommand):
    type: Literal["RecordFabricationProgress"] = "RecordFabricationProgress"
    progress: int
    notes: str = ""


class RecordPaymentStatus(_ProjectCommand):
    type: Literal["RecordPaymentStatus"] = "RecordPaymentStatus"
    label: PaymentStageLabel
    status: PaymentStageStatus
    reason: str | None = None
    notes: str = ""
    reference: str | None = None


class CompleteProject(_ProjectCommand):
    type: Literal["CompleteProject"] = "CompleteProject"


class CancelProject(_ProjectCommand):
    type: Literal["CancelProject"] = "CancelProject"
    reason: str


WorkflowCommand = Annotated[
    Union[
        CreateProject,
        AttachBlueprint,
        AttachCosting,
        SubmitForApproval,
        ApproveProject,
        RequestRevision,
        AdvanceToFabrication,
        RecordFabricationProgress,
        RecordPaymentStatus,
        CompleteProject,
        CancelProject,
    ],
    Field(discriminator="type"),
]

_COMMAND_ADAPTER: TypeAdapter[WorkflowCommand] = TypeAdapter(WorkflowCommand)


def parse_command(raw: str | bytes | dict) -> WorkflowCommand:
    """Validate a JSON document or dict into a typed command.

    Raises:
        ValidationError: If the payload does not describe a known command.
    """
    try:
        if isinstance(raw, dict):
            return _COMMAND_ADAPTER.validate_python(raw)
        return _COMMAND_ADAPTER.validate_json(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid command: {exc}") from exc


def dispatch(coordinator: WorkflowCoordinator, command: WorkflowCommand) -> Project:
    """Run *command* against *coordinator* and return the updated project."""
    actor = {"actor": command.actor} if command.actor is not None else {}

    if isinstance(command, CreateProject):
        return coordinator.create_project(command.draft, **actor)
    if isinstance(command, AttachBlueprint):
        return coordinator.attach_blueprint(command.project_id, command.upload, **actor)
    if isinstance(command, AttachCosting):
        return coordinator.attach_costing(command.project_id, command.upload, **actor)
    if isinstance(command, SubmitForApproval):
        return coordinator.submit_for_approval(command.project_id, **actor)
    if isinstance(command, ApproveProject):
        return coordinator.approve(command.project_id, command.plan, **actor)
    if isinstance(command, RequestRevision):
        return coordinator.request_revision(
            command.project_id,
            command.feedback,
            command.target,
            revision_type=command.revision_type,
            **actor,
        )
    if isinstance(command, AdvanceToFabrication):
        return coordinator.advance_to_fabrication(command.project_id, **actor)
    if isinstance(command, RecordFabricationProgress):
        return coordinator.record_fabrication_progress(
            command.project_id, command.progress, notes=command.notes, **actor
        )
    if isinstance(command, RecordPaymentStatus):
        return coordinator.record_payment_status(
            command.project_id,
            command.label,
            command.status,
            reason=command.reason,
            notes=command.notes,
            reference=command.reference,
            **actor,
        )
    if isinstance(command, CompleteProject):
        return coordinator.complete(command.project_id, **actor)
    if isinstance(command, CancelProject):
        return coordinator.cancel(command.project_id, command.reason, **actor)
    raise ValidationError(f"unsupported command type: {type(command).__name__}")
