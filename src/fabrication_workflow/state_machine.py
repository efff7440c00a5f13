"""Project lifecycle state machine.

The machine is the single authority over ``Project.status``. Each operation
validates its guards against the snapshot it is given, then mutates that
snapshot in place and records one ``StatusHistoryEntry`` per status change.
Callers hand in a working copy and persist it only if the operation returns;
a raised guard therefore leaves the stored project untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TypeVar

from .errors import (
    AmountMissing,
    InvalidTransition,
    NotFound,
    PaymentNotVerified,
    PrerequisiteMissing,
    TerminalState,
    ValidationError,
)
from .models import (
    PAYMENT_STAGE_STATUS_TRANSITIONS,
    PROJECT_STATUS_TRANSITIONS,
    REVISION_REENTRY_STATUS,
    ActorRole,
    ArtifactKind,
    ArtifactVersion,
    CustomerApproval,
    FabricationUpdate,
    PaymentPlan,
    PaymentStage,
    PaymentStageLabel,
    PaymentStageStatus,
    Project,
    ProjectStatus,
    RevisionRequest,
    RevisionType,
    StatusHistoryEntry,
)
from .payments import compute_stages, gating_stage, parse_plan
from .revisions import RevisionLedger

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

# Statuses in which the approved blueprint and costing are frozen.
FROZEN_STATUSES: frozenset[ProjectStatus] = frozenset({ProjectStatus.APPROVED, ProjectStatus.FABRICATION})


@dataclass
class TransitionOutcome:
    """What one operation changed, for event emission by the coordinator."""

    transitions: list[StatusHistoryEntry] = field(default_factory=list)
    resolved_revisions: list[RevisionRequest] = field(default_factory=list)
    opened_revision: RevisionRequest | None = None
    payment_stages: list[PaymentStage] = field(default_factory=list)
    stage_change: tuple[PaymentStage, PaymentStageStatus] | None = None
    fabrication_update: FabricationUpdate | None = None
    artifact: ArtifactVersion | None = None


def coerce_choice(choice_type: type[E], value: E | str, *, project: Project, attempted: str) -> E:
    """Coerce *value* into the enum *choice_type*, rejecting unknown values."""
    if isinstance(value, choice_type):
        return value
    try:
        return choice_type(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in choice_type)
        raise ValidationError(
            f"Unknown {choice_type.__name__} {value!r}. Expected one of: {allowed}",
            project_id=project.project_id,
            current_status=project.status,
            attempted=attempted,
        ) from exc


class ProjectStateMachine:
    def __init__(self, ledger: RevisionLedger | None = None) -> None:
        self.ledger = ledger if ledger is not None else RevisionLedger()

    # ------------------------------------------------------------------
    # Core transition
    # ------------------------------------------------------------------

    def transition(
        self,
        project: Project,
        to_status: ProjectStatus,
        *,
        actor: ActorRole,
        at: datetime,
        attempted: str,
        notes: str | None = None,
    ) -> StatusHistoryEntry:
        """Move *project* to *to_status* and append the audit entry.

        Raises:
            TerminalState: If the project is completed or cancelled.
            InvalidTransition: If the table does not allow the move.
        """
        self.ensure_active(project, attempted)
        from_status = project.status
        if to_status not in PROJECT_STATUS_TRANSITIONS[from_status]:
            raise InvalidTransition(
                f"Illegal project status transition for {project.project_id}: "
                f"{from_status.value} -> {to_status.value}",
                project_id=project.project_id,
                current_status=from_status,
                attempted=attempted,
            )
        entry = StatusHistoryEntry(
            from_status=from_status,
            to_status=to_status,
            actor_role=actor,
            timestamp=at,
            notes=notes,
        )
        project.status = to_status
        project.status_history.append(entry)
        project.updated_at = at
        logger.info("%s: %s -> %s (%s)", project.project_id, from_status.value, to_status.value, actor.value)
        return entry

    @staticmethod
    def ensure_active(project: Project, attempted: str) -> None:
        if project.is_terminal:
            raise TerminalState(
                f"project {project.project_id} is {project.status.value}",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )

    @staticmethod
    def _require_status(project: Project, expected: ProjectStatus, attempted: str) -> None:
        if project.status != expected:
            raise InvalidTransition(
                f"{attempted} requires status {expected.value}, project {project.project_id} is {project.status.value}",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def guard_attach(self, project: Project, kind: ArtifactKind) -> None:
        """Check that a new *kind* version may be attached right now.

        Raises:
            TerminalState: If the project is completed or cancelled.
            PrerequisiteMissing: If a costing is attached before any blueprint.
            InvalidTransition: If the project is frozen or in another stage.
        """
        attempted = f"attach_{kind.value}"
        self.ensure_active(project, attempted)
        if kind == ArtifactKind.COSTING and project.blueprint.current_version == 0:
            raise PrerequisiteMissing(
                "a costing requires an uploaded blueprint",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )
        if project.status in FROZEN_STATUSES:
            raise InvalidTransition(
                f"{kind.value} is frozen after approval",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )
        self._require_status(project, REVISION_REENTRY_STATUS[kind], attempted)

    def record_attachment(
        self,
        project: Project,
        artifact: ArtifactVersion,
        *,
        actor: ActorRole,
        at: datetime,
    ) -> TransitionOutcome:
        """Point *project* at a freshly stored version and advance its stage.

        A new blueprint always moves the project on to costing; a new costing
        moves it to customer approval. Open revisions against the same kind
        are resolved by the new version.
        """
        self.guard_attach(project, artifact.kind)
        outcome = TransitionOutcome(artifact=artifact)
        project.pointer(artifact.kind).current_version = artifact.version
        outcome.resolved_revisions = self.ledger.resolve_for(
            project, artifact.kind, artifact.version, resolved_at=at
        )
        next_status = (
            ProjectStatus.PENDING_COSTING
            if artifact.kind == ArtifactKind.BLUEPRINT
            else ProjectStatus.PENDING_CUSTOMER_APPROVAL
        )
        outcome.transitions.append(
            self.transition(
                project,
                next_status,
                actor=actor,
                at=at,
                attempted=f"attach_{artifact.kind.value}",
                notes=f"{artifact.kind.value} v{artifact.version}",
            )
        )
        return outcome

    # ------------------------------------------------------------------
    # Approval gate
    # ------------------------------------------------------------------

    def submit_for_approval(
        self,
        project: Project,
        current_costing: ArtifactVersion | None,
        *,
        actor: ActorRole,
        at: datetime,
    ) -> TransitionOutcome:
        """Put the current blueprint and costing in front of the customer.

        Idempotent: a project already pending approval is returned unchanged.
        """
        attempted = "submit_for_approval"
        self.ensure_active(project, attempted)
        if project.status == ProjectStatus.PENDING_CUSTOMER_APPROVAL:
            return TransitionOutcome()
        if project.status not in (ProjectStatus.PENDING_BLUEPRINT, ProjectStatus.PENDING_COSTING):
            raise InvalidTransition(
                f"cannot submit a project that is {project.status.value}",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )

        missing: str | None = None
        if project.blueprint.current_version == 0:
            missing = "no blueprint has been uploaded"
        elif project.costing.current_version == 0 or current_costing is None:
            missing = "no costing has been uploaded"
        elif current_costing.blueprint_version != project.blueprint.current_version:
            missing = (
                f"costing v{current_costing.version} prices blueprint v{current_costing.blueprint_version}, "
                f"current blueprint is v{project.blueprint.current_version}"
            )
        elif self.ledger.open_revisions(project):
            missing = "an open revision must be resolved first"
        if missing is not None:
            raise PrerequisiteMissing(
                missing,
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )
        return TransitionOutcome(
            transitions=[
                self.transition(project, ProjectStatus.PENDING_CUSTOMER_APPROVAL, actor=actor, at=at, attempted=attempted)
            ]
        )

    def approve(
        self,
        project: Project,
        plan: PaymentPlan | str,
        current_costing: ArtifactVersion | None,
        *,
        actor: ActorRole,
        at: datetime,
    ) -> TransitionOutcome:
        """Approve the current versions and generate the payment schedule.

        Raises:
            InvalidTransition: Unless the project is pending customer approval.
            ValidationError: If *plan* is unknown.
            AmountMissing: If the current costing has no total amount.
        """
        attempted = "approve"
        self.ensure_active(project, attempted)
        self._require_status(project, ProjectStatus.PENDING_CUSTOMER_APPROVAL, attempted)
        if project.payment_plan is not None or project.payment_stages:
            raise InvalidTransition(
                "payment schedule was already generated",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )
        payment_plan = parse_plan(plan)
        if current_costing is None or current_costing.total_amount is None:
            raise AmountMissing(
                "the current costing has no total amount",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )

        stages = [
            stage.model_copy(update={"updated_at": at})
            for stage in compute_stages(current_costing.total_amount, payment_plan)
        ]
        project.payment_plan = payment_plan
        project.payment_stages = stages
        project.costing.approved_amount = current_costing.total_amount
        project.approval = CustomerApproval(
            approved_at=at,
            approved_by=actor,
            blueprint_version=project.blueprint.current_version,
            costing_version=project.costing.current_version,
        )
        entry = self.transition(
            project,
            ProjectStatus.APPROVED,
            actor=actor,
            at=at,
            attempted=attempted,
            notes=f"{payment_plan.value} plan, total {current_costing.total_amount}",
        )
        return TransitionOutcome(transitions=[entry], payment_stages=list(stages))

    def request_revision(
        self,
        project: Project,
        feedback: str,
        target_kind: ArtifactKind | str,
        *,
        actor: ActorRole,
        at: datetime,
        revision_type: RevisionType = RevisionType.MINOR,
    ) -> TransitionOutcome:
        """Open a revision and send the project back to the targeted stage."""
        attempted = "request_revision"
        self.ensure_active(project, attempted)
        self._require_status(project, ProjectStatus.PENDING_CUSTOMER_APPROVAL, attempted)
        kind = coerce_choice(ArtifactKind, target_kind, project=project, attempted=attempted)
        revision_type = coerce_choice(RevisionType, revision_type, project=project, attempted=attempted)

        revision = self.ledger.open(
            project,
            feedback,
            kind,
            project.pointer(kind).current_version,
            requested_at=at,
            revision_type=revision_type,
            requested_by=actor,
        )
        outcome = TransitionOutcome(opened_revision=revision)
        outcome.transitions.append(
            self.transition(
                project,
                ProjectStatus.REVISION_REQUESTED,
                actor=actor,
                at=at,
                attempted=attempted,
                notes=revision.feedback,
            )
        )
        outcome.transitions.append(
            self.transition(
                project,
                REVISION_REENTRY_STATUS[kind],
                actor=ActorRole.SYSTEM,
                at=at,
                attempted=attempted,
                notes=f"redo {kind.value} for {revision.revision_id}",
            )
        )
        return outcome

    # ------------------------------------------------------------------
    # Fabrication
    # ------------------------------------------------------------------

    def advance_to_fabrication(
        self,
        project: Project,
        gating_stage_verified: bool,
        *,
        actor: ActorRole,
        at: datetime,
    ) -> TransitionOutcome:
        attempted = "advance_to_fabrication"
        self.ensure_active(project, attempted)
        self._require_status(project, ProjectStatus.APPROVED, attempted)
        if not gating_stage_verified:
            stage = gating_stage(project.payment_plan, project.payment_stages) if project.payment_plan else None
            raise PaymentNotVerified(
                f"{stage.label.value if stage else 'gating'} payment is not verified",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )
        return TransitionOutcome(
            transitions=[self.transition(project, ProjectStatus.FABRICATION, actor=actor, at=at, attempted=attempted)]
        )

    def record_fabrication_progress(
        self,
        project: Project,
        progress: int,
        *,
        actor: ActorRole,
        at: datetime,
        notes: str = "",
    ) -> TransitionOutcome:
        attempted = "record_fabrication_progress"
        self.ensure_active(project, attempted)
        self._require_status(project, ProjectStatus.FABRICATION, attempted)
        if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
            raise ValidationError(
                f"progress must be an integer between 0 and 100, got {progress!r}",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )
        update = FabricationUpdate(progress=progress, notes=notes, actor_role=actor, recorded_at=at)
        project.fabrication_updates.append(update)
        project.updated_at = at
        return TransitionOutcome(fabrication_update=update)

    def complete(self, project: Project, *, actor: ActorRole, at: datetime) -> TransitionOutcome:
        attempted = "complete"
        self.ensure_active(project, attempted)
        self._require_status(project, ProjectStatus.FABRICATION, attempted)
        return TransitionOutcome(
            transitions=[self.transition(project, ProjectStatus.COMPLETED, actor=actor, at=at, attempted=attempted)]
        )

    def cancel(self, project: Project, reason: str, *, actor: ActorRole, at: datetime) -> TransitionOutcome:
        attempted = "cancel"
        text = (reason or "").strip()
        if not text:
            raise ValidationError(
                "a cancellation reason is required",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )
        return TransitionOutcome(
            transitions=[
                self.transition(project, ProjectStatus.CANCELLED, actor=actor, at=at, attempted=attempted, notes=text)
            ]
        )

    # ------------------------------------------------------------------
    # Payment stage status
    # ------------------------------------------------------------------

    def record_payment_status(
        self,
        project: Project,
        label: PaymentStageLabel | str,
        new_status: PaymentStageStatus | str,
        *,
        at: datetime,
        actor: ActorRole = ActorRole.CASHIER,
        reason: str | None = None,
        notes: str = "",
        reference: str | None = None,
    ) -> TransitionOutcome:
        """Apply an externally reported status change to one payment stage.

        Stage definitions never change; only ``status`` moves, along
        ``PAYMENT_STAGE_STATUS_TRANSITIONS``, together with who reported it,
        the cashier's notes and the transaction reference. A rejection must
        carry a reason. Completed projects still accept payment updates so the
        final stage can be settled after delivery.
        """
        attempted = "record_payment_status"
        if project.status == ProjectStatus.CANCELLED:
            raise TerminalState(
                f"project {project.project_id} is cancelled",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )
        label = coerce_choice(PaymentStageLabel, label, project=project, attempted=attempted)
        new_status = coerce_choice(PaymentStageStatus, new_status, project=project, attempted=attempted)
        if not project.payment_stages:
            raise PrerequisiteMissing(
                "no payment schedule has been generated",
                project_id=project.project_id,
                current_status=project.status,
                attempted=attempted,
            )
        for index, stage in enumerate(project.payment_stages):
            if stage.label != label:
                continue
            previous = stage.status
            if new_status not in PAYMENT_STAGE_STATUS_TRANSITIONS[previous]:
                raise InvalidTransition(
                    f"Illegal payment stage transition for {project.project_id}/{label.value}: "
                    f"{previous.value} -> {new_status.value}",
                    project_id=project.project_id,
                    current_status=project.status,
                    attempted=attempted,
                )
            rejection_reason: str | None = None
            if new_status == PaymentStageStatus.REJECTED:
                rejection_reason = (reason or "").strip()
                if not rejection_reason:
                    raise ValidationError(
                        f"rejecting the {label.value} payment requires a reason",
                        project_id=project.project_id,
                        current_status=project.status,
                        attempted=attempted,
                    )
            updated = stage.model_copy(
                update={
                    "status": new_status,
                    "updated_at": at,
                    "updated_by": actor,
                    "notes": notes.strip(),
                    "reference": reference.strip() if reference and reference.strip() else stage.reference,
                    "rejection_reason": rejection_reason,
                }
            )
            project.payment_stages[index] = updated
            project.updated_at = at
            return TransitionOutcome(stage_change=(updated, previous))
        raise NotFound(
            f"payment stage {label.value} not found",
            project_id=project.project_id,
            current_status=project.status,
            attempted=attempted,
        )
