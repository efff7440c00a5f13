"""Workflow coordinator: the façade called by the dashboard and other services.

Each command runs inside the project's critical section. It loads a working
copy of the project, lets the state machine apply the operation and persists
the copy only when the operation succeeds. Domain events for the committed
change are published before the lock is released, so each project's events
reach the sink in commit order. Publication is the one place retries happen:
a sink failure never rolls back a committed transition, and later events for
the same project queue behind the undelivered ones until ``redeliver``.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Callable, Protocol

from pydantic import ValidationError as PydanticValidationError

from .artifacts import ArtifactStore
from .errors import ConflictError, NotFound, TerminalState, ValidationError, WorkflowError
from .events import (
    ArtifactAttached,
    DomainEvent,
    EventSink,
    FabricationProgressRecorded,
    InMemoryEventSink,
    PaymentScheduleCreated,
    PaymentStageStatusChanged,
    ProjectCreated,
    ProjectStatusChanged,
    RevisionRequested,
    RevisionResolved,
)
from .locks import ProjectLocks
from .models import (
    ActorRole,
    ArtifactKind,
    ArtifactUpload,
    ArtifactVersion,
    CostingUpload,
    PaymentPlan,
    PaymentStage,
    PaymentStageLabel,
    PaymentStageStatus,
    Project,
    ProjectDraft,
    ProjectStatus,
    RevisionRequest,
    RevisionType,
    StatusHistoryEntry,
    new_project_id,
    validate_project_id,
)
from .payments import gating_stage
from .revisions import RevisionLedger
from .settings import RuntimeSettings
from .state_machine import ProjectStateMachine, TransitionOutcome
from .state_store import InMemoryStateStore, StateStore

logger = logging.getLogger(__name__)

Operation = Callable[[Project, datetime], TransitionOutcome]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PaymentVerifier(Protocol):
    """Answers whether a payment stage has been verified by the cashier."""

    def is_stage_verified(self, project: Project, stage: PaymentStage) -> bool: ...


class RecordedStageVerifier:
    """Trusts the stage status recorded through ``record_payment_status``."""

    def is_stage_verified(self, project: Project, stage: PaymentStage) -> bool:
        return stage.status == PaymentStageStatus.VERIFIED


class WorkflowCoordinator:
    def __init__(
        self,
        store: StateStore | None = None,
        *,
        sink: EventSink | None = None,
        verifier: PaymentVerifier | None = None,
        settings: RuntimeSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings()
        self.store = store if store is not None else InMemoryStateStore()
        self.sink = sink if sink is not None else InMemoryEventSink()
        self.verifier = verifier if verifier is not None else RecordedStageVerifier()
        self.clock = clock
        self.locks = ProjectLocks(outer_section=self.store.exclusive)
        self.artifacts = ArtifactStore(self.store, self.locks, clock=clock)
        self.ledger = RevisionLedger(single_open_revision=self.settings.single_open_revision)
        self.machine = ProjectStateMachine(self.ledger)
        self.undelivered_events: list[DomainEvent] = []
        self._undelivered_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Critical section
    # ------------------------------------------------------------------

    def _run(self, project_id: str, attempted: str, operation: Operation, *, cancelling: bool = False) -> Project:
        section = self.locks.cancellation(project_id) if cancelling else self.locks.hold(project_id)
        with section:
            if not cancelling and self.locks.cancel_pending(project_id):
                raise TerminalState(
                    f"project {project_id} is being cancelled",
                    project_id=project_id,
                    attempted=attempted,
                )
            project = self.store.read_project(project_id)
            at = self.clock()
            try:
                outcome = operation(project, at)
            except WorkflowError as exc:
                logger.warning("Rejected %s on %s: %s", attempted, project_id, exc)
                raise
            try:
                self.store.write_project(project)
            except OSError:
                if outcome.artifact is not None:
                    logger.error(
                        "Orphaned %s v%d on %s: version stored but project snapshot not written",
                        outcome.artifact.kind.value,
                        outcome.artifact.version,
                        project_id,
                    )
                raise
            self._publish_all(self._events_for(project, outcome, at))
        return project

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_project(self, draft: ProjectDraft, *, actor: ActorRole = ActorRole.SALES_STAFF) -> Project:
        """Create a project from a converted appointment.

        Raises:
            ValidationError: If the draft carries an unusable id or fields.
            ConflictError: If a project with the requested id already exists.
        """
        if draft.project_id is None:
            project_id = new_project_id(self.settings.project_id_prefix)
        else:
            try:
                project_id = validate_project_id(draft.project_id)
            except ValueError as exc:
                raise ValidationError(str(exc), project_id=draft.project_id, attempted="create") from exc
        with self.locks.hold(project_id):
            if self.store.has_project(project_id):
                raise ConflictError(f"project {project_id} already exists", project_id=project_id, attempted="create")
            now = self.clock()
            try:
                project = Project(
                    project_id=project_id,
                    category=draft.category,
                    customer_ref=draft.customer_ref,
                    title=draft.title,
                    description=draft.description,
                    site_address=draft.site_address,
                    source_appointment_ref=draft.source_appointment_ref,
                    created_at=now,
                    updated_at=now,
                )
            except PydanticValidationError as exc:
                raise ValidationError(f"invalid project draft: {exc}", project_id=project_id, attempted="create") from exc
            self.store.write_project(project)
            logger.info("Created %s (%s) for %s by %s", project_id, draft.category, draft.customer_ref, actor.value)
            self._publish_all(
                [
                    ProjectCreated(
                        project_id=project_id,
                        timestamp=now,
                        category=project.category,
                        customer_ref=project.customer_ref,
                    )
                ]
            )
        return project

    def attach_blueprint(
        self,
        project_id: str,
        upload: ArtifactUpload,
        *,
        actor: ActorRole = ActorRole.ENGINEER,
    ) -> Project:
        def operation(project: Project, at: datetime) -> TransitionOutcome:
            self.machine.guard_attach(project, ArtifactKind.BLUEPRINT)
            artifact = self.artifacts.append(project_id, ArtifactKind.BLUEPRINT, upload)
            return self.machine.record_attachment(project, artifact, actor=actor, at=at)

        return self._run(project_id, "attach_blueprint", operation)

    def attach_costing(
        self,
        project_id: str,
        upload: CostingUpload,
        *,
        actor: ActorRole = ActorRole.ENGINEER,
    ) -> Project:
        def operation(project: Project, at: datetime) -> TransitionOutcome:
            self.machine.guard_attach(project, ArtifactKind.COSTING)
            artifact = self.artifacts.append(
                project_id,
                ArtifactKind.COSTING,
                upload,
                blueprint_version=project.blueprint.current_version,
            )
            return self.machine.record_attachment(project, artifact, actor=actor, at=at)

        return self._run(project_id, "attach_costing", operation)

    def submit_for_approval(self, project_id: str, *, actor: ActorRole = ActorRole.ENGINEER) -> Project:
        def operation(project: Project, at: datetime) -> TransitionOutcome:
            return self.machine.submit_for_approval(project, self._current_costing(project), actor=actor, at=at)

        return self._run(project_id, "submit_for_approval", operation)

    def approve(
        self,
        project_id: str,
        plan: PaymentPlan | str,
        *,
        actor: ActorRole = ActorRole.CUSTOMER,
    ) -> Project:
        def operation(project: Project, at: datetime) -> TransitionOutcome:
            return self.machine.approve(project, plan, self._current_costing(project), actor=actor, at=at)

        return self._run(project_id, "approve", operation)

    def request_revision(
        self,
        project_id: str,
        feedback: str,
        target: ArtifactKind | str,
        *,
        revision_type: RevisionType | str = RevisionType.MINOR,
        actor: ActorRole = ActorRole.CUSTOMER,
    ) -> Project:
        def operation(project: Project, at: datetime) -> TransitionOutcome:
            return self.machine.request_revision(
                project,
                feedback,
                target,
                actor=actor,
                at=at,
                revision_type=revision_type,
            )

        return self._run(project_id, "request_revision", operation)

    def advance_to_fabrication(
        self,
        project_id: str,
        *,
        verifier: PaymentVerifier | None = None,
        actor: ActorRole = ActorRole.FABRICATION_STAFF,
    ) -> Project:
        """Start fabrication once the gating payment stage is verified.

        *verifier* overrides the coordinator's payment collaborator for this
        call only.
        """
        check = verifier if verifier is not None else self.verifier

        def operation(project: Project, at: datetime) -> TransitionOutcome:
            verified = False
            if project.status == ProjectStatus.APPROVED and project.payment_plan is not None:
                stage = gating_stage(project.payment_plan, project.payment_stages)
                verified = stage is not None and check.is_stage_verified(project, stage)
            return self.machine.advance_to_fabrication(project, verified, actor=actor, at=at)

        return self._run(project_id, "advance_to_fabrication", operation)

    def record_fabrication_progress(
        self,
        project_id: str,
        progress: int,
        *,
        notes: str = "",
        actor: ActorRole = ActorRole.FABRICATION_STAFF,
    ) -> Project:
        def operation(project: Project, at: datetime) -> TransitionOutcome:
            return self.machine.record_fabrication_progress(project, progress, actor=actor, at=at, notes=notes)

        return self._run(project_id, "record_fabrication_progress", operation)

    def record_payment_status(
        self,
        project_id: str,
        label: PaymentStageLabel | str,
        status: PaymentStageStatus | str,
        *,
        reason: str | None = None,
        notes: str = "",
        reference: str | None = None,
        actor: ActorRole = ActorRole.CASHIER,
    ) -> Project:
        """Record a payment collaborator's report for one stage.

        A rejection must carry a *reason*; *reference* is the transaction
        reference the cashier checked, if any.
        """

        def operation(project: Project, at: datetime) -> TransitionOutcome:
            return self.machine.record_payment_status(
                project,
                label,
                status,
                at=at,
                actor=actor,
                reason=reason,
                notes=notes,
                reference=reference,
            )

        return self._run(project_id, "record_payment_status", operation)

    def complete(self, project_id: str, *, actor: ActorRole = ActorRole.FABRICATION_STAFF) -> Project:
        def operation(project: Project, at: datetime) -> TransitionOutcome:
            return self.machine.complete(project, actor=actor, at=at)

        return self._run(project_id, "complete", operation)

    def cancel(self, project_id: str, reason: str, *, actor: ActorRole = ActorRole.ADMIN) -> Project:
        """Cancel the project, pre-empting operations queued behind it.

        Only a cancellation that can commit pre-empts: a blank reason fails
        before the flag goes up, and an already terminal project is handled
        like any other rejected command.
        """
        text = (reason or "").strip()
        if not text:
            raise ValidationError("a cancellation reason is required", project_id=project_id, attempted="cancel")

        def operation(project: Project, at: datetime) -> TransitionOutcome:
            return self.machine.cancel(project, text, actor=actor, at=at)

        return self._run(project_id, "cancel", operation, cancelling=not self._is_terminal(project_id))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_project(self, project_id: str) -> Project:
        return self.store.read_project(project_id)

    def list_projects(self, status: ProjectStatus | None = None) -> list[Project]:
        projects = [self.store.read_project(project_id) for project_id in self.store.list_project_ids()]
        if status is None:
            return projects
        return [project for project in projects if project.status == status]

    def status_history(self, project_id: str) -> list[StatusHistoryEntry]:
        return list(self.store.read_project(project_id).status_history)

    def revisions(self, project_id: str) -> list[RevisionRequest]:
        return list(self.store.read_project(project_id).revision_history)

    def artifact_history(self, project_id: str, kind: ArtifactKind) -> list[ArtifactVersion]:
        self.store.read_project(project_id)
        return self.artifacts.history(project_id, kind)

    def get_artifact(self, project_id: str, kind: ArtifactKind, version: int | None = None) -> ArtifactVersion:
        self.store.read_project(project_id)
        return self.artifacts.get(project_id, kind, version)

    def _is_terminal(self, project_id: str) -> bool:
        # Terminal statuses never change, so an unlocked read is enough here.
        try:
            return self.store.read_project(project_id).is_terminal
        except NotFound:
            return False

    def _current_costing(self, project: Project) -> ArtifactVersion | None:
        if project.costing.current_version == 0:
            return None
        return self.artifacts.get(project.project_id, ArtifactKind.COSTING, project.costing.current_version)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @staticmethod
    def _events_for(project: Project, outcome: TransitionOutcome, at: datetime) -> list[DomainEvent]:
        project_id = project.project_id
        events: list[DomainEvent] = []
        if outcome.artifact is not None:
            events.append(
                ArtifactAttached(
                    project_id=project_id,
                    timestamp=at,
                    kind=outcome.artifact.kind,
                    version=outcome.artifact.version,
                    uploaded_by=outcome.artifact.uploaded_by,
                )
            )
        for revision in outcome.resolved_revisions:
            events.append(
                RevisionResolved(
                    project_id=project_id,
                    timestamp=at,
                    revision_id=revision.revision_id,
                    target_kind=revision.target_kind,
                    resolved_by_version=revision.resolved_by_version,
                )
            )
        if outcome.opened_revision is not None:
            revision = outcome.opened_revision
            events.append(
                RevisionRequested(
                    project_id=project_id,
                    timestamp=at,
                    revision_id=revision.revision_id,
                    target_kind=revision.target_kind,
                    target_version=revision.target_version,
                    revision_type=revision.revision_type,
                    feedback=revision.feedback,
                )
            )
        for entry in outcome.transitions:
            events.append(
                ProjectStatusChanged(
                    project_id=project_id,
                    timestamp=entry.timestamp,
                    from_status=entry.from_status,
                    to_status=entry.to_status,
                    actor_role=entry.actor_role,
                    notes=entry.notes,
                )
            )
        if outcome.payment_stages and project.payment_plan is not None:
            events.append(
                PaymentScheduleCreated(
                    project_id=project_id,
                    timestamp=at,
                    plan=project.payment_plan,
                    total_amount=sum(stage.amount for stage in outcome.payment_stages),
                    stages=outcome.payment_stages,
                )
            )
        if outcome.stage_change is not None:
            stage, previous = outcome.stage_change
            events.append(
                PaymentStageStatusChanged(
                    project_id=project_id,
                    timestamp=at,
                    label=stage.label,
                    from_status=previous,
                    to_status=stage.status,
                    actor_role=stage.updated_by,
                    reason=stage.rejection_reason,
                    notes=stage.notes,
                    reference=stage.reference,
                )
            )
        if outcome.fabrication_update is not None:
            update = outcome.fabrication_update
            events.append(
                FabricationProgressRecorded(
                    project_id=project_id,
                    timestamp=at,
                    progress=update.progress,
                    actor_role=update.actor_role,
                    notes=update.notes,
                )
            )
        return events

    def _publish_all(self, events: list[DomainEvent]) -> None:
        """Publish a committed operation's events. Called with the project's lock held.

        While a project has undelivered events, its new events queue behind
        them so the sink never sees them out of commit order.
        """
        for event in events:
            with self._undelivered_guard:
                held_back = any(queued.project_id == event.project_id for queued in self.undelivered_events)
            if held_back or not self._publish(event):
                with self._undelivered_guard:
                    self.undelivered_events.append(event)

    def _publish(self, event: DomainEvent) -> bool:
        attempts = self.settings.event_publish_attempts
        for attempt in range(1, attempts + 1):
            try:
                self.sink.publish(event)
                return True
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Publishing %s %s failed (attempt %d/%d)",
                    event.event_type,
                    event.event_id,
                    attempt,
                    attempts,
                    exc_info=True,
                )
        logger.error("Giving up on %s %s for %s", event.event_type, event.event_id, event.project_id)
        return False

    def redeliver(self) -> int:
        """Retry undelivered events, one project at a time. Returns how many were delivered.

        Each project's backlog is replayed under that project's lock and
        stops at the first event that still fails, so per-project order holds.
        """
        with self._undelivered_guard:
            project_ids = list(dict.fromkeys(event.project_id for event in self.undelivered_events))
        delivered = 0
        for project_id in project_ids:
            with self.locks.hold(project_id):
                delivered += self._redeliver_project(project_id)
        return delivered

    def _redeliver_project(self, project_id: str) -> int:
        with self._undelivered_guard:
            pending = [event for event in self.undelivered_events if event.project_id == project_id]
            self.undelivered_events = [event for event in self.undelivered_events if event.project_id != project_id]
        for index, event in enumerate(pending):
            if not self._publish(event):
                with self._undelivered_guard:
                    self.undelivered_events.extend(pending[index:])
                return index
        return len(pending)
