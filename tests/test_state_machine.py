from __future__ import annotations

from datetime import UTC, datetime

import pytest

from fabrication_workflow.errors import InvalidTransition, TerminalState, ValidationError
from fabrication_workflow.models import (
    PROJECT_STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    ActorRole,
    ArtifactKind,
    ArtifactVersion,
    Project,
    ProjectStatus,
)
from fabrication_workflow.state_machine import ProjectStateMachine, coerce_choice

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)


def _project(status: ProjectStatus = ProjectStatus.PENDING_BLUEPRINT) -> Project:
    return Project(
        project_id="PRJ-1",
        status=status,
        category="gate",
        customer_ref="CUST-001",
        created_at=NOW,
        updated_at=NOW,
    )


def test_terminal_statuses_have_no_exits() -> None:
    for status in TERMINAL_STATUSES:
        assert PROJECT_STATUS_TRANSITIONS[status] == frozenset()
    for status in ProjectStatus:
        if status not in TERMINAL_STATUSES:
            assert ProjectStatus.CANCELLED in PROJECT_STATUS_TRANSITIONS[status]


def test_transition_appends_history_entry() -> None:
    project = _project()
    entry = ProjectStateMachine().transition(
        project,
        ProjectStatus.PENDING_COSTING,
        actor=ActorRole.ENGINEER,
        at=NOW,
        attempted="test",
        notes="blueprint v1",
    )
    assert project.status == ProjectStatus.PENDING_COSTING
    assert project.status_history == [entry]
    assert entry.from_status == ProjectStatus.PENDING_BLUEPRINT
    assert entry.actor_role == ActorRole.ENGINEER
    assert project.updated_at == NOW


@pytest.mark.parametrize(
    ("start", "target"),
    [
        (ProjectStatus.PENDING_BLUEPRINT, ProjectStatus.APPROVED),
        (ProjectStatus.PENDING_COSTING, ProjectStatus.FABRICATION),
        (ProjectStatus.APPROVED, ProjectStatus.PENDING_BLUEPRINT),
        (ProjectStatus.FABRICATION, ProjectStatus.APPROVED),
    ],
)
def test_illegal_transition_changes_nothing(start: ProjectStatus, target: ProjectStatus) -> None:
    project = _project(start)
    with pytest.raises(InvalidTransition) as excinfo:
        ProjectStateMachine().transition(project, target, actor=ActorRole.ADMIN, at=NOW, attempted="test")
    assert not isinstance(excinfo.value, TerminalState)
    assert excinfo.value.current_status == start
    assert project.status == start
    assert project.status_history == []


@pytest.mark.parametrize("status", [ProjectStatus.COMPLETED, ProjectStatus.CANCELLED])
def test_terminal_project_rejects_everything(status: ProjectStatus) -> None:
    project = _project(status)
    machine = ProjectStateMachine()
    with pytest.raises(TerminalState):
        machine.transition(project, ProjectStatus.CANCELLED, actor=ActorRole.ADMIN, at=NOW, attempted="cancel")
    with pytest.raises(TerminalState):
        machine.guard_attach(project, ArtifactKind.BLUEPRINT)


def test_record_attachment_moves_pointer_and_stage() -> None:
    project = _project()
    artifact = ArtifactVersion(
        project_id="PRJ-1",
        kind=ArtifactKind.BLUEPRINT,
        version=1,
        filename="gate.pdf",
        uploaded_by="eng-7",
        uploaded_at=NOW,
    )
    outcome = ProjectStateMachine().record_attachment(project, artifact, actor=ActorRole.ENGINEER, at=NOW)
    assert project.blueprint.current_version == 1
    assert project.status == ProjectStatus.PENDING_COSTING
    assert outcome.artifact == artifact
    assert [entry.to_status for entry in outcome.transitions] == [ProjectStatus.PENDING_COSTING]


def test_coerce_choice_accepts_values_and_rejects_unknowns() -> None:
    project = _project()
    assert coerce_choice(ArtifactKind, " Costing ", project=project, attempted="test") == ArtifactKind.COSTING
    assert coerce_choice(ArtifactKind, ArtifactKind.BLUEPRINT, project=project, attempted="test") is ArtifactKind.BLUEPRINT
    with pytest.raises(ValidationError, match="Expected one of: blueprint, costing"):
        coerce_choice(ArtifactKind, "drawing", project=project, attempted="test")
