from __future__ import annotations

from pathlib import Path

import pytest

from conftest import TickingClock, blueprint, costing, draft
from fabrication_workflow.coordinator import WorkflowCoordinator
from fabrication_workflow.errors import NotFound
from fabrication_workflow.events import JsonlEventSink
from fabrication_workflow.models import ArtifactKind, ProjectStatus
from fabrication_workflow.state_store import FileStateStore, InMemoryStateStore, project_scoped_root, sanitize_project_id


def test_sanitize_project_id() -> None:
    assert sanitize_project_id(" PRJ-1a2b ") == "PRJ-1a2b"
    assert sanitize_project_id("../etc/passwd") == "..-etc-passwd"
    with pytest.raises(ValueError):
        sanitize_project_id("   ")
    with pytest.raises(ValueError):
        sanitize_project_id("///")


def test_project_scoped_root(tmp_path: Path) -> None:
    assert project_scoped_root(tmp_path, "PRJ 7") == tmp_path / "projects" / "PRJ-7"


def test_in_memory_store_hands_out_copies(coordinator: WorkflowCoordinator) -> None:
    project_id = coordinator.create_project(draft()).project_id
    snapshot = coordinator.get_project(project_id)
    snapshot.status = ProjectStatus.CANCELLED
    assert coordinator.get_project(project_id).status == ProjectStatus.PENDING_BLUEPRINT
    with pytest.raises(NotFound):
        InMemoryStateStore().read_project(project_id)


def test_file_store_persists_across_coordinators(tmp_path: Path) -> None:
    first = WorkflowCoordinator(FileStateStore(tmp_path), clock=TickingClock())
    project_id = first.create_project(draft()).project_id
    first.attach_blueprint(project_id, blueprint())
    first.attach_costing(project_id, costing(52000))

    second = WorkflowCoordinator(FileStateStore(tmp_path), clock=TickingClock())
    project = second.approve(project_id, "staged")
    assert project.status == ProjectStatus.APPROVED
    assert [stage.amount for stage in project.payment_stages] == [15600, 20800, 15600]

    reloaded = FileStateStore(tmp_path).read_project(project_id)
    assert reloaded.model_dump() == project.model_dump()
    assert FileStateStore(tmp_path).list_project_ids() == [project_id]
    assert (tmp_path / "projects" / project_id / "project.json").is_file()


def test_file_store_missing_project(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path)
    assert not store.has_project("PRJ-none")
    with pytest.raises(NotFound):
        store.read_project("PRJ-none")


@pytest.mark.parametrize("alias", ["PRJ-a/b", "PRJ a b", " PRJ-a-b", "PRJ-a-b/"])
def test_file_store_does_not_resolve_aliased_ids(tmp_path: Path, alias: str) -> None:
    coordinator = WorkflowCoordinator(FileStateStore(tmp_path), clock=TickingClock())
    coordinator.create_project(draft(project_id="PRJ-a-b"))
    assert FileStateStore(tmp_path).project_path(alias) == FileStateStore(tmp_path).project_path("PRJ-a-b")

    with pytest.raises(NotFound):
        coordinator.get_project(alias)
    with pytest.raises(NotFound):
        coordinator.attach_blueprint(alias, blueprint())
    assert coordinator.get_project("PRJ-a-b").status == ProjectStatus.PENDING_BLUEPRINT
    assert coordinator.artifact_history("PRJ-a-b", ArtifactKind.BLUEPRINT) == []


def test_file_store_corrupt_snapshot_raises_value_error(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path)
    path = store.project_path("PRJ-bad")
    path.parent.mkdir(parents=True)
    path.write_text("", encoding="utf-8")
    with pytest.raises(ValueError, match="is empty"):
        store.read_project("PRJ-bad")
    assert store.list_project_ids() == []


def test_jsonl_sink_writes_one_line_per_event(tmp_path: Path) -> None:
    log_path = tmp_path / "events" / "events.jsonl"
    coordinator = WorkflowCoordinator(FileStateStore(tmp_path), sink=JsonlEventSink(log_path), clock=TickingClock())
    project_id = coordinator.create_project(draft()).project_id
    coordinator.attach_blueprint(project_id, blueprint())

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3
    assert lines[0].startswith('{"category":"gate"')
    assert '"event_type":"ArtifactAttached"' in lines[1]
