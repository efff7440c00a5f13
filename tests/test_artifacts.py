from __future__ import annotations

import threading
from pathlib import Path

import pytest

from conftest import TickingClock, blueprint, costing
from fabrication_workflow.artifacts import ArtifactStore
from fabrication_workflow.errors import ConflictError, NotFound, ValidationError
from fabrication_workflow.locks import ProjectLocks
from fabrication_workflow.models import ArtifactKind
from fabrication_workflow.state_store import FileStateStore, InMemoryStateStore


def _artifact_store() -> ArtifactStore:
    return ArtifactStore(InMemoryStateStore(), ProjectLocks(), clock=TickingClock())


def test_versions_start_at_one_and_increase() -> None:
    store = _artifact_store()
    first = store.append("PRJ-1", ArtifactKind.BLUEPRINT, blueprint("a.pdf"))
    second = store.append("PRJ-1", ArtifactKind.BLUEPRINT, blueprint("b.pdf"))
    assert (first.version, second.version) == (1, 2)
    assert store.latest_version("PRJ-1", ArtifactKind.BLUEPRINT) == 2
    assert store.latest_version("PRJ-1", ArtifactKind.COSTING) == 0
    assert store.latest_version("PRJ-2", ArtifactKind.BLUEPRINT) == 0


def test_get_returns_requested_or_latest_version() -> None:
    store = _artifact_store()
    store.append("PRJ-1", ArtifactKind.BLUEPRINT, blueprint("a.pdf"))
    store.append("PRJ-1", ArtifactKind.BLUEPRINT, blueprint("b.pdf"))
    assert store.get("PRJ-1", ArtifactKind.BLUEPRINT, 1).filename == "a.pdf"
    assert store.get("PRJ-1", ArtifactKind.BLUEPRINT).filename == "b.pdf"
    assert [artifact.filename for artifact in store.history("PRJ-1", ArtifactKind.BLUEPRINT)] == ["a.pdf", "b.pdf"]


def test_get_missing_version_raises_not_found() -> None:
    store = _artifact_store()
    with pytest.raises(NotFound):
        store.get("PRJ-1", ArtifactKind.COSTING)
    store.append("PRJ-1", ArtifactKind.BLUEPRINT, blueprint())
    with pytest.raises(NotFound):
        store.get("PRJ-1", ArtifactKind.BLUEPRINT, 9)


def test_costing_version_records_priced_blueprint() -> None:
    store = _artifact_store()
    artifact = store.append("PRJ-1", ArtifactKind.COSTING, costing(52000), blueprint_version=2)
    assert artifact.total_amount == 52000
    assert artifact.blueprint_version == 2


def test_blueprint_rejects_costing_amounts() -> None:
    store = _artifact_store()
    with pytest.raises(ValidationError):
        store.append("PRJ-1", ArtifactKind.BLUEPRINT, costing(1000))
    assert store.history("PRJ-1", ArtifactKind.BLUEPRINT) == []


def test_stored_versions_are_write_once() -> None:
    backing = InMemoryStateStore()
    store = ArtifactStore(backing, ProjectLocks(), clock=TickingClock())
    artifact = store.append("PRJ-1", ArtifactKind.BLUEPRINT, blueprint())
    with pytest.raises(ConflictError):
        backing.append_artifact(artifact)


def test_concurrent_appends_get_distinct_contiguous_versions() -> None:
    store = _artifact_store()
    barrier = threading.Barrier(50)
    versions: list[int] = []
    guard = threading.Lock()

    def worker(index: int) -> None:
        barrier.wait()
        artifact = store.append("PRJ-1", ArtifactKind.BLUEPRINT, blueprint(f"b{index}.pdf"))
        with guard:
            versions.append(artifact.version)

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(50)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(versions) == list(range(1, 51))
    assert [artifact.version for artifact in store.history("PRJ-1", ArtifactKind.BLUEPRINT)] == list(range(1, 51))


def test_file_backed_appends_survive_reload(tmp_path: Path) -> None:
    backing = FileStateStore(tmp_path)
    locks = ProjectLocks(outer_section=backing.exclusive)
    store = ArtifactStore(backing, locks, clock=TickingClock())
    store.append("PRJ-1", ArtifactKind.BLUEPRINT, blueprint("a.pdf"))
    store.append("PRJ-1", ArtifactKind.COSTING, costing(1200), blueprint_version=1)

    reloaded = ArtifactStore(FileStateStore(tmp_path), ProjectLocks(), clock=TickingClock())
    assert reloaded.get("PRJ-1", ArtifactKind.BLUEPRINT).filename == "a.pdf"
    assert reloaded.get("PRJ-1", ArtifactKind.COSTING).total_amount == 1200
    assert (tmp_path / "projects" / "PRJ-1" / "artifacts" / "blueprint" / "v000001.json").is_file()
