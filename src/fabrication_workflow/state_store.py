from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import ContextManager, Iterator

from pydantic import ValidationError

from .errors import ConflictError, NotFound
from .models import ArtifactKind, ArtifactVersion, Project

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_ARTIFACT_FILE_RE = re.compile(r"^v(\d+)\.json$")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place so readers never observe a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if it is unreadable.

    Raises:
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------

class StateStore:
    """Persistence boundary for project snapshots and artifact versions.

    Project snapshots are replaced wholesale on every committed operation.
    Artifact versions are write-once: storing a ``(project, kind, version)``
    that already exists raises ``ConflictError``.
    """

    def exclusive(self, project_id: str) -> ContextManager[None]:
        """Cross-process exclusive section for one project (no-op by default)."""
        return nullcontext()

    def has_project(self, project_id: str) -> bool:
        raise NotImplementedError

    def read_project(self, project_id: str) -> Project:
        raise NotImplementedError

    def write_project(self, project: Project) -> None:
        raise NotImplementedError

    def list_project_ids(self) -> list[str]:
        raise NotImplementedError

    def append_artifact(self, artifact: ArtifactVersion) -> None:
        raise NotImplementedError

    def read_artifacts(self, project_id: str, kind: ArtifactKind) -> list[ArtifactVersion]:
        raise NotImplementedError


class InMemoryStateStore(StateStore):
    """Process-local store. Snapshots are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._projects: dict[str, Project] = {}
        self._artifacts: dict[tuple[str, ArtifactKind], dict[int, ArtifactVersion]] = {}
        self._guard = threading.Lock()

    def has_project(self, project_id: str) -> bool:
        with self._guard:
            return project_id in self._projects

    def read_project(self, project_id: str) -> Project:
        with self._guard:
            project = self._projects.get(project_id)
        if project is None:
            raise NotFound(f"project not found: {project_id}", project_id=project_id)
        return project.model_copy(deep=True)

    def write_project(self, project: Project) -> None:
        with self._guard:
            self._projects[project.project_id] = project.model_copy(deep=True)

    def list_project_ids(self) -> list[str]:
        with self._guard:
            return sorted(self._projects)

    def append_artifact(self, artifact: ArtifactVersion) -> None:
        with self._guard:
            series = self._artifacts.setdefault((artifact.project_id, artifact.kind), {})
            if artifact.version in series:
                raise ConflictError(
                    f"{artifact.kind.value} v{artifact.version} already exists for {artifact.project_id}",
                    project_id=artifact.project_id,
                    attempted=f"attach_{artifact.kind.value}",
                )
            series[artifact.version] = artifact

    def read_artifacts(self, project_id: str, kind: ArtifactKind) -> list[ArtifactVersion]:
        with self._guard:
            series = self._artifacts.get((project_id, kind), {})
            return [series[version] for version in sorted(series)]


class FileStateStore(StateStore):
    """Filesystem store.

    Layout::

        <root>/projects/<project_id>/project.json
        <root>/projects/<project_id>/artifacts/<kind>/v000001.json

    All writes use atomic temp-file-then-rename. ``exclusive`` takes an
    ``fcntl`` lock on a sidecar file so several processes sharing the same
    directory linearize their operations on one project.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.projects_dir = self.root / "projects"
        self.projects_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def project_dir(self, project_id: str) -> Path:
        return project_scoped_root(self.root, project_id)

    def project_path(self, project_id: str) -> Path:
        return self.project_dir(project_id) / "project.json"

    def artifact_dir(self, project_id: str, kind: ArtifactKind) -> Path:
        return self.project_dir(project_id) / "artifacts" / kind.value

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def exclusive(self, project_id: str) -> ContextManager[None]:
        return _locked_file(self.project_dir(project_id) / ".project")

    def has_project(self, project_id: str) -> bool:
        return self.project_path(project_id).is_file()

    def read_project(self, project_id: str) -> Project:
        """Read and validate a persisted project snapshot.

        Raises:
            NotFound: If the project has never been written, or the
                snapshot on disk belongs to a different id that maps to the
                same directory.
            ValueError: If the file is corrupt or fails validation.
        """
        path = self.project_path(project_id)
        if not path.is_file():
            raise NotFound(f"project not found: {project_id}", project_id=project_id)
        text = _safe_read_json(path, "project")
        try:
            project = Project.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"project at {path} failed validation: {exc}") from exc
        if project.project_id != project_id:
            raise NotFound(f"project not found: {project_id}", project_id=project_id)
        return project

    def write_project(self, project: Project) -> None:
        _atomic_write_text(self.project_path(project.project_id), project.model_dump_json(indent=2))

    def list_project_ids(self) -> list[str]:
        project_ids: list[str] = []
        for path in sorted(self.projects_dir.glob("*/project.json")):
            try:
                project_ids.append(self.read_project_id(path))
            except ValueError:
                logger.warning("Skipping unreadable project snapshot %s", path)
        return sorted(project_ids)

    @staticmethod
    def read_project_id(path: Path) -> str:
        text = _safe_read_json(path, "project")
        try:
            return Project.model_validate_json(text).project_id
        except ValidationError as exc:
            raise ValueError(f"project at {path} failed validation: {exc}") from exc

    # ------------------------------------------------------------------
    # Artifacts (write-once)
    # ------------------------------------------------------------------

    def append_artifact(self, artifact: ArtifactVersion) -> None:
        path = self.artifact_dir(artifact.project_id, artifact.kind) / f"v{artifact.version:06d}.json"
        if path.exists():
            raise ConflictError(
                f"{artifact.kind.value} v{artifact.version} already exists for {artifact.project_id}",
                project_id=artifact.project_id,
                attempted=f"attach_{artifact.kind.value}",
            )
        _atomic_write_text(path, artifact.model_dump_json(indent=2))

    def read_artifacts(self, project_id: str, kind: ArtifactKind) -> list[ArtifactVersion]:
        directory = self.artifact_dir(project_id, kind)
        if not directory.is_dir():
            return []
        versions: list[tuple[int, ArtifactVersion]] = []
        for path in directory.iterdir():
            match = _ARTIFACT_FILE_RE.match(path.name)
            if match is None:
                continue
            text = _safe_read_json(path, f"{kind.value} artifact")
            try:
                artifact = ArtifactVersion.model_validate_json(text)
            except ValidationError as exc:
                raise ValueError(f"{kind.value} artifact at {path} failed validation: {exc}") from exc
            versions.append((int(match.group(1)), artifact))
        return [artifact for _, artifact in sorted(versions, key=lambda pair: pair[0])]


# ---------------------------------------------------------------------------
# Utility functions
# ---------------------------------------------------------------------------

def sanitize_project_id(project_id: str) -> str:
    """Sanitize a project ID for use as a filesystem path component.

    Raises:
        ValueError: If the project ID is empty or contains no safe characters.
    """
    value = project_id.strip()
    if not value:
        raise ValueError("project_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-")
    if not value:
        raise ValueError("project_id contains no filesystem-safe characters")
    return value[:128]


def project_scoped_root(root: Path, project_id: str) -> Path:
    """Return ``root / "projects" / <sanitized id>``."""
    return root / "projects" / sanitize_project_id(project_id)
