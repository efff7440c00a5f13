from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Callable

from .errors import NotFound, ValidationError
from .locks import ProjectLocks
from .models import ArtifactKind, ArtifactUpload, ArtifactVersion, CostingUpload
from .state_store import StateStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ArtifactStore:
    """Append-only, monotonically versioned blueprint and costing documents.

    Versions are keyed by ``(project_id, kind, version)`` and never edited or
    deleted. Version assignment runs under the project's lock from
    ``ProjectLocks``, the same re-entrant lock the coordinator holds while
    guarding a transition, so appends for one project are serialized and
    numbers never collide or skip.
    """

    def __init__(
        self,
        store: StateStore,
        locks: ProjectLocks,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.locks = locks
        self.clock = clock

    def append(
        self,
        project_id: str,
        kind: ArtifactKind,
        upload: ArtifactUpload,
        *,
        blueprint_version: int | None = None,
    ) -> ArtifactVersion:
        """Store *upload* as the next version of *kind* for *project_id*.

        Args:
            project_id: Owning project.
            kind: Blueprint or costing.
            upload: File metadata (and, for costing, amounts) for the version.
            blueprint_version: For costing, the blueprint version being priced.

        Returns:
            The stored ArtifactVersion.

        Raises:
            ValidationError: If costing fields are supplied for a blueprint.
        """
        fields = upload.model_dump()
        if kind == ArtifactKind.BLUEPRINT:
            if isinstance(upload, CostingUpload) and (upload.total_amount is not None or upload.breakdown):
                raise ValidationError(
                    "blueprint uploads cannot carry costing amounts",
                    project_id=project_id,
                    attempted="attach_blueprint",
                )
            fields.pop("total_amount", None)
            fields.pop("breakdown", None)
        else:
            fields["blueprint_version"] = blueprint_version

        with self.locks.hold(project_id):
            version = self.latest_version(project_id, kind) + 1
            artifact = ArtifactVersion(
                project_id=project_id,
                kind=kind,
                version=version,
                uploaded_at=self.clock(),
                **fields,
            )
            self.store.append_artifact(artifact)
        logger.info("Stored %s v%d for %s", kind.value, version, project_id)
        return artifact

    def latest_version(self, project_id: str, kind: ArtifactKind) -> int:
        versions = self.store.read_artifacts(project_id, kind)
        return versions[-1].version if versions else 0

    def get(self, project_id: str, kind: ArtifactKind, version: int | None = None) -> ArtifactVersion:
        """Return *version*, or the latest version when omitted.

        Raises:
            NotFound: If no versions exist or *version* is unknown.
        """
        versions = self.store.read_artifacts(project_id, kind)
        if not versions:
            raise NotFound(f"no {kind.value} versions for {project_id}", project_id=project_id)
        if version is None:
            return versions[-1]
        for artifact in versions:
            if artifact.version == version:
                return artifact
        raise NotFound(f"{kind.value} v{version} not found for {project_id}", project_id=project_id)

    def history(self, project_id: str, kind: ArtifactKind) -> list[ArtifactVersion]:
        """Every version of *kind*, oldest first."""
        return self.store.read_artifacts(project_id, kind)
