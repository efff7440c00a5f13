from __future__ import annotations

import logging
from datetime import datetime

from .errors import ConflictError, NotFound, ValidationError
from .models import ActorRole, ArtifactKind, Project, RevisionRequest, RevisionType

logger = logging.getLogger(__name__)


class RevisionLedger:
    """Append-only record of customer revision requests on a project.

    The ledger edits the ``revision_history`` of the project snapshot it is
    handed; callers pass the working copy they are about to commit.
    """

    def __init__(self, *, single_open_revision: bool = True) -> None:
        self.single_open_revision = single_open_revision

    @staticmethod
    def open_revisions(project: Project) -> list[RevisionRequest]:
        return [revision for revision in project.revision_history if revision.is_open]

    def open(
        self,
        project: Project,
        feedback: str,
        target_kind: ArtifactKind,
        target_version: int,
        *,
        requested_at: datetime,
        revision_type: RevisionType = RevisionType.MINOR,
        requested_by: ActorRole = ActorRole.CUSTOMER,
    ) -> RevisionRequest:
        """Append a new open revision request.

        Raises:
            ValidationError: If *feedback* is empty or whitespace.
            ConflictError: If another revision is still unresolved and the
                ledger allows only one open revision at a time.
        """
        text = (feedback or "").strip()
        if not text:
            raise ValidationError(
                "revision feedback must be non-empty",
                project_id=project.project_id,
                current_status=project.status,
                attempted="request_revision",
            )
        if self.single_open_revision:
            pending = self.open_revisions(project)
            if pending:
                raise ConflictError(
                    f"revision {pending[0].revision_id} is still open",
                    project_id=project.project_id,
                    current_status=project.status,
                    attempted="request_revision",
                )

        revision = RevisionRequest(
            target_kind=target_kind,
            target_version=target_version,
            feedback=text,
            revision_type=revision_type,
            requested_by=requested_by,
            requested_at=requested_at,
        )
        project.revision_history.append(revision)
        logger.info(
            "Opened %s against %s v%d on %s",
            revision.revision_id,
            target_kind.value,
            target_version,
            project.project_id,
        )
        return revision

    def resolve(
        self,
        project: Project,
        revision_id: str,
        *,
        resolved_at: datetime,
        resolved_by_version: int | None = None,
    ) -> RevisionRequest:
        """Mark one revision resolved.

        Raises:
            NotFound: If no revision has *revision_id*.
            ConflictError: If the revision was already resolved.
        """
        for index, revision in enumerate(project.revision_history):
            if revision.revision_id != revision_id:
                continue
            if not revision.is_open:
                raise ConflictError(
                    f"revision {revision_id} is already resolved",
                    project_id=project.project_id,
                    current_status=project.status,
                    attempted="resolve_revision",
                )
            resolved = revision.model_copy(
                update={"resolved_at": resolved_at, "resolved_by_version": resolved_by_version}
            )
            project.revision_history[index] = resolved
            logger.info("Resolved %s on %s", revision_id, project.project_id)
            return resolved
        raise NotFound(
            f"revision {revision_id} not found",
            project_id=project.project_id,
            attempted="resolve_revision",
        )

    def resolve_for(
        self,
        project: Project,
        kind: ArtifactKind,
        version: int,
        *,
        resolved_at: datetime,
    ) -> list[RevisionRequest]:
        """Resolve every open revision targeting *kind* with the new *version*."""
        return [
            self.resolve(project, revision.revision_id, resolved_at=resolved_at, resolved_by_version=version)
            for revision in self.open_revisions(project)
            if revision.target_kind == kind
        ]
