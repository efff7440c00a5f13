from importlib.metadata import version

from .artifacts import ArtifactStore
from .commands import WorkflowCommand, dispatch, parse_command
from .coordinator import PaymentVerifier, RecordedStageVerifier, WorkflowCoordinator
from .errors import (
    AmountMissing,
    ConflictError,
    InvalidTransition,
    NotFound,
    PaymentNotVerified,
    PrerequisiteMissing,
    TerminalState,
    ValidationError,
    WorkflowError,
)
from .events import DomainEvent, EventSink, InMemoryEventSink, JsonlEventSink
from .locks import ProjectLocks
from .models import (
    PROJECT_STATUS_TRANSITIONS,
    ActorRole,
    ArtifactKind,
    ArtifactUpload,
    ArtifactVersion,
    CostingLineItem,
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
)
from .payments import compute_stages
from .revisions import RevisionLedger
from .settings import RuntimeSettings
from .state_machine import ProjectStateMachine
from .state_store import FileStateStore, InMemoryStateStore, StateStore


def get_version() -> str:
    try:
        return version("fabrication-workflow")
    except Exception:
        return "0.0.0"


__all__ = [
    "ActorRole",
    "AmountMissing",
    "ArtifactKind",
    "ArtifactStore",
    "ArtifactUpload",
    "ArtifactVersion",
    "ConflictError",
    "CostingLineItem",
    "CostingUpload",
    "DomainEvent",
    "EventSink",
    "FileStateStore",
    "InMemoryEventSink",
    "InMemoryStateStore",
    "InvalidTransition",
    "JsonlEventSink",
    "NotFound",
    "PROJECT_STATUS_TRANSITIONS",
    "PaymentNotVerified",
    "PaymentPlan",
    "PaymentStage",
    "PaymentStageLabel",
    "PaymentStageStatus",
    "PaymentVerifier",
    "PrerequisiteMissing",
    "Project",
    "ProjectDraft",
    "ProjectLocks",
    "ProjectStateMachine",
    "ProjectStatus",
    "RecordedStageVerifier",
    "RevisionLedger",
    "RevisionRequest",
    "RevisionType",
    "RuntimeSettings",
    "StateStore",
    "StatusHistoryEntry",
    "TerminalState",
    "ValidationError",
    "WorkflowCommand",
    "WorkflowCoordinator",
    "WorkflowError",
    "compute_stages",
    "dispatch",
    "get_version",
    "parse_command",
]
