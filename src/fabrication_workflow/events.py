"""Domain events emitted after each committed workflow operation.

Delivery and formatting belong to external notification and billing
collaborators; the core only hands events to an ``EventSink``.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

from .canonical import to_canonical_json
from .models import (
    ActorRole,
    ArtifactKind,
    PaymentPlan,
    PaymentStage,
    PaymentStageLabel,
    PaymentStageStatus,
    ProjectStatus,
    RevisionType,
)

logger = logging.getLogger(__name__)


def _event_id() -> str:
    return f"EVT-{uuid.uuid4().hex[:12]}"


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=_event_id)
    event_type: str
    project_id: str
    timestamp: datetime


class ProjectCreated(DomainEvent):
    event_type: Literal["ProjectCreated"] = "ProjectCreated"
    category: str
    customer_ref: str


class ProjectStatusChanged(DomainEvent):
    event_type: Literal["ProjectStatusChanged"] = "ProjectStatusChanged"
    from_status: ProjectStatus
    to_status: ProjectStatus
    actor_role: ActorRole
    notes: str | None = None


class ArtifactAttached(DomainEvent):
    event_type: Literal["ArtifactAttached"] = "ArtifactAttached"
    kind: ArtifactKind
    version: int
    uploaded_by: str


class RevisionRequested(DomainEvent):
    event_type: Literal["RevisionRequested"] = "RevisionRequested"
    revision_id: str
    target_kind: ArtifactKind
    target_version: int
    revision_type: RevisionType
    feedback: str


class RevisionResolved(DomainEvent):
    event_type: Literal["RevisionResolved"] = "RevisionResolved"
    revision_id: str
    target_kind: ArtifactKind
    resolved_by_version: int | None


class PaymentScheduleCreated(DomainEvent):
    event_type: Literal["PaymentScheduleCreated"] = "PaymentScheduleCreated"
    plan: PaymentPlan
    total_amount: int
    stages: list[PaymentStage]


class PaymentStageStatusChanged(DomainEvent):
    event_type: Literal["PaymentStageStatusChanged"] = "PaymentStageStatusChanged"
    label: PaymentStageLabel
    from_status: PaymentStageStatus
    to_status: PaymentStageStatus
    actor_role: ActorRole | None = None
    reason: str | None = None
    notes: str = ""
    reference: str | None = None


class FabricationProgressRecorded(DomainEvent):
    event_type: Literal["FabricationProgressRecorded"] = "FabricationProgressRecorded"
    progress: int
    actor_role: ActorRole
    notes: str = ""


class EventSink(Protocol):
    def publish(self, event: DomainEvent) -> None: ...


class InMemoryEventSink:
    """Collects published events in order. Used by tests and embedding callers."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []
        self._guard = threading.Lock()

    def publish(self, event: DomainEvent) -> None:
        with self._guard:
            self.events.append(event)

    def of_type(self, event_type: str) -> list[DomainEvent]:
        with self._guard:
            return [event for event in self.events if event.event_type == event_type]


class JsonlEventSink:
    """Appends one canonical JSON line per event to a log file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._guard = threading.Lock()

    def publish(self, event: DomainEvent) -> None:
        line = to_canonical_json(event)
        with self._guard:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(f"{line}\n")
