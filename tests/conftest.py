from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from fabrication_workflow.coordinator import WorkflowCoordinator
from fabrication_workflow.events import InMemoryEventSink
from fabrication_workflow.models import ArtifactUpload, CostingUpload, ProjectDraft
from fabrication_workflow.state_store import InMemoryStateStore


class TickingClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def blueprint(filename: str = "gate-v1.pdf") -> ArtifactUpload:
    return ArtifactUpload(filename=filename, original_name=filename, uri=f"s3://uploads/{filename}", uploaded_by="eng-7")


def costing(total: int | None = 50000, filename: str = "costing-v1.xlsx") -> CostingUpload:
    return CostingUpload(filename=filename, uploaded_by="eng-7", total_amount=total)


def draft(**overrides: object) -> ProjectDraft:
    fields: dict[str, object] = {"customer_ref": "CUST-001", "category": "gate", "title": "Sliding gate"}
    fields.update(overrides)
    return ProjectDraft(**fields)


@pytest.fixture
def sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def coordinator(sink: InMemoryEventSink) -> WorkflowCoordinator:
    return WorkflowCoordinator(InMemoryStateStore(), sink=sink, clock=TickingClock())
