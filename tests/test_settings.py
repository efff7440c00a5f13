from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from fabrication_workflow.canonical import to_canonical_json
from fabrication_workflow.models import ProjectStatus
from fabrication_workflow.settings import RuntimeSettings


@pytest.fixture(autouse=True)
def _clean_workflow_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "WORKFLOW_STATE_STORE_ROOT",
        "WORKFLOW_EVENT_LOG",
        "WORKFLOW_SINGLE_OPEN_REVISION",
        "WORKFLOW_EVENT_PUBLISH_ATTEMPTS",
        "WORKFLOW_PROJECT_ID_PREFIX",
    ):
        monkeypatch.delenv(name, raising=False)


def test_runtime_settings_defaults() -> None:
    settings = RuntimeSettings.from_env()
    assert settings == RuntimeSettings()
    assert settings.single_open_revision is True
    assert settings.event_publish_attempts == 3


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("WORKFLOW_STATE_STORE_ROOT", str(tmp_path / "store"))
    monkeypatch.setenv("WORKFLOW_SINGLE_OPEN_REVISION", "off")
    monkeypatch.setenv("WORKFLOW_EVENT_PUBLISH_ATTEMPTS", "5")
    monkeypatch.setenv("WORKFLOW_PROJECT_ID_PREFIX", " job ")
    settings = RuntimeSettings.from_env()
    assert settings.single_open_revision is False
    assert settings.event_publish_attempts == 5
    assert settings.project_id_prefix == "JOB"
    assert settings.state_store_path(Path("/ignored")) == tmp_path / "store"
    assert settings.event_log_path(tmp_path) == tmp_path / "events.jsonl"


def test_runtime_settings_reads_env_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("WORKFLOW_PROJECT_ID_PREFIX=FAB\nWORKFLOW_EVENT_LOG=audit.jsonl\n", encoding="utf-8")
    monkeypatch.setenv("WORKFLOW_EVENT_LOG", "from-shell.jsonl")
    settings = RuntimeSettings.from_env(env_file=env_file)
    # process environment wins over the file
    assert settings.event_log == "from-shell.jsonl"
    assert settings.project_id_prefix == "FAB"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("WORKFLOW_EVENT_PUBLISH_ATTEMPTS", "0"),
        ("WORKFLOW_EVENT_PUBLISH_ATTEMPTS", "many"),
        ("WORKFLOW_SINGLE_OPEN_REVISION", "sometimes"),
        ("WORKFLOW_PROJECT_ID_PREFIX", "PR-J"),
        ("WORKFLOW_STATE_STORE_ROOT", "  "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_canonical_json_is_order_independent() -> None:
    left = {"b": 2, "a": 1, "nested": {"z": 9, "y": [3, 2, 1]}}
    right = {"nested": {"y": [3, 2, 1], "z": 9}, "a": 1, "b": 2}
    assert to_canonical_json(left) == to_canonical_json(right)


def test_canonical_json_normalizes_domain_values() -> None:
    payload = {"status": ProjectStatus.APPROVED, "qty": Decimal("4.00"), "price": Decimal("12.5")}
    assert to_canonical_json(payload) == '{"price":12.5,"qty":4,"status":"approved"}'
    with pytest.raises(TypeError):
        to_canonical_json({"bad": object()})
