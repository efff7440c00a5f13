from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    event_log: str = "events.jsonl"
    single_open_revision: bool = True
    event_publish_attempts: int = 3
    project_id_prefix: str = "PRJ"

    @classmethod
    def from_env(cls, *, env_file: Path | None = None) -> "RuntimeSettings":
        """Build settings from ``WORKFLOW_*`` variables.

        When *env_file* exists it is loaded first; variables already present
        in the environment win.
        """
        if env_file is not None and env_file.is_file():
            load_dotenv(env_file, override=False)
        return cls(
            state_store_root=os.getenv("WORKFLOW_STATE_STORE_ROOT", "state_store"),
            event_log=os.getenv("WORKFLOW_EVENT_LOG", "events.jsonl"),
            single_open_revision=_get_env_bool("WORKFLOW_SINGLE_OPEN_REVISION", default=True),
            event_publish_attempts=_get_env_int("WORKFLOW_EVENT_PUBLISH_ATTEMPTS", default=3, minimum=1, maximum=20),
            project_id_prefix=os.getenv("WORKFLOW_PROJECT_ID_PREFIX", "PRJ"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.state_store_root.strip():
            raise ValueError("WORKFLOW_STATE_STORE_ROOT must be non-empty")
        if not self.event_log.strip():
            raise ValueError("WORKFLOW_EVENT_LOG must be non-empty")
        prefix = self.project_id_prefix.strip().upper()
        if not prefix or not prefix.isalnum():
            raise ValueError(f"WORKFLOW_PROJECT_ID_PREFIX must be alphanumeric, got: {self.project_id_prefix!r}")
        if self.event_publish_attempts < 1:
            raise ValueError(f"WORKFLOW_EVENT_PUBLISH_ATTEMPTS must be >= 1, got: {self.event_publish_attempts}")
        return RuntimeSettings(
            state_store_root=self.state_store_root.strip(),
            event_log=self.event_log.strip(),
            single_open_revision=self.single_open_revision,
            event_publish_attempts=self.event_publish_attempts,
            project_id_prefix=prefix,
        )

    def state_store_path(self, base: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else base / path

    def event_log_path(self, state_store: Path) -> Path:
        path = Path(self.event_log)
        return path if path.is_absolute() else state_store / path


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got: {raw!r}")


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
