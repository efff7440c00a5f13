"""Entry point for `python -m fabrication_workflow` and the `fabrication-workflow` CLI script."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from fabrication_workflow.canonical import to_canonical_json
from fabrication_workflow.commands import dispatch, parse_command
from fabrication_workflow.coordinator import WorkflowCoordinator
from fabrication_workflow.errors import WorkflowError
from fabrication_workflow.events import JsonlEventSink
from fabrication_workflow.models import ProjectStatus
from fabrication_workflow.settings import RuntimeSettings
from fabrication_workflow.state_store import FileStateStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive the fabrication project lifecycle from the command line")
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="State store directory (default: WORKFLOW_STATE_STORE_ROOT relative to cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="action", required=True)

    apply_parser = subparsers.add_parser("apply", help="Apply one JSON workflow command")
    source = apply_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--command-file", type=Path, default=None, help="Path to a JSON command document")
    source.add_argument("--command-json", default=None, help="Inline JSON command document")

    show_parser = subparsers.add_parser("show", help="Print a project snapshot")
    show_parser.add_argument("project_id")

    history_parser = subparsers.add_parser("history", help="Print a project's status history")
    history_parser.add_argument("project_id")

    list_parser = subparsers.add_parser("list", help="List projects")
    list_parser.add_argument(
        "--status",
        type=lambda value: value.lower(),
        default=None,
        choices=[status.value for status in ProjectStatus],
        help="Only list projects in this status",
    )
    return parser.parse_args(argv)


def build_coordinator(state_dir: Path | None) -> WorkflowCoordinator:
    settings = RuntimeSettings.from_env(env_file=Path.cwd() / ".env")
    root = state_dir.resolve() if state_dir is not None else settings.state_store_path(Path.cwd())
    return WorkflowCoordinator(
        FileStateStore(root),
        sink=JsonlEventSink(settings.event_log_path(root)),
        settings=settings,
    )


def load_command_text(*, command_file: Path | None, command_json: str | None) -> str:
    if command_json is not None:
        trimmed = command_json.strip()
        if not trimmed:
            raise ValueError("command_json must be non-empty")
        return trimmed
    if command_file is None or not command_file.is_file():
        raise FileNotFoundError(f"Command file does not exist: {command_file}")
    return command_file.read_text(encoding="utf-8")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        coordinator = build_coordinator(args.state_dir)
        if args.action == "apply":
            text = load_command_text(command_file=args.command_file, command_json=args.command_json)
            result: object = dispatch(coordinator, parse_command(text))
        elif args.action == "show":
            result = coordinator.get_project(args.project_id)
        elif args.action == "history":
            result = coordinator.status_history(args.project_id)
        else:
            status = ProjectStatus(args.status) if args.status else None
            result = [project.project_id for project in coordinator.list_projects(status)]
    except WorkflowError as exc:
        logging.error("Command rejected: %s", exc)
        print(to_canonical_json(exc.to_dict()))
        return 2
    except (OSError, ValueError) as exc:
        logging.error("Unable to run command: %s", exc)
        return 1

    print(to_canonical_json(result))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
