"""Maintenance CLI: inspect and sweep locks, remediate project folders.

Exit codes:
    0  success
    1  the requested operation failed
    2  invalid usage
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import argcomplete

from pmsheet.core.clock import ms_to_datetime, now_ms
from pmsheet.core.config import AppConfig
from pmsheet.core.exceptions import PMSheetError
from pmsheet.core.locks import LockManager, ResourceKind
from pmsheet.core.logging import flush_logging_handlers, setup_logging
from pmsheet.core.version import __version__
from pmsheet.projects.service import ProjectService, build_service

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def _print_error(msg: str) -> None:
    print(f"ERROR: {msg}", file=sys.stderr)


def _resource_kind(value: str) -> ResourceKind:
    try:
        return ResourceKind.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pmsheet",
        description="Maintenance commands for the pmsheet project store",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--data-dir", type=Path, help="Data directory (overrides PMSHEET_DATA_DIR)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (overrides PMSHEET_LOG_LEVEL)",
    )
    parser.add_argument("--log-format", choices=["text", "json"], help="Log output format")
    parser.add_argument("--json", action="store_true", dest="as_json", help="Print results as JSON")

    groups = parser.add_subparsers(dest="group", metavar="{locks,projects}")
    groups.required = True

    locks = groups.add_parser("locks", help="Inspect and clean granular locks")
    lock_commands = locks.add_subparsers(dest="command", metavar="{list,status,clean}")
    lock_commands.required = True
    lock_commands.add_parser("list", help="List every lock record")
    status = lock_commands.add_parser("status", help="Show whether one resource is locked")
    status.add_argument("kind", type=_resource_kind, help="Resource kind: " + ", ".join(k.value for k in ResourceKind))
    status.add_argument("resource_id", help="Resource id")
    lock_commands.add_parser("clean", help="Delete expired or unreadable lock records")

    projects = groups.add_parser("projects", help="Project maintenance")
    project_commands = projects.add_subparsers(dest="command", metavar="{remediation,remediate}")
    project_commands.required = True
    project_commands.add_parser("remediation", help="List projects whose folder provisioning failed")
    remediate = project_commands.add_parser("remediate", help="Retry folder provisioning for a project")
    remediate.add_argument("project_id", help="Project id")

    argcomplete.autocomplete(parser)
    return parser


def _emit(args: argparse.Namespace, payload: Any, text_lines: list[str]) -> None:
    if args.as_json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        for line in text_lines:
            print(line)


def _cmd_locks_list(args: argparse.Namespace, locks: LockManager) -> int:
    now = now_ms()
    entries = []
    lines = []
    for storage_key, record in locks.list_locks():
        if record is None:
            entries.append({"key": storage_key, "readable": False})
            lines.append(f"{storage_key}  <unreadable>")
            continue
        stale = record.is_stale(now, locks.stale_threshold_ms)
        entries.append({"key": storage_key, "readable": True, "stale": stale, **record.to_dict()})
        lines.append(
            f"{storage_key}  owner={record.owner}  age={record.age_ms(now) / 1000:.1f}s"
            f"{'  (stale)' if stale else ''}"
        )
    if not lines:
        lines.append("No locks held")
    _emit(args, {"locks": entries, "count": len(entries)}, lines)
    return EXIT_SUCCESS


def _cmd_locks_status(args: argparse.Namespace, locks: LockManager) -> int:
    record = locks.read_record(args.kind, args.resource_id)
    held = locks.is_locked(args.kind, args.resource_id)
    payload: dict[str, Any] = {"kind": args.kind.value, "resource_id": args.resource_id, "locked": held}
    if record is not None:
        payload["record"] = record.to_dict()
        line = (
            f"{args.kind.value}:{args.resource_id} {'locked' if held else 'expired'} by {record.owner} "
            f"since {ms_to_datetime(record.acquired_at_ms).isoformat()}"
        )
    else:
        line = f"{args.kind.value}:{args.resource_id} is free"
    _emit(args, payload, [line])
    return EXIT_SUCCESS


def _cmd_locks_clean(args: argparse.Namespace, locks: LockManager) -> int:
    removed = locks.clean_expired_locks()
    _emit(args, {"removed": removed}, [f"Removed {removed} expired lock(s)"])
    return EXIT_SUCCESS


def _cmd_projects_remediation(args: argparse.Namespace, service: ProjectService) -> int:
    projects = service.projects_needing_remediation()
    lines = [f"{p.id}  {p.name}  (owner: {p.owner or '-'})" for p in projects] or ["No projects need remediation"]
    _emit(args, {"projects": [p.to_dict() for p in projects], "count": len(projects)}, lines)
    return EXIT_SUCCESS


def _cmd_projects_remediate(args: argparse.Namespace, service: ProjectService) -> int:
    response = service.remediate_provisioning(args.project_id)
    if response["success"]:
        data = response.get("data") or {}
        _emit(args, response, [f"Project {args.project_id} folder: {data.get('folder_id', '')}"])
        return EXIT_SUCCESS
    error = response.get("error", {})
    if args.as_json:
        print(json.dumps(response, indent=2, default=str))
    _print_error(f"[{error.get('kind', 'internal')}] {error.get('message', '')}")
    return EXIT_FAILURE


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config = AppConfig.from_env()
    if args.data_dir is not None:
        config.storage.data_dir = args.data_dir
    if args.log_level:
        config.log.level = args.log_level
    if args.log_format:
        config.log.log_format = args.log_format
    logger = setup_logging(config.log.level, config.log.log_format, config.log.log_dir)

    try:
        service = build_service(config, logger=logger)
        if args.group == "locks":
            handlers = {"list": _cmd_locks_list, "status": _cmd_locks_status, "clean": _cmd_locks_clean}
            return handlers[args.command](args, service.locks)
        handlers = {"remediation": _cmd_projects_remediation, "remediate": _cmd_projects_remediate}
        return handlers[args.command](args, service)
    except PMSheetError as e:
        logger.error(f"{args.group} {args.command} failed: {e}")
        _print_error(str(e))
        return EXIT_FAILURE
    finally:
        flush_logging_handlers()


if __name__ == "__main__":
    sys.exit(main())
