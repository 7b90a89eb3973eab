from __future__ import annotations

"""Operator CLI for extraction sessions, properties and runs."""

import argparse
import getpass
import json
import sys
from pathlib import Path
from typing import Any, Sequence

from . import db, service
from .config_validation import validate_runtime_config
from .errors import ExtractionError, NotFoundError, ValidationError
from .export_excel import export_run_to_excel
from .healthcheck import print_health, run_health_checks
from .utils import ensure_dirs


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enroll-sync",
        description="Manage SCE portal sessions and customer extraction runs.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    session = commands.add_parser("session", help="Manage encrypted portal sessions.")
    session_cmds = session.add_subparsers(dest="action", required=True)

    create = session_cmds.add_parser("create", help="Store a browser storage-state JSON file.")
    create.add_argument("--label", required=True)
    create.add_argument("--state-file", type=Path, required=True, help="Playwright storage_state JSON.")
    create.add_argument("--expires-at", required=True, help="ISO8601 expiry, e.g. 2026-12-31T00:00:00Z.")

    login = session_cmds.add_parser("login", help="Log in with SCE credentials and store the session.")
    login.add_argument("--label", required=True)
    login.add_argument("--username", required=True)
    login.add_argument("--password", help="Prompted for when omitted.")
    login.add_argument("--expires-at", required=True)

    validate = session_cmds.add_parser("validate", help="Check a session can reach customer-search.")
    validate.add_argument("session_id", type=int)

    session_cmds.add_parser("list", help="List stored sessions.")

    deactivate = session_cmds.add_parser("deactivate", help="Deactivate a session.")
    deactivate.add_argument("session_id", type=int)

    run = commands.add_parser("run", help="Create, start and inspect extraction runs.")
    run_cmds = run.add_subparsers(dest="action", required=True)

    run_create = run_cmds.add_parser("create", help="Queue a run for a set of properties.")
    run_create.add_argument("--session-id", type=int, required=True)
    run_create.add_argument("property_ids", type=int, nargs="+")

    run_start = run_cmds.add_parser("start", help="Start a queued run.")
    run_start.add_argument("run_id", type=int)
    run_start.add_argument(
        "--wait",
        action="store_true",
        help="Process the run in the foreground instead of a background thread.",
    )

    run_show = run_cmds.add_parser("show", help="Show a run and its items.")
    run_show.add_argument("run_id", type=int)

    run_export = run_cmds.add_parser("export", help="Export a run to an Excel workbook.")
    run_export.add_argument("run_id", type=int)
    run_export.add_argument("--output", help="Destination .xlsx path.")

    prop = commands.add_parser("property", help="Manage properties awaiting extraction.")
    prop_cmds = prop.add_subparsers(dest="action", required=True)
    prop_add = prop_cmds.add_parser("add", help="Add a property to the extraction queue.")
    prop_add.add_argument("--street-number", required=True)
    prop_add.add_argument("--street-name", required=True)
    prop_add.add_argument("--zip", dest="zip_code", required=True)
    prop_add.add_argument("--address-full")

    commands.add_parser("health", help="Run configuration, storage and encryption checks.")
    return parser


def _needs_encryption_key(args: argparse.Namespace) -> bool:
    """Commands that encrypt, decrypt or run against a stored session."""

    if args.command == "session":
        return args.action in {"create", "login", "validate"}
    return args.command == "run" and args.action == "start"


def _session_command(args: argparse.Namespace) -> int:
    if args.action == "create":
        state_json = args.state_file.read_text(encoding="utf-8")
        created = service.create_session(args.label, state_json, args.expires_at)
        _print_json(created.to_public_dict())
    elif args.action == "login":
        password = args.password or getpass.getpass("SCE password: ")
        created = service.create_session_from_credentials(
            args.label, args.username, password, args.expires_at
        )
        _print_json(created.to_public_dict())
    elif args.action == "validate":
        result = service.validate_session(args.session_id)
        _print_json(result.to_dict())
        return 0 if result.valid else 1
    elif args.action == "list":
        _print_json([session.to_public_dict() for session in service.list_sessions()])
    elif args.action == "deactivate":
        _print_json(service.deactivate_session(args.session_id).to_public_dict())
    return 0


def _run_command(args: argparse.Namespace) -> int:
    if args.action == "create":
        _print_json(service.create_run(args.session_id, args.property_ids).to_dict())
    elif args.action == "start":
        launcher = service.run_extraction if args.wait else None
        started = service.start_run(args.run_id, launcher=launcher)
        _print_json(started.to_dict(include_items=args.wait))
    elif args.action == "show":
        _print_json(service.get_run(args.run_id).to_dict())
    elif args.action == "export":
        service.get_run(args.run_id)
        print(export_run_to_excel(args.run_id, args.output))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the extraction CLI."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    ensure_dirs()
    db.initialize_schema()

    if args.command == "health":
        result = run_health_checks(entrypoint="cli")
        print_health(result)
        return 0 if result.ok else 1

    try:
        validate_runtime_config("cli", require_key=_needs_encryption_key(args))
        if args.command == "session":
            return _session_command(args)
        if args.command == "run":
            return _run_command(args)
        if args.command == "property":
            created = service.add_property(
                street_number=args.street_number,
                street_name=args.street_name,
                zip_code=args.zip_code,
                address_full=args.address_full,
            )
            _print_json({"id": created.id, "address_full": created.address_full, "status": created.status})
            return 0
    except (NotFoundError, ValidationError) as exc:
        parser.error(str(exc))
    except ExtractionError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 2


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
