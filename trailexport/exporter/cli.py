"""Command line entry point for the AllTrails recording exporter."""

from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from pathlib import Path
from typing import Sequence

from . import config
from .config_validation import validate_runtime_config
from .healthcheck import run_health_checks
from .modes import Mode, _safe_mode
from .pacing import Pacing
from .report import export_progress_report
from .runner import START_ACTIONS, run_session
from .store import Keys, PersistenceStore
from .targets import parse_import_text
from .utils import ensure_dirs
from .work_queue import WorkQueue


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trailexport",
        description="Bulk-export your AllTrails recordings as GPX with metadata.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Open the browser and drive the exporter.")
    run.add_argument("--url", default=None, help="Page to open when the session is idle.")
    run.add_argument("--start", choices=START_ACTIONS, default=None)
    run.add_argument("--import", dest="import_path", type=Path, default=None)
    run.add_argument(
        "--panel-port",
        type=int,
        default=None,
        help=f"Serve the JSON control panel on this port (e.g. {config.PANEL_PORT}).",
    )
    run.add_argument("--headless", action="store_true", default=None)

    sub.add_parser("status", help="Print the persisted session state.")

    imp = sub.add_parser("import", help="Append recording URLs or ids to the pending queue.")
    imp.add_argument("file", type=Path, help="Text file with one URL or id per line ('-' for stdin).")

    exp = sub.add_parser("export-pending", help="Write the pending queue to a text file.")
    exp.add_argument("--output", type=Path, default=None)

    rep = sub.add_parser("report", help="Write an Excel progress report.")
    rep.add_argument("--output", default=None)

    sub.add_parser("stop", help="Wipe all persisted session state.")
    sub.add_parser("health", help="Check configuration, disk space and the state store.")
    return parser


def _open_store() -> PersistenceStore:
    ensure_dirs()
    return PersistenceStore(config.STATE_DB_PATH)


def _cmd_status() -> int:
    store = _open_store()
    try:
        queue = WorkQueue(store)
        payload = {
            "mode": _safe_mode(store.get(Keys.MODE, Mode.IDLE.value)).value,
            "mode_data": store.get(Keys.MODE_DATA) or {},
            "counters": queue.counters().to_dict(),
            "next": queue.head(),
            "delay_multiplier": Pacing(store).multiplier,
            "origin_url": store.get(Keys.ORIGIN_URL),
            "challenge": store.get(Keys.CHALLENGE),
        }
    finally:
        store.close()
    print(json.dumps(payload, indent=2, default=str))
    return 0


def _cmd_import(parser: argparse.ArgumentParser, path: Path) -> int:
    if str(path) == "-":
        text = sys.stdin.read()
    else:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            parser.error(f"cannot read {path}: {exc}")

    parsed = parse_import_text(text)
    if not parsed.targets:
        print(
            "No valid AllTrails recording URLs found. Entries must contain "
            f"'{config.TARGET_PATH_MARKER}' or be bare recording identifiers."
        )
        return 1

    store = _open_store()
    try:
        mode = _safe_mode(store.get(Keys.MODE, Mode.IDLE.value))
        if mode != Mode.IDLE:
            print(f"Import is only available while idle (currently {mode.value}).")
            return 1
        queue = WorkQueue(store)
        result = queue.import_targets(parsed.targets, discarded=len(parsed.discarded))
        pending = len(queue.pending())
    finally:
        store.close()

    print(
        f"Imported {result.added_count} targets ({result.duplicates} duplicates, "
        f"{result.already_processed} already processed, {result.discarded} discarded). "
        f"Pending: {pending}"
    )
    return 0


def _cmd_export_pending(output: Path | None) -> int:
    store = _open_store()
    try:
        queue = WorkQueue(store)
        text = queue.export_pending()
        count = len(queue.pending())
    finally:
        store.close()

    if count == 0:
        print("No pending targets to export.")
        return 0

    destination = output or config.EXPORT_DIR / f"alltrails_remaining_{date.today().isoformat()}.txt"
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(text, encoding="utf-8")
    print(f"Exported {count} pending targets to {destination}")
    return 0


def _cmd_report(output: str | None) -> int:
    store = _open_store()
    try:
        path = export_progress_report(WorkQueue(store), output)
    finally:
        store.close()
    print(path)
    return 0


def _cmd_stop() -> int:
    store = _open_store()
    try:
        ok = store.clear()
    finally:
        store.close()
    print("All processes stopped and state cleared" if ok else "Failed to clear state")
    return 0 if ok else 1


def _cmd_health() -> int:
    result = run_health_checks(entrypoint="cli")
    for name, info in result.checks.items():
        status = "OK" if info.get("ok") else "FAIL"
        print(f"{name}: {status} {json.dumps(info, default=str)}")
    return 0 if result.ok else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``trailexport`` command."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.command == "run":
        return run_session(
            start_url=args.url,
            start_action=args.start,
            import_path=args.import_path,
            panel_port=args.panel_port,
            headless=args.headless,
        )
    if args.command == "health":
        return _cmd_health()

    try:
        validate_runtime_config("cli", mode=args.command)
    except ValueError as exc:
        parser.error(str(exc))

    if args.command == "status":
        return _cmd_status()
    if args.command == "import":
        return _cmd_import(parser, args.file)
    if args.command == "export-pending":
        return _cmd_export_pending(args.output)
    if args.command == "report":
        return _cmd_report(args.output)
    if args.command == "stop":
        return _cmd_stop()
    parser.error(f"unknown command {args.command}")
    return 2


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
