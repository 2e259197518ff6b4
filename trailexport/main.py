from __future__ import annotations

import os
import threading
import time
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Callable, Generator, Optional, TextIO

from flask import Flask, Response, jsonify, request, send_file

from trailexport.exporter import config
from trailexport.exporter.errors import ActionRejected
from trailexport.exporter.healthcheck import run_health_checks
from trailexport.exporter.logging_utils import _export_event
from trailexport.exporter.machine import SessionStateMachine
from trailexport.exporter.report import export_progress_report
from trailexport.exporter.scheduler import Scheduler
from trailexport.exporter.utils import ensure_dirs, get_current_log_path, read_last_log_lines

app = Flask(__name__)

_SESSION_LOCK = threading.Lock()
_SESSION: dict[str, Any] = {"machine": None, "scheduler": None}

# Panel action name -> machine method name.
_ACTIONS: dict[str, str] = {
    "discover": "start_discovery",
    "download": "start_download",
    "resume": "resume_after_challenge",
    "disable-backoff": "disable_backoff_mode",
    "stop": "stop_all",
    "recover": "recover_from_stuck",
}


def bind_session(machine: Optional[SessionStateMachine], scheduler: Optional[Scheduler]) -> None:
    """Attach the running exporter session the panel should control."""

    with _SESSION_LOCK:
        _SESSION["machine"] = machine
        _SESSION["scheduler"] = scheduler


def _session() -> tuple[Optional[SessionStateMachine], Optional[Scheduler]]:
    with _SESSION_LOCK:
        return _SESSION["machine"], _SESSION["scheduler"]


def _no_session() -> tuple[Response, int]:
    return jsonify({"ok": False, "error": "no_session"}), 503


def _on_loop(fn: Callable[..., Any], *args: Any) -> Any:
    """Run ``fn`` on the exporter loop thread and wait for its result."""

    _, scheduler = _session()
    return scheduler.submit(fn, *args).result(timeout=config.PANEL_ACTION_TIMEOUT_SECONDS)


def _jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "value"):
        return value.value
    return value


def _open_at_end(path: Path) -> TextIO:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
    handle = path.open("r", encoding="utf-8", errors="ignore")
    handle.seek(0, os.SEEK_END)
    return handle


def _tail_log_generator(poll_seconds: float = 1.0) -> Generator[str, None, None]:
    """SSE frames for lines appended to the active log; follows rotation."""

    ensure_dirs()
    following = get_current_log_path()
    handle = _open_at_end(following)
    try:
        while True:
            active = get_current_log_path()
            if active != following:
                handle.close()
                following, handle = active, _open_at_end(active)
                continue
            text = handle.readline()
            if not text:
                time.sleep(poll_seconds)
                yield ": keepalive\n\n"
                continue
            yield f"data: {text.rstrip()}\n\n"
    finally:
        handle.close()


@app.get("/api/status")
def api_status() -> Response:
    machine, _ = _session()
    if machine is None:
        return _no_session()
    try:
        snapshot = _on_loop(machine.snapshot)
    except FutureTimeout:
        return jsonify({"ok": False, "error": "loop_busy"}), 504
    return jsonify({"ok": True, "session": snapshot.to_dict()})


@app.post("/api/actions/<action>")
def api_action(action: str) -> Response:
    method_name = _ACTIONS.get(action)
    if method_name is None:
        return jsonify({"ok": False, "error": "unknown_action", "action": action}), 404

    machine, _ = _session()
    if machine is None:
        return _no_session()

    try:
        result = _on_loop(getattr(machine, method_name))
    except ActionRejected as exc:
        return jsonify({"ok": False, "error": "rejected", "message": exc.message}), 409
    except FutureTimeout:
        _export_event("error", phase="panel", action=action, error="loop_busy")
        return jsonify({"ok": False, "error": "loop_busy"}), 504

    return jsonify({"ok": True, "action": action, "result": _jsonable(result), "mode": machine.mode.value})


@app.post("/api/import")
def api_import() -> Response:
    machine, _ = _session()
    if machine is None:
        return _no_session()

    payload = request.get_json(silent=True) or {}
    text = payload.get("text") if isinstance(payload, dict) else None
    if text is None:
        text = request.get_data(as_text=True)
    if not text or not str(text).strip():
        return jsonify({"ok": False, "error": "empty_import"}), 400

    try:
        result = _on_loop(machine.import_targets, str(text))
    except ActionRejected as exc:
        return jsonify({"ok": False, "error": "rejected", "message": exc.message}), 409
    except FutureTimeout:
        return jsonify({"ok": False, "error": "loop_busy"}), 504
    return jsonify({"ok": True, "import": result.to_dict()})


@app.get("/api/pending")
def api_pending() -> Response:
    machine, _ = _session()
    if machine is None:
        return _no_session()
    try:
        text = _on_loop(machine.export_pending_targets)
    except FutureTimeout:
        return jsonify({"ok": False, "error": "loop_busy"}), 504

    filename = f"alltrails_remaining_{time.strftime('%Y-%m-%d')}.txt"
    return Response(
        text,
        mimetype="text/plain",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.get("/api/report")
def api_report() -> Response:
    machine, _ = _session()
    if machine is None:
        return _no_session()
    try:
        path = _on_loop(export_progress_report, machine.queue)
    except FutureTimeout:
        return jsonify({"ok": False, "error": "loop_busy"}), 504
    return send_file(path, as_attachment=True, download_name=os.path.basename(path))


@app.get("/api/messages")
def api_messages() -> Response:
    machine, _ = _session()
    if machine is None:
        return _no_session()
    messages_fn = getattr(machine.notifier, "messages", None)
    messages = messages_fn() if callable(messages_fn) else []
    banners = dict(getattr(machine.notifier, "banners", {}) or {})
    return jsonify({"ok": True, "messages": messages, "banners": banners})


@app.get("/api/log")
def api_log() -> Response:
    try:
        limit = max(1, min(2000, int(request.args.get("limit", 150))))
    except ValueError:
        return jsonify({"ok": False, "error": "invalid limit"}), 400
    return jsonify({"ok": True, "lines": read_last_log_lines(limit)})


@app.get("/logs/stream")
def logs_stream() -> Response:
    """Stream log updates to the browser using SSE."""

    response = Response(_tail_log_generator(), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@app.get("/api/health")
def api_health() -> Response:
    """Return a JSON health summary for configuration, filesystem, and state store."""

    result = run_health_checks(entrypoint="ui")
    status = 200 if result.ok else 503
    return jsonify({"ok": result.ok, "checks": result.checks}), status


__all__ = ["app", "bind_session"]
