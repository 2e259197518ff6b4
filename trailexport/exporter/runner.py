"""Wire the session machine to a live Chromium profile and run the loop."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from playwright.sync_api import Error as PWError
from playwright.sync_api import sync_playwright

from . import config
from .collaborators import LogNotifier
from .config_validation import validate_runtime_config
from .errors import ActionRejected
from .logging_utils import _export_event
from .machine import SessionStateMachine
from .playwright_page import PlaywrightPage, wait_seconds
from .protection import ProtectionDetector
from .scheduler import Scheduler
from .store import PersistenceStore
from .utils import ensure_dirs, log_line, setup_run_logger

START_ACTIONS = ("discover", "download")


def _start_panel(machine: SessionStateMachine, scheduler: Scheduler, port: int) -> threading.Thread:
    from trailexport.main import app, bind_session

    bind_session(machine, scheduler)

    def _serve() -> None:
        app.run(host=config.PANEL_HOST, port=port, use_reloader=False, threaded=True)

    thread = threading.Thread(target=_serve, name="trailexport-panel", daemon=True)
    thread.start()
    log_line(f"Control panel on http://{config.PANEL_HOST}:{port}/api/status")
    return thread


def _apply_start_action(machine: SessionStateMachine, action: Optional[str]) -> None:
    if not action:
        return
    try:
        if action == "discover":
            machine.start_discovery()
        elif action == "download":
            machine.start_download()
    except ActionRejected as exc:
        log_line(f"[RUN] --start {action} rejected: {exc.message}")


def _import_file(machine: SessionStateMachine, import_path: Optional[Path]) -> None:
    if import_path is None:
        return
    try:
        text = Path(import_path).read_text(encoding="utf-8")
    except OSError as exc:
        log_line(f"[RUN] Could not read import file {import_path}: {exc}")
        return
    try:
        machine.import_targets(text)
    except ActionRejected as exc:
        log_line(f"[RUN] Import rejected: {exc.message}")


def run_session(
    *,
    start_url: Optional[str] = None,
    start_action: Optional[str] = None,
    import_path: Optional[Path] = None,
    panel_port: Optional[int] = None,
    headless: Optional[bool] = None,
) -> int:
    """Open the browser profile and drive the exporter until the window closes."""

    ensure_dirs()
    log_path = setup_run_logger()
    validate_runtime_config("cli", mode=start_action)
    headless = config.HEADLESS if headless is None else headless

    store = PersistenceStore(config.STATE_DB_PATH)
    _export_event("state", phase="run", step="start", log=log_path.name, headless=headless)

    context = None
    try:
        with sync_playwright() as pw:
            try:
                context = pw.chromium.launch_persistent_context(
                    str(config.BROWSER_PROFILE_DIR),
                    headless=headless,
                    user_agent=config.USER_AGENT,
                    locale="en-US",
                    viewport={"width": 1368, "height": 900},
                    accept_downloads=True,
                    args=["--disable-dev-shm-usage"],
                )
                context.set_default_timeout(config.PLAYWRIGHT_SELECTOR_TIMEOUT_SECONDS * 1000)
                page = context.pages[0] if context.pages else context.new_page()

                scheduler = Scheduler(sleeper=lambda seconds: wait_seconds(page, seconds))
                notifier = LogNotifier()
                adapter = PlaywrightPage(page, download_dir=config.GPX_DIR)
                machine = SessionStateMachine(
                    store,
                    adapter,
                    scheduler,
                    notifier=notifier,
                    detector=ProtectionDetector(adapter.snapshot),
                )
                adapter.pacing = machine.pacing

                _import_file(machine, import_path)
                if panel_port:
                    _start_panel(machine, scheduler, panel_port)

                machine.open_session(
                    machine.entry_url(start_url),
                    after_load=(lambda: _apply_start_action(machine, start_action)) if start_action else None,
                )
                scheduler.run(until=page.is_closed)
                log_line("Browser window closed; exporter loop finished")
            finally:
                if context is not None:
                    try:
                        context.close()
                    except PWError as exc:
                        log_line(f"Error closing Playwright context: {exc}")
    except KeyboardInterrupt:
        log_line("[RUN] Interrupted; progress is saved and will resume on the next run")
        return 130
    finally:
        _export_event("state", phase="run", step="stop")
        store.close()
    return 0


__all__ = ["run_session", "START_ACTIONS"]
