from __future__ import annotations

import json
import logging
import re
import shutil
import sys
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any

from . import config

LOGGER = logging.getLogger("trailexport")
LOG_FORMAT = logging.Formatter("[%(asctime)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

# Path of the file currently attached to LOGGER; None until the first log line.
_active_log: Path | None = None

_UNSAFE_NAME_CHARS = re.compile(r"[\x00-\x1f\\/:*?\"<>|]+")


def _attach_log_file(log_path: Path) -> None:
    """Point LOGGER at stdout plus ``log_path``, dropping earlier handlers."""

    global _active_log

    log_path.parent.mkdir(parents=True, exist_ok=True)
    while LOGGER.handlers:
        old = LOGGER.handlers[0]
        LOGGER.removeHandler(old)
        old.close()

    for handler in (logging.StreamHandler(sys.stdout), logging.FileHandler(log_path, encoding="utf-8")):
        handler.setFormatter(LOG_FORMAT)
        LOGGER.addHandler(handler)
    LOGGER.setLevel(logging.INFO)
    LOGGER.propagate = False
    _active_log = log_path


def setup_run_logger() -> Path:
    """Start a per-session log file under ``LOG_DIR`` and return its path."""

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = config.LOG_DIR / f"export_{stamp}.log"
    _attach_log_file(log_path)
    LOGGER.info("Session log: %s", log_path)
    return log_path


def get_current_log_path() -> Path:
    if _active_log is None:
        _attach_log_file(config.LOG_FILE)
    return _active_log


def log_line(message: str) -> None:
    """Timestamped line to stdout and the active log file."""

    if _active_log is None:
        _attach_log_file(config.LOG_FILE)
    LOGGER.info(message)


def read_last_log_lines(limit: int = 150) -> list[str]:
    path = get_current_log_path()
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as handle:
        return [line.rstrip("\n") for line in deque(handle, maxlen=limit)]


def ensure_dirs() -> None:
    for directory in (config.DATA_DIR, config.LOG_DIR, config.GPX_DIR, config.METADATA_DIR, config.REPORTS_DIR):
        directory.mkdir(parents=True, exist_ok=True)


def safe_filename(name: str | None, *, max_bytes: int = 200) -> str:
    """Return ``name`` usable as a file name on any common filesystem.

    Path separators, reserved punctuation and control characters collapse to
    single spaces; leading and trailing dots or spaces are dropped. The result
    is cut to ``max_bytes`` of UTF-8 without splitting a character, keeping the
    extension when there is one.
    """

    if not name:
        return ""
    cleaned = " ".join(_UNSAFE_NAME_CHARS.sub(" ", name).split()).strip(" .")
    if len(cleaned.encode("utf-8")) <= max_bytes:
        return cleaned

    stem, dot, ext = cleaned.rpartition(".")
    if not dot or not stem or len(ext) > 8:
        stem, ext = cleaned, ""
    suffix = f".{ext}" if ext else ""
    budget = max(0, max_bytes - len(suffix.encode("utf-8")))
    # errors="ignore" drops a multi-byte character cut in half at the boundary.
    stem = stem.encode("utf-8")[:budget].decode("utf-8", "ignore").rstrip(" .")
    return stem + suffix


def write_json_atomic(path: Path, payload: Any) -> Path:
    """Write ``payload`` as indented JSON via a sibling temp file and rename."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.parent / f".{path.name}.partial"
    staging.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    staging.replace(path)
    return path


def disk_has_room(min_free_mb: int, path: Path) -> bool:
    existing = Path(path)
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    try:
        free = shutil.disk_usage(existing).free
    except OSError:
        return False
    return free >= max(0, min_free_mb) * 1024 * 1024


__all__ = [
    "LOGGER",
    "ensure_dirs",
    "setup_run_logger",
    "get_current_log_path",
    "log_line",
    "read_last_log_lines",
    "safe_filename",
    "write_json_atomic",
    "disk_has_room",
]
