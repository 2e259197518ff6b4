"""Narrow interfaces the session machine consumes from the page and the UI."""

from __future__ import annotations

import time
from collections import deque
from enum import Enum
from typing import Any, Optional, Protocol

from . import config
from .logging_utils import _export_event
from .snapshot import PageSnapshot
from .utils import log_line


class ExportResult(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"


class PageCollaborator(Protocol):
    """Everything the machine needs from the browser page."""

    @property
    def current_url(self) -> str: ...

    def snapshot(self) -> Optional[PageSnapshot]: ...

    def extract_item_metadata(self) -> dict[str, Any]: ...

    def trigger_artifact_export(self) -> ExportResult: ...

    def expand_visible_content(self, amount: int) -> bool: ...

    def navigate_to(self, url: str) -> bool: ...


class Notifier(Protocol):
    def alert(self, message: str, *, kind: str = "info") -> None: ...

    def banner(self, kind: str, message: str) -> None: ...

    def clear_banner(self, kind: str) -> None: ...


class LogNotifier:
    """Notifier that writes to the run log and keeps a bounded history."""

    def __init__(self, history: Optional[int] = None) -> None:
        self._messages: deque[dict[str, Any]] = deque(maxlen=history or config.NOTIFIER_HISTORY)
        self.banners: dict[str, str] = {}

    def _record(self, kind: str, message: str) -> None:
        self._messages.append({"ts": time.time(), "kind": kind, "message": message})

    def alert(self, message: str, *, kind: str = "info") -> None:
        self._record(kind, message)
        log_line(f"[ALERT][{kind.upper()}] {message}")

    def banner(self, kind: str, message: str) -> None:
        self.banners[kind] = message
        self._record(f"banner:{kind}", message)
        _export_event("state", phase="banner", kind=kind, action="show")
        log_line(f"[BANNER][{kind.upper()}] {message}")

    def clear_banner(self, kind: str) -> None:
        if self.banners.pop(kind, None) is not None:
            _export_event("state", phase="banner", kind=kind, action="clear")

    def messages(self) -> list[dict[str, Any]]:
        return list(self._messages)


__all__ = ["ExportResult", "PageCollaborator", "Notifier", "LogNotifier"]
