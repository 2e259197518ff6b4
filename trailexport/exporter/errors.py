"""Exception taxonomy for the exporter."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .protection import ProtectionSignal


class ExporterError(Exception):
    """Base class for exporter failures."""


class ExtractionError(ExporterError):
    """Metadata extraction failed or was partial. Never blocks the export."""


class ActionNotFound(ExporterError):
    """An expected page affordance was missing after retries."""

    def __init__(self, action: str, message: str | None = None) -> None:
        self.action = action
        super().__init__(message or f"{action} not found on page")


class ProtectionDetected(ExporterError):
    """The page is showing a rate-limit response or an identity challenge."""

    def __init__(self, signal: "ProtectionSignal") -> None:
        self.signal = signal
        kind = signal.kind.value if signal.kind is not None else "unknown"
        super().__init__(f"protection detected: {kind} ({signal.detail})")


class StuckTimeout(ExporterError):
    """No recorded activity for longer than the stuck threshold."""

    def __init__(self, mode: str, elapsed: float) -> None:
        self.mode = mode
        self.elapsed = elapsed
        super().__init__(f"no activity in mode {mode} for {elapsed:.0f}s")


class PersistenceError(ExporterError):
    """The state store could not be read or written."""


class ActionRejected(ExporterError):
    """A user action is not valid in the current session state."""

    @property
    def message(self) -> str:
        return str(self)


__all__ = [
    "ExporterError",
    "ExtractionError",
    "ActionNotFound",
    "ProtectionDetected",
    "StuckTimeout",
    "PersistenceError",
    "ActionRejected",
]
