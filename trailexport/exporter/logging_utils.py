from __future__ import annotations

from typing import Any

from .utils import log_line


def _format_fields(fields: dict[str, Any]) -> str:
    return ", ".join(f"{key}={value!r}" for key, value in sorted(fields.items()))


def _export_event(label: str = "", *, phase: str | None = None, **fields: Any) -> None:
    """Log one ``[EXPORTER][LABEL] key=value, ...`` line.

    Machine events pass a label such as ``state`` or ``error`` together with a
    ``phase`` field naming the step (``queue``, ``navigation``, ``recovery``).
    Without a label the phase becomes the tag.
    """

    tag = (label or phase or "event").upper()
    if label and phase:
        fields["phase"] = phase
    try:
        log_line(f"[EXPORTER][{tag}] {_format_fields(fields)}")
    except Exception:  # noqa: BLE001
        # An unloggable value or a closed log file must not stop the session.
        return


__all__ = ["_export_event"]
