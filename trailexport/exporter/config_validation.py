from __future__ import annotations

from typing import Literal

from . import config
from .logging_utils import _export_event
from .utils import log_line

Entrypoint = Literal["ui", "cli", "tests"]

DELAY_KINDS = ("download", "scroll", "click", "page_load", "rate_limit_retry")

# Settings that must be strictly positive; a zero timeout would fire immediately.
POSITIVE_SECONDS = (
    "STUCK_TIMEOUT_SECONDS",
    "PROCESS_TIMEOUT_SECONDS",
    "HEARTBEAT_INTERVAL_SECONDS",
    "PROTECTION_CHECK_INTERVAL_SECONDS",
    "PLAYWRIGHT_NAV_TIMEOUT_SECONDS",
    "PLAYWRIGHT_SELECTOR_TIMEOUT_SECONDS",
    "PLAYWRIGHT_DOWNLOAD_TIMEOUT_SECONDS",
)

# Soft knobs: out-of-range values are raised to the floor instead of failing.
FLOORS = {
    "MAX_PENALTY_ATTEMPTS": 1,
    "MAX_NAVIGATION_ATTEMPTS": 1,
    "MAX_SCAN_ATTEMPTS": 1,
    "ZERO_YIELD_LIMIT": 0,
}


def _problems() -> list[tuple[str, str]]:
    found: list[tuple[str, str]] = []
    if config.MIN_FREE_MB < 0:
        found.append(("min_free_mb_invalid", "MIN_FREE_MB must be non-negative."))
    if config.BACKOFF_MULTIPLIER < 1:
        found.append(("backoff_multiplier_invalid", "BACKOFF_MULTIPLIER must be at least 1."))
    for kind in DELAY_KINDS:
        low, high = config.delay_range(kind)
        if low < 0 or high < low:
            found.append(
                (
                    "invalid_delay_range",
                    f"Delay range for {kind} must satisfy 0 <= min <= max (got {low}, {high}).",
                )
            )
    for name in POSITIVE_SECONDS:
        if getattr(config, name) <= 0:
            found.append(("invalid_timeout", f"{name} must be greater than zero."))
    return found


def validate_runtime_config(entrypoint: Entrypoint, *, mode: str | None = None) -> None:
    """Check the exporter settings before a session or command runs.

    The first blocking problem raises ``ValueError``. Soft knobs listed in
    ``FLOORS`` are clamped in place on the ``config`` module and logged.
    """

    where = f"entrypoint={entrypoint}" + (f", mode={mode}" if mode else "")

    problems = _problems()
    if problems:
        error, message = problems[0]
        _export_event(
            "error",
            phase="config",
            context="runtime_validation",
            error=error,
            entrypoint=entrypoint,
            mode=mode,
            problems=len(problems),
        )
        log_line(f"[CONFIG] {message} ({where})")
        raise ValueError(message)

    for name, floor in FLOORS.items():
        value = getattr(config, name)
        if value >= floor:
            continue
        _export_event(
            "state",
            phase="config",
            context="runtime_validation",
            kind="config_adjustment",
            field=name,
            value=value,
            adjusted=floor,
            entrypoint=entrypoint,
            mode=mode,
        )
        log_line(f"[CONFIG] {name}={value} is below {floor}; clamping ({where}).")
        setattr(config, name, floor)


__all__ = ["validate_runtime_config", "Entrypoint"]
