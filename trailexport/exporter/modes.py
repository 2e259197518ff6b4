from __future__ import annotations

from enum import Enum
from typing import Any


class Mode(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    DOWNLOADING = "downloading"
    CHALLENGE_PAUSED = "challenge_paused"
    RATE_LIMIT_BACKOFF = "rate_limit_backoff"


# Expected "no progress" states: the liveness rule never fires in these.
PAUSED_MODES = frozenset({Mode.CHALLENGE_PAUSED, Mode.RATE_LIMIT_BACKOFF})

# Modes a challenge pause can return to.
RESUMABLE_MODES = frozenset({Mode.IDLE, Mode.DISCOVERING, Mode.DOWNLOADING})


def _safe_mode(value: Any) -> Mode:
    try:
        return Mode(value)
    except Exception:
        return Mode.IDLE


__all__ = ["Mode", "PAUSED_MODES", "RESUMABLE_MODES", "_safe_mode"]
