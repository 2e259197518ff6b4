from __future__ import annotations

from typing import Callable, Optional

from .errors import StuckTimeout
from .logging_utils import _export_event
from .modes import PAUSED_MODES, Mode, _safe_mode
from .store import Keys, PersistenceStore
from .utils import log_line


class RecoveryMonitor:
    """Liveness watchdog for the session.

    ``beat`` stamps the heartbeat while a non-idle mode is active.
    ``check_and_recover`` runs on every page load: when the last recorded
    activity is older than ``stuck_timeout`` it hands a ``StuckTimeout`` to
    ``on_stuck``. The paused modes are expected to make no progress and are
    never treated as stuck.
    """

    def __init__(
        self,
        store: PersistenceStore,
        *,
        clock: Callable[[], float],
        stuck_timeout: float,
        on_stuck: Callable[[StuckTimeout], bool],
    ) -> None:
        self.store = store
        self._clock = clock
        self.stuck_timeout = stuck_timeout
        self._on_stuck = on_stuck

    def beat(self) -> None:
        mode = _safe_mode(self.store.get(Keys.MODE, Mode.IDLE.value))
        if mode != Mode.IDLE:
            self.store.set(Keys.LAST_HEARTBEAT, self._clock())

    def elapsed_since_activity(self) -> float:
        try:
            last = float(self.store.get(Keys.LAST_ACTIVITY, 0) or 0)
        except (TypeError, ValueError):
            last = 0.0
        return max(0.0, self._clock() - last)

    def check_and_recover(self) -> bool:
        """Apply the liveness rule; return ``True`` if a recovery was forced."""

        mode = _safe_mode(self.store.get(Keys.MODE, Mode.IDLE.value))
        if mode in PAUSED_MODES:
            log_line(f"[RECOVERY] In {mode.value}, skipping auto-recovery")
            return False
        if mode == Mode.IDLE:
            return False

        elapsed = self.elapsed_since_activity()
        if elapsed <= self.stuck_timeout:
            return False

        stuck = StuckTimeout(mode.value, elapsed)
        _export_event(
            "error",
            phase="recovery",
            mode=mode.value,
            elapsed=round(elapsed, 1),
            stuck_timeout=self.stuck_timeout,
            error=str(stuck),
        )
        log_line(f"[RECOVERY] Process stuck in {mode.value} for {elapsed:.0f}s. Auto-recovering...")
        self._on_stuck(stuck)
        return True

    def last_heartbeat(self) -> Optional[float]:
        value = self.store.get(Keys.LAST_HEARTBEAT)
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None


__all__ = ["RecoveryMonitor"]
