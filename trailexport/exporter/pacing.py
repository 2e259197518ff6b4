from __future__ import annotations

import random
from typing import Optional

from . import config
from .logging_utils import _export_event
from .store import Keys, PersistenceStore


class Pacing:
    """Randomised inter-action delays with a persisted rate-limit multiplier.

    Each rate-limit event multiplies the download and click ranges by
    ``BACKOFF_MULTIPLIER``. The multiplier compounds and lives in the store,
    so it survives page loads; only ``reset`` brings it back to 1.0.
    """

    def __init__(self, store: PersistenceStore, *, rng: Optional[random.Random] = None) -> None:
        self.store = store
        self._rng = rng or random.Random()

    @property
    def multiplier(self) -> float:
        try:
            value = float(self.store.get(Keys.DELAY_MULTIPLIER, 1.0) or 1.0)
        except (TypeError, ValueError):
            return 1.0
        return max(1.0, value)

    def scaled_range(self, kind: str) -> tuple[float, float]:
        low, high = config.delay_range(kind)
        if kind in config.SCALED_DELAY_KINDS:
            factor = self.multiplier
            return (round(low * factor, 3), round(high * factor, 3))
        return (low, high)

    def delay(self, kind: str, bounds: Optional[tuple[float, float]] = None) -> float:
        """Pick a delay in seconds; explicit ``bounds`` are used unscaled."""

        low, high = bounds if bounds is not None else self.scaled_range(kind)
        return self._rng.uniform(low, high)

    def escalate(self, factor: Optional[float] = None) -> float:
        step = config.BACKOFF_MULTIPLIER if factor is None else factor
        previous = self.multiplier
        updated = round(previous * step, 6)
        self.store.set(Keys.DELAY_MULTIPLIER, updated)

        download_low, download_high = self.scaled_range("download")
        _export_event(
            "state",
            phase="pacing",
            kind="escalate",
            previous=previous,
            multiplier=updated,
            download_delay=f"{download_low:.0f}-{download_high:.0f}s",
        )
        return updated

    def reset(self) -> float:
        previous = self.multiplier
        self.store.set(Keys.DELAY_MULTIPLIER, 1.0)
        _export_event("state", phase="pacing", kind="reset", previous=previous, multiplier=1.0)
        return 1.0


__all__ = ["Pacing"]
