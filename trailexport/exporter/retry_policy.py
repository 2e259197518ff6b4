from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

from . import config
from .logging_utils import _export_event


@dataclass(frozen=True)
class PenaltyDecision:
    target: str
    attempt: int
    max_attempts: int
    requeue: bool
    eligible_at: Optional[float] = None

    @property
    def exhausted(self) -> bool:
        return not self.requeue


def decide_requeue(target: str, attempt: int, max_attempts: Optional[int] = None) -> bool:
    """Decide whether a rate-limited target goes back on the queue.

    ``attempt`` is 1-based and already includes the current penalty, so the
    third penalty of a target with ``max_attempts=3`` is final.
    """

    cap = config.MAX_PENALTY_ATTEMPTS if max_attempts is None else max_attempts
    requeue = attempt < cap
    _export_event(
        "state",
        phase="retry_decision",
        kind="requeue" if requeue else "capped",
        target=target,
        attempt=attempt,
        max_attempts=cap,
        will_retry=requeue,
    )
    return requeue


def compute_retry_after(
    now: float,
    *,
    bounds: Optional[tuple[float, float]] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """Return the earliest time a penalised target may be processed again."""

    low, high = bounds if bounds is not None else config.delay_range("rate_limit_retry")
    chooser = rng or random
    return now + chooser.uniform(low, high)


__all__ = ["PenaltyDecision", "decide_requeue", "compute_retry_after"]
