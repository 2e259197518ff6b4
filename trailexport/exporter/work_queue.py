"""Pending / processed / penalised bookkeeping for the export queue.

Every logical update reads the records it needs, computes the new values and
writes them back in a single ``set_many`` transaction so that a navigation
issued right after the call never observes a half-applied change.

Invariants maintained here:

* a target is in exactly one of pending, the processed log, or the
  permanently failed set (processed-log entries with outcome ``exhausted``);
* pending never holds duplicates;
* ``downloadedCount + failedCount == len(processed log)``.
"""
from __future__ import annotations

import random
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from . import config
from .error_codes import ErrorCode
from .logging_utils import _export_event
from .retry_policy import PenaltyDecision, compute_retry_after, decide_requeue
from .store import Keys, PersistenceStore
from .targets import target_label


class Outcome(str, Enum):
    DOWNLOADED = "downloaded"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


def _safe_outcome(value: Any) -> Outcome:
    try:
        return Outcome(value)
    except Exception:
        return Outcome.FAILED


@dataclass
class ProcessedEntry:
    target: str
    timestamp: float
    outcome: Outcome
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "timestamp": self.timestamp,
            "outcome": self.outcome.value,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ProcessedEntry":
        return cls(
            target=str(raw.get("target") or ""),
            timestamp=float(raw.get("timestamp") or 0.0),
            outcome=_safe_outcome(raw.get("outcome")),
            reason=raw.get("reason"),
        )


@dataclass
class PenaltyRecord:
    target: str
    timestamp: float
    eligible_at: float
    attempt: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "eligibleRetryTime": self.eligible_at,
            "attemptCount": self.attempt,
        }

    @classmethod
    def from_dict(cls, target: str, raw: dict[str, Any]) -> "PenaltyRecord":
        return cls(
            target=target,
            timestamp=float(raw.get("timestamp") or 0.0),
            eligible_at=float(raw.get("eligibleRetryTime") or 0.0),
            attempt=int(raw.get("attemptCount") or 0),
        )


@dataclass
class QueueCounters:
    downloaded: int = 0
    failed: int = 0
    pending: int = 0
    discovered: int = 0
    processed: int = 0
    penalized: int = 0
    permanently_failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class MergeResult:
    new_targets: list[str] = field(default_factory=list)
    total_discovered: int = 0
    pending: int = 0

    @property
    def new_count(self) -> int:
        return len(self.new_targets)


@dataclass
class ImportResult:
    added: list[str] = field(default_factory=list)
    duplicates: int = 0
    already_processed: int = 0
    discarded: int = 0

    @property
    def added_count(self) -> int:
        return len(self.added)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": self.added_count,
            "duplicates": self.duplicates,
            "already_processed": self.already_processed,
            "discarded": self.discarded,
        }


def _dedupe(items: Iterable[Any]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for item in items:
        if not isinstance(item, str) or not item or item in seen:
            continue
        seen.add(item)
        ordered.append(item)
    return ordered


class WorkQueue:
    def __init__(
        self,
        store: PersistenceStore,
        *,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.store = store
        self._clock = clock
        self._rng = rng
        self._max_attempts = max_attempts

    @property
    def max_attempts(self) -> int:
        return self._max_attempts if self._max_attempts is not None else config.MAX_PENALTY_ATTEMPTS

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def pending(self) -> list[str]:
        return _dedupe(self.store.get(Keys.PENDING) or [])

    def head(self) -> Optional[str]:
        pending = self.pending()
        return pending[0] if pending else None

    def discovered(self) -> list[str]:
        return _dedupe(self.store.get(Keys.DISCOVERED) or [])

    def processed(self) -> list[ProcessedEntry]:
        raw = self.store.get(Keys.PROCESSED) or []
        return [ProcessedEntry.from_dict(item) for item in raw if isinstance(item, dict)]

    def penalties(self) -> dict[str, PenaltyRecord]:
        raw = self.store.get(Keys.PENALIZED) or {}
        if not isinstance(raw, dict):
            return {}
        return {
            target: PenaltyRecord.from_dict(target, record)
            for target, record in raw.items()
            if isinstance(record, dict)
        }

    def permanently_failed(self) -> list[str]:
        return [entry.target for entry in self.processed() if entry.outcome == Outcome.EXHAUSTED]

    def is_processed(self, target: str) -> bool:
        return any(entry.target == target for entry in self.processed())

    def _count(self, key: str) -> int:
        try:
            return int(self.store.get(key, 0) or 0)
        except (TypeError, ValueError):
            return 0

    def counters(self) -> QueueCounters:
        processed = self.processed()
        return QueueCounters(
            downloaded=self._count(Keys.DOWNLOADED_COUNT),
            failed=self._count(Keys.FAILED_COUNT),
            pending=len(self.pending()),
            discovered=len(self.discovered()),
            processed=len(processed),
            penalized=len(self.penalties()),
            permanently_failed=sum(1 for entry in processed if entry.outcome == Outcome.EXHAUSTED),
        )

    def retry_wait(self, target: Optional[str]) -> float:
        """Seconds until ``target`` becomes eligible again (0 when eligible now)."""

        if not target:
            return 0.0
        record = self.penalties().get(target)
        if record is None:
            return 0.0
        return max(0.0, record.eligible_at - self._clock())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _terminal_updates(
        self,
        target: str,
        outcome: Outcome,
        reason: Optional[str],
        pending: list[str],
    ) -> tuple[ProcessedEntry, dict[str, Any]]:
        entry = ProcessedEntry(target=target, timestamp=self._clock(), outcome=outcome, reason=reason)
        processed = [item.to_dict() for item in self.processed()]
        processed.append(entry.to_dict())

        counter_key = Keys.DOWNLOADED_COUNT if outcome == Outcome.DOWNLOADED else Keys.FAILED_COUNT
        updates: dict[str, Any] = {
            Keys.PENDING: pending,
            Keys.PROCESSED: processed,
            counter_key: self._count(counter_key) + 1,
        }
        return entry, updates

    def mark_processed(
        self, target: str, outcome: Outcome, *, reason: Optional[str] = None
    ) -> Optional[ProcessedEntry]:
        """Record a terminal outcome for ``target`` exactly once."""

        outcome = _safe_outcome(outcome)
        if self.is_processed(target):
            _export_event(
                "error",
                phase="queue",
                operation="mark_processed",
                target=target,
                outcome=outcome.value,
                error="already_processed",
            )
            return None

        pending = self.pending()
        was_pending = target in pending
        if was_pending:
            pending.remove(target)

        entry, updates = self._terminal_updates(target, outcome, reason, pending)
        self.store.set_many(updates)

        _export_event(
            "queue",
            phase="processed",
            target=target_label(target),
            outcome=outcome.value,
            reason=reason,
            was_pending=was_pending,
            remaining=len(pending),
        )
        return entry

    def penalize(
        self,
        target: str,
        *,
        retry_bounds: Optional[tuple[float, float]] = None,
    ) -> PenaltyDecision:
        """Move a rate-limited target to the tail, or fail it for good."""

        penalties = self.penalties()
        prior = penalties.get(target)
        attempt = (prior.attempt if prior else 0) + 1

        if self.is_processed(target):
            _export_event(
                "error",
                phase="queue",
                operation="penalize",
                target=target,
                error="already_processed",
            )
            return PenaltyDecision(
                target=target, attempt=attempt - 1, max_attempts=self.max_attempts, requeue=False
            )

        now = self._clock()
        eligible_at = compute_retry_after(now, bounds=retry_bounds, rng=self._rng)
        requeue = decide_requeue(target, attempt, self.max_attempts)

        penalties[target] = PenaltyRecord(
            target=target, timestamp=now, eligible_at=eligible_at, attempt=attempt
        )
        serialised = {key: record.to_dict() for key, record in penalties.items()}

        pending = [item for item in self.pending() if item != target]
        if requeue:
            pending.append(target)
            updates: dict[str, Any] = {Keys.PENDING: pending}
        else:
            _, updates = self._terminal_updates(
                target, Outcome.EXHAUSTED, ErrorCode.RATE_LIMIT_EXHAUSTED, pending
            )
        updates[Keys.PENALIZED] = serialised
        self.store.set_many(updates)

        decision = PenaltyDecision(
            target=target,
            attempt=attempt,
            max_attempts=self.max_attempts,
            requeue=requeue,
            eligible_at=eligible_at if requeue else None,
        )
        _export_event(
            "queue",
            phase="penalized",
            target=target_label(target),
            attempt=attempt,
            max_attempts=self.max_attempts,
            requeued=requeue,
            eligible_in=round(eligible_at - now, 1) if requeue else None,
            remaining=len(pending),
        )
        return decision

    def merge_discovered(self, observed: Iterable[str]) -> MergeResult:
        """Add newly observed targets to discovered and pending.

        Targets already discovered are ignored, so merging the same set twice
        reports zero new targets the second time.
        """

        discovered = self.discovered()
        known = set(discovered)
        new_targets = [target for target in _dedupe(observed) if target not in known]

        pending = self.pending()
        if new_targets:
            processed = {entry.target for entry in self.processed()}
            queued = set(pending)
            discovered.extend(new_targets)
            pending.extend(t for t in new_targets if t not in processed and t not in queued)
            self.store.set_many({Keys.DISCOVERED: discovered, Keys.PENDING: pending})

        result = MergeResult(
            new_targets=new_targets, total_discovered=len(discovered), pending=len(pending)
        )
        _export_event(
            "queue",
            phase="merge",
            new=result.new_count,
            total=result.total_discovered,
            pending=result.pending,
        )
        return result

    def import_targets(self, targets: Iterable[str], *, discarded: int = 0) -> ImportResult:
        """Append imported targets to the tail of pending."""

        result = ImportResult(discarded=discarded)
        pending = self.pending()
        discovered = self.discovered()
        queued = set(pending)
        known = set(discovered)
        processed = {entry.target for entry in self.processed()}

        for target in targets:
            if target in processed:
                result.already_processed += 1
                continue
            if target in queued:
                result.duplicates += 1
                continue
            queued.add(target)
            pending.append(target)
            result.added.append(target)
            if target not in known:
                known.add(target)
                discovered.append(target)

        if result.added:
            self.store.set_many({Keys.PENDING: pending, Keys.DISCOVERED: discovered})

        _export_event("queue", phase="import", pending=len(pending), **result.to_dict())
        return result

    def export_pending(self) -> str:
        return "\n".join(self.pending())

    def clear_penalties(self) -> int:
        """Forget penalty history; attempt counts start over afterwards."""

        cleared = len(self.penalties())
        self.store.set(Keys.PENALIZED, {})
        _export_event("queue", phase="penalties_cleared", cleared=cleared)
        return cleared


__all__ = [
    "Outcome",
    "ProcessedEntry",
    "PenaltyRecord",
    "QueueCounters",
    "MergeResult",
    "ImportResult",
    "WorkQueue",
]
