"""Excel progress report for the export queue."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Optional

import pandas as pd

from . import config
from .logging_utils import _export_event
from .targets import target_label
from .work_queue import WorkQueue


def _iso(ts: Optional[float]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _queue_frames(queue: WorkQueue) -> dict[str, pd.DataFrame]:
    penalties = queue.penalties()

    pending = pd.DataFrame(
        [
            {
                "position": index,
                "target": target,
                "id": target_label(target),
                "penalty_attempts": penalties[target].attempt if target in penalties else 0,
                "eligible_at": _iso(penalties[target].eligible_at) if target in penalties else None,
            }
            for index, target in enumerate(queue.pending(), start=1)
        ],
        columns=["position", "target", "id", "penalty_attempts", "eligible_at"],
    )

    processed = pd.DataFrame(
        [
            {
                "target": entry.target,
                "id": target_label(entry.target),
                "outcome": entry.outcome.value,
                "reason": entry.reason,
                "processed_at": _iso(entry.timestamp),
            }
            for entry in queue.processed()
        ],
        columns=["target", "id", "outcome", "reason", "processed_at"],
    )

    penalized = pd.DataFrame(
        [
            {
                "target": record.target,
                "id": target_label(record.target),
                "attempts": record.attempt,
                "last_penalty_at": _iso(record.timestamp),
                "eligible_at": _iso(record.eligible_at),
            }
            for record in penalties.values()
        ],
        columns=["target", "id", "attempts", "last_penalty_at", "eligible_at"],
    )

    status = {entry.target: entry.outcome.value for entry in queue.processed()}
    for target in queue.pending():
        status.setdefault(target, "pending")
    everything = pd.DataFrame(
        [
            {"target": target, "id": target_label(target), "status": status.get(target, "discovered")}
            for target in dict.fromkeys([*queue.discovered(), *status])
        ],
        columns=["target", "id", "status"],
    )

    counters = queue.counters().to_dict()
    summary = pd.DataFrame(
        [{"metric": key, "count": value} for key, value in counters.items()],
        columns=["metric", "count"],
    )
    return {
        "All": everything,
        "Pending": pending,
        "Processed": processed,
        "Penalized": penalized,
        "Summary": summary,
    }


def prune_old_reports(directory: Optional[os.PathLike] = None, keep: Optional[int] = None) -> int:
    """Delete the oldest ``.xlsx`` reports beyond ``keep``; return how many went."""

    reports_dir = str(directory or config.REPORTS_DIR)
    limit = config.REPORTS_KEEP_MAX if keep is None else keep
    if not os.path.isdir(reports_dir):
        return 0

    files = sorted(
        [os.path.join(reports_dir, p) for p in os.listdir(reports_dir) if p.endswith(".xlsx")]
    )
    removed = 0
    while len(files) > max(0, limit):
        old = files.pop(0)
        try:
            os.remove(old)
            removed += 1
        except OSError as exc:
            _export_event("error", phase="report", step="prune", path=old, error=str(exc))
    return removed


def export_progress_report(queue: WorkQueue, dest_path: Optional[str] = None) -> str:
    """Write the queue state to an Excel workbook and return its path."""

    frames = _queue_frames(queue)

    os.makedirs(config.REPORTS_DIR, exist_ok=True)
    if not dest_path:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        dest_path = os.path.join(config.REPORTS_DIR, f"alltrails_progress_{stamp}.xlsx")

    with pd.ExcelWriter(dest_path, engine="openpyxl") as writer:
        for sheet, frame in frames.items():
            frame.to_excel(writer, index=False, sheet_name=sheet)

    _export_event(
        "state",
        phase="report",
        path=os.path.basename(dest_path),
        rows={sheet: len(frame) for sheet, frame in frames.items()},
    )
    prune_old_reports()
    return dest_path


__all__ = ["export_progress_report", "prune_old_reports"]
