from __future__ import annotations

import os
from pathlib import Path

import pandas as pd
import pytest

from trailexport.exporter import config, report
from trailexport.exporter.work_queue import Outcome, WorkQueue
from tests.test_store import _configure_temp_paths, _memory_store

BASE = "https://www.alltrails.com/explore/recording/"


def _queue() -> WorkQueue:
    queue = WorkQueue(_memory_store(), clock=lambda: 1_760_000_000.0, max_attempts=3)
    queue.merge_discovered([f"{BASE}a", f"{BASE}b", f"{BASE}c", f"{BASE}d"])
    queue.mark_processed(f"{BASE}a", Outcome.DOWNLOADED)
    queue.mark_processed(f"{BASE}b", Outcome.FAILED, reason="action_not_found")
    queue.penalize(f"{BASE}c", retry_bounds=(90.0, 90.0))
    return queue


def test_report_has_one_sheet_per_view(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)

    path = report.export_progress_report(_queue())

    assert Path(path).parent == config.REPORTS_DIR
    assert os.path.basename(path).startswith("alltrails_progress_")
    sheets = pd.read_excel(path, sheet_name=None, engine="openpyxl")
    assert list(sheets) == ["All", "Pending", "Processed", "Penalized", "Summary"]

    pending = sheets["Pending"]
    assert list(pending["id"]) == ["d", "c"]
    assert list(pending["penalty_attempts"]) == [0, 1]
    assert pending["eligible_at"].iloc[1] == "2025-10-09T08:54:50Z"

    processed = sheets["Processed"]
    assert list(processed["outcome"]) == ["downloaded", "failed"]
    assert processed["reason"].iloc[1] == "action_not_found"

    statuses = dict(zip(sheets["All"]["id"], sheets["All"]["status"]))
    assert statuses == {"a": "downloaded", "b": "failed", "c": "pending", "d": "pending"}

    summary = dict(zip(sheets["Summary"]["metric"], sheets["Summary"]["count"]))
    assert summary["downloaded"] == 1
    assert summary["failed"] == 1
    assert summary["pending"] == 2
    assert summary["penalized"] == 1


def test_empty_queue_still_writes_headers(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    dest = tmp_path / "empty.xlsx"

    report.export_progress_report(WorkQueue(_memory_store()), str(dest))

    pending = pd.read_excel(dest, sheet_name="Pending", engine="openpyxl")
    assert pending.empty
    assert list(pending.columns) == ["position", "target", "id", "penalty_attempts", "eligible_at"]


def test_prune_keeps_newest_reports(tmp_path: Path) -> None:
    for stamp in ("20260101", "20260102", "20260103", "20260104"):
        (tmp_path / f"alltrails_progress_{stamp}.xlsx").write_bytes(b"")
    (tmp_path / "notes.txt").write_text("keep me")

    assert report.prune_old_reports(tmp_path, keep=2) == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == [
        "alltrails_progress_20260103.xlsx",
        "alltrails_progress_20260104.xlsx",
        "notes.txt",
    ]


def test_prune_missing_directory(tmp_path: Path) -> None:
    assert report.prune_old_reports(tmp_path / "absent", keep=1) == 0
