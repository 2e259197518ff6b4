from __future__ import annotations

import json
from pathlib import Path

import pytest

from trailexport.exporter import metadata
from trailexport.exporter.errors import ExtractionError
from trailexport.exporter.metadata import (
    error_record,
    extract_item_metadata,
    metadata_filename,
    save_metadata_record,
)
from trailexport.exporter.snapshot import PageSnapshot

RECORDING_URL = "https://www.alltrails.com/explore/recording/morning-hike-abc123"

RECORDING_HTML = """
<html><head><title>Morning hike | AllTrails</title></head>
<body>
  <header><a href="/">AllTrails</a></header>
  <h1>Mount Tam Loop</h1>
  <a href="/trail/us/california/mount-tam-loop">Mount Tam Loop</a>
  <span class="difficulty">Moderate</span>
  <span class="location">Mill Valley, California</span>
  <div class="styles-module__dateAndActivity___HyeGo">Oct 4, 2026 • Hiking</div>
  <span class="MuiRating-iconFilled"></span>
  <span class="MuiRating-iconFilled"></span>
  <span class="MuiRating-iconFilled"></span>
  <span class="MuiRating-iconFilled"></span>
  <p class="review-comment">Foggy at the top.</p>
  <div class="styles-module__statsContainer___pHGmd">
    <div class="styles-module__section___nefNN">
      <span class="styles-module__label___xz5xq">Distance</span>
      <span class="styles-module__dataSection___zgMoI">7.2 mi</span>
    </div>
    <div class="styles-module__section___nefNN">
      <span class="styles-module__label___xz5xq">Elev. gain</span>
      <span class="styles-module__dataSection___zgMoI">1,640 ft</span>
    </div>
  </div>
  <div class="styles-module__uploadedPhoto___GGxFg">
    <img src="https://cdn.example.com/photos/summit.jpg" alt="Summit">
  </div>
  <textarea data-testid="notesTextArea">Parked at Pantoll.</textarea>
</body></html>
"""


def test_extracts_every_section() -> None:
    record = extract_item_metadata(PageSnapshot.from_html(RECORDING_HTML, RECORDING_URL))

    assert record["url"] == RECORDING_URL
    assert record["activityId"] == "morning-hike-abc123"
    assert record["trail"] == {
        "name": "Mount Tam Loop",
        "linkedTrailUrl": "/trail/us/california/mount-tam-loop",
        "linkedTrailName": "Mount Tam Loop",
        "difficulty": "Moderate",
        "location": "Mill Valley, California",
    }
    assert record["activity"] == {"date": "Oct 4, 2026", "type": "Hiking"}
    assert record["review"] == {"rating": 4, "comment": "Foggy at the top.", "notes": "Parked at Pantoll."}
    assert record["stats"] == {"distance": "7.2 mi", "elev__gain": "1,640 ft"}
    assert record["photos"] == [
        {
            "index": 1,
            "src": "https://cdn.example.com/photos/summit.jpg",
            "alt": "Summit",
            "filename": "summit.jpg",
        }
    ]


def test_empty_sections_are_dropped() -> None:
    record = extract_item_metadata(PageSnapshot.from_html("<html><body></body></html>", RECORDING_URL))
    assert set(record) == {"extractedAt", "url", "activityId"}


def test_failures_become_extraction_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(*args, **kwargs):
        raise RuntimeError("selector engine exploded")

    monkeypatch.setattr(metadata, "_stats", _boom)
    with pytest.raises(ExtractionError, match="selector engine exploded"):
        extract_item_metadata(PageSnapshot.from_html(RECORDING_HTML, RECORDING_URL))


def test_filename_uses_trail_date_and_id() -> None:
    record = {
        "activityId": "morning-hike-abc123",
        "trail": {"name": "Mount Tam Loop!"},
        "activity": {"date": "2026-10-04"},
    }
    assert metadata_filename(record) == "alltrails_mount_tam_loop_20261004_morning-hike-abc123.json"


def test_filename_falls_back_for_missing_fields() -> None:
    assert metadata_filename({}, today="20261019") == "alltrails_unknown_trail_20261019_unknown.json"


def test_save_writes_json(tmp_path: Path) -> None:
    record = error_record(RECORDING_URL, ExtractionError("no page"))
    record["activityId"] = "abc"

    path = save_metadata_record(record, tmp_path)

    assert path is not None and path.parent == tmp_path
    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved["error"] == "no page"
    assert saved["url"] == RECORDING_URL


def test_save_failure_is_logged_not_raised(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(path, payload):
        raise OSError("read-only")

    monkeypatch.setattr(metadata, "write_json_atomic", _fail)
    assert save_metadata_record({"activityId": "x"}, tmp_path) is None
