"""Per-recording metadata extraction and the JSON record written beside each GPX."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from bs4.element import Tag

from . import config
from .errors import ExtractionError
from .logging_utils import _export_event
from .selectors import METADATA_SELECTORS, MetadataSelectors
from .snapshot import PageSnapshot
from .utils import log_line, safe_filename, write_json_atomic


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _first_text(snapshot: PageSnapshot, selectors: tuple[str, ...]) -> Optional[str]:
    for selector in selectors:
        element = snapshot.select_one(selector)
        if element is not None:
            text = element.get_text(" ", strip=True)
            if text:
                return text
    return None


def _review_rating(snapshot: PageSnapshot, selectors: MetadataSelectors) -> Optional[int]:
    checked = snapshot.select_one(selectors.review_rating_checked)
    if checked is not None:
        try:
            return int(str(checked.get("value", "")).strip())
        except ValueError:
            pass
    filled = snapshot.select(selectors.review_rating_filled)
    return len(filled) if filled else None


def _stats(snapshot: PageSnapshot, selectors: MetadataSelectors) -> dict[str, str]:
    container = snapshot.select_one(selectors.stats_container)
    if container is None:
        return {}

    stats: dict[str, str] = {}
    for section in container.select(selectors.stats_section):
        label = section.select_one(selectors.stats_label)
        value = section.select_one(selectors.stats_value)
        if label is None or value is None:
            continue
        key = re.sub(r"[.\s]", "_", label.get_text(" ", strip=True).lower())
        stats[key] = value.get_text(" ", strip=True)
    return stats


def _photos(snapshot: PageSnapshot, selectors: MetadataSelectors) -> list[dict[str, Any]]:
    photos = []
    for index, img in enumerate(snapshot.select(selectors.photos), start=1):
        if not isinstance(img, Tag):
            continue
        src = str(img.get("src") or "")
        photos.append(
            {
                "index": index,
                "src": src,
                "alt": str(img.get("alt") or ""),
                "filename": src.rstrip("/").rsplit("/", 1)[-1],
            }
        )
    return photos


def extract_item_metadata(
    snapshot: PageSnapshot, selectors: MetadataSelectors = METADATA_SELECTORS
) -> dict[str, Any]:
    """Extract the trail, activity, review, stats and photos shown for a recording.

    Sections with nothing in them are dropped from the record. Any failure is
    raised as ``ExtractionError``.
    """

    try:
        record: dict[str, Any] = {
            "extractedAt": _now_iso(),
            "url": snapshot.url,
            "activityId": snapshot.path.rstrip("/").rsplit("/", 1)[-1],
            "trail": {},
            "activity": {},
            "review": {},
            "stats": {},
            "photos": [],
        }

        name = _first_text(snapshot, selectors.trail_name)
        if name:
            record["trail"]["name"] = name

        linked = snapshot.select_one(selectors.linked_trail)
        if linked is not None:
            record["trail"]["linkedTrailUrl"] = str(linked.get("href") or "")
            record["trail"]["linkedTrailName"] = linked.get_text(" ", strip=True)

        for key, options in (
            ("difficulty", selectors.difficulty),
            ("rating", selectors.rating),
            ("location", selectors.location),
        ):
            value = _first_text(snapshot, options)
            if value:
                record["trail"][key] = value

        date_activity = snapshot.select_one(selectors.date_and_activity)
        if date_activity is not None:
            parts = [part.strip() for part in date_activity.get_text(" ", strip=True).split("•")]
            if len(parts) >= 2:
                record["activity"]["date"] = parts[0]
                record["activity"]["type"] = parts[1]

        rating = _review_rating(snapshot, selectors)
        if rating is not None:
            record["review"]["rating"] = rating

        comment = _first_text(snapshot, selectors.comment)
        if comment:
            record["review"]["comment"] = comment

        privacy = snapshot.select_one(selectors.privacy)
        if privacy is not None and privacy.get_text(strip=True):
            record["review"]["privacy"] = privacy.get_text(" ", strip=True)

        notes = snapshot.select_one(selectors.notes)
        if notes is not None:
            text = str(notes.get("value") or notes.get_text() or "").strip()
            if text:
                record["review"]["notes"] = text

        record["stats"] = _stats(snapshot, selectors)
        record["photos"] = _photos(snapshot, selectors)
    except Exception as exc:  # noqa: BLE001
        raise ExtractionError(f"metadata extraction failed for {snapshot.url}: {exc}") from exc

    for key in ("trail", "activity", "review", "stats", "photos"):
        if not record[key]:
            del record[key]
    return record


def error_record(url: str, error: BaseException | str) -> dict[str, Any]:
    return {"extractedAt": _now_iso(), "url": url, "error": str(error)}


def _slug(value: str) -> str:
    value = re.sub(r"[^a-zA-Z0-9\s-]", "", value)
    return re.sub(r"\s+", "_", value.strip()).lower()


def metadata_filename(record: dict[str, Any], *, today: Optional[str] = None) -> str:
    activity_id = str(record.get("activityId") or "").strip() or "unknown"
    trail_name = _slug(str((record.get("trail") or {}).get("name") or "")) or "unknown_trail"
    activity_date = re.sub(r"[^0-9]", "", str((record.get("activity") or {}).get("date") or ""))
    if not activity_date:
        activity_date = today or datetime.now(timezone.utc).strftime("%Y%m%d")

    trail_name = safe_filename(trail_name, max_bytes=120)
    return f"alltrails_{trail_name}_{activity_date}_{_slug(activity_id) or 'unknown'}.json"


def save_metadata_record(record: dict[str, Any], directory: Optional[Path] = None) -> Optional[Path]:
    """Write ``record`` to the metadata directory; failures are logged, not raised."""

    target_dir = Path(directory) if directory is not None else config.METADATA_DIR
    filename = metadata_filename(record)
    try:
        path = write_json_atomic(target_dir / filename, record)
    except OSError as exc:
        _export_event("error", phase="metadata", step="save", filename=filename, error=str(exc))
        log_line(f"[METADATA] Failed to save {filename}: {exc}")
        return None

    _export_event(
        "state",
        phase="metadata",
        step="saved",
        filename=filename,
        has_error="error" in record,
    )
    return path


__all__ = [
    "extract_item_metadata",
    "error_record",
    "metadata_filename",
    "save_metadata_record",
]
