from __future__ import annotations

from pathlib import Path

import pytest

from trailexport.exporter import config, store as store_module, utils
from trailexport.exporter.store import Keys, PersistenceStore


def _configure_temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "LOG_DIR", data_dir / "logs")
    monkeypatch.setattr(config, "LOG_FILE", data_dir / "logs" / "latest.log")
    monkeypatch.setattr(config, "EXPORT_DIR", data_dir / "exports")
    monkeypatch.setattr(config, "GPX_DIR", data_dir / "exports" / "gpx")
    monkeypatch.setattr(config, "METADATA_DIR", data_dir / "exports" / "metadata")
    monkeypatch.setattr(config, "REPORTS_DIR", data_dir / "exports" / "reports")
    monkeypatch.setattr(config, "STATE_DB_PATH", data_dir / "session_state.db")
    monkeypatch.setattr(utils, "_active_log", None)


def _memory_store(clock=lambda: 1000.0, namespace: str = "test_") -> PersistenceStore:
    return PersistenceStore(":memory:", namespace=namespace, clock=clock)


def test_missing_key_returns_default() -> None:
    store = _memory_store()
    assert store.get(Keys.MODE) is None
    assert store.get(Keys.MODE, "idle") == "idle"


def test_values_round_trip_as_json() -> None:
    store = _memory_store()
    store.set(Keys.PENDING, ["a", "b"])
    store.set(Keys.CHALLENGE, {"type": "reCAPTCHA", "autoResumeAttempted": False})

    assert store.get(Keys.PENDING) == ["a", "b"]
    assert store.get(Keys.CHALLENGE)["type"] == "reCAPTCHA"


def test_every_write_refreshes_heartbeat() -> None:
    now = [1000.0]
    store = _memory_store(clock=lambda: now[0])
    store.set(Keys.MODE, "downloading")
    assert store.get(Keys.LAST_HEARTBEAT) == 1000.0

    now[0] = 1042.0
    store.set_many({Keys.DOWNLOADED_COUNT: 1, Keys.FAILED_COUNT: 0})
    assert store.get(Keys.LAST_HEARTBEAT) == 1042.0


def test_clear_only_touches_own_namespace(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    ours = PersistenceStore(db_path, namespace="ours_")
    theirs = PersistenceStore(db_path, namespace="theirs_")

    ours.set(Keys.MODE, "downloading")
    theirs.set(Keys.MODE, "idle")

    assert ours.clear() is True
    assert ours.keys() == []
    assert ours.get(Keys.MODE) is None
    assert theirs.get(Keys.MODE) == "idle"


def test_state_survives_reopen(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    first = PersistenceStore(db_path, namespace="ns_")
    first.set_many({Keys.MODE: "downloading", Keys.PENDING: ["x"]})
    first.close()

    second = PersistenceStore(db_path, namespace="ns_")
    assert second.get(Keys.MODE) == "downloading"
    assert second.get(Keys.PENDING) == ["x"]


def test_unserialisable_value_is_reported_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[tuple[str, dict]] = []
    monkeypatch.setattr(
        store_module, "_export_event", lambda label="", **fields: events.append((label, fields))
    )
    store = _memory_store()

    assert store.set(Keys.MODE_DATA, {"bad": object()}) is False
    assert store.get(Keys.MODE_DATA) is None
    assert events and events[-1][1]["operation"] == "encode"


def test_read_failure_degrades_to_default(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[tuple[str, dict]] = []
    monkeypatch.setattr(
        store_module, "_export_event", lambda label="", **fields: events.append((label, fields))
    )
    store = _memory_store()
    store.set(Keys.MODE, "discovering")
    store.close()

    assert store.get(Keys.MODE, "idle") == "idle"
    assert store.set(Keys.MODE, "idle") is False
    operations = [fields["operation"] for _, fields in events]
    assert "read" in operations and "write" in operations


def test_delete_many_removes_keys() -> None:
    store = _memory_store()
    store.set_many({Keys.ORIGIN_URL: "u", Keys.SCAN_ATTEMPTS: 3})
    store.delete_many([Keys.ORIGIN_URL, Keys.SCAN_ATTEMPTS])
    assert store.get(Keys.ORIGIN_URL) is None
    assert store.get(Keys.SCAN_ATTEMPTS) is None

