"""Durable key/value state for the export session.

Every logical field of the session lives under its own namespaced key in a
single SQLite table, serialised as JSON text. The store is the only source of
truth that survives a page load; callers must finish their writes before
issuing a navigation.
"""
from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

from . import config
from .errors import PersistenceError
from .logging_utils import _export_event
from .utils import log_line


class Keys:
    MODE = "mode"
    MODE_DATA = "modeData"
    LAST_ACTIVITY = "lastActivity"
    LAST_MODE_CHANGE = "lastModeChange"
    DISCOVERED = "discoveredTargets"
    PENDING = "pendingTargets"
    PROCESSED = "processedTargets"
    PENALIZED = "penalizedTargets"
    DOWNLOADED_COUNT = "downloadedCount"
    FAILED_COUNT = "failedCount"
    CHALLENGE = "challengeDetected"
    ORIGIN_URL = "originUrl"
    SCAN_ATTEMPTS = "scanAttempts"
    ZERO_YIELD_STREAK = "zeroYieldStreak"
    DELAY_MULTIPLIER = "delayMultiplier"
    LAST_HEARTBEAT = "lastHeartbeat"


_SCHEMA = """
CREATE TABLE IF NOT EXISTS session_state (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  REAL NOT NULL
);
"""


class PersistenceStore:
    """Namespaced JSON key/value store backed by SQLite.

    Read and write failures are logged and degrade to the caller's default
    (for reads) or ``False`` (for writes); they never propagate.
    """

    def __init__(
        self,
        path: Optional[Path | str] = None,
        *,
        namespace: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = str(path) if path is not None else str(config.STATE_DB_PATH)
        self.namespace = namespace if namespace is not None else config.STATE_NAMESPACE
        self._clock = clock
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.execute(_SCHEMA)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def _report_failure(self, operation: str, key: str, exc: BaseException) -> None:
        error = PersistenceError(f"{operation} failed for {key}: {exc}")
        _export_event(
            "error",
            phase="persistence",
            operation=operation,
            key=key,
            error=str(error),
        )
        log_line(f"[STORE] {error}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        try:
            row = self._conn.execute(
                "SELECT value FROM session_state WHERE key = ?",
                (self._full_key(key),),
            ).fetchone()
        except sqlite3.Error as exc:
            self._report_failure("read", key, exc)
            return default

        if row is None:
            return default

        try:
            return json.loads(row["value"])
        except ValueError as exc:
            self._report_failure("decode", key, exc)
            return default

    def set(self, key: str, value: Any) -> bool:
        return self.set_many({key: value})

    def set_many(self, values: Mapping[str, Any]) -> bool:
        """Write ``values`` in a single transaction and refresh the heartbeat."""

        now = self._clock()
        try:
            rows = [
                (self._full_key(key), json.dumps(value), now)
                for key, value in values.items()
            ]
        except (TypeError, ValueError) as exc:
            self._report_failure("encode", ",".join(values), exc)
            return False

        if Keys.LAST_HEARTBEAT not in values:
            rows.append((self._full_key(Keys.LAST_HEARTBEAT), json.dumps(now), now))

        try:
            with self._conn:
                self._conn.executemany(
                    """
                    INSERT INTO session_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    rows,
                )
        except sqlite3.Error as exc:
            self._report_failure("write", ",".join(values), exc)
            return False
        return True

    def delete(self, key: str) -> bool:
        try:
            with self._conn:
                self._conn.execute(
                    "DELETE FROM session_state WHERE key = ?",
                    (self._full_key(key),),
                )
        except sqlite3.Error as exc:
            self._report_failure("delete", key, exc)
            return False
        return True

    def delete_many(self, keys: Iterable[str]) -> bool:
        keys = list(keys)
        try:
            with self._conn:
                self._conn.executemany(
                    "DELETE FROM session_state WHERE key = ?",
                    [(self._full_key(key),) for key in keys],
                )
        except sqlite3.Error as exc:
            self._report_failure("delete", ",".join(keys), exc)
            return False
        return True

    def keys(self) -> list[str]:
        """Return the un-prefixed keys currently stored under this namespace."""

        prefix_len = len(self.namespace)
        try:
            rows = self._conn.execute(
                "SELECT key FROM session_state WHERE substr(key, 1, ?) = ? ORDER BY key",
                (prefix_len, self.namespace),
            ).fetchall()
        except sqlite3.Error as exc:
            self._report_failure("list", "*", exc)
            return []
        return [row["key"][prefix_len:] for row in rows]

    def clear(self) -> bool:
        """Delete every key under this namespace; other namespaces are untouched."""

        prefix_len = len(self.namespace)
        try:
            with self._conn:
                cursor = self._conn.execute(
                    "DELETE FROM session_state WHERE substr(key, 1, ?) = ?",
                    (prefix_len, self.namespace),
                )
        except sqlite3.Error as exc:
            self._report_failure("clear", "*", exc)
            return False
        _export_event("state", phase="persistence", operation="clear", removed=cursor.rowcount)
        return True

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error as exc:
            self._report_failure("close", "*", exc)


__all__ = ["PersistenceStore", "Keys"]
