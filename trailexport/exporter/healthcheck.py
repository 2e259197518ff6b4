from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from . import config
from .config_validation import validate_runtime_config
from .logging_utils import _export_event
from .store import Keys, PersistenceStore
from .utils import disk_has_room, ensure_dirs


@dataclass
class HealthResult:
    ok: bool
    checks: dict[str, dict[str, Any]]


def _check_config(entrypoint: str) -> dict[str, Any]:
    try:
        validate_runtime_config(entrypoint or "cli")
    except ValueError as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": True}


def _check_filesystem() -> dict[str, Any]:
    ensure_dirs()
    return {
        "ok": disk_has_room(config.MIN_FREE_MB, config.DATA_DIR),
        "data_dir": str(config.DATA_DIR),
        "min_free_mb": config.MIN_FREE_MB,
    }


def _check_state_store() -> dict[str, Any]:
    try:
        store = PersistenceStore(config.STATE_DB_PATH)
    except Exception as exc:  # noqa: BLE001
        return {"ok": False, "error": str(exc)}
    try:
        return {
            "ok": True,
            "path": str(config.STATE_DB_PATH),
            "keys": len(store.keys()),
            "mode": store.get(Keys.MODE, "idle"),
            "last_heartbeat": store.get(Keys.LAST_HEARTBEAT),
        }
    finally:
        store.close()


def run_health_checks(entrypoint: str = "cli") -> HealthResult:
    checks = {
        "config": _check_config(entrypoint),
        "filesystem": _check_filesystem(),
        "state_store": _check_state_store(),
    }
    ok = all(check["ok"] for check in checks.values())
    _export_event("state" if ok else "error", phase="health", context="healthcheck", ok=ok, checks=checks)
    return HealthResult(ok=ok, checks=checks)


__all__ = ["HealthResult", "run_health_checks"]
