"""Configuration constants for the AllTrails recording exporter."""
from __future__ import annotations

import os
from pathlib import Path


def _env_flag(env_var: str, default: bool) -> bool:
    raw = os.getenv(env_var)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


def _parse_timeout_seconds(env_var: str, default: int, *, minimum: int = 1) -> int:
    """Parse a timeout value in seconds from the environment with bounds."""

    try:
        value = int(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


def _parse_range(env_var: str, default: tuple[float, float]) -> tuple[float, float]:
    """Parse a ``min,max`` seconds range, falling back to ``default``."""

    raw = os.getenv(env_var)
    if not raw:
        return default
    try:
        low, high = (float(part) for part in raw.split(",", 1))
    except ValueError:
        return default
    return (low, high)


DATA_DIR: Path = Path(os.getenv("TRAILEXPORT_DATA_DIR", "data"))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
EXPORT_DIR: Path = DATA_DIR / "exports"
GPX_DIR: Path = EXPORT_DIR / "gpx"
METADATA_DIR: Path = EXPORT_DIR / "metadata"
REPORTS_DIR: Path = EXPORT_DIR / "reports"
STATE_DB_PATH: Path = DATA_DIR / "session_state.db"
BROWSER_PROFILE_DIR: Path = DATA_DIR / "browser_profile"

# Keys in the state store are prefixed so that ``stop`` only wipes ours.
STATE_NAMESPACE: str = os.getenv("TRAILEXPORT_STATE_NAMESPACE", "trailexport_v5_")

SITE_ROOT: str = "https://www.alltrails.com"
TARGET_BASE_URL: str = f"{SITE_ROOT}/explore/recording/"
TARGET_PATH_MARKER: str = "/explore/recording/"
DEFAULT_ORIGIN_URL: str = f"{SITE_ROOT}/members/recordings"
DISCOVERY_PATH_MARKER: str = "recordings"
NORMAL_PAGE_PATHS: tuple[str, ...] = (
    "/members/",
    "/explore/trail/",
    "/explore/recording/",
    "/trail/",
    "/search",
)

# Delay ranges, in seconds.
DOWNLOAD_DELAY: tuple[float, float] = _parse_range("TRAILEXPORT_DOWNLOAD_DELAY", (90.0, 185.0))
SCROLL_DELAY: tuple[float, float] = _parse_range("TRAILEXPORT_SCROLL_DELAY", (1.5, 2.5))
CLICK_DELAY: tuple[float, float] = _parse_range("TRAILEXPORT_CLICK_DELAY", (1.0, 4.5))
PAGE_LOAD_WAIT: tuple[float, float] = _parse_range("TRAILEXPORT_PAGE_LOAD_WAIT", (2.0, 5.0))
RATE_LIMIT_RETRY_DELAY: tuple[float, float] = _parse_range(
    "TRAILEXPORT_RATE_LIMIT_RETRY_DELAY", (90.0, 180.0)
)

# Only these delay kinds are scaled by the rate-limit multiplier.
SCALED_DELAY_KINDS: tuple[str, ...] = ("download", "click")
BACKOFF_MULTIPLIER: float = float(os.getenv("TRAILEXPORT_BACKOFF_MULTIPLIER", "1.5"))

STUCK_TIMEOUT_SECONDS: int = _parse_timeout_seconds("TRAILEXPORT_STUCK_TIMEOUT_SECONDS", 300)
PROCESS_TIMEOUT_SECONDS: int = _parse_timeout_seconds("TRAILEXPORT_PROCESS_TIMEOUT_SECONDS", 90)
HEARTBEAT_INTERVAL_SECONDS: int = _parse_timeout_seconds("TRAILEXPORT_HEARTBEAT_SECONDS", 30)
PROTECTION_CHECK_INTERVAL_SECONDS: float = float(
    os.getenv("TRAILEXPORT_PROTECTION_CHECK_SECONDS", "2")
)
CHALLENGE_AUTO_RETRY_SECONDS: int = _parse_timeout_seconds(
    "TRAILEXPORT_CHALLENGE_AUTO_RETRY_SECONDS", 60
)
RATE_LIMIT_GRACE_SECONDS: float = float(os.getenv("TRAILEXPORT_RATE_LIMIT_GRACE_SECONDS", "3"))

MAX_SCAN_ATTEMPTS: int = int(os.getenv("TRAILEXPORT_MAX_SCAN_ATTEMPTS", "100"))
ZERO_YIELD_LIMIT: int = int(os.getenv("TRAILEXPORT_ZERO_YIELD_LIMIT", "3"))
MAX_PENALTY_ATTEMPTS: int = int(os.getenv("TRAILEXPORT_MAX_PENALTY_ATTEMPTS", "3"))
MAX_NAVIGATION_ATTEMPTS: int = int(os.getenv("TRAILEXPORT_MAX_NAVIGATION_ATTEMPTS", "3"))
SCROLL_AMOUNT: int = int(os.getenv("TRAILEXPORT_SCROLL_AMOUNT", "3000"))
SCROLL_JITTER: int = int(os.getenv("TRAILEXPORT_SCROLL_JITTER", "800"))

SAVE_METADATA: bool = _env_flag("TRAILEXPORT_SAVE_METADATA", True)
AUTO_RECOVER: bool = _env_flag("TRAILEXPORT_AUTO_RECOVER", True)
HEADLESS: bool = _env_flag("TRAILEXPORT_HEADLESS", False)

MIN_FREE_MB: int = int(os.getenv("TRAILEXPORT_MIN_FREE_MB", "100"))
REPORTS_KEEP_MAX: int = int(os.getenv("TRAILEXPORT_REPORTS_KEEP_MAX", "5"))
NOTIFIER_HISTORY: int = int(os.getenv("TRAILEXPORT_NOTIFIER_HISTORY", "50"))

# Playwright timeouts (seconds)
PLAYWRIGHT_NAV_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "TRAILEXPORT_NAV_TIMEOUT_SECONDS", 30
)
PLAYWRIGHT_SELECTOR_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "TRAILEXPORT_SELECTOR_TIMEOUT_SECONDS", 10
)
PLAYWRIGHT_DOWNLOAD_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "TRAILEXPORT_DOWNLOAD_TIMEOUT_SECONDS", 60
)
# Click-level timeout remains in milliseconds to match Playwright API expectations.
PLAYWRIGHT_CLICK_TIMEOUT_MS: int = int(os.getenv("PLAYWRIGHT_CLICK_TIMEOUT_MS", "3000"))

# Upper bound on a single idle wait of the event loop so panel actions stay responsive.
LOOP_MAX_WAIT_SECONDS: float = float(os.getenv("TRAILEXPORT_LOOP_MAX_WAIT_SECONDS", "0.25"))

PANEL_HOST: str = os.getenv("TRAILEXPORT_PANEL_HOST", "127.0.0.1")
PANEL_PORT: int = int(os.getenv("TRAILEXPORT_PANEL_PORT", "8765"))
PANEL_ACTION_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "TRAILEXPORT_PANEL_ACTION_TIMEOUT_SECONDS", 15
)

USER_AGENT: str = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
)


def delay_range(kind: str) -> tuple[float, float]:
    """Return the configured ``(min, max)`` delay range for ``kind``."""

    ranges = {
        "download": DOWNLOAD_DELAY,
        "scroll": SCROLL_DELAY,
        "click": CLICK_DELAY,
        "page_load": PAGE_LOAD_WAIT,
        "rate_limit_retry": RATE_LIMIT_RETRY_DELAY,
    }
    try:
        return ranges[kind]
    except KeyError:
        raise ValueError(f"Unknown delay kind: {kind!r}") from None
