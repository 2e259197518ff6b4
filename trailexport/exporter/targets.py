"""Target (recording) identifiers and import parsing."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urljoin, urlparse

from . import config
from .selectors import DISCOVERY_SELECTORS, DiscoverySelectors
from .snapshot import PageSnapshot

_BARE_IDENTIFIER = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
_SITE_HOST_SUFFIX = "alltrails.com"


def is_target_url(url: Optional[str]) -> bool:
    return bool(url) and config.TARGET_PATH_MARKER in str(url)


def is_discovery_page(url: Optional[str]) -> bool:
    return bool(url) and config.DISCOVERY_PATH_MARKER in str(url)


def _canonical(path: str) -> Optional[str]:
    path = path.rstrip("/")
    if config.TARGET_PATH_MARKER not in path:
        return None
    identifier = path.split(config.TARGET_PATH_MARKER, 1)[1]
    if not identifier:
        return None
    return f"{config.SITE_ROOT}{path}"


def normalize_target(raw: Optional[str]) -> Optional[str]:
    """Return the canonical target URL for ``raw`` or ``None`` if it is not one.

    Accepts absolute URLs, scheme-less ``www.alltrails.com/...`` references,
    site-relative paths and bare recording identifiers. Query strings and
    fragments are dropped so the same recording always maps to one key.
    """

    if raw is None:
        return None
    value = str(raw).strip().strip("\"'")
    if not value:
        return None

    if _BARE_IDENTIFIER.match(value):
        return f"{config.TARGET_BASE_URL}{value}"

    if value.startswith("//"):
        value = f"https:{value}"
    elif not re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", value):
        if value.lower().startswith(("www.", _SITE_HOST_SUFFIX)):
            value = f"https://{value}"
        else:
            value = urljoin(f"{config.SITE_ROOT}/", value.lstrip("/"))

    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"}:
        return None
    host = (parsed.hostname or "").lower()
    if not (host == _SITE_HOST_SUFFIX or host.endswith(f".{_SITE_HOST_SUFFIX}")):
        return None
    return _canonical(parsed.path)


def resolve_link(href: Optional[str], base_url: str) -> Optional[str]:
    """Resolve an ``href`` found on ``base_url`` into a canonical target."""

    if not href:
        return None
    absolute = urljoin(base_url or f"{config.SITE_ROOT}/", str(href).strip())
    if config.TARGET_PATH_MARKER not in absolute:
        return None
    return normalize_target(absolute)


def collect_targets(
    snapshot: PageSnapshot, selectors: DiscoverySelectors = DISCOVERY_SELECTORS
) -> list[str]:
    """Return the distinct recording targets linked from ``snapshot`` in page order."""

    seen: set[str] = set()
    found: list[str] = []
    for selector in selectors.link_selectors:
        for element in snapshot.select(selector):
            target = resolve_link(element.get("href"), snapshot.url)
            if target and target not in seen:
                seen.add(target)
                found.append(target)
    return found


def target_label(target: Optional[str]) -> str:
    if not target:
        return ""
    return str(target).rstrip("/").rsplit("/", 1)[-1]


@dataclass
class ParsedImport:
    targets: list[str] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)
    line_count: int = 0
    split_method: str = "single"


def parse_import_text(text: Optional[str]) -> ParsedImport:
    """Split pasted import text into canonical targets.

    Lists copied out of a previous export sometimes carry literal ``\\n``
    sequences instead of real line breaks; those are split first.
    """

    result = ParsedImport()
    if not text or not text.strip():
        return result

    if "\\n" in text:
        lines = text.split("\\n")
        result.split_method = "literal"
    elif "\n" in text or "\r" in text:
        lines = text.splitlines()
        result.split_method = "newlines"
    else:
        lines = [text]

    lines = [line.strip() for line in lines if line.strip()]
    result.line_count = len(lines)

    for line in lines:
        target = normalize_target(line)
        if target is None:
            result.discarded.append(line)
        else:
            result.targets.append(target)
    return result


__all__ = [
    "is_target_url",
    "is_discovery_page",
    "normalize_target",
    "resolve_link",
    "collect_targets",
    "target_label",
    "ParsedImport",
    "parse_import_text",
]
