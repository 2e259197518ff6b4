from __future__ import annotations

import pytest

from trailexport.exporter.snapshot import PageSnapshot
from trailexport.exporter.targets import (
    collect_targets,
    is_discovery_page,
    normalize_target,
    parse_import_text,
    target_label,
)

BASE = "https://www.alltrails.com/explore/recording/"


@pytest.mark.parametrize(
    "raw, expected",
    [
        (f"{BASE}morning-hike-abc", f"{BASE}morning-hike-abc"),
        (f"{BASE}morning-hike-abc/", f"{BASE}morning-hike-abc"),
        (f"{BASE}morning-hike-abc?ref=feed#map", f"{BASE}morning-hike-abc"),
        ("www.alltrails.com/explore/recording/evening-run", f"{BASE}evening-run"),
        ("/explore/recording/evening-run", f"{BASE}evening-run"),
        ("//www.alltrails.com/explore/recording/evening-run", f"{BASE}evening-run"),
        ("evening-run-123", f"{BASE}evening-run-123"),
        ('  "evening-run-123"  ', f"{BASE}evening-run-123"),
    ],
)
def test_normalize_target_accepts_known_forms(raw: str, expected: str) -> None:
    assert normalize_target(raw) == expected


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "",
        "   ",
        "https://www.alltrails.com/trail/us/colorado/some-trail",
        "https://example.com/explore/recording/abc",
        "https://www.alltrails.com/explore/recording/",
        "ftp://www.alltrails.com/explore/recording/abc",
        "not a url at all",
    ],
)
def test_normalize_target_rejects_other_urls(raw) -> None:
    assert normalize_target(raw) is None


def test_collect_targets_is_ordered_and_unique() -> None:
    html = """
    <html><body>
      <a href="/explore/recording/one">One</a>
      <a href="/explore/recording/two?x=1">Two</a>
      <a href="https://www.alltrails.com/explore/recording/one">One again</a>
      <a href="/trail/us/somewhere">Trail</a>
      <div class="recording-link" href="/explore/recording/three"></div>
    </body></html>
    """
    snapshot = PageSnapshot.from_html(html, "https://www.alltrails.com/members/jane/recordings")
    assert collect_targets(snapshot) == [f"{BASE}one", f"{BASE}two", f"{BASE}three"]


def test_is_discovery_page() -> None:
    assert is_discovery_page("https://www.alltrails.com/members/jane/recordings")
    assert not is_discovery_page(f"{BASE}one")
    assert not is_discovery_page(None)


def test_target_label() -> None:
    assert target_label(f"{BASE}morning-hike-abc/") == "morning-hike-abc"
    assert target_label(None) == ""


def test_parse_import_splits_real_newlines() -> None:
    parsed = parse_import_text(f"{BASE}a\r\n\n  {BASE}b  \nnonsense line\n")
    assert parsed.split_method == "newlines"
    assert parsed.targets == [f"{BASE}a", f"{BASE}b"]
    assert parsed.discarded == ["nonsense line"]
    assert parsed.line_count == 3


def test_parse_import_prefers_literal_backslash_n() -> None:
    parsed = parse_import_text(f"{BASE}a\\n{BASE}b\\nthird-id")
    assert parsed.split_method == "literal"
    assert parsed.targets == [f"{BASE}a", f"{BASE}b", f"{BASE}third-id"]


def test_parse_import_single_entry_and_empty() -> None:
    single = parse_import_text("only-one")
    assert single.split_method == "single"
    assert single.targets == [f"{BASE}only-one"]

    empty = parse_import_text("   ")
    assert empty.targets == [] and empty.line_count == 0
