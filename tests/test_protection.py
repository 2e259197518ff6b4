from __future__ import annotations

import pytest

from trailexport.exporter import protection
from trailexport.exporter.errors import ProtectionDetected
from trailexport.exporter.protection import (
    PageClassifier,
    ProtectionDetector,
    ProtectionKind,
    identify_widget,
    is_normal_site_page,
)
from trailexport.exporter.snapshot import PageSnapshot

RECORDING_URL = "https://www.alltrails.com/explore/recording/morning-hike-abc123"
DISCOVERY_URL = "https://www.alltrails.com/members/jane-doe/recordings"

NORMAL_ITEM_HTML = """
<html><head><title>Morning hike | AllTrails</title></head>
<body>
  <header><a href="/"><img alt="AllTrails logo"></a></header>
  <h1>Morning hike</h1>
  <button aria-label="More options">...</button>
</body></html>
"""

RATE_LIMIT_HTML = """
<html><head><title>AllTrails</title></head>
<body>
  <header><a href="/">AllTrails</a></header>
  <div class="dialog">You are not permitted to download this file. Please try again later.</div>
</body></html>
"""

RATE_LIMIT_PHRASE_ONLY_HTML = """
<html><head><title>Trail notes</title></head>
<body><header><a href="/">AllTrails</a></header>
<p>My notes: too many requests to count the switchbacks.</p></body></html>
"""

CHALLENGE_WIDGET_HTML = """
<html><head><title>Just a moment</title></head>
<body>
  <div class="g-recaptcha" data-sitekey="6Lc-example" style="width: 304px; height: 78px">
    Please complete the verification
  </div>
</body></html>
"""

HIDDEN_WIDGET_HTML = """
<html><head><title>Just a moment</title></head>
<body>
  <div style="display: none">
    <div class="g-recaptcha" data-sitekey="6Lc-example">verification</div>
  </div>
</body></html>
"""

ZERO_SIZE_WIDGET_HTML = """
<html><head><title>Just a moment</title></head>
<body>
  <div class="g-recaptcha" data-sitekey="6Lc-example" data-trailexport-box="0,0">verification</div>
</body></html>
"""

CHALLENGE_PAGE_HTML = """
<html><head><title>Security check</title></head>
<body><p>We noticed unusual activity from your device. Verification required.</p>
<button>Continue</button></body></html>
"""


def _links(count: int) -> str:
    return "".join(f'<a href="/trail/{i}">Trail {i}</a>' for i in range(count))


@pytest.fixture
def event_recorder(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []

    def _record(label: str = "", **fields: object) -> None:
        events.append((label, fields))

    monkeypatch.setattr(protection, "_export_event", _record)
    return events


def _classify(html: str, url: str = RECORDING_URL):
    return ProtectionDetector(lambda: None).classify(PageSnapshot.from_html(html, url))


def test_normal_item_page_is_clear() -> None:
    signal = _classify(NORMAL_ITEM_HTML)
    assert signal.present is False
    assert signal.kind is None


def test_rate_limit_dialog_is_detected(event_recorder: list[tuple[str, dict]]) -> None:
    signal = _classify(RATE_LIMIT_HTML)
    assert signal.is_rate_limit
    assert "not permitted to download" in signal.detail
    label, fields = event_recorder[-1]
    assert label == "state"
    assert fields["classifier"] == "rate_limit"


def test_rate_limit_phrase_needs_error_corroboration() -> None:
    assert _classify(RATE_LIMIT_PHRASE_ONLY_HTML).present is False


def test_rate_limit_title_corroborates_phrase() -> None:
    html = "<html><head><title>Access Denied</title></head><body>Too many requests</body></html>"
    assert _classify(html).is_rate_limit


def test_visible_widget_is_a_challenge() -> None:
    signal = _classify(CHALLENGE_WIDGET_HTML, url="https://www.alltrails.com/")
    assert signal.is_challenge
    assert signal.widget == "reCAPTCHA"


@pytest.mark.parametrize("html", [HIDDEN_WIDGET_HTML, ZERO_SIZE_WIDGET_HTML])
def test_invisible_widget_is_ignored(html: str) -> None:
    assert _classify(html, url="https://www.alltrails.com/").present is False


def test_challenge_page_requires_sparse_page() -> None:
    assert _classify(CHALLENGE_PAGE_HTML, url="https://www.alltrails.com/").is_challenge

    busy = CHALLENGE_PAGE_HTML.replace("<button>Continue</button>", _links(12))
    assert _classify(busy, url="https://www.alltrails.com/").present is False


def test_challenge_classifiers_skip_normal_site_pages() -> None:
    # A recording page with the site header is trusted even if a widget markup is present.
    html = NORMAL_ITEM_HTML.replace(
        "<h1>", '<div class="g-recaptcha" data-sitekey="x">verification</div><h1>'
    )
    snapshot = PageSnapshot.from_html(html, RECORDING_URL)
    assert is_normal_site_page(snapshot)
    assert _classify(html).present is False


def test_rate_limit_still_checked_on_normal_pages() -> None:
    snapshot = PageSnapshot.from_html(RATE_LIMIT_HTML, RECORDING_URL)
    assert is_normal_site_page(snapshot)
    assert _classify(RATE_LIMIT_HTML).is_rate_limit


def test_classifier_errors_are_contained(event_recorder: list[tuple[str, dict]]) -> None:
    class _Broken(PageClassifier):
        name = "broken"

        def classify(self, snapshot):
            raise RuntimeError("boom")

    detector = ProtectionDetector(
        lambda: PageSnapshot.from_html(RATE_LIMIT_HTML, RECORDING_URL),
        classifiers=[_Broken(), *protection.default_classifiers()],
    )
    signal = detector.detect()
    assert signal.kind == ProtectionKind.RATE_LIMIT
    assert any(fields.get("classifier") == "broken" for label, fields in event_recorder if label == "error")


def test_snapshot_failure_degrades_to_clear() -> None:
    def _explode():
        raise RuntimeError("page gone")

    assert ProtectionDetector(_explode).detect().present is False
    assert ProtectionDetector(lambda: None).detect().present is False


def test_require_clear_raises_with_signal() -> None:
    detector = ProtectionDetector(lambda: PageSnapshot.from_html(RATE_LIMIT_HTML, RECORDING_URL))
    with pytest.raises(ProtectionDetected) as excinfo:
        detector.require_clear()
    assert excinfo.value.signal.is_rate_limit


@pytest.mark.parametrize(
    "selector, expected",
    [
        (".g-recaptcha[data-sitekey]", "reCAPTCHA"),
        (".h-captcha[data-hcaptcha-sitekey]", "hCaptcha"),
        ("#captcha-container[data-dd-captcha-container]", "DataDome"),
        ('iframe[src*="captcha"]', "Generic"),
    ],
)
def test_identify_widget(selector: str, expected: str) -> None:
    assert identify_widget(selector) == expected
