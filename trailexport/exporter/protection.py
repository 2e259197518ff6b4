"""Classify the current page as normal, rate limited or challenged.

Detection runs a fixed, prioritised list of ``PageClassifier`` strategies
over a ``PageSnapshot``. Rate-limit classification always runs first; the
challenge classifiers only run on pages that do not look like a normal
signed-in AllTrails page.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Sequence

from . import config
from .errors import ProtectionDetected
from .logging_utils import _export_event
from .selectors import PROTECTION_SELECTORS, ProtectionSelectors
from .snapshot import PageSnapshot


class ProtectionKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    CHALLENGE = "challenge"


@dataclass(frozen=True)
class ProtectionSignal:
    present: bool
    kind: Optional[ProtectionKind] = None
    detail: str = ""
    widget: Optional[str] = None

    @classmethod
    def clear(cls) -> "ProtectionSignal":
        return cls(present=False)

    @property
    def is_rate_limit(self) -> bool:
        return self.present and self.kind == ProtectionKind.RATE_LIMIT

    @property
    def is_challenge(self) -> bool:
        return self.present and self.kind == ProtectionKind.CHALLENGE

    def to_dict(self) -> dict[str, Any]:
        return {
            "present": self.present,
            "kind": self.kind.value if self.kind else None,
            "detail": self.detail,
            "widget": self.widget,
        }


def identify_widget(selector: str) -> str:
    lowered = selector.lower()
    if "recaptcha" in lowered or "g-recaptcha" in lowered:
        return "reCAPTCHA"
    if "hcaptcha" in lowered or "h-captcha" in lowered:
        return "hCaptcha"
    if "dd-captcha" in lowered or "captcha-delivery" in lowered:
        return "DataDome"
    return "Generic"


def is_normal_site_page(
    snapshot: PageSnapshot, selectors: ProtectionSelectors = PROTECTION_SELECTORS
) -> bool:
    """A known signed-in path that also renders a site identity element."""

    url = snapshot.url or ""
    has_normal_path = any(marker in url for marker in config.NORMAL_PAGE_PATHS)
    if not has_normal_path:
        return False
    return any(snapshot.select_one(selector) is not None for selector in selectors.site_identity_selectors)


class PageClassifier:
    """Strategy interface: inspect a snapshot and return a signal or ``None``."""

    name = "classifier"
    # Challenge strategies only apply to pages that do not look normal.
    suspicious_pages_only = False

    def __init__(self, selectors: ProtectionSelectors = PROTECTION_SELECTORS) -> None:
        self.selectors = selectors

    def classify(self, snapshot: PageSnapshot) -> Optional[ProtectionSignal]:
        raise NotImplementedError


class RateLimitClassifier(PageClassifier):
    name = "rate_limit"

    def classify(self, snapshot: PageSnapshot) -> Optional[ProtectionSignal]:
        body = snapshot.body_text.lower()
        phrase = next((p for p in self.selectors.rate_limit_phrases if p in body), None)
        if phrase is None:
            return None

        title = snapshot.title.lower()
        error_title = any(marker in title for marker in self.selectors.error_title_markers)
        error_element = snapshot.select_one(self.selectors.error_element_selector) is not None
        if not (error_title or error_element):
            return None

        corroboration = "title" if error_title else "error_element"
        return ProtectionSignal(
            present=True,
            kind=ProtectionKind.RATE_LIMIT,
            detail=f"{phrase} ({corroboration})",
        )


class ChallengeWidgetClassifier(PageClassifier):
    name = "challenge_widget"
    suspicious_pages_only = True

    def classify(self, snapshot: PageSnapshot) -> Optional[ProtectionSignal]:
        for selector in self.selectors.challenge_widget_selectors:
            element = snapshot.select_one(selector)
            if element is None or not snapshot.is_visible(element):
                continue

            has_attribute = any(element.has_attr(attr) for attr in self.selectors.challenge_attributes)
            text = element.get_text(" ", strip=True).lower()
            has_text = any(marker in text for marker in self.selectors.challenge_widget_text)
            if has_attribute or has_text:
                widget = identify_widget(selector)
                return ProtectionSignal(
                    present=True,
                    kind=ProtectionKind.CHALLENGE,
                    detail=f"widget {selector}",
                    widget=widget,
                )
        return None


class ChallengePageClassifier(PageClassifier):
    name = "challenge_page"
    suspicious_pages_only = True

    def classify(self, snapshot: PageSnapshot) -> Optional[ProtectionSignal]:
        title = snapshot.title.lower()
        if not any(marker in title for marker in self.selectors.challenge_title_markers):
            return None

        body = snapshot.body_text.lower()
        phrase = next((p for p in self.selectors.challenge_page_phrases if p in body), None)
        if phrase is None:
            return None

        if snapshot.interactive_count >= self.selectors.minimal_interactive_count:
            return None

        return ProtectionSignal(
            present=True,
            kind=ProtectionKind.CHALLENGE,
            detail=f"page-based: {phrase}",
            widget="page-based",
        )


def default_classifiers(
    selectors: ProtectionSelectors = PROTECTION_SELECTORS,
) -> list[PageClassifier]:
    return [
        RateLimitClassifier(selectors),
        ChallengeWidgetClassifier(selectors),
        ChallengePageClassifier(selectors),
    ]


class ProtectionDetector:
    """Runs the classifiers in priority order against the live page.

    ``snapshot_provider`` returns the current ``PageSnapshot`` or ``None`` when
    the page cannot be read; the detector degrades to a clear signal in that
    case and never raises from ``detect``.
    """

    def __init__(
        self,
        snapshot_provider: Callable[[], Optional[PageSnapshot]],
        classifiers: Optional[Iterable[PageClassifier]] = None,
        *,
        selectors: ProtectionSelectors = PROTECTION_SELECTORS,
    ) -> None:
        self._snapshot_provider = snapshot_provider
        self.selectors = selectors
        self.classifiers: Sequence[PageClassifier] = (
            list(classifiers) if classifiers is not None else default_classifiers(selectors)
        )

    def detect(self) -> ProtectionSignal:
        try:
            snapshot = self._snapshot_provider()
        except Exception as exc:  # noqa: BLE001
            _export_event("error", phase="protection", context="snapshot", error=str(exc))
            return ProtectionSignal.clear()

        if snapshot is None:
            return ProtectionSignal.clear()
        return self.classify(snapshot)

    def classify(self, snapshot: PageSnapshot) -> ProtectionSignal:
        suspicious: Optional[bool] = None

        for classifier in self.classifiers:
            try:
                if classifier.suspicious_pages_only:
                    if suspicious is None:
                        suspicious = not is_normal_site_page(snapshot, self.selectors)
                    if not suspicious:
                        continue
                signal = classifier.classify(snapshot)
            except Exception as exc:  # noqa: BLE001
                _export_event(
                    "error",
                    phase="protection",
                    classifier=classifier.name,
                    url=snapshot.url,
                    error=str(exc),
                )
                continue

            if signal is not None and signal.present:
                _export_event(
                    "state",
                    phase="protection",
                    classifier=classifier.name,
                    kind=signal.kind.value if signal.kind else None,
                    detail=signal.detail,
                    widget=signal.widget,
                    url=snapshot.url,
                )
                return signal

        return ProtectionSignal.clear()

    def require_clear(self) -> None:
        """Raise ``ProtectionDetected`` if the page is currently protected."""

        signal = self.detect()
        if signal.present:
            raise ProtectionDetected(signal)


__all__ = [
    "ProtectionKind",
    "ProtectionSignal",
    "PageClassifier",
    "RateLimitClassifier",
    "ChallengeWidgetClassifier",
    "ChallengePageClassifier",
    "ProtectionDetector",
    "default_classifiers",
    "identify_widget",
    "is_normal_site_page",
]
