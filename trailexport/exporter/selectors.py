"""Selectors and text hints for the AllTrails page templates."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class ProtectionSelectors:
    """Markers used to recognise throttling responses and challenge surfaces.

    Rate-limit phrases are only trusted together with an error-styled element
    or an error/denied title. Challenge widgets must be visible and carry a
    challenge attribute or challenge text before they count.
    """

    rate_limit_phrases: Tuple[str, ...] = (
        "you are not permitted to download this file",
        "please try again later",
        "too many requests",
        "rate limit exceeded",
        "slow down",
        "access temporarily restricted",
        "an error has occurred",
    )
    error_title_markers: Tuple[str, ...] = ("error", "access denied")
    error_element_selector: str = '.dialog, .error, [class*="error"]'

    challenge_widget_selectors: Tuple[str, ...] = (
        "#captcha-container[data-dd-captcha-container]",
        ".captcha[data-dd-captcha-container]",
        'iframe[src*="captcha"]',
        'iframe[src*="recaptcha"]',
        ".g-recaptcha[data-sitekey]",
        ".h-captcha[data-hcaptcha-sitekey]",
        "[data-dd-captcha-header]",
    )
    challenge_attributes: Tuple[str, ...] = (
        "data-dd-captcha-container",
        "data-sitekey",
        "data-hcaptcha-sitekey",
    )
    challenge_widget_text: Tuple[str, ...] = ("verification", "captcha", "prove you are human")

    challenge_title_markers: Tuple[str, ...] = ("verification", "captcha", "security check")
    challenge_page_phrases: Tuple[str, ...] = (
        "verification required",
        "prove you are not a robot",
        "complete the captcha below",
        "security verification",
        "unusual activity from your device",
    )
    minimal_interactive_count: int = 10

    site_identity_selectors: Tuple[str, ...] = ('a[href="/"]', '[alt*="AllTrails"]', "header")


@dataclass(frozen=True)
class DiscoverySelectors:
    link_selectors: Tuple[str, ...] = (
        'a[href*="/explore/recording/"]',
        'a[href*="/activity/"]',
        '[href*="/recording/"]',
        'a[data-testid*="recording"]',
        ".recording-link",
        '[class*="recording-link"]',
    )


@dataclass(frozen=True)
class ExportSelectors:
    """The item page hides the GPX export behind a "more" menu and a confirm dialog."""

    menu_button_selectors: Tuple[str, ...] = (
        'button[aria-label*="more" i]',
        'button[title*="more" i]',
        '[data-testid="dots-vertical"]',
        'button:has([data-testid="dots-vertical"])',
        '[data-testid*="more"]',
        'button[aria-label*="menu" i]',
        ".more-menu-button",
        '[class*="more-menu"]',
        'button[class*="menu"]',
    )
    option_selectors: Tuple[str, ...] = (
        'li[role="menuitem"]',
        ".MuiMenuItem-root",
        '[role="menuitem"]',
        "li",
        "button",
        '[role="button"]',
        '[tabindex="0"]',
        ".menu-item",
        '[class*="menu-item"]',
    )
    option_text_markers: Tuple[str, ...] = ("download route", "download", "export", "gpx")
    option_search_attempts: int = 3

    confirm_selectors: Tuple[str, ...] = (
        '[data-testid="OK"]',
        'button[data-testid="OK"]',
        'button:has-text("OK")',
        'button:has-text("Download")',
        'button:has-text("Export")',
        '[role="button"]:has-text("OK")',
        ".ok-button",
        ".download-button",
        ".export-button",
    )
    confirm_text_markers: Tuple[str, ...] = ("ok", "download", "export")
    confirm_search_attempts: int = 3

    download_indicator_selectors: Tuple[str, ...] = (
        '[role="dialog"]',
        '[class*="download"]',
        '[class*="progress"]',
        ".download-dialog",
        ".export-dialog",
    )


@dataclass(frozen=True)
class MetadataSelectors:
    trail_name: Tuple[str, ...] = (
        '[data-testid*="TrailCard_"] [data-testid*="_Title"]',
        ".styles-module__reviews2TrackName___J0NYI",
        "h1",
        ".trail-name",
        '[class*="trail-title"]',
    )
    linked_trail: str = 'a[href*="/trail/"]'
    difficulty: Tuple[str, ...] = ('[data-testid*="_Difficulty"]', ".difficulty", '[class*="difficulty"]')
    rating: Tuple[str, ...] = ('[data-testid*="_Rating"]', ".rating", '[class*="rating"]')
    location: Tuple[str, ...] = ('[data-testid*="_Location"]', ".location", '[class*="location"]')
    date_and_activity: str = ".styles-module__dateAndActivity___HyeGo"
    review_rating_checked: str = 'input[name="rating"]:checked'
    review_rating_filled: str = ".MuiRating-iconFilled"
    comment: Tuple[str, ...] = (
        ".styles-module__reviewComment___WNT3m",
        ".review-comment",
        '[class*="comment"]',
    )
    privacy: str = ".styles-module__privacyDropdown___mEaGT button"
    stats_container: str = ".styles-module__statsContainer___pHGmd"
    stats_section: str = ".styles-module__section___nefNN"
    stats_label: str = ".styles-module__label___xz5xq"
    stats_value: str = ".styles-module__dataSection___zgMoI"
    photos: str = ".styles-module__uploadedPhoto___GGxFg img"
    notes: str = '[data-testid="notesTextArea"]'


PROTECTION_SELECTORS = ProtectionSelectors()
DISCOVERY_SELECTORS = DiscoverySelectors()
EXPORT_SELECTORS = ExportSelectors()
METADATA_SELECTORS = MetadataSelectors()

__all__ = [
    "ProtectionSelectors",
    "DiscoverySelectors",
    "ExportSelectors",
    "MetadataSelectors",
    "PROTECTION_SELECTORS",
    "DISCOVERY_SELECTORS",
    "EXPORT_SELECTORS",
    "METADATA_SELECTORS",
]
