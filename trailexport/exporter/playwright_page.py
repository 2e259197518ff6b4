"""Playwright implementation of the page collaborator."""

from __future__ import annotations

import random
import re
from pathlib import Path
from typing import Any, Optional

from playwright.sync_api import Download, Error as PWError, Locator, Page
from playwright.sync_api import TimeoutError as PWTimeout

from . import config
from .collaborators import ExportResult
from .errors import ExtractionError
from .logging_utils import _export_event
from .metadata import extract_item_metadata
from .pacing import Pacing
from .selectors import EXPORT_SELECTORS, PROTECTION_SELECTORS, ExportSelectors
from .snapshot import BOX_ATTRIBUTE, PageSnapshot
from .targets import target_label
from .utils import log_line, safe_filename

_MEASURE_BOXES_JS = """
([selectors, attribute]) => {
  for (const selector of selectors) {
    let nodes = [];
    try { nodes = document.querySelectorAll(selector); } catch (e) { continue; }
    for (const node of nodes) {
      const rect = node.getBoundingClientRect();
      node.setAttribute(attribute, `${rect.width},${rect.height}`);
    }
  }
}
"""

_SCROLL_STATE_JS = "() => [window.pageYOffset, document.body ? document.body.scrollHeight : 0]"


def wait_seconds(page: Optional[Page], seconds: float) -> None:
    """Wait safely for ``seconds`` only if *page* remains open."""

    if page is None:
        return

    if seconds is None or seconds <= 0:
        return

    if not page.is_closed():
        page.wait_for_timeout(int(seconds * 1000))


def _is_target_closed_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return "target closed" in message or "has been closed" in message


def _safe_goto(page: Page, url: str, *, label: str, wait_until: str = "domcontentloaded") -> bool:
    """Navigate to ``url`` with bounded timeouts and structured logging."""

    try:
        _export_event("nav", step="goto", target=label, url=url)
        page.goto(
            url,
            wait_until=wait_until,
            timeout=config.PLAYWRIGHT_NAV_TIMEOUT_SECONDS * 1000,
        )
        return True
    except PWTimeout as exc:
        log_line(f"[EXPORTER][ERROR][NAV] goto({url!r}) timed out: {exc}")
        _export_event(
            "error",
            phase="nav",
            step="goto_timeout",
            target=label,
            url=url,
            error=str(exc),
        )
        return False
    except PWError as exc:
        step = "goto_target_closed" if _is_target_closed_error(exc) else "goto_failed"
        log_line(f"[EXPORTER][ERROR][NAV] goto({url!r}) failed: {exc}")
        _export_event(
            "error",
            phase="nav",
            step=step,
            target=label,
            url=url,
            error=str(exc),
        )
        return False


class PlaywrightPage:
    """Drives a live AllTrails tab for the session machine."""

    def __init__(
        self,
        page: Page,
        *,
        pacing: Optional[Pacing] = None,
        download_dir: Optional[Path] = None,
        selectors: ExportSelectors = EXPORT_SELECTORS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.page = page
        self.pacing = pacing
        self.download_dir = Path(download_dir) if download_dir is not None else config.GPX_DIR
        self.selectors = selectors
        self._rng = rng or random.Random()
        self._downloads: list[Download] = []
        page.on("download", self._downloads.append)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _pause(self, kind: str, bounds: Optional[tuple[float, float]] = None) -> None:
        if self.pacing is not None:
            seconds = self.pacing.delay(kind, bounds)
        else:
            low, high = bounds if bounds is not None else config.delay_range(kind)
            seconds = self._rng.uniform(low, high)
        wait_seconds(self.page, seconds)

    def _first_visible(self, selectors: tuple[str, ...]) -> Optional[Locator]:
        for selector in selectors:
            try:
                locator = self.page.locator(selector).first
                if locator.count() and locator.is_visible():
                    return locator
            except PWError:
                continue
        return None

    def _click(self, locator: Locator, *, label: str) -> bool:
        try:
            locator.click(timeout=config.PLAYWRIGHT_CLICK_TIMEOUT_MS)
            return True
        except (PWTimeout, PWError) as exc:
            _export_event("error", phase="export", step="click", control=label, error=str(exc))
            return False

    def _find_export_option(self) -> Optional[Locator]:
        pattern = re.compile("|".join(re.escape(m) for m in self.selectors.option_text_markers), re.I)
        for attempt in range(self.selectors.option_search_attempts):
            if attempt:
                log_line(f"Retry {attempt} finding download option...")
                self._pause("click", (0.5, 1.2))
            for selector in self.selectors.option_selectors:
                try:
                    locator = self.page.locator(selector).filter(has_text=pattern).first
                    if locator.count() and locator.is_visible():
                        return locator
                except PWError:
                    continue
        return None

    def _find_confirm(self) -> Optional[Locator]:
        pattern = re.compile("|".join(re.escape(m) for m in self.selectors.confirm_text_markers), re.I)
        for attempt in range(self.selectors.confirm_search_attempts):
            if attempt:
                log_line(f"Retry {attempt} finding OK button...")
                self._pause("click", (0.6, 1.2))
            found = self._first_visible(self.selectors.confirm_selectors)
            if found is not None:
                return found
            try:
                fallback = self.page.locator("button").filter(has_text=pattern).first
                if fallback.count() and fallback.is_visible():
                    return fallback
            except PWError:
                continue
        return None

    def _await_download(self, timeout_seconds: float) -> Optional[Download]:
        waited = 0.0
        step = 0.5
        while not self._downloads and waited < timeout_seconds and not self.page.is_closed():
            wait_seconds(self.page, step)
            waited += step
        return self._downloads.pop(0) if self._downloads else None

    def _save_download(self, download: Download) -> Optional[Path]:
        name = safe_filename(download.suggested_filename) or (
            f"{target_label(self.current_url) or 'recording'}.gpx"
        )
        destination = self.download_dir / name
        try:
            self.download_dir.mkdir(parents=True, exist_ok=True)
            download.save_as(str(destination))
        except (PWError, OSError) as exc:
            _export_event("error", phase="export", step="save", filename=name, error=str(exc))
            return None
        _export_event("state", phase="export", step="saved", filename=name)
        return destination

    # ------------------------------------------------------------------
    # Collaborator interface
    # ------------------------------------------------------------------

    @property
    def current_url(self) -> str:
        try:
            return self.page.url
        except PWError:
            return ""

    def snapshot(self) -> Optional[PageSnapshot]:
        if self.page.is_closed():
            return None
        try:
            self.page.evaluate(
                _MEASURE_BOXES_JS,
                [list(PROTECTION_SELECTORS.challenge_widget_selectors), BOX_ATTRIBUTE],
            )
            html = self.page.content()
        except PWError as exc:
            _export_event("error", phase="snapshot", url=self.current_url, error=str(exc))
            return None
        return PageSnapshot.from_html(html, self.page.url)

    def extract_item_metadata(self) -> dict[str, Any]:
        snapshot = self.snapshot()
        if snapshot is None:
            raise ExtractionError(f"page unavailable for {self.current_url}")
        return extract_item_metadata(snapshot)

    def trigger_artifact_export(self) -> ExportResult:
        self._downloads.clear()

        menu = self._first_visible(self.selectors.menu_button_selectors)
        if menu is None:
            log_line("Menu button not found with any selector")
            self._pause("click", (1.0, 3.0))
            return ExportResult.NOT_FOUND

        log_line("Opening menu...")
        self._pause("click", (0.3, 0.8))
        if not self._click(menu, label="menu"):
            return ExportResult.NOT_FOUND
        self._pause("click")

        option = self._find_export_option()
        if option is None:
            log_line("Download option not found in menu after multiple attempts")
            self._pause("click", (1.0, 2.5))
            return ExportResult.NOT_FOUND

        log_line("Clicking download option...")
        self._pause("click", (0.4, 0.9))
        if not self._click(option, label="option"):
            return ExportResult.NOT_FOUND
        self._pause("click")

        confirm = self._find_confirm()
        if confirm is not None:
            log_line("Found OK button, performing download...")
            self._pause("click", (0.2, 0.6))
            self._click(confirm, label="confirm")

        download = self._await_download(float(config.PLAYWRIGHT_DOWNLOAD_TIMEOUT_SECONDS))
        if download is not None and self._save_download(download) is not None:
            return ExportResult.SUCCESS

        indicator = self._first_visible(self.selectors.download_indicator_selectors)
        _export_event(
            "state",
            phase="export",
            step="unconfirmed",
            confirm_clicked=confirm is not None,
            indicator=indicator is not None,
            url=self.current_url,
        )
        return ExportResult.AMBIGUOUS

    def expand_visible_content(self, amount: int) -> bool:
        try:
            before = self.page.evaluate(_SCROLL_STATE_JS)
            chunks = self._rng.randint(2, 4)
            chunk = amount // chunks
            for index in range(chunks):
                step = amount - chunk * (chunks - 1) if index == chunks - 1 else chunk
                self.page.mouse.wheel(0, step)
                wait_seconds(self.page, self._rng.uniform(0.2, 0.6))
            self._pause("scroll")
            after = self.page.evaluate(_SCROLL_STATE_JS)
        except PWError as exc:
            _export_event("error", phase="discovery", step="expand", error=str(exc))
            return False
        return list(after) != list(before)

    def navigate_to(self, url: str) -> bool:
        return _safe_goto(self.page, url, label=target_label(url) or "page")


__all__ = ["PlaywrightPage", "wait_seconds", "_safe_goto"]
