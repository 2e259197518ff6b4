"""Immutable snapshots of the page under control.

Classifiers and extractors work on a ``PageSnapshot`` instead of a live
browser page so they can be exercised against saved HTML fixtures. The live
collaborator annotates elements it has measured with
``data-trailexport-box="<width>,<height>"`` before serialising the DOM.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from bs4.element import Tag

BOX_ATTRIBUTE = "data-trailexport-box"

_STYLE_SIZE = re.compile(r"(?<![-\w])(width|height)\s*:\s*([\d.]+)px", re.IGNORECASE)


def _parse_number(value: object) -> Optional[float]:
    try:
        return float(str(value).strip().rstrip("px"))
    except (TypeError, ValueError):
        return None


@dataclass
class PageSnapshot:
    url: str
    html: str
    soup: BeautifulSoup = field(repr=False)

    @classmethod
    def from_html(cls, html: str, url: str = "") -> "PageSnapshot":
        return cls(url=url or "", html=html or "", soup=BeautifulSoup(html or "", "html5lib"))

    @classmethod
    def empty(cls, url: str = "") -> "PageSnapshot":
        return cls.from_html("", url)

    @property
    def path(self) -> str:
        return urlparse(self.url).path or ""

    @property
    def title(self) -> str:
        tag = self.soup.find("title")
        return tag.get_text(" ", strip=True) if tag else ""

    @property
    def body_text(self) -> str:
        body = self.soup.body or self.soup
        return body.get_text(" ", strip=True)

    def select(self, selector: str) -> list[Tag]:
        """Return matches for ``selector``; unsupported selectors yield nothing."""

        try:
            return list(self.soup.select(selector))
        except Exception:  # noqa: BLE001 - soupsieve rejects some browser-only syntax
            return []

    def select_one(self, selector: str) -> Optional[Tag]:
        matches = self.select(selector)
        return matches[0] if matches else None

    @property
    def interactive_count(self) -> int:
        return len(self.select("a, button, input"))

    def element_box(self, tag: Tag) -> Optional[tuple[float, float]]:
        """Return the measured or declared ``(width, height)`` of ``tag`` if known."""

        measured = tag.get(BOX_ATTRIBUTE)
        if measured:
            parts = str(measured).split(",")
            if len(parts) == 2:
                width, height = _parse_number(parts[0]), _parse_number(parts[1])
                if width is not None and height is not None:
                    return (width, height)

        declared: dict[str, float] = {}
        for name in ("width", "height"):
            value = _parse_number(tag.get(name)) if tag.get(name) is not None else None
            if value is not None:
                declared[name] = value
        for name, value in _STYLE_SIZE.findall(str(tag.get("style") or "")):
            declared[name.lower()] = float(value)

        if "width" in declared and "height" in declared:
            return (declared["width"], declared["height"])
        return None

    def is_visible(self, tag: Tag) -> bool:
        """Best-effort visibility: not hidden by itself or an ancestor, non-zero size."""

        node: Optional[Tag] = tag
        while isinstance(node, Tag):
            if node.has_attr("hidden"):
                return False
            style = str(node.get("style") or "").replace(" ", "").lower()
            if "display:none" in style or "visibility:hidden" in style:
                return False
            node = node.parent

        box = self.element_box(tag)
        if box is None:
            return True
        width, height = box
        return width > 0 and height > 0


__all__ = ["PageSnapshot", "BOX_ATTRIBUTE"]
