#!/usr/bin/env python3
"""
Best-image selection for feed items.

Candidates are tried in a fixed order (media:content, media:thumbnail, image
enclosures, then inline ``<figure>``/``<img>`` markup) and the first candidate
that is not a placeholder or tracking pixel wins. Icons and logos are only
filtered out of inline markup.
"""

import re
from typing import Iterable, Optional, Sequence
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup

from config import get_logger
from records import CONTENT_MODE_TEXT, FeedItem, ImageSelection
from utils import collapse_whitespace

logger = get_logger("images")

PLACEHOLDER_KEYWORDS = (
    "placeholder",
    "loading",
    "grey-placeholder",
    "gray-placeholder",
    "dummy",
    "blank",
    "default.png",
    "default.jpg",
    "spacer",
)
PLACEHOLDER_ALTS = ("loading", "image unavailable")

# Matched as whole tokens in the URL path so "logo" does not reject "catalogue"
DECORATIVE_KEYWORDS = ("icon", "logo", "favicon", "avatar", "sprite", "badge", "emoji", "pixel")
TRACKING_PIXEL_MAX_SIZE = 2

CDN_UNWRAP_HOSTS = ("o.aolcdn.com/images/dims",)


class ImageSelector:
    """Pick the single best illustrative image for a ``FeedItem``.

    Keyword lists are fixed at construction so tests and callers can supply
    their own without touching module state.
    """

    def __init__(
        self,
        placeholder_keywords: Sequence[str] = PLACEHOLDER_KEYWORDS,
        placeholder_alts: Sequence[str] = PLACEHOLDER_ALTS,
        decorative_keywords: Sequence[str] = DECORATIVE_KEYWORDS,
    ) -> None:
        self.placeholder_keywords = tuple(k.lower() for k in placeholder_keywords)
        self.placeholder_alts = tuple(a.lower() for a in placeholder_alts)
        tokens = "|".join(re.escape(k.lower()) for k in decorative_keywords)
        self._decorative_pattern = re.compile(rf"(?:^|[/_.\-])(?:{tokens})s?(?:[/_.\-]|\d|$)") if tokens else None

    def is_placeholder(self, url: str, alt: Optional[str] = None) -> bool:
        url_lower = (url or "").lower()
        for keyword in self.placeholder_keywords:
            if keyword in url_lower:
                logger.debug(f"Placeholder image skipped: {url} (matched '{keyword}')")
                return True
        if alt is not None and alt.strip().lower() in self.placeholder_alts:
            logger.debug(f"Placeholder image skipped: {url} (alt '{alt}')")
            return True
        return False

    def is_tracking_pixel(self, width: Optional[int] = None, height: Optional[int] = None) -> bool:
        return any(size is not None and 0 < size <= TRACKING_PIXEL_MAX_SIZE for size in (width, height))

    def is_decorative(self, url: str) -> bool:
        if self._decorative_pattern is None:
            return False
        image_path = urlparse(url).path.lower()
        return bool(self._decorative_pattern.search(image_path))

    def is_acceptable(self, url: str, alt: Optional[str] = None, width: Optional[int] = None,
                      height: Optional[int] = None, inline: bool = False) -> bool:
        """Feed-declared media only get the placeholder and pixel checks;
        icon and logo tokens are rejected for inline markup alone.
        """
        if not url or self.is_placeholder(url, alt) or self.is_tracking_pixel(width, height):
            return False
        return not (inline and self.is_decorative(url))

    def select_best_image(self, item: FeedItem, source_url: Optional[str] = None,
                          content_mode: Optional[str] = None) -> Optional[ImageSelection]:
        """Return the winning image for an item, or None.

        Args:
            item: The parsed feed item
            source_url: Base URL used to resolve root-relative inline images
                when the item has no link of its own
            content_mode: ``text`` skips selection entirely

        Returns:
            An ImageSelection, or None when no acceptable candidate exists.
        """
        if content_mode == CONTENT_MODE_TEXT:
            return None

        for finder in (self._from_media_content, self._from_thumbnail, self._from_enclosures):
            selection = finder(item)
            if selection:
                logger.debug(f"Image for '{item.title}' from {selection.origin}: {selection.url}")
                return selection

        selection = self.from_html(item.raw_content_html, base_url=item.link or source_url)
        if selection:
            logger.debug(f"Image for '{item.title}' from inline {selection.origin}: {selection.url}")
        return selection

    def _from_media_content(self, item: FeedItem) -> Optional[ImageSelection]:
        candidates = [m for m in item.media_content if m.url]
        ordered = [m for m in candidates if m.medium == "image"] + [m for m in candidates if m.medium != "image"]
        for media in ordered:
            url = unwrap_cdn_url(media.url)
            if not self.is_acceptable(url, width=media.width, height=media.height):
                continue
            return ImageSelection(url=url, origin="media_content", caption=media.description, credit=media.credit)
        return None

    def _from_thumbnail(self, item: FeedItem) -> Optional[ImageSelection]:
        thumb = item.media_thumbnail
        if not thumb or not self.is_acceptable(thumb.url, width=thumb.width, height=thumb.height):
            return None
        first = item.media_content[0] if item.media_content else None
        return ImageSelection(
            url=thumb.url,
            origin="media_thumbnail",
            caption=first.description if first else None,
            credit=first.credit if first else None,
        )

    def _from_enclosures(self, item: FeedItem) -> Optional[ImageSelection]:
        for enclosure in item.enclosures:
            if not enclosure.url or not (enclosure.mime_type or "").lower().startswith("image/"):
                continue
            if self.is_acceptable(enclosure.url):
                return ImageSelection(url=enclosure.url, origin="enclosure")
        return None

    def from_html(self, html_content: str, base_url: Optional[str] = None) -> Optional[ImageSelection]:
        """Scan inline markup: figures with captions first, then bare images."""
        if not html_content or "<img" not in html_content.lower():
            return None
        soup = BeautifulSoup(html_content, "html.parser")

        for figure in soup.find_all("figure"):
            for img in figure.find_all("img"):
                url = self._usable_src(img, base_url)
                if not url:
                    continue
                alt = img.get("alt") or None
                figcaption = figure.find("figcaption")
                caption = collapse_whitespace(figcaption.get_text(" ")) if figcaption else ""
                return ImageSelection(url=url, origin="figure", caption=caption or alt)

        for img in soup.find_all("img"):
            url = self._usable_src(img, base_url)
            if url:
                return ImageSelection(url=url, origin="img", caption=img.get("alt") or None)
        return None

    def _usable_src(self, img, base_url: Optional[str]) -> Optional[str]:
        src = (img.get("src") or "").strip()
        if not src or not (src.startswith("http") or src.startswith("/")):
            return None
        if src.startswith("//"):
            src = f"https:{src}"
        elif src.startswith("/") and base_url:
            src = urljoin(base_url, src)
        if not self.is_acceptable(src, img.get("alt"), _attr_int(img, "width"), _attr_int(img, "height"), inline=True):
            return None
        return src


def _attr_int(tag, name: str) -> Optional[int]:
    value = tag.get(name)
    if not value:
        return None
    match = re.match(r"\d+", str(value))
    return int(match.group(0)) if match else None


def unwrap_cdn_url(url: str, hosts: Iterable[str] = CDN_UNWRAP_HOSTS) -> str:
    """Unwrap resizing-CDN URLs that carry the real image in ``image_uri``."""
    if not url or not any(host in url for host in hosts):
        return url
    values = parse_qs(urlparse(url).query).get("image_uri")
    if values and values[0]:
        return values[0]
    return url
