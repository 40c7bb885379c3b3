#!/usr/bin/env python3
"""
Content normalization: sanitation, summary, word count and page backfill.

Sanitized HTML keeps its structure (it is rendered, not flattened). Short
excerpts can be backfilled from the article page using a ranked list of
content-block candidates, with readability as the last resort.
"""

from asyncio import get_running_loop
from typing import Callable, Optional, Sequence

from bs4 import BeautifulSoup
from readability import Document

from config import config, get_logger
from errors import FetchError
from records import CONTENT_MODE_TEXT, NormalizedContent
from telemetry import trace_span
from utils import RateLimiter, count_words, generate_summary, html_to_text, reading_time_minutes

logger = get_logger("normalizer")

BLOCKED_TAGS = ("script", "style", "nav", "header", "footer", "iframe")
MEDIA_TAGS = ("img", "figure", "video", "audio")

# (tag, class) pairs tried in order against the fetched page
CONTENT_BLOCK_SELECTORS = (
    ("article", None),
    ("div", "post-content"),
    ("div", "entry-content"),
    ("div", "article-content"),
    ("main", None),
)


def sanitize_html(html_content: str, strip_media: bool = False) -> str:
    """Remove active and chrome elements plus inline event handlers.

    Args:
        html_content: Raw item HTML
        strip_media: Also drop img/figure/video/audio (text-only sources)

    Returns:
        Sanitized HTML with its structural tags intact.
    """
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, "html.parser")

    blocked = BLOCKED_TAGS + (MEDIA_TAGS if strip_media else ())
    for tag in soup.find_all(list(blocked)):
        # Nested matches are already gone once their ancestor is removed
        if not tag.decomposed:
            tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith("on"):
                del tag[attr]
        href = tag.get("href")
        if isinstance(href, str) and href.strip().lower().startswith("javascript:"):
            del tag["href"]

    return str(soup).strip()


def _select_by_rank(html_content: str, selectors: Sequence[tuple], min_length: int) -> Optional[str]:
    soup = BeautifulSoup(html_content, "html.parser")
    for name, css_class in selectors:
        block = soup.find(name, class_=css_class) if css_class else soup.find(name)
        if block is None:
            continue
        markup = str(block)
        if len(markup) > min_length:
            logger.debug(f"Content block matched <{name}{'.' + css_class if css_class else ''}>")
            return markup
    return None


def _select_with_readability(html_content: str, min_length: int) -> Optional[str]:
    try:
        summary = Document(html_content).summary(html_partial=True)
    except (ValueError, RuntimeError, TypeError) as e:
        logger.debug(f"Readability extraction failed: {e}")
        return None
    if summary and len(summary) > min_length:
        return summary
    return None


def extract_main_content(html_content: str, min_length: int = 500,
                         selectors: Sequence[tuple] = CONTENT_BLOCK_SELECTORS) -> Optional[str]:
    """Return the first ranked content block longer than ``min_length``."""
    if not html_content:
        return None
    return _select_by_rank(html_content, selectors, min_length) or _select_with_readability(html_content, min_length)


class ContentNormalizer:
    """Turn raw item HTML into stored article content.

    ``page_fetcher`` is an async callable taking a URL and returning page
    HTML (normally ``FetchClient.fetch_page``). Without it no backfill is
    attempted.
    """

    def __init__(
        self,
        page_fetcher: Optional[Callable] = None,
        min_content_length: Optional[int] = None,
        min_backfill_length: Optional[int] = None,
        summary_length: Optional[int] = None,
        words_per_minute: Optional[int] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.page_fetcher = page_fetcher
        self.min_content_length = config.MIN_CONTENT_LENGTH if min_content_length is None else min_content_length
        self.min_backfill_length = config.MIN_BACKFILL_LENGTH if min_backfill_length is None else min_backfill_length
        self.summary_length = summary_length or config.SUMMARY_LENGTH
        self.words_per_minute = words_per_minute or config.WORDS_PER_MINUTE
        self.rate_limiter = rate_limiter or RateLimiter(config.BACKFILL_REQUESTS_PER_MINUTE)

    @trace_span(
        "normalize_content",
        tracer_name="normalizer",
        attr_from_args=lambda self, raw_html, item_url=None, content_mode=None: {
            "content.length": len(raw_html or ""),
            "content.mode": content_mode or "",
        },
    )
    async def normalize(self, raw_html: str, item_url: Optional[str] = None,
                        content_mode: Optional[str] = None) -> NormalizedContent:
        raw_html = raw_html or ""
        backfilled = False
        if len(raw_html) < self.min_content_length and item_url and self.page_fetcher:
            page_block = await self.backfill(item_url)
            if page_block:
                raw_html = page_block
                backfilled = True

        html = sanitize_html(raw_html, strip_media=content_mode == CONTENT_MODE_TEXT)
        text = html_to_text(html)
        word_count = count_words(text)
        return NormalizedContent(
            html=html,
            summary=generate_summary(text, self.summary_length),
            word_count=word_count,
            reading_time=reading_time_minutes(word_count, self.words_per_minute),
            backfilled=backfilled,
        )

    async def backfill(self, item_url: str) -> Optional[str]:
        """Fetch the article page and extract its main content block.

        Best effort: any failure returns None and the caller keeps the excerpt.
        """
        await self.rate_limiter.acquire()
        try:
            page = await self.page_fetcher(item_url)
        except FetchError as e:
            logger.warning(f"Backfill fetch failed for {item_url}: {e.message}")
            return None
        if not page:
            return None

        block = await get_running_loop().run_in_executor(None, extract_main_content, page, self.min_backfill_length)
        if block:
            logger.info(f"Backfilled content for {item_url} ({len(block)} chars)")
        else:
            logger.debug(f"No content block over {self.min_backfill_length} chars at {item_url}")
        return block

