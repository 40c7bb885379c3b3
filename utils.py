#!/usr/bin/env python3
"""
Utility classes and functions for the ingestion pipeline.

This module contains shared utilities used by the fetch client, the parser and
the normalizer, including rate limiting, retry backoff, text cleanup, word
counting and tolerant date parsing.
"""

from asyncio import Lock, sleep
from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from time import time
from typing import Optional
import re

from bs4 import BeautifulSoup
from feedparser.datetimes import _parse_date as feedparser_parse_date

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

# Unix timestamps at or above this value are treated as milliseconds
MILLISECOND_THRESHOLD = 10_000_000_000

CJK_PATTERN = re.compile(r"[\u4e00-\u9fff]")
WORD_PATTERN = re.compile(r'\b[A-Za-z0-9_]+\b')
WHITESPACE_PATTERN = re.compile(r'\s+')

ISO_PREFIX_PATTERN = re.compile(r'^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})')
RFC2822_PATTERN = re.compile(r'(\w{3}, \d{1,2} \w{3} \d{4} \d{2}:\d{2}:\d{2})')
SIMPLE_RFC_PATTERN = re.compile(r'(\w{3} \w{3} \d{1,2} \d{4} \d{2}:\d{2}:\d{2})')
DATE_ONLY_PATTERN = re.compile(r'^(\d{4}-\d{2}-\d{2})')


class RateLimiter:
    """A token bucket rate limiter for controlling request rates.

    This class implements a simple rate limiter that ensures requests
    don't exceed a specified rate limit by introducing delays when necessary.
    """

    def __init__(self, requests_per_minute: int):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum number of requests allowed per minute.
                                If 0 or negative, no rate limiting is applied.
        """
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time = 0
        self._lock = Lock()

    async def acquire(self):
        """Acquire permission to make a request, waiting if necessary to respect rate limits."""
        if self.min_interval <= 0:
            return  # No rate limiting

        async with self._lock:
            current_time = time()
            time_since_last = current_time - self.last_request_time

            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                await sleep(wait_time)

            self.last_request_time = time()


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        Args:
            attempt: The current attempt number (0-based)

        Returns:
            Delay in seconds (with exponential backoff)
        """
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt.

        Args:
            attempt: The current attempt number (0-based)
        """
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


def collapse_whitespace(text: str) -> str:
    return WHITESPACE_PATTERN.sub(' ', text or '').strip()


def html_to_text(html_content: str) -> str:
    """Flatten an HTML fragment to whitespace-collapsed plain text."""
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, 'html.parser')
    return collapse_whitespace(soup.get_text(' '))


def clean_text_content(text: Optional[str]) -> str:
    """Clean short text such as titles and author names.

    Tags are stripped, entities decoded and whitespace collapsed.
    """
    if not text:
        return ""
    if '<' not in text and '&' not in text:
        return collapse_whitespace(text)
    return html_to_text(text)


def generate_summary(text: str, max_length: int = 200) -> str:
    """Truncate text to ``max_length`` characters on a word boundary.

    An ellipsis is appended only when the text was actually truncated.
    """
    clean = collapse_whitespace(text)
    if len(clean) <= max_length:
        return clean

    truncated = clean[:max_length]
    last_space = truncated.rfind(' ')
    if last_space > 0:
        return truncated[:last_space] + '...'
    return truncated + '...'


def count_words(text: str) -> int:
    """Count words, treating each CJK ideograph as one word.

    Latin-script tokens are counted with a word-boundary regex on whatever
    remains once the ideographs are removed.
    """
    clean = collapse_whitespace(text)
    if not clean:
        return 0
    cjk_chars = CJK_PATTERN.findall(clean)
    remainder = CJK_PATTERN.sub('', clean)
    return len(cjk_chars) + len(WORD_PATTERN.findall(remainder))


def reading_time_minutes(word_count: int, words_per_minute: int = 200) -> int:
    """Whole minutes needed to read ``word_count`` words (ceiling)."""
    if word_count <= 0:
        return 0
    return -(-word_count // words_per_minute)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_native(value: str) -> Optional[datetime]:
    try:
        return _as_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))
    except ValueError:
        pass
    if value.isdigit():
        return None
    # feedparser understands RFC 822 and W3DTF variants found in the wild
    try:
        time_struct = feedparser_parse_date(value)
        if time_struct:
            return datetime.fromtimestamp(timegm(time_struct), tz=timezone.utc)
    except (ValueError, TypeError, AttributeError, OverflowError, OSError):
        pass
    return None


def _parse_iso_prefix(value: str) -> Optional[datetime]:
    match = ISO_PREFIX_PATTERN.match(value)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_rfc2822(value: str) -> Optional[datetime]:
    try:
        return _as_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError, OverflowError):
        pass
    match = RFC2822_PATTERN.search(value)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), "%a, %d %b %Y %H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_simple_rfc(value: str) -> Optional[datetime]:
    match = SIMPLE_RFC_PATTERN.search(value)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), "%a %b %d %Y %H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_date_only(value: str) -> Optional[datetime]:
    match = DATE_ONLY_PATTERN.match(value)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_unix_timestamp(value: str) -> Optional[datetime]:
    match = re.match(r'^\d+', value)
    if not match:
        return None
    timestamp = int(match.group(0))
    if timestamp <= 0:
        return None
    if timestamp >= MILLISECOND_THRESHOLD:
        timestamp = timestamp / 1000
    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


DATE_PARSERS = (
    _parse_native,
    _parse_iso_prefix,
    _parse_rfc2822,
    _parse_simple_rfc,
    _parse_date_only,
    _parse_unix_timestamp,
)


def parse_date_strict(value) -> Optional[datetime]:
    """Parse a publication date, returning None when nothing matches."""
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, (int, float)):
        value = str(int(value))
    value = str(value).strip()
    if not value:
        return None
    # Pure digit strings can only be Unix timestamps
    parsers = (_parse_unix_timestamp,) if value.isdigit() else DATE_PARSERS
    for parser in parsers:
        parsed = parser(value)
        if parsed is not None:
            return parsed
    return None


def parse_published_date(value) -> datetime:
    """Parse a publication date, defaulting to the current instant.

    Tries native ISO parsing (plus feedparser's RFC 822/W3DTF handler), an
    ISO-8601 prefix, RFC 2822, a simplified RFC variant, a bare date and
    finally a Unix timestamp in seconds or milliseconds. Never raises.
    """
    parsed = parse_date_strict(value)
    if parsed is None:
        if value not in (None, ''):
            logger.debug(f"Unparseable date '{value}', defaulting to now")
        return datetime.now(timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> str:
    """Return a human-readable UTC timestamp for diagnostics."""
    if value is None:
        return "n/a"
    return _as_utc(value).isoformat()


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)
