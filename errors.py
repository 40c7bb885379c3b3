#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class IngestError(Exception):
    """Base class for ingestion failures.

    Attributes:
        source: Optional display name of the source being refreshed.
        details: Optional payload for diagnostics.
    """

    def __init__(self, message: str, source: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.source = source
        self.details = details or {}


class FetchError(IngestError):
    """Network failure that survived every retry attempt."""

    def __init__(self, message: str, url: Optional[str] = None, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.url = url
        self.attempts = attempts


class HTTPStatusError(FetchError):
    """Upstream answered with a non-2xx status."""

    def __init__(self, status: int, url: Optional[str] = None, reason: str = "", **kwargs):
        message = f"HTTP {status}" + (f": {reason}" if reason else "")
        super().__init__(message, url=url, **kwargs)
        self.status = status


class FetchTimeoutError(FetchError):
    """A single attempt exceeded its timeout."""


class NotAFeedError(IngestError):
    """Response body does not look like an XML feed document."""


class FeedParseError(IngestError):
    """The baseline parser could not make a feed out of the document."""


class PersistenceError(IngestError):
    """A storage operation failed."""


class MirrorResolutionError(IngestError):
    """An indirection URL is malformed and cannot be resolved."""


class ProxyError(IngestError):
    """The proxy relay server returned an error or an unusable payload."""


__all__ = [
    "IngestError",
    "FetchError",
    "HTTPStatusError",
    "FetchTimeoutError",
    "NotAFeedError",
    "FeedParseError",
    "PersistenceError",
    "MirrorResolutionError",
    "ProxyError",
]
