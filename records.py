#!/usr/bin/env python3
"""
Record types passed between pipeline stages.

Feed items are transient parser output; articles are what gets persisted.
Sources are read back from plain database rows with ``Source.from_row``;
articles are flattened for insertion with ``Article.to_row``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

CONTENT_MODE_TEXT = "text"
CONTENT_MODE_IMAGE_TEXT = "image_text"


@dataclass
class Source:
    """A subscribed feed endpoint."""

    url: str
    name: str
    id: Optional[int] = None
    category: str = "General"
    content_mode: str = CONTENT_MODE_IMAGE_TEXT
    is_active: bool = True
    sort_order: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_fetch_at: Optional[int] = None
    article_count: int = 0
    unread_count: int = 0
    description: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Source":
        return cls(
            id=row.get("id"),
            url=row["url"],
            name=row.get("title") or row["url"],
            description=row.get("description") or "",
            category=row.get("category") or "General",
            content_mode=row.get("content_mode") or CONTENT_MODE_IMAGE_TEXT,
            is_active=bool(row.get("is_active", 1)),
            sort_order=int(row.get("sort_order") or 0),
            error_count=int(row.get("error_count") or 0),
            last_error=row.get("last_error"),
            last_fetch_at=row.get("last_fetch_at"),
            article_count=int(row.get("article_count") or 0),
            unread_count=int(row.get("unread_count") or 0),
        )


@dataclass
class Enclosure:
    url: str
    mime_type: str = ""
    length: Optional[int] = None


@dataclass
class MediaContent:
    """One ``<media:content>`` node with its resolved description/credit."""

    url: str
    width: Optional[int] = None
    height: Optional[int] = None
    medium: Optional[str] = None
    mime_type: Optional[str] = None
    description: Optional[str] = None
    credit: Optional[str] = None
    title: Optional[str] = None


@dataclass
class MediaThumbnail:
    url: str
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class FeedItem:
    """One entry parsed out of a feed document, prior to normalization."""

    title: str
    link: str
    guid: str = ""
    published_raw: Optional[str] = None
    published_at: Optional[datetime] = None
    raw_content_html: str = ""
    author_name: str = ""
    enclosures: List[Enclosure] = field(default_factory=list)
    media_content: List[MediaContent] = field(default_factory=list)
    media_thumbnail: Optional[MediaThumbnail] = None
    relay_item_id: Optional[str] = None
    relay_source_url: Optional[str] = None
    relay_source_name: Optional[str] = None


@dataclass
class Feed:
    title: str
    items: List[FeedItem] = field(default_factory=list)
    description: str = ""
    language: str = ""
    version: str = ""


@dataclass
class ImageSelection:
    """The single best illustrative image for an item.

    ``origin`` records which selection rule produced the hit: one of
    ``media_content``, ``media_thumbnail``, ``enclosure``, ``figure`` or ``img``.
    """

    url: str
    origin: str
    caption: Optional[str] = None
    credit: Optional[str] = None


@dataclass
class NormalizedContent:
    html: str
    summary: str
    word_count: int
    reading_time: int
    backfilled: bool = False


@dataclass
class Article:
    """The persisted, normalized representation of a feed item."""

    source_id: int
    source_name: str
    title: str
    url: str
    content: str
    summary: str
    word_count: int
    reading_time: int
    published_at: datetime
    guid: str = ""
    author: str = ""
    category: str = ""
    image_url: Optional[str] = None
    image_caption: Optional[str] = None
    image_credit: Optional[str] = None
    is_read: bool = False
    is_favorite: bool = False
    read_progress: int = 0
    tags: List[str] = field(default_factory=list)
    id: Optional[int] = None

    def to_row(self) -> Dict[str, Any]:
        """Flatten into the column mapping expected by ``insert_article``."""
        published = self.published_at
        if published.tzinfo is None:
            published = published.replace(tzinfo=timezone.utc)
        return {
            "source_id": self.source_id,
            "source_name": self.source_name,
            "title": self.title,
            "url": self.url,
            "guid": self.guid,
            "author": self.author,
            "category": self.category,
            "content": self.content,
            "summary": self.summary,
            "word_count": self.word_count,
            "reading_time": self.reading_time,
            "published_at": int(published.timestamp()),
            "image_url": self.image_url,
            "image_caption": self.image_caption,
            "image_credit": self.image_credit,
        }


@dataclass
class StoredArticleRef:
    """Lightweight projection of a stored article used by the diff detector."""

    url: str
    title: str
    published_at: Optional[datetime] = None


@dataclass
class RefreshError:
    source_name: str
    message: str


@dataclass
class RefreshResult:
    success_count: int = 0
    failed_count: int = 0
    total_new_articles: int = 0
    errors: List[RefreshError] = field(default_factory=list)
