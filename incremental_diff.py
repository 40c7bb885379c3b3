#!/usr/bin/env python3
"""
Incremental diff: find where already-known items start in a freshly parsed feed.

This only saves work. Ingestion still checks each URL before inserting, since
feeds can reorder items and clock skew can defeat the title/time heuristic.
"""

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from config import config, get_logger
from records import FeedItem, StoredArticleRef
from utils import format_timestamp

logger = get_logger("diff")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _matches(item: FeedItem, stored: StoredArticleRef, tolerance_seconds: float) -> bool:
    if item.link and item.link == stored.url:
        return True
    if not item.title or item.title != stored.title:
        return False
    parsed_at, stored_at = _aware(item.published_at), _aware(stored.published_at)
    if parsed_at is None or stored_at is None:
        return False
    return abs((parsed_at - stored_at).total_seconds()) <= tolerance_seconds


def find_new_item_boundary(
    parsed_items: Sequence[FeedItem],
    recent_stored: Iterable[StoredArticleRef],
    tolerance_seconds: Optional[float] = None,
) -> int:
    """Return the number of leading parsed items that are new.

    Items are walked in feed order (newest first). The first one that matches
    a stored article, by URL or by identical title published within the
    tolerance, marks the boundary. No match means every item is new.
    """
    if tolerance_seconds is None:
        tolerance_seconds = config.DIFF_TIME_TOLERANCE_SECONDS
    stored: List[StoredArticleRef] = list(recent_stored)
    if not stored:
        return len(parsed_items)

    for index, item in enumerate(parsed_items):
        if any(_matches(item, ref, tolerance_seconds) for ref in stored):
            logger.debug(
                f"Diff boundary at {index} ('{item.title}' published {format_timestamp(item.published_at)} already stored)"
            )
            return index
    return len(parsed_items)
