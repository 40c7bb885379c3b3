#!/usr/bin/env python3
"""
Feed parsing: feedparser for the baseline model plus a raw XML walk for
Media RSS extension elements.

feedparser handles titles, links, ids, descriptions, enclosures, authors and
dates. The ``media:content``/``media:thumbnail`` nodes (with their
description, credit and title children) are read directly from the XML tree
with lxml and attached to the matching baseline item.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import feedparser
from lxml import etree

from config import get_logger
from errors import FeedParseError
from records import Enclosure, Feed, FeedItem, MediaContent, MediaThumbnail
from telemetry import trace_span
from utils import clean_text_content, parse_published_date

logger = get_logger("parser")

MEDIA_NS = "http://search.yahoo.com/mrss/"
ITEM_TAGS = ("item", "entry")
MEDIA_TEXT_FIELDS = ("description", "credit", "title")


@dataclass
class ItemExtensions:
    """Extension data collected from one ``<item>``/``<entry>`` node."""

    link: str = ""
    guid: str = ""
    media_content: List[MediaContent] = field(default_factory=list)
    media_thumbnail: Optional[MediaThumbnail] = None
    attributes: Dict[str, str] = field(default_factory=dict)


def _local_name(element) -> str:
    tag = element.tag
    if not isinstance(tag, str):
        return ""
    return etree.QName(tag).localname


def _is_media(element, name: str) -> bool:
    return isinstance(element.tag, str) and element.tag == f"{{{MEDIA_NS}}}{name}"


def _to_int(value: Optional[str]) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _text(element) -> Optional[str]:
    if element is None:
        return None
    value = clean_text_content("".join(element.itertext()))
    return value or None


class FeedParser:
    """Parse raw feed bytes into a ``Feed`` of ``FeedItem`` records."""

    def __init__(self) -> None:
        self._xml_parser = etree.XMLParser(
            recover=True,
            resolve_entities=False,
            no_network=True,
            huge_tree=False,
        )

    @trace_span(
        "parse_feed",
        tracer_name="parser",
        attr_from_args=lambda self, raw: {"feed.bytes": len(raw) if raw else 0},
        attr_from_result=lambda feed: {"feed.items": len(feed.items), "feed.version": feed.version},
    )
    def parse(self, raw: bytes | str) -> Feed:
        """Parse a feed document.

        Raises:
            FeedParseError: when the baseline parser cannot make a feed out of
                the document at all.
        """
        if isinstance(raw, str):
            raw = raw.encode("utf-8")

        parsed = feedparser.parse(raw, sanitize_html=False, resolve_relative_uris=True)
        entries = parsed.get("entries") or []
        if not entries and (parsed.get("bozo") or not parsed.get("version")):
            reason = parsed.get("bozo_exception") or "unrecognized document"
            raise FeedParseError(f"Unparseable feed: {reason}")
        if parsed.get("bozo"):
            logger.warning(f"Feed parsed with warnings: {parsed.get('bozo_exception')}")

        channel = parsed.get("feed") or {}
        items = [self._baseline_item(entry) for entry in entries]
        self._attach_extensions(raw, items)

        logger.debug(f"Parsed {len(items)} items ({parsed.get('version') or 'unknown format'})")
        return Feed(
            title=clean_text_content(channel.get("title")),
            description=clean_text_content(channel.get("subtitle") or channel.get("description")),
            language=channel.get("language") or "",
            version=parsed.get("version") or "",
            items=items,
        )

    def _baseline_item(self, entry) -> FeedItem:
        link = (entry.get("link") or "").strip()
        guid = (entry.get("id") or "").strip() or link
        published_raw = entry.get("published") or entry.get("updated") or entry.get("created")
        return FeedItem(
            title=clean_text_content(entry.get("title")),
            link=link,
            guid=guid,
            published_raw=published_raw,
            published_at=parse_published_date(published_raw),
            raw_content_html=self._extract_content(entry),
            author_name=self._extract_author(entry),
            enclosures=self._extract_enclosures(entry),
        )

    def _extract_content(self, entry) -> str:
        # media:description also lands in entry.content as text/plain
        plain = ""
        for content_item in entry.get("content") or []:
            value = content_item.get("value")
            if not value:
                continue
            if "html" in (content_item.get("type") or "text/html"):
                return value
            plain = plain or value
        return entry.get("summary") or entry.get("description") or plain

    def _extract_author(self, entry) -> str:
        authors = entry.get("authors") or []
        if authors and authors[0].get("name"):
            return clean_text_content(authors[0]["name"])
        return clean_text_content(entry.get("author"))

    def _extract_enclosures(self, entry) -> List[Enclosure]:
        enclosures = []
        for enc in entry.get("enclosures") or []:
            url = enc.get("href") or enc.get("url")
            if not url:
                continue
            enclosures.append(Enclosure(url=url, mime_type=enc.get("type") or "", length=_to_int(enc.get("length"))))
        return enclosures

    def _attach_extensions(self, raw: bytes, items: List[FeedItem]) -> None:
        """Attach DOM-walk extension data to baseline items.

        Nodes are matched on guid, then link. When some items stay unmatched
        and both traversals found the same number of items, the remainder is
        aligned by position.
        """
        if not items:
            return
        try:
            nodes = self.extract_extensions(raw)
        except (etree.XMLSyntaxError, ValueError) as e:
            logger.warning(f"Extension walk failed, continuing without media data: {e}")
            return

        by_key: Dict[str, ItemExtensions] = {}
        for ext in nodes:
            for key in (ext.guid, ext.link):
                if key and key not in by_key:
                    by_key[key] = ext

        positional = len(nodes) == len(items)
        for index, item in enumerate(items):
            ext = by_key.get(item.guid) or by_key.get(item.link)
            if ext is None and positional:
                ext = nodes[index]
            if ext is None:
                continue
            item.media_content = ext.media_content
            item.media_thumbnail = ext.media_thumbnail
            item.relay_item_id = ext.attributes.get("data-item-id")
            item.relay_source_url = ext.attributes.get("data-source-url")
            item.relay_source_name = ext.attributes.get("data-source-name")

    def extract_extensions(self, raw: bytes) -> List[ItemExtensions]:
        """Walk the XML tree and collect Media RSS data for every item node."""
        root = etree.fromstring(raw, self._xml_parser)
        if root is None:
            return []

        results = []
        for node in root.iter():
            if _local_name(node) not in ITEM_TAGS:
                continue
            try:
                results.append(self._item_extensions(node))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping media extraction for one item: {e}")
                results.append(ItemExtensions())
        return results

    def _item_extensions(self, node) -> ItemExtensions:
        ext = ItemExtensions(attributes={k: v for k, v in node.attrib.items() if k.startswith("data-")})

        for child in node:
            name = _local_name(child)
            if name == "link" and not ext.link:
                ext.link = (child.get("href") or child.text or "").strip()
            elif name in ("guid", "id") and not ext.guid:
                ext.guid = (child.text or "").strip()

        # Item-level media text applies to content nodes lacking their own
        fallback: Dict[str, Optional[str]] = {}
        for name in MEDIA_TEXT_FIELDS:
            for el in node.iter(f"{{{MEDIA_NS}}}{name}"):
                parent = el.getparent()
                if parent is not None and _is_media(parent, "content"):
                    continue
                fallback[name] = _text(el)
                break

        for content in node.iter(f"{{{MEDIA_NS}}}content"):
            url = (content.get("url") or "").strip()
            local = {name: _text(content.find(f"{{{MEDIA_NS}}}{name}")) for name in MEDIA_TEXT_FIELDS}
            ext.media_content.append(MediaContent(
                url=url,
                width=_to_int(content.get("width")),
                height=_to_int(content.get("height")),
                medium=content.get("medium"),
                mime_type=content.get("type"),
                description=local["description"] or fallback.get("description"),
                credit=local["credit"] or fallback.get("credit"),
                title=local["title"] or fallback.get("title"),
            ))

        thumbnail = next(node.iter(f"{{{MEDIA_NS}}}thumbnail"), None)
        if thumbnail is not None and thumbnail.get("url"):
            ext.media_thumbnail = MediaThumbnail(
                url=thumbnail.get("url").strip(),
                width=_to_int(thumbnail.get("width")),
                height=_to_int(thumbnail.get("height")),
            )
        return ext
