#!/usr/bin/env python3
"""
Source validation and subscription management.

Adding a source always validates it first: the URL is resolved (indirection
included), fetched once and parsed, and the feed title becomes the default
display name.
"""

from asyncio import get_running_loop
from typing import Any, Dict, List, Optional

from config import config, get_logger, CONTENT_MODES
from errors import IngestError, PersistenceError
from feed_parser import FeedParser
from mirrors import MirrorResolver, describe, is_indirection_url
from records import Source
from telemetry import trace_span
from utils import validate_url

logger = get_logger("sources")


class SourceManager:
    """CRUD and validation for subscribed sources."""

    def __init__(self, db, fetch_client, resolver: Optional[MirrorResolver] = None,
                 parser: Optional[FeedParser] = None) -> None:
        self.db = db
        self.fetch_client = fetch_client
        self.resolver = resolver or MirrorResolver(fetch_client)
        self.parser = parser or FeedParser()

    @trace_span("validate_feed", tracer_name="sources", attr_from_args=lambda self, url: {"feed.url": url})
    async def validate_feed(self, url: str) -> Dict[str, str]:
        """Fetch and parse a feed once, returning its channel metadata.

        Raises:
            IngestError: if the URL is unusable, unreachable, not XML or not a feed.
        """
        url = (url or "").strip()
        if not is_indirection_url(url) and not validate_url(url):
            raise IngestError(f"Invalid feed URL: {url}")

        fetch_url = await self.resolver.resolve(url)
        raw = await self.fetch_client.fetch_feed(fetch_url)
        feed = await get_running_loop().run_in_executor(None, self.parser.parse, raw)

        title = feed.title
        if not title and is_indirection_url(url):
            title = describe(url).description
        return {
            "title": title or url,
            "description": feed.description,
            "language": feed.language,
            "item_count": str(len(feed.items)),
        }

    async def add_source(self, url: str, name: Optional[str] = None, category: str = "General",
                         content_mode: str = "image_text", validate: bool = True) -> Source:
        """Validate and store a new subscription.

        Raises:
            IngestError: on validation failure or when the URL is already subscribed.
        """
        url = url.strip()
        if content_mode not in CONTENT_MODES:
            raise IngestError(f"Unknown content mode: {content_mode}")
        if await self.db.execute('get_source_by_url', url=url):
            raise IngestError(f"Source already exists: {url}")

        info: Dict[str, str] = {"title": "", "description": ""}
        if validate:
            info = await self.validate_feed(url)

        source_id = await self.db.execute(
            'add_source',
            url=url,
            title=name or info["title"] or url,
            description=info.get("description") or "",
            category=category or "General",
            content_mode=content_mode,
        )
        logger.info(f"Added source {name or info['title'] or url} (id {source_id})")
        return Source.from_row(await self.db.execute('get_source', source_id=source_id))

    async def get_source(self, source_id: int) -> Optional[Source]:
        row = await self.db.execute('get_source', source_id=source_id)
        return Source.from_row(row) if row else None

    async def list_sources(self, active_only: bool = True) -> List[Source]:
        rows = await self.db.execute('list_sources', active_only=active_only)
        return [Source.from_row(row) for row in rows]

    async def update_source(self, source_id: int, **fields: Any) -> bool:
        if "content_mode" in fields and fields["content_mode"] not in CONTENT_MODES:
            raise IngestError(f"Unknown content mode: {fields['content_mode']}")
        if "name" in fields:
            fields["title"] = fields.pop("name")
        return await self.db.execute('update_source', source_id=source_id, fields=fields)

    async def reorder_sources(self, source_ids: List[int]) -> int:
        return await self.db.execute('reorder_sources', source_ids=source_ids)

    async def delete_source(self, source_id: int) -> bool:
        deleted = await self.db.execute('delete_source', source_id=source_id)
        if deleted:
            logger.info(f"Deleted source {source_id} and its articles")
        return deleted

    async def sync_from_config(self, sources: Optional[Dict[str, Dict[str, Any]]] = None) -> int:
        """Seed the store from the configured source list without validating.

        Existing URLs are updated in place (name, category, mode, active).
        Returns the number of newly created sources.
        """
        configured = config.SOURCES if sources is None else sources
        created = 0
        for slug, entry in configured.items():
            try:
                existing = await self.db.execute('get_source_by_url', url=entry["url"])
                if existing:
                    await self.db.execute('update_source', source_id=existing["id"], fields={
                        "title": entry["name"],
                        "category": entry["category"],
                        "content_mode": entry["content_mode"],
                        "is_active": entry["active"],
                    })
                    continue
                await self.db.execute(
                    'add_source',
                    url=entry["url"],
                    title=entry["name"],
                    category=entry["category"],
                    content_mode=entry["content_mode"],
                    is_active=entry["active"],
                )
                created += 1
            except PersistenceError as e:
                logger.error(f"Could not sync source '{slug}': {e.message}")
        logger.info(f"Synced {len(configured)} configured sources ({created} new)")
        return created

    async def sources_by_slugs(self, slugs: List[str]) -> List[Source]:
        """Map configured slugs to stored sources (unknown slugs are skipped)."""
        sources = []
        for slug in slugs:
            entry = config.SOURCES.get(slug)
            if not entry:
                logger.warning(f"Unknown source slug: {slug}")
                continue
            row = await self.db.execute('get_source_by_url', url=entry["url"])
            if row:
                sources.append(Source.from_row(row))
            else:
                logger.warning(f"Source '{slug}' is configured but not stored; run sync-sources")
        return sources
