#!/usr/bin/env python3
"""
Per-source ingestion.

A refresh walks Resolving, Fetching, Parsing, Diffing, Normalizing and
Persisting in that order. ``SourceIngestor`` owns everything after the raw
document is in hand; subclasses only supply the transport. ``LocalIngestor``
fetches the feed itself, while ``ProxyIngestor`` asks a relay server for
already-dereferenced XML. Both therefore parse, diff, normalize and persist
identically.
"""

import re
from asyncio import get_running_loop
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode

from config import config, get_logger
from content_normalizer import ContentNormalizer
from errors import FeedParseError, IngestError, PersistenceError, ProxyError
from feed_parser import FeedParser
from image_selector import ImageSelector
from incremental_diff import find_new_item_boundary
from mirrors import MirrorResolver
from records import Article, FeedItem, RefreshError, RefreshResult, Source, StoredArticleRef
from telemetry import trace_span
from utils import parse_date_strict

logger = get_logger("ingestor")

LOCALHOST_ORIGIN = re.compile(r"https?://(?:localhost|127\.0\.0\.1)(?::\d+)?", re.IGNORECASE)


class SourceIngestor:
    """Shared parse/diff/normalize/persist path for one source refresh.

    Args:
        db: Started ``DatabaseQueue`` (or anything with the same ``execute``)
        parser: Feed parser
        normalizer: Content normalizer
        image_selector: Best-image selector
        diff_window: How many stored articles the diff compares against
    """

    mode = "base"

    def __init__(
        self,
        db,
        parser: Optional[FeedParser] = None,
        normalizer: Optional[ContentNormalizer] = None,
        image_selector: Optional[ImageSelector] = None,
        diff_window: Optional[int] = None,
    ) -> None:
        self.db = db
        self.parser = parser or FeedParser()
        self.normalizer = normalizer or ContentNormalizer()
        self.image_selector = image_selector or ImageSelector()
        self.diff_window = diff_window or config.DIFF_WINDOW

    async def transport(self, source: Source) -> Optional[bytes]:
        """Return the raw feed document, or None when there is nothing to parse."""
        raise NotImplementedError

    @trace_span(
        "ingest_source",
        tracer_name="ingestor",
        attr_from_args=lambda self, source: {"source.id": source.id or 0, "source.url": source.url},
        attr_from_result=lambda articles: {"ingest.new_articles": len(articles)},
    )
    async def fetch_articles(self, source: Source) -> List[Article]:
        """Refresh one source and return the articles that were newly stored.

        Raises:
            IngestError: on fetch or parse failure; the failure is also
                recorded against the source before being re-raised.
        """
        logger.info(f"Refreshing {source.name} ({self.mode}) from {source.url}")
        try:
            raw = await self.transport(source)
            if raw is None:
                articles = []
                await self._update_stats(source)
            else:
                articles = await self.parse_and_save(source, raw)
        except IngestError as e:
            e.source = e.source or source.name
            logger.error(f"Refresh failed for {source.name}: {e.message}")
            await self._record_error(source, e.message)
            raise
        except Exception as e:
            message = f"Unexpected {e.__class__.__name__}: {e}"
            logger.error(f"Refresh failed for {source.name}: {message}")
            await self._record_error(source, message)
            raise IngestError(message, source=source.name) from e

        if source.error_count and source.id is not None:
            await self.db.execute('reset_source_error', source_id=source.id)
        logger.info(f"Added {len(articles)} new articles from {source.name}")
        return articles

    async def parse(self, raw):
        """Run the blocking parser off the event loop; parser bugs surface as FeedParseError."""
        try:
            return await get_running_loop().run_in_executor(None, self.parser.parse, raw)
        except IngestError:
            raise
        except Exception as e:
            raise FeedParseError(f"Parser failed: {e.__class__.__name__}: {e}") from e

    async def parse_and_save(self, source: Source, raw: bytes) -> List[Article]:
        """Parse a raw document and run the shared ingest path on its items."""
        feed = await self.parse(raw)
        logger.debug(f"Parsed {len(feed.items)} items for {source.name}")
        saved = await self.ingest_items(source, feed.items)
        return [article for _, article in saved]

    async def ingest_items(self, source: Source, items: List[FeedItem]) -> List[Tuple[FeedItem, Article]]:
        """Diff, normalize and persist parsed items; always refresh source stats."""
        try:
            recent_rows = await self.db.execute('get_recent_articles', source_id=source.id, limit=self.diff_window)
            recent = [self._stored_ref(row) for row in recent_rows]
            boundary = find_new_item_boundary(items, recent)
            if boundary == 0:
                logger.info(f"No new content for {source.name}")
            else:
                logger.debug(f"{boundary} of {len(items)} items are new for {source.name}")

            saved: List[Tuple[FeedItem, Article]] = []
            for item in items[:boundary]:
                article = await self.build_article(source, item)
                if article is None:
                    continue
                if await self.save_article(article):
                    saved.append((item, article))

            await self.after_save(source, saved)
            return saved
        finally:
            await self._update_stats(source)

    async def build_article(self, source: Source, item: FeedItem) -> Optional[Article]:
        """Normalize one item; items without a usable link are dropped."""
        if not item.link or not item.link.startswith(("http://", "https://")):
            logger.debug(f"Skipping item without a valid link in {source.name}: '{item.title}'")
            return None

        image = None
        try:
            image = self.image_selector.select_best_image(item, source.url, source.content_mode)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Image selection failed for {item.link}: {e}")

        content = await self.normalizer.normalize(item.raw_content_html, item.link, source.content_mode)
        return Article(
            source_id=source.id,
            source_name=source.name,
            title=item.title or "No Title",
            url=item.link,
            guid=item.guid or item.link,
            author=item.author_name,
            category=source.category,
            content=content.html,
            summary=content.summary,
            word_count=content.word_count,
            reading_time=content.reading_time,
            published_at=item.published_at or datetime.now(timezone.utc),
            image_url=image.url if image else None,
            image_caption=image.caption if image else None,
            image_credit=image.credit if image else None,
        )

    async def save_article(self, article: Article) -> bool:
        """Insert unless the (source, url) pair exists; failures drop the item."""
        try:
            if await self.db.execute('article_exists', source_id=article.source_id, url=article.url):
                logger.debug(f"Article already stored: {article.url}")
                return False
            article_id = await self.db.execute('insert_article', article=article.to_row())
        except PersistenceError as e:
            logger.warning(f"Could not store {article.url}: {e.message}")
            return False
        if article_id is None:
            # Lost a race with a concurrent insert of the same URL
            return False
        article.id = article_id
        return True

    async def after_save(self, source: Source, saved: List[Tuple[FeedItem, Article]]) -> None:
        """Hook run after persistence; the proxy transport acknowledges here."""

    def _stored_ref(self, row: Dict[str, Any]) -> StoredArticleRef:
        return StoredArticleRef(
            url=row.get("url") or "",
            title=row.get("title") or "",
            published_at=parse_date_strict(row.get("published_at")),
        )

    async def _update_stats(self, source: Source) -> None:
        if source.id is None:
            return
        try:
            counts = await self.db.execute('update_source_stats', source_id=source.id)
            source.article_count = counts["article_count"]
            source.unread_count = counts["unread_count"]
        except PersistenceError as e:
            logger.warning(f"Could not update stats for {source.name}: {e.message}")

    async def _record_error(self, source: Source, message: str) -> None:
        if source.id is None:
            return
        try:
            source.error_count = await self.db.execute('record_source_error', source_id=source.id, last_error=message)
            source.last_error = message
        except PersistenceError as e:
            logger.warning(f"Could not record error for {source.name}: {e.message}")


class LocalIngestor(SourceIngestor):
    """Direct transport: resolve indirection URLs and fetch the feed ourselves."""

    mode = "direct"

    def __init__(self, db, fetch_client, resolver: Optional[MirrorResolver] = None, **kwargs) -> None:
        kwargs.setdefault("normalizer", ContentNormalizer(page_fetcher=fetch_client.fetch_page))
        super().__init__(db, **kwargs)
        self.fetch_client = fetch_client
        self.resolver = resolver or MirrorResolver(fetch_client)

    async def transport(self, source: Source) -> bytes:
        url = await self.resolver.resolve(source.url)
        if url != source.url:
            logger.debug(f"Resolved {source.url} to {url}")
        return await self.fetch_client.fetch_feed(url)


class ProxyIngestor(SourceIngestor):
    """Relay transport: a remote server fetches and pre-processes the feed.

    Args:
        server_url: Relay base URL
        token: Bearer token for the relay API
        sync_limit: Maximum items requested per sync call
    """

    mode = "proxy"

    def __init__(self, db, fetch_client, server_url: Optional[str] = None, token: Optional[str] = None,
                 sync_limit: Optional[int] = None, **kwargs) -> None:
        kwargs.setdefault("normalizer", ContentNormalizer(page_fetcher=fetch_client.fetch_page))
        super().__init__(db, **kwargs)
        self.fetch_client = fetch_client
        self.server_url = (server_url or config.PROXY_SERVER_URL or "").rstrip("/")
        self.token = token or config.PROXY_TOKEN
        self.sync_limit = sync_limit or config.PROXY_SYNC_LIMIT
        if not self.server_url or not self.token:
            raise ProxyError("Proxy mode requires a server URL and a token")

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}

    def rewrite_localhost(self, xml_text: str) -> str:
        """Point relay-hosted URLs that reference localhost at the relay origin."""
        return LOCALHOST_ORIGIN.sub(self.server_url, xml_text)

    async def transport(self, source: Source) -> Optional[bytes]:
        query = urlencode({"mode": "refresh", "source_url": source.url, "limit": self.sync_limit})
        data = await self.fetch_client.fetch_json(f"{self.server_url}/api/sync?{query}", headers=self._headers())
        if not isinstance(data, dict):
            raise ProxyError("Relay returned an unexpected payload", source=source.name)

        rss = data.get("rss")
        if rss is None and isinstance(data.get("sources"), list):
            match = next((s for s in data["sources"] if isinstance(s, dict) and s.get("url") == source.url), None)
            if match is None:
                logger.info(f"{source.name} is unknown to the relay, subscribing")
                await self.subscribe(source)
                return None
            rss = match.get("rss")

        if not rss:
            return None
        return self.rewrite_localhost(rss).encode("utf-8")

    async def subscribe(self, source: Source) -> None:
        await self.fetch_client.request(
            f"{self.server_url}/api/subscribe",
            method="POST",
            headers=self._headers(),
            json_body={"url": source.url, "title": source.name},
        )

    async def subscribe_all(self, sources: Iterable[Source]) -> RefreshResult:
        """Push every source to the relay, reporting per-source outcomes."""
        result = RefreshResult()
        for source in sources:
            try:
                await self.subscribe(source)
                result.success_count += 1
            except IngestError as e:
                logger.warning(f"Relay subscription failed for {source.name}: {e.message}")
                result.failed_count += 1
                result.errors.append(RefreshError(source.name, e.message))
        logger.info(f"Relay subscriptions: {result.success_count} ok, {result.failed_count} failed")
        return result

    async def acknowledge(self, item_ids: List[int]) -> None:
        """Tell the relay these items are stored; failures are only logged."""
        if not item_ids:
            return
        try:
            await self.fetch_client.request(
                f"{self.server_url}/api/ack",
                method="POST",
                headers=self._headers(),
                json_body={"item_ids": item_ids},
                retries=0,
            )
            logger.info(f"Acknowledged {len(item_ids)} relay items")
        except IngestError as e:
            logger.warning(f"Relay acknowledgement failed: {e.message}")

    async def after_save(self, source: Source, saved: List[Tuple[FeedItem, Article]]) -> None:
        await self.acknowledge(_relay_ids(item for item, _ in saved))

    @trace_span("proxy_sync_all", tracer_name="ingestor")
    async def sync_all(self) -> RefreshResult:
        """Pull pending items for every relay subscription in one call.

        Items carry ``data-source-url``/``data-source-name`` attributes; each
        group is matched to a local source (created when missing) and sent
        through the shared ingest path.
        """
        result = RefreshResult()
        query = urlencode({"mode": "sync", "limit": self.sync_limit})
        try:
            body = await self.fetch_client.fetch(f"{self.server_url}/api/sync?{query}", headers=self._headers())
            xml_text = self.rewrite_localhost(body.decode("utf-8", errors="replace"))
            feed = await self.parse(xml_text)
        except IngestError as e:
            result.failed_count = 1
            result.errors.append(RefreshError("relay", e.message))
            return result

        groups: Dict[str, List[FeedItem]] = {}
        names: Dict[str, str] = {}
        for item in feed.items:
            key = item.relay_source_url or ""
            groups.setdefault(key, []).append(item)
            names.setdefault(key, item.relay_source_name or "Relay")

        for source_url, items in groups.items():
            name = names[source_url]
            try:
                source = await self._local_source(source_url, name)
                saved = await self.ingest_items(source, items)
                result.success_count += 1
                result.total_new_articles += len(saved)
            except IngestError as e:
                result.failed_count += 1
                result.errors.append(RefreshError(name, e.message))
        return result

    async def _local_source(self, source_url: str, name: str) -> Source:
        if not source_url:
            raise ProxyError("Relay item without a source URL", source=name)
        row = await self.db.execute('get_source_by_url', url=source_url)
        if row is None:
            source_id = await self.db.execute('add_source', url=source_url, title=name)
            row = await self.db.execute('get_source', source_id=source_id)
        return Source.from_row(row)


def _relay_ids(items: Iterable[FeedItem]) -> List[int]:
    ids = []
    for item in items:
        if item.relay_item_id and str(item.relay_item_id).isdigit():
            ids.append(int(item.relay_item_id))
    return ids
