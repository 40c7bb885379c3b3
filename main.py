#!/usr/bin/env python3
"""
Feed Ingestion Command Line

Runs the ingestion pipeline against the local database:
1. Seed sources from sources.yaml (sync-sources)
2. Refresh sources directly or through the proxy relay (refresh, relay-sync)
3. Manage subscriptions (add, list, validate, delete)

Exit status is 0 on success and 1 when any source failed.
"""

import asyncio
import sys
import argparse
from typing import List, Optional

from config import config, get_logger
from errors import IngestError
from fetch_client import FetchClient
from ingestor import LocalIngestor, ProxyIngestor
from mirrors import MirrorResolver
from models import DatabaseQueue
from orchestrator import RefreshOrchestrator
from records import RefreshResult
from source_manager import SourceManager
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("cli")


class IngestApp:
    """Wires the database, HTTP client and services for one CLI invocation."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetch_client = FetchClient()
        self.resolver = MirrorResolver(self.fetch_client)
        self.sources = SourceManager(self.db, self.fetch_client, resolver=self.resolver)

    async def __aenter__(self) -> "IngestApp":
        await self.db.start()
        await self.fetch_client.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.fetch_client.close()
        await self.db.stop()

    def _progress(self, completed: int, total: int, name: str) -> None:
        logger.info(f"📡 [{completed}/{total}] {name}")

    def _error(self, error: Exception, name: str) -> None:
        logger.error(f"❌ {name}: {error}")

    @trace_span(
        "cli.refresh",
        tracer_name="cli",
        attr_from_args=lambda self, slugs=None, proxy=False, max_concurrent=None: {
            "refresh.proxy": bool(proxy),
            "refresh.only_slugs": ",".join(slugs) if slugs else "",
        },
    )
    async def refresh(self, slugs: Optional[List[str]] = None, proxy: bool = False,
                      max_concurrent: Optional[int] = None) -> RefreshResult:
        if slugs:
            targets = await self.sources.sources_by_slugs(slugs)
        else:
            targets = await self.sources.list_sources(active_only=True)
        if not targets:
            logger.warning("No sources to refresh")
            return RefreshResult()

        if proxy:
            ingestor = ProxyIngestor(self.db, self.fetch_client)
        else:
            ingestor = LocalIngestor(self.db, self.fetch_client, resolver=self.resolver)
        orchestrator = RefreshOrchestrator(ingestor, max_concurrent=max_concurrent)
        return await orchestrator.refresh_all(targets, on_progress=self._progress, on_error=self._error)

    async def relay_sync(self) -> RefreshResult:
        """Pull every pending relay item in one batch call."""
        return await ProxyIngestor(self.db, self.fetch_client).sync_all()

    async def relay_subscribe(self) -> RefreshResult:
        sources = await self.sources.list_sources(active_only=True)
        return await ProxyIngestor(self.db, self.fetch_client).subscribe_all(sources)


def _print_result(result: RefreshResult) -> None:
    print(f"\n✅ Succeeded: {result.success_count}")
    print(f"❌ Failed: {result.failed_count}")
    print(f"📰 New articles: {result.total_new_articles}")
    for error in result.errors:
        print(f"   - {error.source_name}: {error.message}")


async def run_command(args) -> int:
    """Execute one parsed CLI command and return the exit status."""
    async with IngestApp(args.db) as app:
        if args.command == 'refresh':
            result = await app.refresh(args.source, proxy=args.proxy, max_concurrent=args.max_concurrent)
            _print_result(result)
            return 1 if result.failed_count else 0

        if args.command == 'relay-sync':
            result = await app.relay_sync()
            _print_result(result)
            return 1 if result.failed_count else 0

        if args.command == 'relay-subscribe':
            result = await app.relay_subscribe()
            _print_result(result)
            return 1 if result.failed_count else 0

        if args.command == 'add':
            source = await app.sources.add_source(args.url, name=args.name, category=args.category,
                                                  content_mode=args.mode)
            print(f"➕ Added [{source.id}] {source.name} ({source.url})")
            return 0

        if args.command == 'list':
            for source in await app.sources.list_sources(active_only=not args.all):
                state = "active" if source.is_active else "inactive"
                errors = f", {source.error_count} errors" if source.error_count else ""
                print(f"[{source.id}] {source.name} - {source.url} ({state}, "
                      f"{source.article_count} articles, {source.unread_count} unread{errors})")
            return 0

        if args.command == 'validate':
            info = await app.sources.validate_feed(args.url)
            print(f"✅ {info['title']} ({info['item_count']} items)")
            if info['description']:
                print(f"   {info['description']}")
            return 0

        if args.command == 'sync-sources':
            created = await app.sources.sync_from_config()
            print(f"🔄 Synced {len(config.SOURCES)} sources ({created} new)")
            return 0

        if args.command == 'delete':
            deleted = await app.sources.delete_source(args.id)
            print("🗑️ Deleted" if deleted else "Source not found")
            return 0 if deleted else 1

    return 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Ingestion Pipeline')
    parser.add_argument('--db', type=str, help='Database path (defaults to DATABASE_PATH)')
    sub = parser.add_subparsers(dest='command', required=True)

    refresh = sub.add_parser('refresh', help='Refresh sources and store new articles')
    refresh.add_argument('--source', action='append', metavar='SLUG',
                         help='Only refresh this configured source (repeatable)')
    refresh.add_argument('--proxy', action='store_true', help='Fetch through the proxy relay')
    refresh.add_argument('--max-concurrent', type=int, help='Maximum sources refreshed at once')

    sub.add_parser('relay-sync', help='Pull pending items for all relay subscriptions')
    sub.add_parser('relay-subscribe', help='Register every active source with the relay')

    add = sub.add_parser('add', help='Validate and subscribe to a feed')
    add.add_argument('url')
    add.add_argument('--name')
    add.add_argument('--category', default='General')
    add.add_argument('--mode', choices=['text', 'image_text'], default='image_text')

    listing = sub.add_parser('list', help='List sources')
    listing.add_argument('--all', action='store_true', help='Include inactive sources')

    validate = sub.add_parser('validate', help='Fetch and parse a feed without subscribing')
    validate.add_argument('url')

    sub.add_parser('sync-sources', help='Seed the database from sources.yaml')

    delete = sub.add_parser('delete', help='Delete a source and its articles')
    delete.add_argument('id', type=int)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    init_telemetry("feed-ingest")
    logger.debug(f"Configuration: {config.get_config_summary()}")
    if args.command == 'refresh' and args.proxy and not config.PROXY_ENABLED:
        logger.warning("Proxy relay is not enabled in sources.yaml; using configured server/token anyway")

    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except IngestError as e:
        logger.error(f"💥 {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
