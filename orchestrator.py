#!/usr/bin/env python3
"""
Batch refresh across many sources with bounded concurrency.

At most ``max_concurrent`` sources are in flight; as soon as one finishes the
next queued source starts. A failing source is recorded and never aborts the
batch.
"""

from asyncio import Semaphore, as_completed, create_task
from inspect import isawaitable
from time import time
from typing import Callable, Iterable, Optional

from config import config, get_logger
from errors import IngestError
from records import RefreshError, RefreshResult, Source
from telemetry import trace_span
from utils import format_duration

logger = get_logger("orchestrator")


async def _notify(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    try:
        outcome = callback(*args)
        if isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.warning(f"Refresh callback {getattr(callback, '__name__', callback)} failed: {e}")


class RefreshOrchestrator:
    """Run ``ingestor.fetch_articles`` for a set of sources.

    Args:
        ingestor: A ``SourceIngestor`` (direct or proxy)
        max_concurrent: Pool size; defaults to MAX_CONCURRENT_SOURCES
    """

    def __init__(self, ingestor, max_concurrent: Optional[int] = None) -> None:
        self.ingestor = ingestor
        self.max_concurrent = max_concurrent or config.MAX_CONCURRENT_SOURCES

    @trace_span(
        "refresh_all",
        tracer_name="orchestrator",
        attr_from_args=lambda self, sources, **kw: {"refresh.max_concurrent": self.max_concurrent},
        attr_from_result=lambda result: {
            "refresh.succeeded": result.success_count,
            "refresh.failed": result.failed_count,
            "refresh.new_articles": result.total_new_articles,
        },
    )
    async def refresh_all(
        self,
        sources: Iterable[Source],
        on_progress: Optional[Callable] = None,
        on_error: Optional[Callable] = None,
    ) -> RefreshResult:
        """Refresh every source and aggregate the outcome.

        Args:
            sources: Sources to refresh
            on_progress: Called as ``(completed, total, source_name)`` after
                every completion, success or failure
            on_error: Called as ``(error, source_name)`` on failure

        Returns:
            RefreshResult with success/failure counts and per-source errors.
        """
        sources = list(sources)
        result = RefreshResult()
        total = len(sources)
        if not total:
            return result

        started = time()
        logger.info(f"Refreshing {total} sources (max {self.max_concurrent} concurrent)")
        semaphore = Semaphore(self.max_concurrent)

        async def run_one(source: Source):
            async with semaphore:
                try:
                    return source, await self.ingestor.fetch_articles(source), None
                except IngestError as e:
                    return source, None, e
                except Exception as e:
                    logger.error(f"Unexpected error refreshing {source.name}: {e}")
                    return source, None, e

        tasks = [create_task(run_one(source)) for source in sources]
        completed = 0
        for next_done in as_completed(tasks):
            source, articles, error = await next_done
            completed += 1
            if error is None:
                result.success_count += 1
                result.total_new_articles += len(articles)
            else:
                message = getattr(error, "message", None) or str(error) or error.__class__.__name__
                result.failed_count += 1
                result.errors.append(RefreshError(source.name, message))
                await _notify(on_error, error, source.name)
            await _notify(on_progress, completed, total, source.name)

        logger.info(
            f"Refresh finished in {format_duration(time() - started)}: "
            f"{result.success_count} ok, {result.failed_count} failed, "
            f"{result.total_new_articles} new articles"
        )
        return result
