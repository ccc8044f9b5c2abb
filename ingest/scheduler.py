from __future__ import annotations

import asyncio
import logging
import sqlite3
from urllib.parse import urlsplit

from ingest.pipeline import Aggregator
from ingest.source_packs import SourceSpec


logger = logging.getLogger(__name__)

CACHE_PURGE_INTERVAL_SECONDS = 60 * 60


async def run_scheduler(aggregator: Aggregator, *, max_concurrency: int = 4) -> None:
    """Poll every enabled source on its own interval until cancelled.

    Each source runs as its own task, so a slow or failing provider never
    delays the others. Requests to the same host are serialized.
    """
    loop = asyncio.get_running_loop()
    sources = [s for s in aggregator.config.sources if s.enabled]
    next_run_at = {s.source_id: loop.time() for s in sources}
    in_flight: dict[str, asyncio.Task[None]] = {}

    global_sem = asyncio.Semaphore(max_concurrency)
    host_sems: dict[str, asyncio.Semaphore] = {}
    next_purge_at = loop.time() + CACHE_PURGE_INTERVAL_SECONDS

    logger.info("scheduler started with %d sources", len(sources))
    try:
        while True:
            now = loop.time()
            for source in sources:
                if source.source_id in in_flight or next_run_at[source.source_id] > now:
                    continue
                host_sem = host_sems.setdefault(
                    urlsplit(source.url).netloc, asyncio.Semaphore(1)
                )
                task = asyncio.create_task(
                    _run_one(aggregator, source, global_sem, host_sem),
                    name=f"poll:{source.source_id}",
                )
                in_flight[source.source_id] = task

            for source_id, task in list(in_flight.items()):
                if not task.done():
                    continue
                del in_flight[source_id]
                interval = aggregator.config.source(source_id).poll_interval_seconds
                next_run_at[source_id] = loop.time() + interval

            if loop.time() >= next_purge_at:
                await _purge_cache(aggregator)
                next_purge_at = loop.time() + CACHE_PURGE_INTERVAL_SECONDS

            await asyncio.sleep(0.5)
    finally:
        for task in in_flight.values():
            task.cancel()
        await asyncio.gather(*in_flight.values(), return_exceptions=True)
        logger.info("scheduler stopped")


async def _run_one(
    aggregator: Aggregator,
    source: SourceSpec,
    global_sem: asyncio.Semaphore,
    host_sem: asyncio.Semaphore,
) -> None:
    async with global_sem, host_sem:
        try:
            await aggregator.run_source(source.source_id)
        except Exception:
            logger.exception("tick for %s failed", source.source_id)


async def _purge_cache(aggregator: Aggregator) -> None:
    try:
        removed = await asyncio.to_thread(aggregator.cache.purge_expired)
    except sqlite3.Error:
        logger.exception("cache purge failed")
        return
    if removed:
        logger.info("purged %d expired cache entries", removed)
