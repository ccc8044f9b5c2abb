import asyncio
from contextlib import suppress
from dataclasses import replace
from pathlib import Path

from health.circuit import CircuitBreaker
from ingest.pipeline import Aggregator, AggregatorConfig, LoadedPayload
from ingest.scheduler import run_scheduler
from ingest.source_packs import SourceSpec, load_source_packs
from realtime.bus import FeedBus
from store.cache import FeedCache
from store.db import open_database


FEEDS = Path(__file__).resolve().parents[1] / "feeds"


def test_scheduler_polls_each_enabled_source_and_survives_errors(tmp_path: Path) -> None:
    calls: list[str] = []

    async def load(source: SourceSpec) -> LoadedPayload:
        calls.append(source.source_id)
        if source.source_id == "gdacs_combined":
            raise RuntimeError("unexpected decoder bug")
        return LoadedPayload(records=[])

    sources = tuple(
        replace(s, enabled=False) if s.source_id == "eonet_landslides" else s
        for s in load_source_packs(FEEDS)
    )
    aggregator = Aggregator(
        AggregatorConfig(sources=sources),
        cache=FeedCache(open_database(tmp_path / "sched.db")),
        bus=FeedBus(),
        breaker=CircuitBreaker(),
        load=load,
    )
    aggregator.register_sources()

    async def scenario() -> None:
        task = asyncio.create_task(run_scheduler(aggregator))
        await asyncio.sleep(0.3)
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert sorted(calls) == [
        "eonet_floods",
        "eonet_volcanoes",
        "gdacs_combined",
        "usgs_earthquakes",
    ]
    assert aggregator.circuit_status()["gdacs_combined"]["consecutive_failures"] == 1
