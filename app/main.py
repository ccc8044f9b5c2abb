from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.logging_config import configure_logging
from app.policies import load_policies
from app.settings import Settings
from events.model import DisasterType, format_timestamp
from health.circuit import CircuitBreaker, CircuitState
from health.health import list_sources
from ingest.pipeline import Aggregator, AggregatorConfig, http_loader
from ingest.scheduler import run_scheduler
from ingest.source_packs import load_source_packs
from realtime.bus import FeedBus
from realtime.sse import router as sse_router
from store.cache import FeedCache
from store.db import open_database


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()
    configure_logging(settings.log_level)
    db = open_database(settings.db_path)
    bus = FeedBus()
    breaker = CircuitBreaker(
        failure_threshold=settings.circuit_failure_threshold,
        reset_timeout_base=settings.circuit_reset_timeout_base_seconds,
        max_reset_timeout=settings.circuit_max_reset_timeout_seconds,
    )
    config = AggregatorConfig(
        sources=tuple(load_source_packs(settings.sources_path)),
        policies=load_policies(settings.policies_path),
        cache_ttl_margin_seconds=settings.cache_ttl_margin_seconds,
        fetch_timeout_seconds=settings.fetch_timeout_seconds,
    )

    async with httpx.AsyncClient(follow_redirects=True) as client:
        aggregator = Aggregator(
            config,
            cache=FeedCache(db),
            bus=bus,
            breaker=breaker,
            load=http_loader(
                client,
                user_agent=settings.user_agent,
                timeout_seconds=settings.fetch_timeout_seconds,
            ),
        )
        aggregator.register_sources()
        app.state.settings = settings
        app.state.db = db
        app.state.bus = bus
        app.state.aggregator = aggregator

        scheduler_task = None
        if settings.polling_enabled:
            scheduler_task = asyncio.create_task(run_scheduler(aggregator))
        else:
            logger.info("polling disabled, serving cached feeds only")
        try:
            yield
        finally:
            if scheduler_task is not None:
                scheduler_task.cancel()
                with suppress(asyncio.CancelledError):
                    await scheduler_task
            with db.lock:
                db.conn.close()


app = FastAPI(lifespan=lifespan)
app.include_router(sse_router)


def _parse_type(value: str) -> DisasterType | None:
    try:
        return DisasterType.parse(value)
    except ValueError:
        return None


@app.get("/api/feeds")
def api_feeds(request: Request) -> JSONResponse:
    aggregator: Aggregator = request.app.state.aggregator
    summary = []
    for disaster_type in aggregator.config.disaster_types():
        feed = aggregator.get_feed(disaster_type)
        summary.append(
            {
                "disaster_type": str(disaster_type),
                "sources": [s.source_id for s in aggregator.config.sources_for(disaster_type)],
                "count": feed.count if feed else 0,
                "active_count": feed.active_count if feed else 0,
                "generated_at": format_timestamp(feed.generated_at) if feed else None,
            }
        )
    return JSONResponse(summary)


@app.get("/api/feeds/{disaster_type}")
def api_feed(request: Request, disaster_type: str) -> JSONResponse:
    aggregator: Aggregator = request.app.state.aggregator
    kind = _parse_type(disaster_type)
    if kind is None:
        return JSONResponse({"error": "unknown_type"}, status_code=404)
    feed = aggregator.get_feed(kind)
    if feed is None:
        return JSONResponse({"error": "not_found"}, status_code=404)
    return JSONResponse(feed.to_dict())


@app.get("/api/events/{event_id}")
def api_event(request: Request, event_id: str) -> JSONResponse:
    aggregator: Aggregator = request.app.state.aggregator
    event = aggregator.find_event(event_id)
    if event is None:
        return JSONResponse({"error": "not_found"}, status_code=404)
    return JSONResponse(event.to_dict())


@app.get("/api/circuit-status")
def api_circuit_status(request: Request) -> JSONResponse:
    aggregator: Aggregator = request.app.state.aggregator
    return JSONResponse(aggregator.circuit_status())


@app.get("/api/sources")
def api_sources(request: Request) -> JSONResponse:
    aggregator: Aggregator = request.app.state.aggregator
    return JSONResponse(list_sources(aggregator.cache.db))


@app.post("/api/refresh/{target}")
async def api_refresh(request: Request, target: str) -> JSONResponse:
    aggregator: Aggregator = request.app.state.aggregator
    try:
        result = await aggregator.refresh(target)
    except KeyError:
        return JSONResponse({"error": "unknown_target"}, status_code=404)
    return JSONResponse(result.to_dict())


@app.get("/health")
def health(request: Request) -> JSONResponse:
    aggregator: Aggregator = request.app.state.aggregator
    snapshots = aggregator.breaker.status()
    return JSONResponse(
        {
            "status": "ok",
            "sources": len(aggregator.config.sources),
            "open_circuits": sorted(
                name for name, s in snapshots.items() if s.state == CircuitState.OPEN
            ),
            "half_open_circuits": sorted(
                name
                for name, s in snapshots.items()
                if s.state == CircuitState.HALF_OPEN
            ),
        }
    )
