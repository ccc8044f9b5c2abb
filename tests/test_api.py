import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

from fastapi import Request
from fastapi.testclient import TestClient
from starlette.routing import Match

from app.main import app
from events.model import DisasterType
from health.circuit import CircuitBreaker
from ingest.errors import TransientUpstreamError
from ingest.pipeline import Aggregator, AggregatorConfig, LoadedPayload
from ingest.source_packs import SourceSpec, load_source_packs
from realtime.bus import HEALTH_TOPIC, FeedBus, Message, feed_topic
from realtime.sse import sse, sse_health
from store.cache import FeedCache
from store.db import open_database


FIXTURES = Path(__file__).resolve().parent / "fixtures"
FEEDS = Path(__file__).resolve().parents[1] / "feeds"
NOW = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)


async def _load(source: SourceSpec) -> LoadedPayload:
    if source.source_id == "usgs_earthquakes":
        data = (FIXTURES / "usgs.geojson").read_bytes()
        return LoadedPayload(records=source.parse(data), status_code=200, elapsed_ms=8)
    raise TransientUpstreamError("http_502", status_code=502)


def _client(tmp_path: Path) -> TestClient:
    aggregator = Aggregator(
        AggregatorConfig(sources=tuple(load_source_packs(FEEDS))),
        cache=FeedCache(open_database(tmp_path / "api.db")),
        bus=FeedBus(),
        breaker=CircuitBreaker(),
        load=_load,
        clock=lambda: NOW,
    )
    aggregator.register_sources()
    app.state.aggregator = aggregator
    app.state.bus = aggregator.bus
    return TestClient(app)


def test_feed_endpoints_after_refresh(tmp_path: Path) -> None:
    client = _client(tmp_path)
    assert client.get("/api/feeds/earthquakes").status_code == 404

    resp = client.post("/api/refresh/usgs_earthquakes")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["counts"] == {"earthquake": 2}

    feed = client.get("/api/feeds/earthquakes").json()
    assert feed["disaster_type"] == "earthquake"
    assert feed["count"] == 2
    assert feed["events"][0]["alert_level"] == "Orange"

    summary = {f["disaster_type"]: f for f in client.get("/api/feeds").json()}
    assert summary["earthquake"]["count"] == 2
    assert summary["earthquake"]["sources"] == ["usgs_earthquakes"]
    assert summary["flood"]["generated_at"] is None

    event = client.get("/api/events/usgs_us7000abcd").json()
    assert event["magnitude"] == 6.1
    assert client.get("/api/events/usgs_missing").status_code == 404


def test_unknown_targets_and_types(tmp_path: Path) -> None:
    client = _client(tmp_path)
    assert client.get("/api/feeds/meteor").status_code == 404
    assert client.post("/api/refresh/nope").status_code == 404
    assert client.post("/api/refresh/merge-for-type:meteor").status_code == 404
    assert client.get("/sse/meteor").status_code == 404


def test_failed_refresh_reports_circuit_and_health(tmp_path: Path) -> None:
    client = _client(tmp_path)
    for _ in range(3):
        resp = client.post("/api/refresh/gdacs_combined")
        assert resp.json()["status"] == "failed"

    circuits = client.get("/api/circuit-status").json()
    assert circuits["gdacs_combined"]["state"] == "open"

    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["open_circuits"] == ["gdacs_combined"]

    sources = {s["source_id"]: s for s in client.get("/api/sources").json()}
    assert sources["gdacs_combined"]["consecutive_failures"] == 3
    assert sources["gdacs_combined"]["last_status_code"] == 502

    skipped = client.post("/api/refresh/gdacs_combined").json()
    assert skipped["status"] == "skipped"


def test_merge_refresh_builds_empty_feed(tmp_path: Path) -> None:
    client = _client(tmp_path)
    resp = client.post("/api/refresh/merge-for-type:floods")
    assert resp.status_code == 200
    assert resp.json()["counts"] == {"flood": 0}
    assert client.get("/api/feeds/flood").json()["count"] == 0


def _stream_request(path: str) -> Request:
    async def receive() -> dict:
        await asyncio.Event().wait()
        return {"type": "http.disconnect"}

    scope = {
        "type": "http",
        "app": app,
        "method": "GET",
        "path": path,
        "headers": [],
        "query_string": b"",
    }
    return Request(scope, receive)


def _parse_frame(frame: str) -> tuple[str, dict]:
    event, data = frame.strip().split("\n")
    return event.removeprefix("event: "), json.loads(data.removeprefix("data: "))


def test_feed_stream_sends_cached_feed_on_subscribe(tmp_path: Path) -> None:
    client = _client(tmp_path)
    client.post("/api/refresh/usgs_earthquakes")
    bus: FeedBus = app.state.bus

    async def scenario() -> list[str]:
        response = await sse(_stream_request("/sse/earthquakes"), "earthquakes")
        assert response.media_type == "text/event-stream"
        stream = response.body_iterator
        frames = [await anext(stream), await anext(stream)]
        await stream.aclose()
        message = Message(type="feed.updated", data={})
        assert await bus.publish(feed_topic(DisasterType.EARTHQUAKE), message) == 0
        return frames

    heartbeat, snapshot = asyncio.run(scenario())
    assert heartbeat == "event: heartbeat\ndata: {}\n\n"
    event, data = _parse_frame(snapshot)
    assert event == "feed.updated"
    assert data["disaster_type"] == "earthquake"
    assert data["count"] == 2


def test_health_stream_relays_source_failures(tmp_path: Path) -> None:
    _client(tmp_path)
    aggregator: Aggregator = app.state.aggregator

    async def scenario() -> list[str]:
        response = await sse_health(_stream_request("/sse/health"))
        stream = response.body_iterator
        frames = [await anext(stream), await anext(stream)]
        await aggregator.run_source("gdacs_combined")
        frames.append(await anext(stream))
        await stream.aclose()
        assert await aggregator.bus.publish(HEALTH_TOPIC, Message(type="x", data={})) == 0
        return frames

    _, circuits, failure = asyncio.run(scenario())
    assert _parse_frame(circuits) == ("circuit.status", {})
    event, data = _parse_frame(failure)
    assert event == "source.health"
    assert data["source_id"] == "gdacs_combined"
    assert data["status"] == "failed"
    assert data["circuit"]["consecutive_failures"] == 1


def test_health_stream_route_is_not_a_disaster_type() -> None:
    scope = {"type": "http", "path": "/sse/health", "method": "GET"}
    route = next(r for r in app.router.routes if r.matches(scope)[0] == Match.FULL)
    assert route.endpoint is sse_health
