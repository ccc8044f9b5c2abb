from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime

from fastapi import APIRouter, HTTPException, Request
from starlette.responses import StreamingResponse

from events.model import DisasterType
from realtime.bus import HEALTH_TOPIC, FeedBus, Message, feed_topic


router = APIRouter()


def _frame(message: Message) -> str:
    data = json.dumps(message.data, separators=(",", ":"), ensure_ascii=False)
    return f"event: {message.type}\ndata: {data}\n\n"


def _stream(
    request: Request,
    bus: FeedBus,
    topic: str,
    queue: asyncio.Queue[Message],
    snapshot: list[Message],
) -> StreamingResponse:
    async def event_stream():
        try:
            yield "event: heartbeat\ndata: {}\n\n"
            for message in snapshot:
                yield _frame(message)
            while True:
                if await request.is_disconnected():
                    return
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=15)
                except asyncio.TimeoutError:
                    ts = datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")
                    yield f"event: heartbeat\ndata: {json.dumps({'ts': ts})}\n\n"
                    continue
                yield _frame(message)
        finally:
            await bus.unsubscribe(topic, queue)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.get("/sse/health")
async def sse_health(request: Request) -> StreamingResponse:
    """Source failures as they happen, after the current circuit states."""
    bus: FeedBus = request.app.state.bus
    queue = await bus.subscribe(HEALTH_TOPIC)
    circuits = request.app.state.aggregator.circuit_status()
    return _stream(
        request, bus, HEALTH_TOPIC, queue, [Message(type="circuit.status", data=circuits)]
    )


@router.get("/sse/{disaster_type}")
async def sse(request: Request, disaster_type: str) -> StreamingResponse:
    try:
        kind = DisasterType.parse(disaster_type)
    except ValueError:
        raise HTTPException(status_code=404, detail="unknown disaster type")

    bus: FeedBus = request.app.state.bus
    topic = feed_topic(kind)
    # subscribe before reading the cache so no update falls between the two
    queue = await bus.subscribe(topic)
    try:
        feed = await asyncio.to_thread(request.app.state.aggregator.get_feed, kind)
    except BaseException:
        await bus.unsubscribe(topic, queue)
        raise
    snapshot = [] if feed is None else [Message(type="feed.updated", data=feed.to_dict())]
    return _stream(request, bus, topic, queue, snapshot)
