from __future__ import annotations

import asyncio
from dataclasses import dataclass

from events.model import DisasterType


HEALTH_TOPIC = "health"


def feed_topic(disaster_type: DisasterType) -> str:
    return f"feed:{disaster_type}"


@dataclass(frozen=True)
class Message:
    type: str
    data: dict


class FeedBus:
    def __init__(self, *, queue_size: int = 200) -> None:
        self._lock = asyncio.Lock()
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[Message]]] = {}

    async def subscribe(self, topic: str) -> asyncio.Queue[Message]:
        queue: asyncio.Queue[Message] = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._subscribers.setdefault(topic, set()).add(queue)
        return queue

    async def unsubscribe(self, topic: str, queue: asyncio.Queue[Message]) -> None:
        async with self._lock:
            subscribers = self._subscribers.get(topic)
            if subscribers is None:
                return
            subscribers.discard(queue)
            if not subscribers:
                del self._subscribers[topic]

    async def publish(self, topic: str, message: Message) -> int:
        async with self._lock:
            subscribers = list(self._subscribers.get(topic, ()))
        for queue in subscribers:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                _ = queue.get_nowait()
                queue.put_nowait(message)
        return len(subscribers)
