import asyncio

from events.model import DisasterType
from realtime.bus import FeedBus, Message, feed_topic


def test_publish_reaches_every_subscriber_of_topic() -> None:
    async def scenario() -> None:
        bus = FeedBus()
        floods_a = await bus.subscribe(feed_topic(DisasterType.FLOOD))
        floods_b = await bus.subscribe(feed_topic(DisasterType.FLOOD))
        quakes = await bus.subscribe(feed_topic(DisasterType.EARTHQUAKE))

        delivered = await bus.publish(
            feed_topic(DisasterType.FLOOD), Message(type="feed.updated", data={"count": 1})
        )
        assert delivered == 2
        assert (await floods_a.get()).data == {"count": 1}
        assert (await floods_b.get()).data == {"count": 1}
        assert quakes.empty()

    asyncio.run(scenario())


def test_unsubscribed_queue_receives_nothing() -> None:
    async def scenario() -> None:
        bus = FeedBus()
        topic = feed_topic(DisasterType.FLOOD)
        queue = await bus.subscribe(topic)
        await bus.unsubscribe(topic, queue)
        assert await bus.publish(topic, Message(type="feed.updated", data={})) == 0
        assert queue.empty()

    asyncio.run(scenario())


def test_slow_subscriber_drops_oldest_message() -> None:
    async def scenario() -> None:
        bus = FeedBus(queue_size=2)
        topic = feed_topic(DisasterType.FLOOD)
        queue = await bus.subscribe(topic)
        for n in range(3):
            await bus.publish(topic, Message(type="feed.updated", data={"n": n}))
        assert [queue.get_nowait().data["n"] for _ in range(2)] == [1, 2]

    asyncio.run(scenario())
