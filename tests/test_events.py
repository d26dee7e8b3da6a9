import pytest

from beadq import EventBus, Event
from beadq.events import INSIGHT_NEW, POST_GENERATED


@pytest.mark.asyncio
async def test_publish_without_subscribers():
    bus = EventBus()
    assert await bus.publish(POST_GENERATED, {"project": "p1", "count": 3}) == 0
    assert bus.subscribers(POST_GENERATED) == []


@pytest.mark.asyncio
async def test_publish_in_registration_order():
    bus = EventBus()
    calls = []

    async def first(event: Event):
        calls.append(("first", event.payload["project"]))

    def second(event: Event):
        calls.append(("second", event.payload["project"]))

    @bus.on(INSIGHT_NEW)
    async def third(event: Event):
        calls.append(("third", event.topic))

    bus.subscribe(INSIGHT_NEW, first)
    bus.subscribe(INSIGHT_NEW, second)

    delivered = await bus.publish(INSIGHT_NEW, {"project": "p1", "data": []})

    assert delivered == 3
    assert calls == [("third", INSIGHT_NEW), ("first", "p1"), ("second", "p1")]


@pytest.mark.asyncio
async def test_failing_handler_is_isolated():
    bus = EventBus()
    calls = []

    def broken(event: Event):
        raise RuntimeError("handler bug")

    async def healthy(event: Event):
        calls.append(event.payload)

    bus.subscribe(POST_GENERATED, broken)
    bus.subscribe(POST_GENERATED, healthy)

    assert await bus.publish(POST_GENERATED, {"project": "p1", "count": 1}) == 1
    assert calls == [{"project": "p1", "count": 1}]


@pytest.mark.asyncio
async def test_topics_are_separate():
    bus = EventBus()
    calls = []
    bus.subscribe(INSIGHT_NEW, calls.append)

    assert await bus.publish(POST_GENERATED, {}) == 0
    assert calls == []


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    calls = []

    unsubscribe = bus.subscribe(INSIGHT_NEW, calls.append)
    await bus.publish(INSIGHT_NEW, 1)
    unsubscribe()
    await bus.publish(INSIGHT_NEW, 2)

    assert [event.payload for event in calls] == [1]
    assert not bus.unsubscribe(INSIGHT_NEW, calls.append)


@pytest.mark.asyncio
async def test_subscribe_during_publish():
    bus = EventBus()
    late_calls = []

    def subscribe_another(event: Event):
        bus.subscribe(INSIGHT_NEW, late_calls.append)

    bus.subscribe(INSIGHT_NEW, subscribe_another)

    assert await bus.publish(INSIGHT_NEW, "first") == 1
    assert late_calls == []

    await bus.publish(INSIGHT_NEW, "second")
    assert [event.payload for event in late_calls] == ["second"]


def test_subscribe_validation():
    bus = EventBus()
    with pytest.raises(ValueError):
        bus.subscribe("", print)
    with pytest.raises(ValueError):
        bus.subscribe(INSIGHT_NEW, "not callable")
