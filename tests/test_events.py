import asyncio

import pytest

from taskswarm.events import ALL_EVENTS, EventBus, TaskEventType


def test_listeners_receive_payloads_until_unsubscribed():
    bus = EventBus()
    seen = []
    unsubscribe = bus.on(TaskEventType.QUEUED, seen.append)

    bus.emit(TaskEventType.QUEUED, 1)
    unsubscribe()
    bus.emit(TaskEventType.QUEUED, 2)

    assert seen == [1]
    assert bus.listener_count() == 0


def test_failing_listener_does_not_stop_others():
    bus = EventBus()
    seen = []

    def broken(payload):
        raise RuntimeError("listener bug")

    bus.on("custom", broken)
    bus.on("custom", seen.append)
    bus.emit("custom", "payload")

    assert seen == ["payload"]


def test_wildcard_listener_sees_every_event():
    bus = EventBus()
    seen = []
    bus.on(ALL_EVENTS, seen.append)

    bus.emit(TaskEventType.STARTED, "a")
    bus.emit("agent:registered", "b")

    assert seen == ["a", "b"]


@pytest.mark.asyncio
async def test_async_listeners_are_scheduled():
    bus = EventBus()
    seen = []

    async def listener(payload):
        seen.append(payload)

    bus.on("tick", listener)
    bus.emit("tick", 1)
    await asyncio.sleep(0)

    assert seen == [1]


@pytest.mark.asyncio
async def test_stream_yields_events_in_order():
    bus = EventBus()
    stream = bus.stream()
    first = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)

    bus.emit(TaskEventType.STARTED, "one")
    bus.emit(TaskEventType.COMPLETED, "two")

    event = await asyncio.wait_for(first, 1)
    second = await asyncio.wait_for(stream.__anext__(), 1)
    await stream.aclose()

    assert (event.name, event.payload) == ("task:started", "one")
    assert (second.name, second.payload) == ("task:completed", "two")


@pytest.mark.asyncio
async def test_bounded_stream_drops_oldest_events_for_a_slow_consumer():
    bus = EventBus()
    stream = bus.stream(maxsize=2)
    first = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)

    for number in range(1, 5):
        bus.emit("tick", number)

    event = await asyncio.wait_for(first, 1)
    second = await asyncio.wait_for(stream.__anext__(), 1)
    await stream.aclose()

    assert [event.payload, second.payload] == [3, 4]
