from __future__ import annotations

import asyncio

import pytest

from conduit.bridge.event_bus import EventHub
from conduit.engine.events import AssistantMessage, TurnCompleted


def _msg(i: int) -> AssistantMessage:
    return AssistantMessage(text=str(i))


@pytest.mark.asyncio
async def test_fan_out_preserves_order_per_subscriber() -> None:
    hub = EventHub()
    first = hub.subscribe("s1")
    second = hub.subscribe("s1")
    other = hub.subscribe("s2")
    for i in range(5):
        hub.publish("s1", _msg(i))
    hub.close("s1")

    assert [e.text async for e in first] == ["0", "1", "2", "3", "4"]
    assert [e.text async for e in second] == ["0", "1", "2", "3", "4"]
    assert other.get_nowait() is None
    assert not other.ended


@pytest.mark.asyncio
async def test_slow_subscriber_drops_without_blocking_others() -> None:
    hub = EventHub(queue_size=3)
    slow = hub.subscribe("s1")
    fast = hub.subscribe("s1", maxsize=100)
    for i in range(10):
        hub.publish("s1", _msg(i))

    assert slow.dropped == 7
    assert hub.dropped_count("s1") == 7
    assert [slow.get_nowait().text for _ in range(3)] == ["0", "1", "2"]
    assert fast.dropped == 0

    hub.close("s1")
    assert [e.text async for e in fast] == [str(i) for i in range(10)]
    # End-of-stream is delivered even to a full queue.
    assert await slow.get() is None


@pytest.mark.asyncio
async def test_close_ends_blocked_reader() -> None:
    hub = EventHub()
    sub = hub.subscribe("s1")
    reader = asyncio.create_task(sub.get())
    await asyncio.sleep(0)
    hub.publish("s1", TurnCompleted())
    assert isinstance(await reader, TurnCompleted)

    reader = asyncio.create_task(sub.get())
    await asyncio.sleep(0)
    hub.close("s1")
    assert await asyncio.wait_for(reader, 1) is None
    assert hub.subscriber_count("s1") == 0


@pytest.mark.asyncio
async def test_late_subscriber_sees_only_new_events() -> None:
    hub = EventHub()
    hub.publish("s1", _msg(0))
    sub = hub.subscribe("s1")
    hub.publish("s1", _msg(1))
    assert sub.get_nowait().text == "1"
    assert sub.get_nowait() is None


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery() -> None:
    hub = EventHub()
    sub = hub.subscribe("s1")
    sub.close()
    hub.publish("s1", _msg(0))
    assert hub.subscriber_count("s1") == 0
    assert await sub.get() is None
