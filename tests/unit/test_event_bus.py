import asyncio

import pytest

from sensor_recon.core.infrastructure.events.bus import AsyncEventBus, Event


@pytest.mark.asyncio
async def test_event_bus_publish_subscribe():
    bus = AsyncEventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("reconcile.no_data", handler)
    result = await bus.publish("reconcile.no_data", {"installation_id": "i1"}, key="i1")

    assert result["ok"] is True
    assert result["delivered"] == 1
    assert received[0].topic == "reconcile.no_data"
    assert received[0].key == "i1"
    assert received[0].payload["installation_id"] == "i1"


@pytest.mark.asyncio
async def test_event_bus_wildcard():
    bus = AsyncEventBus()
    topics = []

    async def handler(event: Event):
        topics.append(event.topic)

    bus.subscribe_wildcard("documents.*", handler)
    await bus.publish("documents.devices", {})
    await bus.publish("documents.installations", {})
    await bus.publish("reconcile.no_data", {})

    assert topics == ["documents.devices", "documents.installations"]


@pytest.mark.asyncio
async def test_event_bus_dlq_after_retries():
    bus = AsyncEventBus(max_attempts=2, backoff_base_ms=1)
    attempts = []
    dlq_received = []

    async def failing_handler(event: Event):
        attempts.append(1)
        raise ValueError("handler error")

    async def dlq_handler(event: Event):
        dlq_received.append(event)

    bus.subscribe("installation.approved", failing_handler)
    bus.subscribe_dlq(dlq_handler)

    result = await bus.publish("installation.approved", {"installation_id": "i1"})

    assert result["delivered"] == 0
    assert len(attempts) == 2
    assert dlq_received[0].topic == "__dlq__"
    assert dlq_received[0].payload["original_topic"] == "installation.approved"
    assert dlq_received[0].payload["failed_handler"] == "failing_handler"


@pytest.mark.asyncio
async def test_stream_filters_and_closes():
    bus = AsyncEventBus()
    sub = bus.stream("documents.*", predicate=lambda e: e.key != "skip")

    await bus.publish("documents.installations", {"n": 1}, key="a")
    await bus.publish("documents.installations", {"n": 2}, key="skip")
    await bus.publish("documents.devices", {"n": 3}, key="b")

    got = [await asyncio.wait_for(sub.__anext__(), 1) for _ in range(2)]
    assert [e.payload["n"] for e in got] == [1, 3]

    sub.close()
    assert [e async for e in sub] == []
    # closed subscriptions are detached from the bus
    result = await bus.publish("documents.devices", {"n": 4})
    assert result["delivered"] == 0


@pytest.mark.asyncio
async def test_stream_drops_oldest_when_full():
    bus = AsyncEventBus()
    async with bus.stream("documents.devices", queue_size=2) as sub:
        for n in range(3):
            await bus.publish("documents.devices", {"n": n})
        got = [await sub.__anext__() for _ in range(2)]
    assert [e.payload["n"] for e in got] == [1, 2]
