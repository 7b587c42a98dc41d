"""Tests for the event bus and event serialization."""

import asyncio

import pytest

from nocturne.observer.bus import EventBus
from nocturne.observer.events import (
    DiscoveryEvent,
    EventKind,
    RunCompleted,
    ThermalAlert,
    event_from_json,
    event_to_json,
)


def _discovery() -> DiscoveryEvent:
    return DiscoveryEvent(signature_id="sig_1", domain_count=3, confidence=0.9, impact=0.7)


def test_event_json_round_trip():
    event = ThermalAlert(state="critical", cpu_utilization=0.9, cooling_delay_ms=4000.0, emergency=True)
    restored = event_from_json(event_to_json(event))
    assert restored == event
    assert restored.kind == EventKind.THERMAL_ALERT


@pytest.mark.asyncio
async def test_emit_reaches_sync_async_and_wildcard_subscribers():
    bus = EventBus()
    seen = []

    async def on_discovery(event):
        await asyncio.sleep(0)
        seen.append(("async", event.kind))

    bus.subscribe(EventKind.DISCOVERY, on_discovery)
    bus.subscribe(EventKind.DISCOVERY, lambda e: seen.append(("sync", e.kind)))
    bus.subscribe("*", lambda e: seen.append(("any", e.kind)))

    await bus.emit(_discovery())
    await bus.emit(RunCompleted(synthesis_id="s", fragments_analyzed=1, signatures_found=0, duration_ms=1.0))

    assert sorted(seen[:3]) == [
        ("any", EventKind.DISCOVERY),
        ("async", EventKind.DISCOVERY),
        ("sync", EventKind.DISCOVERY),
    ]
    assert seen[3:] == [("any", EventKind.RUN_COMPLETED)]


@pytest.mark.asyncio
async def test_failing_subscriber_is_isolated():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    bus.subscribe(EventKind.DISCOVERY, broken)
    bus.subscribe(EventKind.DISCOVERY, received.append)

    await bus.emit(_discovery())

    assert len(received) == 1


@pytest.mark.asyncio
async def test_publish_then_drain():
    bus = EventBus()
    received = []
    bus.subscribe("*", received.append)

    bus.publish(_discovery())
    bus.publish(_discovery())
    assert received == []

    await bus.drain()
    assert len(received) == 2


@pytest.mark.asyncio
async def test_unsubscribe_and_clear():
    bus = EventBus()
    received = []
    bus.subscribe(EventKind.DISCOVERY, received.append)
    bus.unsubscribe(EventKind.DISCOVERY, received.append)
    await bus.emit(_discovery())

    bus.subscribe("*", received.append)
    bus.clear()
    await bus.emit(_discovery())

    assert received == []
