"""Tests for the update bus and link subscriber registry."""

import logging

import pytest

from conftest import FakeControl
from satgate.bus import LinkSubscriberRegistry, UpdateBus
from satgate.messages import (
    ChecksumPong,
    CommandState,
    FileChunk,
    GatewayEvent,
    MeasurementsUpdate,
    PassthroughUpdate,
)


def test_registry_delivers_by_command_id() -> None:
    registry = LinkSubscriberRegistry()
    first: list = []
    second: list = []
    registry.subscribe("a", first.append)
    registry.subscribe("b", second.append)

    chunk = FileChunk("a", b"x")
    assert registry.deliver_to("a", chunk) is True
    assert registry.deliver_to("missing", chunk) is False

    pong = ChecksumPong("ALBUM")
    registry.broadcast(pong)

    assert first == [chunk, pong]
    assert second == [pong]


def test_registry_rejects_double_subscription() -> None:
    registry = LinkSubscriberRegistry()
    listener: list = []
    registry.subscribe("a", listener.append)

    with pytest.raises(ValueError):
        registry.subscribe("a", listener.append)


def test_registry_release_drops_every_subscriber() -> None:
    registry = LinkSubscriberRegistry()
    registry.subscribe("a", [].append)
    registry.subscribe("a", [].append)

    assert len(registry) == 2
    assert registry.release("a") == 2
    assert not registry.has_subscribers("a")
    assert registry.release("a") == 0


def test_failing_subscriber_does_not_block_others(caplog) -> None:
    registry = LinkSubscriberRegistry()
    received: list = []

    def broken(message) -> None:
        raise RuntimeError("boom")

    registry.subscribe("a", broken)
    registry.subscribe("a", received.append)

    with caplog.at_level(logging.ERROR, logger="satgate.bus"):
        registry.broadcast(ChecksumPong(None))

    assert len(received) == 1
    assert "Link subscriber for command a raised" in caplog.text


@pytest.mark.asyncio
async def test_publish_routes_each_update_kind() -> None:
    control = FakeControl()
    bus = UpdateBus(control)

    await bus.command_update("c1", CommandState.PREPARING_ON_GATEWAY, status="warming up")
    await bus.publish(MeasurementsUpdate([{"system": "sat", "metric": "temp", "value": 3}]))
    await bus.event("gatewayInfo", "info", "hello", debug={"k": 1})
    await bus.publish(PassthroughUpdate({"type": "file_list", "files": []}))

    assert control.updates == [
        {"id": "c1", "state": "preparing_on_gateway", "status": "warming up"}
    ]
    assert control.metrics == [[{"system": "sat", "metric": "temp", "value": 3}]]
    assert control.events == [
        {"type": "gatewayInfo", "level": "info", "message": "hello", "debug": {"k": 1}}
    ]
    assert control.forwarded == [{"type": "file_list", "files": []}]


@pytest.mark.asyncio
async def test_rejected_updates_are_logged_and_dropped(caplog) -> None:
    control = FakeControl()
    bus = UpdateBus(control)
    await bus.command_update("c1", CommandState.ACKED_BY_SYSTEM)

    with caplog.at_level(logging.WARNING, logger="satgate.bus"):
        accepted = await bus.command_update("c1", CommandState.UPLINKING_TO_SYSTEM)

    assert accepted is False
    assert control.states_for("c1") == ["acked_by_system"]
    assert "Dropping command update" in caplog.text


@pytest.mark.asyncio
async def test_terminal_update_releases_subscribers() -> None:
    control = FakeControl()
    bus = UpdateBus(control)
    bus.registry.subscribe("c1", [].append)

    await bus.command_update("c1", CommandState.COMPLETED, payload="done")

    assert not bus.registry.has_subscribers("c1")
    assert await bus.fail("c1", ["too late"]) is False
    assert control.states_for("c1") == ["completed"]


@pytest.mark.asyncio
async def test_transmit_failures_do_not_propagate(caplog) -> None:
    class BrokenControl(FakeControl):
        async def transmit_events(self, events) -> None:
            raise ConnectionError("socket closed")

    bus = UpdateBus(BrokenControl())

    with caplog.at_level(logging.ERROR, logger="satgate.bus"):
        sent = await bus.publish(GatewayEvent("gatewayInfo", "info", "hello"))

    assert sent is False
    assert "Failed to transmit GatewayEvent" in caplog.text
