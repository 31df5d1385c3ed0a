"""Tests for clawbridge.events — EventBus and typed event definitions."""

from __future__ import annotations

import asyncio

import pytest

from clawbridge.events import (
    ActivityAppendedEvent,
    BridgeEvent,
    ChannelsChangedEvent,
    EventBus,
    GatewayStatusChangedEvent,
    event_type_for,
)


# ---------------------------------------------------------------------------
# BridgeEvent auto-derivation
# ---------------------------------------------------------------------------


class TestBridgeEventType:
    def test_gateway_status_changed(self) -> None:
        event = GatewayStatusChangedEvent(state="connected")
        assert event.event_type == "gateway.status.changed"

    def test_channels_changed(self) -> None:
        assert ChannelsChangedEvent().event_type == "channels.changed"

    def test_activity_appended(self) -> None:
        event = ActivityAppendedEvent(source="whatsapp", action="Message sent")
        assert event.event_type == "activity.appended"

    def test_name_derivation(self) -> None:
        assert event_type_for("ChannelConnectedEvent") == "channel.connected"
        assert event_type_for("Ping") == "ping"
        assert event_type_for("lowercase") == "lowercase"

    def test_explicit_type_kept(self) -> None:
        event = BridgeEvent(event_type="custom.thing")
        assert event.event_type == "custom.thing"

    def test_serializes(self) -> None:
        event = GatewayStatusChangedEvent(state="disconnected", status=None)
        data = event.model_dump()
        assert data["state"] == "disconnected"
        assert data["event_type"] == "gateway.status.changed"


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------


class TestEventBus:
    @pytest.mark.asyncio
    async def test_emit_async_dispatches(self) -> None:
        bus = EventBus()
        await bus.start()
        received: list[BridgeEvent] = []
        bus.subscribe("channels.changed", received.append)
        await bus.emit_async(ChannelsChangedEvent(channels=[{"id": "whatsapp"}]))
        await bus.stop()
        assert len(received) == 1
        assert received[0].channels == [{"id": "whatsapp"}]

    @pytest.mark.asyncio
    async def test_wildcards(self) -> None:
        bus = EventBus()
        await bus.start()
        gateway: list[str] = []
        changed: list[str] = []
        everything: list[str] = []
        bus.subscribe("gateway.*", lambda e: gateway.append(e.event_type))
        bus.subscribe("*.changed", lambda e: changed.append(e.event_type))
        bus.subscribe("*", lambda e: everything.append(e.event_type))

        await bus.emit_async(GatewayStatusChangedEvent(state="connected"))
        await bus.emit_async(ChannelsChangedEvent())
        await bus.emit_async(ActivityAppendedEvent(source="system", action="x"))
        await bus.stop()

        assert gateway == ["gateway.status.changed"]
        assert changed == ["gateway.status.changed", "channels.changed"]
        assert len(everything) == 3

    @pytest.mark.asyncio
    async def test_async_handler(self) -> None:
        bus = EventBus()
        await bus.start()
        seen = asyncio.Event()

        async def _handler(event: BridgeEvent) -> None:
            seen.set()

        bus.subscribe("*", _handler)
        await bus.emit_async(ChannelsChangedEvent())
        await bus.stop()
        assert seen.is_set()

    @pytest.mark.asyncio
    async def test_handler_error_isolated(self) -> None:
        bus = EventBus()
        await bus.start()
        received: list[BridgeEvent] = []

        def _boom(event: BridgeEvent) -> None:
            raise RuntimeError("handler bug")

        bus.subscribe("*", _boom)
        bus.subscribe("*", received.append)
        await bus.emit_async(ChannelsChangedEvent())
        await bus.stop()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        bus = EventBus()
        await bus.start()
        received: list[BridgeEvent] = []
        sub_id = bus.subscribe("*", received.append)
        assert bus.subscription_count == 1
        bus.unsubscribe(sub_id)
        assert bus.subscription_count == 0
        await bus.emit_async(ChannelsChangedEvent())
        await bus.stop()
        assert received == []

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self) -> None:
        bus = EventBus()
        await bus.start()
        received: list[BridgeEvent] = []
        bus.subscribe("*", received.append)
        for _ in range(5):
            bus.emit(ActivityAppendedEvent(source="system", action="tick"))
        await bus.stop()
        assert len(received) == 5
        assert not bus.is_running

    @pytest.mark.asyncio
    async def test_emit_async_requires_running(self) -> None:
        bus = EventBus()
        with pytest.raises(RuntimeError):
            await bus.emit_async(ChannelsChangedEvent())

    @pytest.mark.asyncio
    async def test_queue_full_drops(self) -> None:
        bus = EventBus(max_queue_size=1)
        bus.emit(ChannelsChangedEvent())
        bus.emit(ChannelsChangedEvent())
        assert bus._queue.qsize() == 1
