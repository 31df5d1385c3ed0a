"""
Event Bus — controller change notifications.

The controller publishes status, channel-list and activity changes as typed
Pydantic events. Observers (the routing bridge, the CLI, a host UI) subscribe
with fnmatch-style patterns on the dotted event type:

  "gateway.*"   matches "gateway.status.changed"
  "*.changed"   matches "channels.changed" and "gateway.status.changed"
  "*"           matches everything

emit() never blocks and may be called from synchronous code; one dispatcher
task delivers events in emission order. A failing handler is logged and does
not affect other handlers.
"""

from __future__ import annotations

import asyncio
import fnmatch
import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Literal, Optional

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

EventHandler = Callable[["BridgeEvent"], Any] | Callable[["BridgeEvent"], Coroutine[Any, Any, Any]]

_WORD_RE = re.compile(r"[A-Z][a-z0-9]*")


def event_type_for(cls_name: str) -> str:
    """``GatewayStatusChangedEvent`` -> ``gateway.status.changed``."""
    stem = cls_name.removesuffix("Event")
    words = _WORD_RE.findall(stem)
    return ".".join(w.lower() for w in words) if words else stem.lower()


class BridgeEvent(BaseModel):
    """Base class for bus events. ``event_type`` defaults to the dotted class name."""

    event_type: str = ""

    def model_post_init(self, __context: Any) -> None:
        if not self.event_type:
            self.event_type = event_type_for(type(self).__name__)


@dataclass
class _Envelope:
    event: BridgeEvent
    delivered: Optional[asyncio.Future[None]] = None


@dataclass
class _Subscription:
    pattern: str
    handler: EventHandler

    def matches(self, event_type: str) -> bool:
        return fnmatch.fnmatchcase(event_type, self.pattern)


class EventBus:
    """Queue-backed publish/subscribe bus for BridgeEvents."""

    def __init__(self, max_queue_size: int = 10000) -> None:
        self._queue: asyncio.Queue[_Envelope | None] = asyncio.Queue(maxsize=max_queue_size)
        self._subscriptions: dict[str, _Subscription] = {}
        self._dispatcher: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def start(self) -> None:
        if self._dispatcher is None:
            self._dispatcher = asyncio.create_task(self._run(), name="event-bus")
            logger.debug("event_bus.started")

    async def stop(self, timeout: float = 5.0) -> None:
        """Deliver everything already queued, then stop the dispatcher."""
        dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is None:
            return
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            dispatcher.cancel()
        try:
            await asyncio.wait_for(dispatcher, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("event_bus.stop_timeout", timeout=timeout)
        except asyncio.CancelledError:
            pass
        logger.debug("event_bus.stopped")

    def subscribe(self, pattern: str, handler: EventHandler) -> str:
        """Subscribe *handler* to event types matching *pattern*; returns a subscription id."""
        sub_id = uuid.uuid4().hex[:12]
        self._subscriptions[sub_id] = _Subscription(pattern, handler)
        return sub_id

    def unsubscribe(self, sub_id: str) -> None:
        self._subscriptions.pop(sub_id, None)

    def emit(self, event: BridgeEvent) -> None:
        """Queue *event*; dropped with a warning when the queue is full."""
        self._enqueue(_Envelope(event))

    async def emit_async(self, event: BridgeEvent) -> None:
        """Queue *event* and wait until every matching handler has run."""
        if not self.is_running:
            raise RuntimeError("EventBus is not running")
        envelope = _Envelope(event, asyncio.get_running_loop().create_future())
        if self._enqueue(envelope):
            await envelope.delivered

    def _enqueue(self, envelope: _Envelope) -> bool:
        try:
            self._queue.put_nowait(envelope)
        except asyncio.QueueFull:
            logger.warning("event_bus.queue_full", event_type=envelope.event.event_type)
            return False
        return True

    async def _run(self) -> None:
        while True:
            envelope = await self._queue.get()
            if envelope is None:
                break
            await self._deliver(envelope)

    async def _deliver(self, envelope: _Envelope) -> None:
        event = envelope.event
        handlers = [s.handler for s in list(self._subscriptions.values()) if s.matches(event.event_type)]
        await asyncio.gather(*(self._call(h, event) for h in handlers))
        if envelope.delivered is not None and not envelope.delivered.done():
            envelope.delivered.set_result(None)

    @staticmethod
    async def _call(handler: EventHandler, event: BridgeEvent) -> None:
        try:
            result = handler(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.error("event_bus.handler_error", event_type=event.event_type, exc_info=True)


# ---------------------------------------------------------------------------
# Controller events
# ---------------------------------------------------------------------------

class GatewayStatusChangedEvent(BridgeEvent):
    """The controller's connection state or status snapshot changed."""

    state: Literal["not_installed", "disconnected", "connected"]
    status: dict[str, Any] | None = None


class ChannelsChangedEvent(BridgeEvent):
    """A channel refresh replaced the channel list."""

    channels: list[dict[str, Any]] = Field(default_factory=list)


class ActivityAppendedEvent(BridgeEvent):
    """A new activity log entry."""

    source: str
    action: str
    details: str | None = None
    timestamp: int = 0
