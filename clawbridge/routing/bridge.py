"""
Routing Bridge — cross-channel messaging between an AI conversation and the
channels connected to the OpenClaw gateway.

Outbound: scans accumulated AI response text for CHANNEL_SEND / CHANNEL_ASK /
OPENCLAW markers and executes them through the controller. Named recipients
are delegated to the gateway agent (which resolves contacts); phone numbers
and the user's own device get direct delivery.

Inbound: channel messages arrive from two independent producers, gateway push
events and a periodic scan of the gateway's session files. Both feed one
deduplicating consumer. A message is routed only if its sender is a contact we
messaged recently. It then either answers a pending ask, or is delivered to the
active conversation according to its state:

  waiting on a question → answer it and confirm on the channel
  busy                  → cancel on a cancel keyword, otherwise queue
  idle                  → inject as a new request

Per-conversation state (processed marker offsets, pending asks, queued
messages) lives in dicts keyed by conversation id and is torn down with
clear_conversation().
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional

import structlog

from clawbridge.config import BridgeConfig
from clawbridge.routing.delegate import BridgeDelegate
from clawbridge.routing.markers import ChannelAction, find_markers, strip_markers
from clawbridge.routing.session_files import SessionFileReader
from clawbridge.routing.state import (
    ActionResult,
    ContactTracker,
    PendingAsk,
    QueuedChannelMessage,
    RecentMessageIds,
    identifiers_match,
)
from clawbridge.types import ChannelEvent, ChannelInfo, now_ms

if TYPE_CHECKING:
    from clawbridge.controller import GatewayController

logger = structlog.get_logger(__name__)

ANSWER_CONFIRMATION = "Got it, passing your answer to the agent."
CANCEL_CONFIRMATION = "Request cancelled."

_DEFAULT_SKILLS = (
    "- Messaging (WhatsApp, Telegram, Slack, Discord, Signal, iMessage)",
    "- Web browsing, research, and summarization",
    "- GitHub (issues, PRs, CI runs)",
    "- Notes and reminders",
    "- Image generation",
    "- Weather forecasts",
    "- PDF editing",
    "- Audio transcription",
    "- And more: describe any task and OpenClaw will try to handle it",
)


def format_channel_type(channel_type: str) -> str:
    return channel_type[:1].upper() + channel_type[1:]


class RoutingBridge:
    """Routes marker actions out to channels and channel messages back in."""

    def __init__(
        self,
        controller: "GatewayController",
        config: BridgeConfig | None = None,
        *,
        delegate: BridgeDelegate | None = None,
    ) -> None:
        self._controller = controller
        self._config = config or BridgeConfig()
        self._delegate = delegate

        self._processed_markers: dict[str, set[int]] = {}
        self._pending_asks: dict[str, list[PendingAsk]] = {}
        self._queued: dict[str, list[QueuedChannelMessage]] = {}
        self._contacts = ContactTracker(self._config.contact_ttl_seconds)
        self._recent = RecentMessageIds(
            self._config.dedup_max_entries, self._config.dedup_keep_entries
        )
        self._cancel_keywords = frozenset(self._config.cancel_keywords)
        self._reader = SessionFileReader(
            self._config.sessions_dir,
            self._config.channel_types,
            self._config.session_tail_bytes,
        )

        self._last_poll_ms = now_ms()
        self._poll_task: asyncio.Task[None] | None = None
        self._channel_unsubscribe: Callable[[], None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def set_delegate(self, delegate: BridgeDelegate | None) -> None:
        self._delegate = delegate

    def start(self) -> None:
        """Subscribe to push events and begin disk polling. Requires a running loop."""
        if self._channel_unsubscribe is None:
            self._channel_unsubscribe = self._controller.subscribe_to_channel_events(
                self.handle_channel_event
            )
        self.start_inbound_polling()

    def reset_for_new_response(self, conversation_id: str) -> None:
        """Forget processed marker offsets before a new response streams in."""
        self._processed_markers.pop(conversation_id, None)

    def clear_conversation(self, conversation_id: str) -> None:
        self._processed_markers.pop(conversation_id, None)
        for ask in self._pending_asks.pop(conversation_id, []):
            self._cancel_ask(ask)
        self._queued.pop(conversation_id, None)

    def dispose(self) -> None:
        self.stop_inbound_polling()
        if self._channel_unsubscribe is not None:
            self._channel_unsubscribe()
            self._channel_unsubscribe = None
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        for asks in self._pending_asks.values():
            for ask in asks:
                self._cancel_ask(ask)
        self._processed_markers.clear()
        self._pending_asks.clear()
        self._queued.clear()
        self._recent.clear()
        self._contacts.clear()
        logger.info("bridge.disposed")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def contacts(self) -> ContactTracker:
        return self._contacts

    def pending_asks(self, conversation_id: str) -> list[PendingAsk]:
        return list(self._pending_asks.get(conversation_id, []))

    def queued_messages(self, conversation_id: str) -> list[QueuedChannelMessage]:
        return list(self._queued.get(conversation_id, []))

    # ------------------------------------------------------------------
    # Prompt context
    # ------------------------------------------------------------------

    def get_channel_prompt_snippet(self) -> str:
        """System-prompt block describing connected channels and marker syntax.

        Empty when integration is disabled, the gateway is disconnected, or no
        channel is connected.
        """
        if not self._controller.integration_enabled or not self._controller.is_connected:
            return ""
        connected = self._controller.connected_channels
        if not connected:
            logger.debug("bridge.snippet_no_channels", total=len(self._controller.channels))
            return ""

        first = connected[0].type
        channel_list = "\n".join(
            f"- {self._channel_label(c)} ({c.type}, id: {c.id})" for c in connected
        )
        channel_types = ", ".join(c.type for c in connected)
        return f"""[SYSTEM: OpenClaw Integration]

OpenClaw is a local gateway daemon running on the user's machine. It provides:
- Bidirectional messaging with WhatsApp, Telegram, Slack, Discord, Signal, and more
- An AI agent with skills for automation, research, messaging, and more
- Contact resolution: you can refer to people by name (no exact match or phone number needed)

Currently connected channels:
{channel_list}

You have built-in access to these capabilities via structured markers in your response.

CHANNEL MESSAGING:

Send a message to the user's own device:
<<<CHANNEL_SEND channel="{first}">>>
Your message content here
<<<END_CHANNEL_SEND>>>

Send a message to a specific person (use their name, OpenClaw resolves it):
<<<CHANNEL_SEND channel="{first}" to="PersonName">>>
Your message content here
<<<END_CHANNEL_SEND>>>

Ask someone a question and wait for their reply:
<<<CHANNEL_ASK channel="{first}" to="PersonName" id="unique-id">>>
Your question here
<<<END_CHANNEL_ASK>>>

GENERAL TASK DELEGATION:

Delegate any task to the OpenClaw agent. Available skills:
{self._skills_list()}

<<<OPENCLAW>>>
Your task description here, be specific about what you need done
<<<END_OPENCLAW>>>

RULES:
- The channel value must be one of: {channel_types}
- Use CHANNEL_SEND for messages that don't need a reply
- Use CHANNEL_ASK when you need someone to respond before continuing
- The "to" attribute is optional; omit it to send to the user's own device
- When the user says "tell X", "ask X", "message X", or "send to X", use to="X"
- Use OPENCLAW for any delegatable task listed in the skills above
- You can include multiple markers in a single response
- All markers are processed automatically"""

    def _skills_list(self) -> str:
        skills = self._controller.skills
        if not skills:
            return "\n".join(_DEFAULT_SKILLS)
        lines = []
        for s in skills:
            label = f"{s['emoji']} {s['name']}" if s["emoji"] else s["name"]
            lines.append(f"- {label}: {s['description']}")
        return "\n".join(lines)

    @staticmethod
    def _channel_label(channel: ChannelInfo) -> str:
        return channel.name or format_channel_type(channel.type)

    def get_reply_context(self, conversation_id: str) -> str:
        """A ``[Channel Replies]`` block for answered asks; answered asks are removed."""
        asks = self._pending_asks.get(conversation_id)
        if not asks:
            return ""
        replied = [a for a in asks if a.resolved]
        if not replied:
            return ""

        parts = ["[Channel Replies]"]
        for ask in replied:
            from_label = f" from {ask.to}" if ask.to else ""
            parts.append(
                f'Reply{from_label} via {format_channel_type(ask.channel)} '
                f'(to question {ask.ask_id}: "{ask.question}"):'
            )
            parts.append(f'"{ask.reply}"')

        remaining = [a for a in asks if not a.resolved]
        if remaining:
            self._pending_asks[conversation_id] = remaining
        else:
            del self._pending_asks[conversation_id]
        return "\n".join(parts)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def detect_markers(self, conversation_id: str, text: str) -> list[ChannelAction]:
        """New complete markers in *text*; offsets already seen for the conversation are skipped."""
        if not self._controller.integration_enabled:
            return []
        processed = self._processed_markers.setdefault(conversation_id, set())
        actions = []
        for action in find_markers(text):
            if action.start_index in processed:
                continue
            processed.add(action.start_index)
            actions.append(action)
        return actions

    strip_markers = staticmethod(strip_markers)

    async def process_response(self, conversation_id: str, text: str) -> list[ActionResult]:
        """Detect new markers in *text* and execute them in order."""
        results = []
        for action in self.detect_markers(conversation_id, text):
            results.append(await self.execute_action(action, conversation_id))
        return results

    async def execute_action(self, action: ChannelAction, conversation_id: str) -> ActionResult:
        if action.kind == "delegate":
            ok, error = await self._delegate_task(action), None
            if not ok:
                error = "the OpenClaw agent did not accept the task"
            return ActionResult(action, ok, error)
        ok, error = await self._deliver(action, conversation_id)
        return ActionResult(action, ok, error)

    async def execute_send(self, action: ChannelAction) -> bool:
        ok, _ = await self._deliver(action, None)
        return ok

    async def execute_ask(self, action: ChannelAction, conversation_id: str) -> bool:
        ok, _ = await self._deliver(action, conversation_id)
        return ok

    async def execute_delegate(self, action: ChannelAction) -> bool:
        return await self._delegate_task(action)

    async def _delegate_task(self, action: ChannelAction) -> bool:
        ok = await self._controller.send_agent_task(action.content)
        logger.info("bridge.task_delegated", chars=len(action.content), accepted=ok)
        return ok

    async def _deliver(
        self, action: ChannelAction, conversation_id: Optional[str]
    ) -> tuple[bool, Optional[str]]:
        channel = self._controller.find_channel(action.channel)
        if channel is None:
            logger.info("bridge.no_channel", channel=action.channel)
            return False, f"no connected {action.channel} channel"

        is_ask = action.kind == "ask"

        if action.is_fuzzy_recipient:
            verb = "question" if is_ask else "message"
            suffix = " and wait for their reply" if is_ask else ""
            prompt = (
                f"Send the following {verb} to {action.to} on {action.channel}{suffix}:"
                f"\n\n{action.content}"
            )
            ok = await self._controller.send_agent_task(prompt, session_key=channel.type)
            logger.info("bridge.send_delegated", kind=action.kind, to=action.to, accepted=ok)
        else:
            recipient = action.to or self._controller.self_target(channel.id)
            if not recipient:
                logger.info("bridge.no_recipient", channel=action.channel)
                return False, f"no recipient address for {action.channel}"
            ok = await self._controller.send_to_channel(channel.id, action.content, recipient)
            logger.info("bridge.sent", kind=action.kind, channel=channel.type, to=recipient, ok=ok)

        if not ok:
            return False, "the gateway rejected the message"

        if action.to:
            self._contacts.track(action.to, channel.type)
        if is_ask and action.ask_id and conversation_id is not None:
            self._register_ask(action, conversation_id, channel)
        return True, None

    def _register_ask(self, action: ChannelAction, conversation_id: str, channel: ChannelInfo) -> None:
        ask = PendingAsk(
            ask_id=action.ask_id or "",
            conversation_id=conversation_id,
            channel=action.channel,
            channel_id=channel.id,
            question=action.content,
            to=action.to,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending_asks.setdefault(conversation_id, []).append(ask)
        logger.info("bridge.ask_registered", ask_id=ask.ask_id, channel=ask.channel, to=ask.to)

    async def wait_for_reply(self, ask_id: str, timeout: float | None = None) -> Optional[str]:
        """Await the reply to *ask_id*. None on timeout, cancellation, or unknown id."""
        ask = self._find_ask(ask_id)
        if ask is None:
            return None
        if ask.resolved:
            return ask.reply
        if ask.future is None:
            return None
        try:
            return await asyncio.wait_for(asyncio.shield(ask.future), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        except asyncio.CancelledError:
            # The ask was dropped (conversation cleared or expired).
            if ask.future.cancelled():
                return None
            raise

    def _find_ask(self, ask_id: str) -> PendingAsk | None:
        for asks in self._pending_asks.values():
            for ask in reversed(asks):
                if ask.ask_id == ask_id:
                    return ask
        return None

    @staticmethod
    def _cancel_ask(ask: PendingAsk) -> None:
        if ask.future is not None and not ask.future.done():
            ask.future.cancel()

    def _prune_expired_asks(self) -> None:
        ttl = self._config.ask_ttl_seconds
        if ttl <= 0:
            return
        for conversation_id in list(self._pending_asks):
            asks = self._pending_asks[conversation_id]
            live = []
            for ask in asks:
                if ask.is_expired(ttl):
                    logger.info("bridge.ask_expired", ask_id=ask.ask_id)
                    self._cancel_ask(ask)
                else:
                    live.append(ask)
            if live:
                self._pending_asks[conversation_id] = live
            else:
                del self._pending_asks[conversation_id]

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_channel_event(self, event: ChannelEvent) -> bool:
        """Route one inbound event from either producer. Returns True if it was routed."""
        if event.event_type != "message_received" or not event.content:
            return False
        if self._recent.seen(RecentMessageIds.key_for(event.timestamp, event.content)):
            logger.debug("bridge.duplicate_dropped", channel=event.channel_type)
            return False
        if not self._contacts.matches(event.sender):
            logger.debug("bridge.sender_untracked", channel=event.channel_type)
            return False

        ask = self._match_pending_ask(event)
        if ask is not None:
            self._on_ask_replied(ask, event)
            return True
        return self._route_to_conversation(event)

    def _match_pending_ask(self, event: ChannelEvent) -> PendingAsk | None:
        self._prune_expired_asks()
        candidates = [
            ask
            for asks in self._pending_asks.values()
            for ask in asks
            if not ask.resolved
            and (ask.channel_id == event.channel_id or ask.channel == event.channel_type)
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda a: a.sent_at)

        match = None
        if event.sender:
            match = next(
                (a for a in candidates if a.to and identifiers_match(event.sender, a.to)),
                None,
            )
        if match is None:
            match = next((a for a in candidates if not a.to), None)
        if match is None:
            return None

        match.resolve(event.content or "")
        logger.info("bridge.ask_matched", ask_id=match.ask_id, channel=event.channel_type)
        return match

    def _on_ask_replied(self, ask: PendingAsk, event: ChannelEvent) -> None:
        delegate = self._delegate
        if delegate is None:
            return
        conversation_id = ask.conversation_id
        if delegate.is_running(conversation_id) or delegate.has_pending_question(conversation_id):
            return
        channel_name = format_channel_type(event.channel_type)
        sender_label = f" from {event.sender}" if event.sender else ""
        prefix = f'[Via {channel_name}{sender_label}, reply to "{ask.question[:80]}"]: '
        logger.info("bridge.reply_injected", ask_id=ask.ask_id)
        delegate.inject_channel_message(
            conversation_id, channel_name, prefix + (event.content or ""), event.sender
        )

    def _route_to_conversation(self, event: ChannelEvent) -> bool:
        delegate = self._delegate
        if delegate is None:
            return False
        conversation_id = delegate.get_active_conversation_id()
        if not conversation_id:
            return False

        content = event.content or ""
        sender = event.sender
        channel_name = format_channel_type(event.channel_type)

        if delegate.has_pending_question(conversation_id):
            question_id = delegate.get_pending_question_id(conversation_id)
            if question_id:
                answer = f"[Via {channel_name} from {sender}]: {content}" if sender else content
                logger.info("bridge.answered_question", channel=event.channel_type)
                delegate.answer_pending_question(conversation_id, question_id, answer)
                if sender:
                    self._confirm(event.channel_id, ANSWER_CONFIRMATION, sender)
                return True

        if delegate.is_running(conversation_id):
            if content.strip().lower() in self._cancel_keywords:
                logger.info("bridge.cancel_requested", channel=event.channel_type)
                delegate.cancel_request(conversation_id)
                if sender:
                    self._confirm(event.channel_id, CANCEL_CONFIRMATION, sender)
            else:
                logger.info("bridge.message_queued", conversation_id=conversation_id)
                self._queued.setdefault(conversation_id, []).append(
                    QueuedChannelMessage(
                        channel_id=event.channel_id,
                        channel_name=channel_name,
                        content=content,
                        sender=sender,
                    )
                )
            return True

        logger.info("bridge.message_injected", channel=event.channel_type)
        delegate.inject_channel_message(conversation_id, channel_name, content, sender)
        return True

    def drain_queued_messages(self, conversation_id: str) -> list[QueuedChannelMessage]:
        """Messages queued while the conversation was busy, in arrival order."""
        return self._queued.pop(conversation_id, [])

    def _confirm(self, channel_id: str, message: str, to: str) -> None:
        self._spawn(self._controller.send_to_channel(channel_id, message, to))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Disk polling
    # ------------------------------------------------------------------

    def start_inbound_polling(self) -> None:
        self.stop_inbound_polling()
        self._last_poll_ms = now_ms()
        self._poll_task = asyncio.create_task(self._poll_loop(), name="bridge-inbound-poll")
        logger.info("bridge.polling_started", interval=self._config.inbound_poll_interval)

    def stop_inbound_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            logger.info("bridge.polling_stopped")

    async def _poll_loop(self) -> None:
        await asyncio.sleep(self._config.inbound_first_poll_delay)
        while True:
            try:
                await self.poll_inbound_once()
            except Exception:
                logger.error("bridge.poll_failed", exc_info=True)
            await asyncio.sleep(self._config.inbound_poll_interval)

    async def poll_inbound_once(self) -> int:
        """Scan session files once; returns the number of routed messages."""
        if not self._controller.is_connected:
            return 0
        started = now_ms()
        events = await asyncio.to_thread(self._reader.scan, self._last_poll_ms)
        self._last_poll_ms = started
        routed = sum(1 for event in events if self.handle_channel_event(event))
        if routed:
            logger.info("bridge.poll_routed", count=routed)
        return routed
