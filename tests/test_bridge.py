"""Tests for clawbridge.routing.bridge — outbound markers and inbound routing."""

from __future__ import annotations

import asyncio
import itertools
import json
import time
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from clawbridge.config import ClawBridgeConfig
from clawbridge.routing.bridge import (
    ANSWER_CONFIRMATION,
    CANCEL_CONFIRMATION,
    RoutingBridge,
)
from clawbridge.routing.delegate import BridgeDelegate
from clawbridge.types import ChannelEvent, ChannelInfo

OWN_NUMBER = "+15550001111"
CONV = "conv-1"

SEND_SELF = '<<<CHANNEL_SEND channel="whatsapp">>>Running 10 min late<<<END_CHANNEL_SEND>>>'
SEND_SHARIF = '<<<CHANNEL_SEND channel="whatsapp" to="Sharif Abu Nada">>>Hi Sharif<<<END_CHANNEL_SEND>>>'
ASK_SAM = '<<<CHANNEL_ASK channel="whatsapp" to="Sam" id="q1">>>Does 3pm work?<<<END_CHANNEL_ASK>>>'
ASK_SELF = '<<<CHANNEL_ASK channel="whatsapp" id="q-self">>>Still on for tonight?<<<END_CHANNEL_ASK>>>'
DELEGATE = "<<<OPENCLAW>>>Check the weather in Lisbon<<<END_OPENCLAW>>>"

_timestamps = itertools.count(10_000)


class FakeDelegate(BridgeDelegate):
    """In-memory host conversation recording what the bridge asks of it."""

    def __init__(self, conversation_id: Optional[str] = CONV) -> None:
        self.conversation_id = conversation_id
        self.running = False
        self.question_id: Optional[str] = None
        self.answers: list[tuple[str, str, str]] = []
        self.cancelled: list[str] = []
        self.injected: list[tuple[str, str, str, Optional[str]]] = []

    def get_active_conversation_id(self) -> Optional[str]:
        return self.conversation_id

    def is_running(self, conversation_id: str) -> bool:
        return self.running

    def has_pending_question(self, conversation_id: str) -> bool:
        return self.question_id is not None

    def get_pending_question_id(self, conversation_id: str) -> Optional[str]:
        return self.question_id

    def answer_pending_question(self, conversation_id: str, question_id: str, answer: str) -> None:
        self.answers.append((conversation_id, question_id, answer))
        self.question_id = None

    def cancel_request(self, conversation_id: str) -> None:
        self.cancelled.append(conversation_id)
        self.running = False

    def inject_channel_message(
        self, conversation_id: str, channel_name: str, content: str, sender: Optional[str] = None
    ) -> None:
        self.injected.append((conversation_id, channel_name, content, sender))


def _inbound(content: str, sender: Optional[str] = "Sam", *, timestamp: Optional[int] = None,
             event_type: str = "message_received") -> ChannelEvent:
    return ChannelEvent(
        channel_id="whatsapp",
        channel_type="whatsapp",
        event_type=event_type,  # type: ignore[arg-type]
        content=content,
        sender=sender,
        timestamp=timestamp if timestamp is not None else next(_timestamps),
    )


@pytest.fixture
def whatsapp() -> ChannelInfo:
    return ChannelInfo(
        id="whatsapp", type="whatsapp", status="connected", metadata={"phoneNumber": OWN_NUMBER}
    )


@pytest.fixture
def controller(whatsapp: ChannelInfo) -> MagicMock:
    ctrl = MagicMock()
    ctrl.integration_enabled = True
    ctrl.is_connected = True
    ctrl.channels = [whatsapp]
    ctrl.connected_channels = [whatsapp]
    ctrl.skills = []
    ctrl.find_channel = MagicMock(side_effect=lambda name: whatsapp if name.lower() == "whatsapp" else None)
    ctrl.self_target = MagicMock(side_effect=lambda name: OWN_NUMBER if name.lower() == "whatsapp" else None)
    ctrl.send_to_channel = AsyncMock(return_value=True)
    ctrl.send_agent_task = AsyncMock(return_value=True)
    ctrl.subscribe_to_channel_events = MagicMock(return_value=MagicMock())
    return ctrl


@pytest.fixture
def delegate() -> FakeDelegate:
    return FakeDelegate()


@pytest.fixture
async def bridge(controller: MagicMock, config: ClawBridgeConfig, delegate: FakeDelegate):
    b = RoutingBridge(controller, config.bridge, delegate=delegate)
    yield b
    b.dispose()


async def _settle(bridge: RoutingBridge) -> None:
    if bridge._background:
        await asyncio.gather(*bridge._background)


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------


class TestPromptSnippet:
    def test_lists_channels_and_syntax(self, controller: MagicMock, config: ClawBridgeConfig) -> None:
        snippet = RoutingBridge(controller, config.bridge).get_channel_prompt_snippet()
        assert snippet.startswith("[SYSTEM: OpenClaw Integration]")
        assert "- Whatsapp (whatsapp, id: whatsapp)" in snippet
        assert '<<<CHANNEL_SEND channel="whatsapp" to="PersonName">>>' in snippet
        assert '<<<CHANNEL_ASK channel="whatsapp" to="PersonName" id="unique-id">>>' in snippet
        assert "<<<OPENCLAW>>>" in snippet
        assert "The channel value must be one of: whatsapp" in snippet
        assert "- Weather forecasts" in snippet

    def test_cached_skills(self, controller: MagicMock, config: ClawBridgeConfig) -> None:
        controller.skills = [
            {"name": "weather", "emoji": "☀", "description": "Forecasts"},
            {"name": "github", "emoji": "", "description": "Issues and PRs"},
        ]
        snippet = RoutingBridge(controller, config.bridge).get_channel_prompt_snippet()
        assert "- ☀ weather: Forecasts" in snippet
        assert "- github: Issues and PRs" in snippet
        assert "- Weather forecasts" not in snippet

    def test_empty_when_disabled(self, controller: MagicMock, config: ClawBridgeConfig) -> None:
        controller.integration_enabled = False
        assert RoutingBridge(controller, config.bridge).get_channel_prompt_snippet() == ""

    def test_empty_when_disconnected(self, controller: MagicMock, config: ClawBridgeConfig) -> None:
        controller.is_connected = False
        assert RoutingBridge(controller, config.bridge).get_channel_prompt_snippet() == ""

    def test_empty_without_connected_channels(self, controller: MagicMock, config: ClawBridgeConfig) -> None:
        controller.connected_channels = []
        assert RoutingBridge(controller, config.bridge).get_channel_prompt_snippet() == ""


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


class TestDetectMarkers:
    @pytest.mark.asyncio
    async def test_each_marker_once(self, bridge: RoutingBridge) -> None:
        text = f"On it. {SEND_SELF}"
        assert len(bridge.detect_markers(CONV, text)) == 1
        assert bridge.detect_markers(CONV, text) == []

        grown = bridge.detect_markers(CONV, f"{text} {DELEGATE}")
        assert [a.kind for a in grown] == ["delegate"]

    @pytest.mark.asyncio
    async def test_conversations_independent(self, bridge: RoutingBridge) -> None:
        assert len(bridge.detect_markers("a", SEND_SELF)) == 1
        assert len(bridge.detect_markers("b", SEND_SELF)) == 1

    @pytest.mark.asyncio
    async def test_reset_for_new_response(self, bridge: RoutingBridge) -> None:
        bridge.detect_markers(CONV, SEND_SELF)
        bridge.reset_for_new_response(CONV)
        assert len(bridge.detect_markers(CONV, SEND_SELF)) == 1

    @pytest.mark.asyncio
    async def test_disabled_integration(self, bridge: RoutingBridge, controller: MagicMock) -> None:
        controller.integration_enabled = False
        assert bridge.detect_markers(CONV, SEND_SELF) == []

    def test_strip_markers_exposed(self) -> None:
        assert RoutingBridge.strip_markers(f"Done. {SEND_SELF}") == "Done."


class TestOutbound:
    @pytest.mark.asyncio
    async def test_send_to_own_device(self, bridge: RoutingBridge, controller: MagicMock) -> None:
        [result] = await bridge.process_response(CONV, SEND_SELF)
        assert result.success
        controller.send_to_channel.assert_awaited_once_with("whatsapp", "Running 10 min late", OWN_NUMBER)
        controller.send_agent_task.assert_not_awaited()
        assert len(bridge.contacts) == 0

    @pytest.mark.asyncio
    async def test_named_recipient_delegated_to_agent(self, bridge: RoutingBridge, controller: MagicMock) -> None:
        [result] = await bridge.process_response(CONV, SEND_SHARIF)
        assert result.success
        controller.send_agent_task.assert_awaited_once_with(
            "Send the following message to Sharif Abu Nada on whatsapp:\n\nHi Sharif",
            session_key="whatsapp",
        )
        controller.send_to_channel.assert_not_awaited()
        assert bridge.contacts.matches("Sharif")

    @pytest.mark.asyncio
    async def test_phone_recipient_sent_directly(self, bridge: RoutingBridge, controller: MagicMock) -> None:
        text = SEND_SHARIF.replace("Sharif Abu Nada", "+15559998888")
        await bridge.process_response(CONV, text)
        controller.send_to_channel.assert_awaited_once_with("whatsapp", "Hi Sharif", "+15559998888")
        assert "+15559998888" in bridge.contacts

    @pytest.mark.asyncio
    async def test_unknown_channel(self, bridge: RoutingBridge, controller: MagicMock) -> None:
        text = SEND_SELF.replace("whatsapp", "telegram")
        [result] = await bridge.process_response(CONV, text)
        assert not result.success
        assert result.error == "no connected telegram channel"
        controller.send_to_channel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_own_address(self, bridge: RoutingBridge, controller: MagicMock) -> None:
        controller.self_target = MagicMock(return_value=None)
        [result] = await bridge.process_response(CONV, SEND_SELF)
        assert result.error == "no recipient address for whatsapp"

    @pytest.mark.asyncio
    async def test_rejected_send_not_tracked(self, bridge: RoutingBridge, controller: MagicMock) -> None:
        controller.send_agent_task = AsyncMock(return_value=False)
        [result] = await bridge.process_response(CONV, SEND_SHARIF)
        assert not result.success
        assert result.error == "the gateway rejected the message"
        assert len(bridge.contacts) == 0

    @pytest.mark.asyncio
    async def test_delegate_marker(self, bridge: RoutingBridge, controller: MagicMock) -> None:
        [result] = await bridge.process_response(CONV, DELEGATE)
        assert result.success
        controller.send_agent_task.assert_awaited_once_with("Check the weather in Lisbon")

    @pytest.mark.asyncio
    async def test_delegate_rejected(self, bridge: RoutingBridge, controller: MagicMock) -> None:
        controller.send_agent_task = AsyncMock(return_value=False)
        assert await bridge.execute_delegate(MagicMock(content="task")) is False

    @pytest.mark.asyncio
    async def test_actions_run_in_order(self, bridge: RoutingBridge, controller: MagicMock) -> None:
        calls: list[str] = []
        controller.send_agent_task = AsyncMock(side_effect=lambda prompt: calls.append("agent") or True)
        controller.send_to_channel = AsyncMock(side_effect=lambda *a: calls.append("send") or True)
        results = await bridge.process_response(CONV, f"{DELEGATE} {SEND_SELF}")
        assert [r.success for r in results] == [True, True]
        assert calls == ["agent", "send"]


# ---------------------------------------------------------------------------
# Asks
# ---------------------------------------------------------------------------


class TestAsks:
    @pytest.mark.asyncio
    async def test_ask_round_trip(self, bridge: RoutingBridge, controller: MagicMock, delegate: FakeDelegate) -> None:
        await bridge.process_response(CONV, ASK_SAM)
        prompt = controller.send_agent_task.call_args[0][0]
        assert prompt == (
            "Send the following question to Sam on whatsapp and wait for their reply:\n\nDoes 3pm work?"
        )
        assert [a.ask_id for a in bridge.pending_asks(CONV)] == ["q1"]

        waiter = asyncio.create_task(bridge.wait_for_reply("q1", timeout=2.0))
        await asyncio.sleep(0)
        assert bridge.handle_channel_event(_inbound("3pm works", "Sam")) is True
        assert await waiter == "3pm works"

        assert delegate.injected == [
            (CONV, "Whatsapp", '[Via Whatsapp from Sam, reply to "Does 3pm work?"]: 3pm works', "Sam")
        ]

        context = bridge.get_reply_context(CONV)
        assert context.splitlines() == [
            "[Channel Replies]",
            'Reply from Sam via Whatsapp (to question q1: "Does 3pm work?"):',
            '"3pm works"',
        ]
        assert bridge.pending_asks(CONV) == []
        assert bridge.get_reply_context(CONV) == ""

    @pytest.mark.asyncio
    async def test_ask_registers_contact_and_resolves(self, bridge: RoutingBridge) -> None:
        text = (
            'Let me check. <<<CHANNEL_ASK channel="whatsapp" to="Sam" id="q1">>>What time works?'
            "<<<END_CHANNEL_ASK>>> I'll report back."
        )
        [action] = bridge.detect_markers(CONV, text)
        assert (action.kind, action.channel, action.to, action.ask_id, action.content) == (
            "ask", "whatsapp", "Sam", "q1", "What time works?",
        )
        result = await bridge.execute_action(action, CONV)
        assert result.success
        assert "sam" in bridge.contacts
        [ask] = bridge.pending_asks(CONV)
        assert ask.ask_id == "q1"

        bridge.handle_channel_event(_inbound("3pm works", "Sam"))
        assert ask.reply == "3pm works"

    @pytest.mark.asyncio
    async def test_substring_sender_resolves_ask(self, bridge: RoutingBridge) -> None:
        await bridge.process_response(
            CONV, '<<<CHANNEL_ASK channel="whatsapp" to="Sharif" id="q9">>>Lunch?<<<END_CHANNEL_ASK>>>'
        )
        bridge.contacts.track("Alex", "whatsapp")
        bridge.handle_channel_event(_inbound("no idea", "Alex"))
        [ask] = bridge.pending_asks(CONV)
        assert not ask.resolved

        bridge.handle_channel_event(_inbound("sure", "Sharif Abu Nada"))
        assert ask.reply == "sure"

    @pytest.mark.asyncio
    async def test_reply_not_injected_while_busy(
        self, bridge: RoutingBridge, delegate: FakeDelegate
    ) -> None:
        await bridge.process_response(CONV, ASK_SAM)
        delegate.running = True
        assert bridge.handle_channel_event(_inbound("yes", "Sam"))
        assert delegate.injected == []
        assert await bridge.wait_for_reply("q1") == "yes"

    @pytest.mark.asyncio
    async def test_unaddressed_ask_matched_on_channel(
        self, bridge: RoutingBridge, controller: MagicMock
    ) -> None:
        await bridge.process_response(CONV, ASK_SELF)
        controller.send_to_channel.assert_awaited_once_with("whatsapp", "Still on for tonight?", OWN_NUMBER)
        assert OWN_NUMBER not in bridge.contacts
        bridge.contacts.track(OWN_NUMBER, "whatsapp")
        assert bridge.handle_channel_event(_inbound("yep", OWN_NUMBER))
        assert await bridge.wait_for_reply("q-self") == "yep"

    @pytest.mark.asyncio
    async def test_addressed_ask_preferred(self, bridge: RoutingBridge) -> None:
        await bridge.process_response(CONV, f"{ASK_SELF} {ASK_SAM}")
        bridge.handle_channel_event(_inbound("works for me", "Sam"))
        asks = {a.ask_id: a for a in bridge.pending_asks(CONV)}
        assert asks["q1"].reply == "works for me"
        assert not asks["q-self"].resolved

    @pytest.mark.asyncio
    async def test_reply_context_keeps_unanswered(self, bridge: RoutingBridge) -> None:
        await bridge.process_response(CONV, f"{ASK_SELF} {ASK_SAM}")
        bridge.handle_channel_event(_inbound("sure", "Sam"))
        assert "q1" in bridge.get_reply_context(CONV)
        assert [a.ask_id for a in bridge.pending_asks(CONV)] == ["q-self"]

    @pytest.mark.asyncio
    async def test_wait_timeout(self, bridge: RoutingBridge) -> None:
        await bridge.process_response(CONV, ASK_SAM)
        assert await bridge.wait_for_reply("q1", timeout=0.05) is None
        assert bridge.pending_asks(CONV)

    @pytest.mark.asyncio
    async def test_wait_unknown(self, bridge: RoutingBridge) -> None:
        assert await bridge.wait_for_reply("nope", timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_clear_conversation_releases_waiters(self, bridge: RoutingBridge) -> None:
        await bridge.process_response(CONV, ASK_SAM)
        waiter = asyncio.create_task(bridge.wait_for_reply("q1"))
        await asyncio.sleep(0)
        bridge.clear_conversation(CONV)
        assert await waiter is None
        assert bridge.pending_asks(CONV) == []

    @pytest.mark.asyncio
    async def test_expired_ask_not_matched(
        self, controller: MagicMock, config: ClawBridgeConfig, delegate: FakeDelegate
    ) -> None:
        config.bridge.ask_ttl_seconds = 60
        bridge = RoutingBridge(controller, config.bridge, delegate=delegate)
        await bridge.process_response(CONV, ASK_SAM)
        bridge.pending_asks(CONV)[0].sent_at = time.time() - 120

        assert bridge.handle_channel_event(_inbound("too late", "Sam"))
        assert bridge.pending_asks(CONV) == []
        assert delegate.injected == [(CONV, "Whatsapp", "too late", "Sam")]
        bridge.dispose()

    @pytest.mark.asyncio
    async def test_ask_without_conversation_not_registered(self, bridge: RoutingBridge) -> None:
        action = bridge.detect_markers(CONV, ASK_SAM)[0]
        assert await bridge.execute_send(action) is True
        assert bridge.pending_asks(CONV) == []


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


class TestInbound:
    @pytest.fixture(autouse=True)
    def _track_sam(self, bridge: RoutingBridge) -> None:
        bridge.contacts.track("Sam", "whatsapp")

    @pytest.mark.asyncio
    async def test_idle_injects(self, bridge: RoutingBridge, delegate: FakeDelegate) -> None:
        assert bridge.handle_channel_event(_inbound("are you there?"))
        assert delegate.injected == [(CONV, "Whatsapp", "are you there?", "Sam")]

    @pytest.mark.asyncio
    async def test_untracked_sender_dropped(self, bridge: RoutingBridge, delegate: FakeDelegate) -> None:
        assert not bridge.handle_channel_event(_inbound("hi", "Alex"))
        assert not bridge.handle_channel_event(_inbound("hi", None))
        assert delegate.injected == []

    @pytest.mark.asyncio
    async def test_partial_name_matches(self, bridge: RoutingBridge, delegate: FakeDelegate) -> None:
        assert bridge.handle_channel_event(_inbound("hi", "Sam Smith"))

    @pytest.mark.asyncio
    async def test_contact_expires(
        self, bridge: RoutingBridge, delegate: FakeDelegate, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        later = time.time() + 2 * 60 * 60 + 1
        monkeypatch.setattr("clawbridge.routing.state.time.time", lambda: later)
        assert not bridge.handle_channel_event(_inbound("hi"))

    @pytest.mark.asyncio
    async def test_non_message_ignored(self, bridge: RoutingBridge, delegate: FakeDelegate) -> None:
        assert not bridge.handle_channel_event(_inbound("x", event_type="connected"))
        assert not bridge.handle_channel_event(_inbound(""))
        assert delegate.injected == []

    @pytest.mark.asyncio
    async def test_duplicate_dropped(self, bridge: RoutingBridge, delegate: FakeDelegate) -> None:
        event = _inbound("hello", timestamp=5_000)
        assert bridge.handle_channel_event(event)
        assert not bridge.handle_channel_event(_inbound("hello", timestamp=5_000))
        assert len(delegate.injected) == 1

    @pytest.mark.asyncio
    async def test_busy_queues(self, bridge: RoutingBridge, delegate: FakeDelegate) -> None:
        delegate.running = True
        bridge.handle_channel_event(_inbound("first"))
        bridge.handle_channel_event(_inbound("second"))
        assert delegate.injected == []
        queued = bridge.drain_queued_messages(CONV)
        assert [(m.content, m.sender, m.channel_name) for m in queued] == [
            ("first", "Sam", "Whatsapp"),
            ("second", "Sam", "Whatsapp"),
        ]
        assert bridge.drain_queued_messages(CONV) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("keyword", ["stop", " Cancel ", "/STOP"])
    async def test_busy_cancel_keyword(
        self, bridge: RoutingBridge, delegate: FakeDelegate, controller: MagicMock, keyword: str
    ) -> None:
        delegate.running = True
        assert bridge.handle_channel_event(_inbound(keyword))
        await _settle(bridge)
        assert delegate.cancelled == [CONV]
        assert bridge.queued_messages(CONV) == []
        controller.send_to_channel.assert_awaited_once_with("whatsapp", CANCEL_CONFIRMATION, "Sam")

    @pytest.mark.asyncio
    async def test_answers_pending_question(
        self, bridge: RoutingBridge, delegate: FakeDelegate, controller: MagicMock
    ) -> None:
        delegate.running = True
        delegate.question_id = "question-7"
        assert bridge.handle_channel_event(_inbound("the blue one"))
        await _settle(bridge)
        assert delegate.answers == [(CONV, "question-7", "[Via Whatsapp from Sam]: the blue one")]
        assert delegate.cancelled == []
        controller.send_to_channel.assert_awaited_once_with("whatsapp", ANSWER_CONFIRMATION, "Sam")

    @pytest.mark.asyncio
    async def test_no_active_conversation(self, bridge: RoutingBridge, delegate: FakeDelegate) -> None:
        delegate.conversation_id = None
        assert not bridge.handle_channel_event(_inbound("hi"))

    @pytest.mark.asyncio
    async def test_no_delegate(self, bridge: RoutingBridge) -> None:
        bridge.set_delegate(None)
        assert not bridge.handle_channel_event(_inbound("hi"))


# ---------------------------------------------------------------------------
# Disk polling
# ---------------------------------------------------------------------------


def _write_session(config: ClawBridgeConfig, text: str, ts: int) -> None:
    directory = config.bridge.sessions_dir
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "sessions.json").write_text(json.dumps({
        "agent:main:whatsapp:dm:sam": {
            "sessionId": "s1", "updatedAt": ts + 1_000, "origin": {"provider": "whatsapp"},
        },
    }))
    meta = json.dumps({"conversation_label": "Sam"})
    entry = {
        "type": "message",
        "message": {
            "role": "user",
            "timestamp": ts,
            "content": [{
                "type": "text",
                "text": f"Conversation info (untrusted metadata):\n```json\n{meta}\n```\n\n{text}",
            }],
        },
    }
    (directory / "s1.jsonl").write_text(json.dumps(entry) + "\n")


class TestInboundPolling:
    @pytest.mark.asyncio
    async def test_poll_routes_session_messages(
        self, bridge: RoutingBridge, delegate: FakeDelegate, config: ClawBridgeConfig
    ) -> None:
        bridge.contacts.track("Sam", "whatsapp")
        _write_session(config, "3pm works", 5_000)
        bridge._last_poll_ms = 1_000
        assert await bridge.poll_inbound_once() == 1
        assert delegate.injected == [(CONV, "Whatsapp", "3pm works", "Sam")]
        # The watermark advanced past the entry.
        assert await bridge.poll_inbound_once() == 0

    @pytest.mark.asyncio
    async def test_push_and_disk_deduplicated(
        self, bridge: RoutingBridge, delegate: FakeDelegate, config: ClawBridgeConfig
    ) -> None:
        bridge.contacts.track("Sam", "whatsapp")
        assert bridge.handle_channel_event(_inbound("3pm works", timestamp=5_000))
        _write_session(config, "3pm works", 5_000)
        bridge._last_poll_ms = 1_000
        assert await bridge.poll_inbound_once() == 0
        assert len(delegate.injected) == 1

    @pytest.mark.asyncio
    async def test_skipped_when_disconnected(
        self, bridge: RoutingBridge, controller: MagicMock, config: ClawBridgeConfig
    ) -> None:
        bridge.contacts.track("Sam", "whatsapp")
        _write_session(config, "hi", 5_000)
        bridge._last_poll_ms = 1_000
        controller.is_connected = False
        assert await bridge.poll_inbound_once() == 0

    @pytest.mark.asyncio
    async def test_start_and_dispose(self, bridge: RoutingBridge, controller: MagicMock) -> None:
        bridge.start()
        controller.subscribe_to_channel_events.assert_called_once_with(bridge.handle_channel_event)
        assert bridge._poll_task is not None
        await asyncio.sleep(0.01)

        unsubscribe = controller.subscribe_to_channel_events.return_value
        bridge.dispose()
        unsubscribe.assert_called_once()
        assert bridge._poll_task is None
