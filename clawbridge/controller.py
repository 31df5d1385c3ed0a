"""
Gateway Controller — lifecycle owner for the OpenClaw daemon connection.

Discovers whether the ``openclaw`` program is installed, owns the single
GatewayClient, polls daemon health and the channel list, and publishes
change notifications on the EventBus. Every imperative action degrades to a
failure value (False, None, empty list, unsuccessful ChannelConnectResult)
instead of raising when the daemon is unreachable.

Two reconnect loops exist at different layers: the client's socket
backoff (seconds) and the controller's daemon loop (reconnect_interval,
default 60s) for a daemon that may not be running yet.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections import deque
from dataclasses import asdict
from typing import Any, Callable, Coroutine, Literal, Optional

import structlog

from clawbridge.config import ClawBridgeConfig
from clawbridge.discovery import find_cli
from clawbridge.errors import GatewayError
from clawbridge.events import (
    ActivityAppendedEvent,
    ChannelsChangedEvent,
    EventBus,
    EventHandler,
    GatewayStatusChangedEvent,
)
from clawbridge.gateway import GatewayClient
from clawbridge.protocol import error_message
from clawbridge.types import (
    ActivityEntry,
    ChannelConnectResult,
    ChannelEvent,
    ChannelInfo,
    GatewayStatus,
    SessionInfo,
    SessionMessage,
)

logger = structlog.get_logger(__name__)

ControllerState = Literal["not_installed", "disconnected", "connected"]

_ACTIVITY_PREVIEW_CHARS = 80


def parse_channels(payload: dict[str, Any] | None) -> list[ChannelInfo]:
    """Build the channel list from a ``channels.status`` payload.

    Accepts a list of channel entries or a mapping of channel type to its
    status object. Types explicitly marked unconfigured are skipped.
    """
    if not isinstance(payload, dict):
        return []
    raw = payload.get("channels", payload)
    channels: list[ChannelInfo] = []
    if isinstance(raw, list):
        for entry in raw:
            if isinstance(entry, dict):
                channels.append(ChannelInfo.from_payload(entry))
    elif isinstance(raw, dict):
        for ch_type, entry in raw.items():
            if not isinstance(entry, dict) or entry.get("configured") is False:
                continue
            channels.append(ChannelInfo.from_payload(entry, default_type=str(ch_type)))
    return channels


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "") for block in content
            if isinstance(block, dict) and block.get("type", "text") == "text"
        ]
        return "".join(p for p in parts if isinstance(p, str))
    return ""


class GatewayController:
    """Owns the gateway connection and exposes status, channels and actions."""

    def __init__(
        self,
        config: ClawBridgeConfig | None = None,
        *,
        client: GatewayClient | None = None,
        bus: EventBus | None = None,
    ) -> None:
        config = config or ClawBridgeConfig()
        self._config = config.controller
        self._client = client or GatewayClient(config.gateway)
        self._bus = bus or EventBus()
        self._owns_bus = bus is None

        self._cli_path: Optional[str] = None
        self._installed = False
        self._status: GatewayStatus | None = None
        self._channels: list[ChannelInfo] = []
        # Newest first; the oldest entry falls off the right end.
        self._activity: deque[ActivityEntry] = deque(maxlen=self._config.activity_log_max)
        self._skills: list[dict[str, str]] = []
        self._integration_enabled = True

        self._init_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._channel_unsubscribe: Callable[[], None] | None = None
        self._connection_unsubscribe: Callable[[], None] | None = None
        self._connecting = False
        self._disposed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the bus and kick off initialization without waiting for the daemon."""
        if self._owns_bus:
            await self._bus.start()
        if self._init_task is None:
            self._init_task = asyncio.create_task(self.initialize(), name="controller-init")

    async def initialize(self) -> None:
        """Detect the CLI, connect, and start polling."""
        if not self._config.enabled:
            logger.info("controller.disabled")
            return

        self._cli_path = await asyncio.to_thread(
            find_cli, self._config.command_name, self._config.configured_path
        )
        self._installed = self._cli_path is not None
        if not self._installed:
            logger.info("controller.cli_not_found")
            self._emit_status()
            return

        if self._connection_unsubscribe is None:
            self._connection_unsubscribe = self._client.on_connection_change(
                self._on_connection_change
            )
        if self._config.fetch_skills:
            self._spawn(self._fetch_skills())

        logger.info("controller.connecting", url=self._client.url, cli=self._cli_path)
        await self._connect_and_start_polling()

    async def dispose(self) -> None:
        self._disposed = True
        self._stop_polling()
        for task in (self._init_task, self._reconnect_task, *self._background):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._init_task = None
        self._reconnect_task = None
        self._background.clear()
        if self._channel_unsubscribe is not None:
            self._channel_unsubscribe()
            self._channel_unsubscribe = None
        if self._connection_unsubscribe is not None:
            self._connection_unsubscribe()
            self._connection_unsubscribe = None
        await self._client.dispose()
        if self._owns_bus:
            await self._bus.stop()
        logger.info("controller.disposed")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def client(self) -> GatewayClient:
        return self._client

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def is_installed(self) -> bool:
        return self._installed

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected

    @property
    def state(self) -> ControllerState:
        if not self._installed:
            return "not_installed"
        return "connected" if self._client.is_connected else "disconnected"

    @property
    def status(self) -> GatewayStatus | None:
        return self._status

    @property
    def channels(self) -> list[ChannelInfo]:
        return list(self._channels)

    @property
    def connected_channels(self) -> list[ChannelInfo]:
        return [ch for ch in self._channels if ch.status == "connected"]

    @property
    def activity_log(self) -> list[ActivityEntry]:
        """Activity entries, newest first."""
        return list(self._activity)

    @property
    def skills(self) -> list[dict[str, str]]:
        return list(self._skills)

    @property
    def integration_enabled(self) -> bool:
        return self._integration_enabled

    def set_integration_enabled(self, enabled: bool) -> None:
        self._integration_enabled = enabled
        logger.info("controller.integration_toggled", enabled=enabled)

    def find_channel(self, channel: str) -> ChannelInfo | None:
        """Find a connected channel by id or type (case-insensitive)."""
        wanted = channel.lower()
        for ch in self.connected_channels:
            if ch.id.lower() == wanted or ch.type.lower() == wanted:
                return ch
        return None

    def self_target(self, channel: str) -> str | None:
        """The channel's own account address, used when a send names no recipient."""
        ch = self.find_channel(channel)
        if ch is None:
            return None
        phone = ch.metadata.get("phoneNumber")
        return str(phone) if phone else None

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _subscribe(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        sub_id = self._bus.subscribe(pattern, handler)
        return lambda: self._bus.unsubscribe(sub_id)

    def on_status_changed(self, handler: EventHandler) -> Callable[[], None]:
        return self._subscribe("gateway.status.changed", handler)

    def on_channels_changed(self, handler: EventHandler) -> Callable[[], None]:
        return self._subscribe("channels.changed", handler)

    def on_activity(self, handler: EventHandler) -> Callable[[], None]:
        return self._subscribe("activity.appended", handler)

    def _emit_status(self) -> None:
        self._bus.emit(
            GatewayStatusChangedEvent(
                state=self.state,
                status=asdict(self._status) if self._status else None,
            )
        )

    def _add_activity(self, source: str, action: str, details: str | None = None) -> ActivityEntry:
        entry = ActivityEntry(source=source, action=action, details=details)
        self._activity.appendleft(entry)
        self._bus.emit(
            ActivityAppendedEvent(
                source=entry.source,
                action=entry.action,
                details=entry.details,
                timestamp=entry.timestamp,
            )
        )
        return entry

    # ------------------------------------------------------------------
    # Connection & polling
    # ------------------------------------------------------------------

    async def _connect_and_start_polling(self) -> None:
        self._connecting = True
        try:
            connected = await self._client.connect()
        finally:
            self._connecting = False

        if connected:
            logger.info("controller.connected")
            self._subscribe_channel_events()
            await self._poll_status()
            self._start_polling()
            self._emit_status()
        else:
            logger.info("controller.daemon_unreachable", retry_in=self._config.reconnect_interval)
            self._status = None
            self._emit_status()
            self._schedule_reconnect()

    def _on_connection_change(self, connected: bool) -> None:
        if self._disposed or self._connecting:
            return
        if connected:
            if self._reconnect_task is not None and not self._reconnect_task.done():
                self._reconnect_task.cancel()
            self._reconnect_task = None
            self._spawn(self._resume_after_reconnect())
        else:
            self._status = None
            self._emit_status()
            self._stop_polling()
            self._schedule_reconnect()

    async def _resume_after_reconnect(self) -> None:
        logger.info("controller.reconnected")
        self._subscribe_channel_events()
        await self._poll_status()
        self._start_polling()
        self._emit_status()

    def _start_polling(self) -> None:
        self._stop_polling()
        self._poll_task = asyncio.create_task(self._poll_loop(), name="controller-poll")

    def _stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _poll_loop(self) -> None:
        me = asyncio.current_task()
        while not self._disposed and self._poll_task is me:
            await asyncio.sleep(self._config.poll_interval)
            if self._poll_task is not me:
                break
            await self._poll_status()

    def _schedule_reconnect(self) -> None:
        if self._disposed:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(
            self._reconnect_later(), name="controller-reconnect"
        )

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self._config.reconnect_interval)
        self._reconnect_task = None
        if not self._disposed:
            await self._connect_and_start_polling()

    async def _poll_status(self) -> None:
        if not self._client.is_connected:
            if self._status is not None:
                self._status = None
                self._emit_status()
                self._stop_polling()
                self._schedule_reconnect()
            return

        status = await self._fetch_health()
        if status is None:
            if self._status is not None:
                self._status = None
                self._emit_status()
            return

        changed = (
            self._status is None
            or self._status.channel_count != status.channel_count
            or self._status.version != status.version
        )
        self._status = status
        if changed:
            self._emit_status()
        # Channel state can change without the health summary changing.
        await self._refresh_channels()

    async def _fetch_health(self) -> GatewayStatus | None:
        try:
            response = await self._client.request("health")
        except GatewayError as e:
            logger.debug("controller.health_failed", error=str(e))
            return None
        if response.get("ok") is not True:
            return None
        return GatewayStatus.from_payload(response.get("payload"))

    async def _refresh_channels(self) -> None:
        channels: list[ChannelInfo] = []
        if self._client.is_connected:
            try:
                response = await self._client.request("channels.status")
            except GatewayError as e:
                logger.debug("controller.channels_failed", error=str(e))
            else:
                if response.get("ok") is True:
                    channels = parse_channels(response.get("payload"))
        self._channels = channels
        self._bus.emit(ChannelsChangedEvent(channels=[asdict(ch) for ch in channels]))

    async def refresh_status(self) -> None:
        """Poll now; tries one reconnect first when disconnected."""
        if not self._client.is_connected:
            logger.info("controller.refresh_reconnecting")
            if await self._client.connect():
                self._subscribe_channel_events()
                self._start_polling()
                self._emit_status()
        await self._poll_status()
        if not self._client.is_connected:
            await self._refresh_channels()

    # ------------------------------------------------------------------
    # Channel events
    # ------------------------------------------------------------------

    def subscribe_to_channel_events(self, handler: Callable[[ChannelEvent], Any]) -> Callable[[], None]:
        """Receive normalized ChannelEvents pushed by the gateway."""

        def _on_channel(payload: dict[str, Any], seq: int | None = None) -> Any:
            return handler(ChannelEvent.from_payload(payload))

        return self._client.subscribe("channel", _on_channel)

    def _subscribe_channel_events(self) -> None:
        if self._channel_unsubscribe is not None:
            self._channel_unsubscribe()
        self._channel_unsubscribe = self.subscribe_to_channel_events(self._handle_channel_event)

    def _handle_channel_event(self, event: ChannelEvent) -> None:
        if event.event_type == "message_received":
            if event.content:
                preview = event.content[:_ACTIVITY_PREVIEW_CHARS]
                if len(event.content) > _ACTIVITY_PREVIEW_CHARS:
                    preview += "..."
                action = f'Message: "{preview}"'
            else:
                action = "Message received"
        elif event.event_type == "message_sent":
            action = "Agent responded"
        elif event.event_type == "connected":
            action = "Channel connected"
            self._spawn(self._refresh_channels())
        elif event.event_type == "disconnected":
            action = "Channel disconnected"
            self._spawn(self._refresh_channels())
        else:
            action = "Pairing in progress..."
        self._add_activity(
            event.channel_type or "channel",
            action,
            f"From: {event.sender}" if event.sender else None,
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def send_to_channel(self, channel: str, message: str, to: str | None = None) -> bool:
        """Deliver *message* directly; without *to* the channel's own account is the target."""
        if not self._client.is_connected:
            logger.info("controller.send_skipped_disconnected", channel=channel)
            return False
        target = to or self.self_target(channel)
        if not target:
            logger.warning("controller.send_no_target", channel=channel)
            return False
        ch = self.find_channel(channel)
        params = {
            "channel": ch.type if ch else channel,
            "to": target,
            "message": message,
            "idempotencyKey": uuid.uuid4().hex,
        }
        try:
            response = await self._client.request("send", params)
        except GatewayError as e:
            logger.warning("controller.send_failed", channel=channel, error=str(e))
            return False
        if response.get("ok") is not True:
            logger.warning("controller.send_rejected", channel=channel, error=error_message(response))
            return False
        self._add_activity(params["channel"], "Message sent", f"To: {target}")
        return True

    async def send_agent_task(self, prompt: str, session_key: str | None = None) -> bool:
        """Hand a natural-language task to the gateway's own agent (``chat.send``)."""
        if not self._client.is_connected:
            return False
        params = {
            "sessionKey": session_key or self._config.default_session_key,
            "message": prompt,
            "idempotencyKey": uuid.uuid4().hex,
        }
        try:
            response = await self._client.request("chat.send", params)
        except GatewayError as e:
            logger.warning("controller.delegate_failed", error=str(e))
            return False
        ok = response.get("ok") is True
        if ok:
            self._add_activity("agent", "Task delegated", prompt[:_ACTIVITY_PREVIEW_CHARS])
        else:
            logger.warning("controller.delegate_rejected", error=error_message(response))
        return ok

    async def connect_channel(
        self, channel_type: str, options: dict[str, Any] | None = None
    ) -> ChannelConnectResult:
        """Start pairing a channel type; returns QR/auth data for the user."""
        if not self._client.is_connected:
            return ChannelConnectResult(success=False, error="Gateway not connected")
        params = {"channel": channel_type, **(options or {})}
        try:
            response = await self._client.request("wizard.start", params)
        except GatewayError as e:
            return ChannelConnectResult(success=False, error=str(e))
        if response.get("ok") is not True:
            return ChannelConnectResult(
                success=False, error=error_message(response, "Connection failed")
            )

        payload = response.get("payload") or {}
        self._add_activity("system", f"Connecting {channel_type} channel...")
        self._spawn(self._refresh_channels_later())
        return ChannelConnectResult(
            success=True,
            channel_id=payload.get("channelId") or payload.get("sessionId"),
            qr_code=payload.get("qrCode") or payload.get("qr"),
            auth_url=payload.get("authUrl") or payload.get("url"),
            instructions=payload.get("instructions") or payload.get("message"),
        )

    async def _refresh_channels_later(self) -> None:
        await asyncio.sleep(self._config.channel_refresh_delay)
        await self._refresh_channels()

    async def disconnect_channel(self, channel: str) -> bool:
        if not self._client.is_connected:
            return False
        ch = next(
            (c for c in self._channels if c.id == channel or c.type == channel),
            None,
        )
        channel_type = ch.type if ch else channel
        try:
            response = await self._client.request("channels.logout", {"channel": channel_type})
        except GatewayError as e:
            logger.warning("controller.logout_failed", channel=channel, error=str(e))
            return False
        if response.get("ok") is not True:
            return False
        name = f"{ch.type} ({ch.display_name})" if ch else channel
        self._add_activity("system", f"Disconnected {name}")
        await self._refresh_channels()
        return True

    async def list_sessions(self, limit: int | None = None) -> list[SessionInfo]:
        if not self._client.is_connected:
            return []
        try:
            response = await self._client.request(
                "sessions.list", {"limit": limit} if limit else {}
            )
        except GatewayError as e:
            logger.debug("controller.sessions_failed", error=str(e))
            return []
        payload = response.get("payload") or {}
        raw = payload.get("sessions") if isinstance(payload, dict) else None
        sessions: list[SessionInfo] = []
        for entry in raw or []:
            if not isinstance(entry, dict) or not entry.get("key"):
                continue
            sessions.append(
                SessionInfo(
                    key=str(entry["key"]),
                    session_id=str(entry.get("sessionId") or ""),
                    updated_at=int(entry.get("updatedAt") or 0),
                    channel=entry.get("channel") or entry.get("lastChannel"),
                    label=entry.get("label") or entry.get("displayName"),
                )
            )
        return sessions

    async def get_session_history(
        self, session_key: str, after: int | None = None, limit: int | None = None
    ) -> list[SessionMessage]:
        if not self._client.is_connected:
            return []
        params: dict[str, Any] = {"sessionKey": session_key}
        if after is not None:
            params["after"] = after
        if limit is not None:
            params["limit"] = limit
        try:
            response = await self._client.request("sessions.history", params)
        except GatewayError as e:
            logger.debug("controller.history_failed", session_key=session_key, error=str(e))
            return []
        payload = response.get("payload") or {}
        raw = payload.get("messages") if isinstance(payload, dict) else None
        messages: list[SessionMessage] = []
        for entry in raw or []:
            if not isinstance(entry, dict):
                continue
            text = _message_text(entry.get("content"))
            if not text:
                continue
            messages.append(
                SessionMessage(
                    role=str(entry.get("role") or "unknown"),
                    content=text,
                    timestamp=int(entry.get("timestamp") or 0),
                )
            )
        return messages

    async def start_daemon(self) -> bool:
        """Run ``openclaw gateway --detach``, wait the grace delay, then reconnect."""
        cli = self._cli_path or await asyncio.to_thread(
            find_cli, self._config.command_name, self._config.configured_path
        )
        if cli is None:
            logger.warning("controller.daemon_start_no_cli")
            return False
        result = await self._run_cli(cli, "gateway", "--detach", timeout=self._config.daemon_start_timeout)
        if result is None:
            return False
        returncode, _, stderr = result
        if returncode != 0:
            logger.warning("controller.daemon_start_failed", stderr=stderr[:500])
            return False

        logger.info("controller.daemon_start_issued")
        self._add_activity("system", "Daemon start requested")
        await asyncio.sleep(self._config.daemon_start_grace)
        await self._connect_and_start_polling()
        return self._client.is_connected

    async def _fetch_skills(self) -> None:
        if self._cli_path is None:
            return
        result = await self._run_cli(self._cli_path, "skills", "list", "--json", timeout=15.0)
        if result is None or result[0] != 0:
            logger.debug("controller.skills_unavailable")
            return
        try:
            data = json.loads(result[1])
        except json.JSONDecodeError as e:
            logger.debug("controller.skills_unparseable", error=str(e))
            return
        all_skills = (data.get("skills") or []) if isinstance(data, dict) else []
        self._skills = [
            {
                "name": str(s.get("name", "")),
                "emoji": str(s.get("emoji") or ""),
                "description": str(s.get("description") or ""),
            }
            for s in all_skills
            if isinstance(s, dict) and s.get("eligible") and s.get("name")
        ]
        logger.info("controller.skills_cached", ready=len(self._skills), total=len(all_skills))

    async def _run_cli(self, *argv: str, timeout: float) -> tuple[int, str, str] | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("controller.cli_spawn_failed", argv=list(argv), error=str(e))
            return None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("controller.cli_timeout", argv=list(argv), timeout=timeout)
            return None
        return proc.returncode or 0, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
