"""
Core data types shared across clawbridge subsystems.

This module defines lightweight data containers that cross subsystem boundaries
(gateway client → controller → routing bridge). They live here rather than in a
specific subsystem to avoid circular imports.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

ChannelStatus = Literal["connected", "disconnected", "pairing", "error"]
ChannelEventType = Literal[
    "message_received", "message_sent", "connected", "disconnected", "pairing",
]
ChunkType = Literal["text", "thinking", "tool_use", "tool_result", "error", "done"]

_CHANNEL_STATUSES = {"connected", "disconnected", "pairing", "error"}
_CHANNEL_EVENT_TYPES = {"message_received", "message_sent", "connected", "disconnected", "pairing"}


def now_ms() -> int:
    """Wall-clock milliseconds, the gateway's timestamp unit."""
    return int(time.time() * 1000)


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


@dataclass
class GatewayStatus:
    """Snapshot of the daemon's health as reported by the ``health`` method."""

    running: bool = True
    uptime: float = 0.0
    version: str = "unknown"
    heartbeat_interval: float = 1800.0
    channel_count: int = 0

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> "GatewayStatus":
        payload = payload or {}
        uptime = _first(payload, "uptime", "uptimeMs")
        if uptime is not None and "uptime" not in payload:
            uptime = float(uptime) / 1000.0
        channels = payload.get("channels")
        count = _first(payload, "channelCount", "channel_count")
        if count is None and isinstance(channels, (list, dict)):
            count = len(channels)
        return cls(
            running=bool(payload.get("ok", True)),
            uptime=float(uptime or 0.0),
            version=str(_first(payload, "version") or "unknown"),
            heartbeat_interval=float(_first(payload, "heartbeatInterval", "heartbeat_interval") or 1800.0),
            channel_count=int(count or 0),
        )


@dataclass
class ChannelInfo:
    """One messaging channel known to the gateway. Refreshed wholesale."""

    id: str
    type: str
    name: str = ""
    status: ChannelStatus = "disconnected"
    connected_since: int | None = None
    last_activity: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.type.capitalize()

    @classmethod
    def from_payload(cls, payload: dict[str, Any], default_type: str = "") -> "ChannelInfo":
        """Build from either a channel-list entry or a per-type status object."""
        ch_type = str(_first(payload, "type", "channelType", "channel_type") or default_type or "unknown")
        status = _first(payload, "status")
        if status not in _CHANNEL_STATUSES:
            if payload.get("connected") or (payload.get("running") and payload.get("linked")):
                status = "connected"
            elif payload.get("lastError") or payload.get("error"):
                status = "error"
            elif payload.get("pairing"):
                status = "pairing"
            else:
                status = "disconnected"
        metadata = dict(payload.get("metadata") or {})
        for key in ("phoneNumber", "self", "accountId"):
            if key in payload and key not in metadata:
                metadata[key] = payload[key]
        if isinstance(metadata.get("self"), dict) and "phoneNumber" not in metadata:
            phone = metadata["self"].get("e164") or metadata["self"].get("phoneNumber")
            if phone:
                metadata["phoneNumber"] = phone
        return cls(
            id=str(_first(payload, "id", "channelId", "accountId") or ch_type),
            type=ch_type,
            name=str(_first(payload, "name", "label") or ""),
            status=status,  # type: ignore[arg-type]
            connected_since=_first(payload, "connectedSince", "connected_since"),
            last_activity=_first(payload, "lastActivity", "last_activity"),
            metadata=metadata,
        )


@dataclass
class ChannelEvent:
    """A transient inbound/outbound channel event. Dispatched, never stored."""

    channel_id: str
    channel_type: str
    event_type: ChannelEventType = "message_received"
    content: str | None = None
    sender: str | None = None
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChannelEvent":
        channel_type = str(_first(payload, "channelType", "channel_type", "channel") or "")
        event_type = _first(payload, "eventType", "event_type")
        if event_type not in _CHANNEL_EVENT_TYPES:
            event_type = "message_received"
        content = _first(payload, "content", "text", "body")
        sender = _first(payload, "sender", "from", "senderName")
        timestamp = _first(payload, "timestamp", "ts")
        return cls(
            channel_id=str(_first(payload, "channelId", "channel_id") or channel_type),
            channel_type=channel_type,
            event_type=event_type,  # type: ignore[arg-type]
            content=content if isinstance(content, str) else None,
            sender=str(sender) if sender is not None else None,
            timestamp=int(timestamp) if isinstance(timestamp, (int, float)) else now_ms(),
        )


@dataclass
class ActivityEntry:
    """One line of the UI activity feed. No correctness dependency."""

    source: str
    action: str
    details: str | None = None
    timestamp: int = field(default_factory=now_ms)


@dataclass
class ChannelConnectResult:
    """Outcome of a channel pairing request."""

    success: bool
    channel_id: str | None = None
    qr_code: str | None = None
    auth_url: str | None = None
    instructions: str | None = None
    error: str | None = None


@dataclass
class ToolCall:
    """A tool invocation surfaced in an agent stream."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    output: str | None = None
    status: Literal["running", "completed", "failed"] = "running"


@dataclass
class StreamChunk:
    """One normalized event from a streamed agent run."""

    type: ChunkType
    content: str | None = None
    tool_call: ToolCall | None = None


@dataclass
class SessionInfo:
    """A gateway session as returned by ``sessions.list``."""

    key: str
    session_id: str = ""
    updated_at: int = 0
    channel: str | None = None
    label: str | None = None


@dataclass
class SessionMessage:
    """One message of a session transcript (``sessions.history``)."""

    role: str
    content: str
    timestamp: int = 0
