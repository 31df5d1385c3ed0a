"""
Disk fallback for inbound channel messages.

Push events for some channel types are unreliable, so the gateway's own
session store is read directly:

  <sessions_dir>/sessions.json        index: {sessionKey: {sessionId, updatedAt, origin, deliveryContext}}
  <sessions_dir>/<sessionId>.jsonl    append-only log, one JSON entry per line

Entry format:
  {"type": "message", "message": {"role": "user", "content": [{"type": "text", "text": "..."}], "timestamp": N}}

Inbound text may be prefixed with a metadata header carrying the sender:

  Conversation info (untrusted metadata):
  ```json
  {"conversation_label": "Sam"}
  ```

  actual message
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

import structlog

from clawbridge.types import ChannelEvent

logger = structlog.get_logger(__name__)

_METADATA_RE = re.compile(
    r"Conversation info \(untrusted metadata\):\n```json\n(.*?)\n```\n\n(.*)",
    re.DOTALL,
)
_SYSTEM_PREFIX_RE = re.compile(r"^(?:System:\s*\[.*?\]\s*.*?\n\n)+", re.DOTALL)
_SYSTEM_ONLY_RE = re.compile(r"^System:\s*\[")
_HEARTBEAT_MARKERS = ("HEARTBEAT_OK", "Read HEARTBEAT.md")


@dataclass
class ChannelSession:
    """A channel-related entry of the session index."""

    key: str
    session_id: str
    channel_type: str
    updated_at: int


def channel_type_for(key: str, info: dict[str, Any], channel_types: Iterable[str]) -> Optional[str]:
    """The channel type a session belongs to, from its origin/delivery metadata or key."""
    known = set(channel_types)
    origin = info.get("origin") if isinstance(info.get("origin"), dict) else {}
    delivery = info.get("deliveryContext") if isinstance(info.get("deliveryContext"), dict) else {}
    for candidate in (origin.get("provider"), origin.get("surface"), delivery.get("channel"), key):
        if isinstance(candidate, str) and candidate in known:
            return candidate
    return None


def channel_sessions(
    index: dict[str, Any], channel_types: Iterable[str], since_ms: int
) -> list[ChannelSession]:
    """Channel sessions from the index updated after *since_ms*."""
    types = list(channel_types)
    sessions: list[ChannelSession] = []
    for key, info in index.items():
        if not isinstance(info, dict):
            continue
        channel_type = channel_type_for(key, info, types)
        if channel_type is None:
            continue
        updated_at = info.get("updatedAt") or 0
        if not isinstance(updated_at, (int, float)) or updated_at <= since_ms:
            continue
        session_id = info.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            continue
        sessions.append(ChannelSession(key, session_id, channel_type, int(updated_at)))
    return sessions


def parse_session_entry(
    entry: dict[str, Any], channel_type: str, since_ms: int = 0
) -> ChannelEvent | None:
    """Turn one log entry into an inbound ChannelEvent, or None if it is not one."""
    if entry.get("type") != "message":
        return None
    message = entry.get("message")
    if not isinstance(message, dict) or message.get("role") != "user":
        return None

    timestamp = message.get("timestamp") or 0
    if not isinstance(timestamp, (int, float)):
        timestamp = 0
    if timestamp and timestamp <= since_ms:
        return None

    content = message.get("content")
    if not isinstance(content, list):
        return None
    text_part = next(
        (c for c in content if isinstance(c, dict) and c.get("type") == "text"), None
    )
    if text_part is None:
        return None
    text = text_part.get("text") or ""
    if not isinstance(text, str) or not text:
        return None

    if any(marker in text for marker in _HEARTBEAT_MARKERS):
        return None
    if _SYSTEM_ONLY_RE.match(text) and "\n\n" not in text:
        return None

    sender: Optional[str] = None
    meta_match = _METADATA_RE.search(text)
    if meta_match:
        try:
            meta = json.loads(meta_match.group(1))
        except json.JSONDecodeError:
            meta = {}
        if isinstance(meta, dict):
            label = meta.get("conversation_label") or meta.get("from") or meta.get("sender")
            sender = str(label) if label else None
        text = meta_match.group(2)

    text = _SYSTEM_PREFIX_RE.sub("", text).strip()
    if not text:
        return None

    event = ChannelEvent(
        channel_id=channel_type,
        channel_type=channel_type,
        event_type="message_received",
        content=text,
        sender=sender,
    )
    if timestamp:
        event.timestamp = int(timestamp)
    return event


def read_tail_lines(path: Path, max_bytes: int) -> list[str]:
    """Whole lines from the last *max_bytes* of *path*.

    When the read starts mid-file the first (partial) line is dropped.
    """
    with path.open("rb") as f:
        f.seek(0, 2)
        size = f.tell()
        start = max(0, size - max_bytes)
        f.seek(start)
        data = f.read()
    lines = [line for line in data.decode("utf-8", errors="replace").split("\n") if line.strip()]
    if start > 0 and lines:
        lines = lines[1:]
    return lines


class SessionFileReader:
    """Scans the on-disk session store for inbound messages newer than a watermark.

    Blocking; callers run scan() in a worker thread.
    """

    def __init__(
        self,
        sessions_dir: Path,
        channel_types: Iterable[str],
        tail_bytes: int = 8192,
    ) -> None:
        self.sessions_dir = sessions_dir
        self.channel_types = list(channel_types)
        self.tail_bytes = tail_bytes

    @property
    def index_path(self) -> Path:
        return self.sessions_dir / "sessions.json"

    def load_index(self) -> dict[str, Any]:
        try:
            raw = self.index_path.read_text(encoding="utf-8")
        except OSError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.debug("session_files.index_unparseable", path=str(self.index_path), error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def scan(self, since_ms: int) -> list[ChannelEvent]:
        """Inbound events from channel sessions touched after *since_ms*, oldest first."""
        events: list[ChannelEvent] = []
        for session in channel_sessions(self.load_index(), self.channel_types, since_ms):
            path = self.sessions_dir / f"{session.session_id}.jsonl"
            try:
                if path.stat().st_mtime * 1000 <= since_ms:
                    continue
                lines = read_tail_lines(path, self.tail_bytes)
            except OSError as e:
                logger.debug("session_files.unreadable", path=str(path), error=str(e))
                continue
            for line in lines:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(entry, dict):
                    continue
                event = parse_session_entry(entry, session.channel_type, since_ms)
                if event is not None:
                    events.append(event)
        events.sort(key=lambda e: e.timestamp)
        return events
