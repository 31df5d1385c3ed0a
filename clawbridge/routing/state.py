"""
Routing bridge state: pending asks, tracked contacts, queued inbound
messages, and the recent-message set used for inbound deduplication.

Contact and ask timestamps are wall-clock seconds (time.time()); channel
event timestamps are gateway milliseconds.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional

from clawbridge.routing.markers import ChannelAction


def normalize_contact_id(identifier: str) -> str:
    """Phone numbers keep their +E.164 form; names are lowercased."""
    trimmed = identifier.strip()
    if trimmed.startswith("+"):
        return trimmed
    return trimmed.lower()


def identifiers_match(a: str, b: str) -> bool:
    """Case-insensitive substring match in either direction."""
    a_norm, b_norm = normalize_contact_id(a), normalize_contact_id(b)
    if not a_norm or not b_norm:
        return False
    return a_norm == b_norm or a_norm in b_norm or b_norm in a_norm


@dataclass
class PendingAsk:
    """An outbound question awaiting a channel reply."""

    ask_id: str
    conversation_id: str
    channel: str
    channel_id: str
    question: str
    to: Optional[str] = None
    sent_at: float = field(default_factory=time.time)
    reply: Optional[str] = None
    replied_at: Optional[float] = None
    future: Optional[asyncio.Future[str]] = field(default=None, repr=False, compare=False)

    @property
    def resolved(self) -> bool:
        return self.reply is not None

    def resolve(self, reply: str) -> None:
        self.reply = reply
        self.replied_at = time.time()
        if self.future is not None and not self.future.done():
            self.future.set_result(reply)

    def is_expired(self, ttl_seconds: float, now: float | None = None) -> bool:
        """True for unresolved asks older than *ttl_seconds*. A ttl of 0 never expires."""
        if ttl_seconds <= 0 or self.resolved:
            return False
        return (now if now is not None else time.time()) - self.sent_at > ttl_seconds


@dataclass
class TrackedContact:
    """A recipient we have messaged; only their replies are routed inbound."""

    identifier: str
    channel: str
    sent_at: float = field(default_factory=time.time)


class ContactTracker:
    """Contacts keyed by normalized identifier, expiring ttl_seconds after the last send."""

    def __init__(self, ttl_seconds: float = 2 * 60 * 60) -> None:
        self._ttl = ttl_seconds
        self._contacts: dict[str, TrackedContact] = {}

    def track(self, name_or_phone: str, channel: str) -> TrackedContact:
        key = normalize_contact_id(name_or_phone)
        contact = TrackedContact(identifier=key, channel=channel, sent_at=time.time())
        self._contacts[key] = contact
        return contact

    def prune(self, now: float | None = None) -> int:
        now = now if now is not None else time.time()
        stale = [k for k, c in self._contacts.items() if now - c.sent_at > self._ttl]
        for key in stale:
            del self._contacts[key]
        return len(stale)

    def matches(self, sender: Optional[str]) -> bool:
        """Whether *sender* belongs to a live tracked contact."""
        if not sender:
            return False
        self.prune()
        return any(identifiers_match(sender, key) for key in self._contacts)

    def get(self, identifier: str) -> TrackedContact | None:
        return self._contacts.get(normalize_contact_id(identifier))

    def clear(self) -> None:
        self._contacts.clear()

    def __len__(self) -> int:
        return len(self._contacts)

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and normalize_contact_id(identifier) in self._contacts


@dataclass
class QueuedChannelMessage:
    """An inbound message held while its conversation is busy."""

    channel_id: str
    channel_name: str
    content: str
    sender: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class RecentMessageIds:
    """Bounded insertion-ordered set of inbound message keys.

    When the set grows past max_entries it is cut back to the newest
    keep_entries keys.
    """

    def __init__(self, max_entries: int = 500, keep_entries: int = 250) -> None:
        self._max = max_entries
        self._keep = keep_entries
        self._ids: dict[str, None] = {}

    @staticmethod
    def key_for(timestamp: int | float, content: str | None) -> str:
        return f"{timestamp}:{(content or '')[:50]}"

    def seen(self, key: str) -> bool:
        """Record *key*; True if it was already present."""
        if key in self._ids:
            return True
        self._ids[key] = None
        if len(self._ids) > self._max:
            self._ids = dict.fromkeys(list(self._ids)[-self._keep:])
        return False

    def clear(self) -> None:
        self._ids.clear()

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, key: object) -> bool:
        return key in self._ids


@dataclass
class ActionResult:
    """Outcome of executing one ChannelAction."""

    action: ChannelAction
    success: bool
    error: Optional[str] = None


def format_delivery_note(results: list[ActionResult]) -> str:
    """Summarize failed actions as a note to append to the AI response.

    Empty when every action succeeded.
    """
    lines = []
    for result in results:
        if result.success:
            continue
        action = result.action
        if action.kind == "delegate":
            target = "OpenClaw agent"
        else:
            target = action.channel + (f" (to {action.to})" if action.to else "")
        reason = f": {result.error}" if result.error else ""
        lines.append(f"[Delivery failed: {action.kind} via {target}{reason}]")
    return "\n".join(lines)
