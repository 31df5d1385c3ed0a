"""
Outbound action markers embedded in AI response text.

  <<<CHANNEL_SEND channel="whatsapp" [to="Sam"]>>>text<<<END_CHANNEL_SEND>>>
  <<<CHANNEL_ASK channel="whatsapp" [to="Sam"] id="q1">>>question<<<END_CHANNEL_ASK>>>
  <<<OPENCLAW>>>task<<<END_OPENCLAW>>>

Only complete markers (start and end tag present) are recognized, so a marker
still being streamed is picked up on a later scan.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Optional

ActionKind = Literal["send", "ask", "delegate"]

SEND_RE = re.compile(
    r'<<<CHANNEL_SEND\s+channel="([^"]+)"(?:\s+to="([^"]+)")?\s*>>>(.*?)<<<END_CHANNEL_SEND>>>',
    re.DOTALL,
)
ASK_RE = re.compile(
    r'<<<CHANNEL_ASK\s+channel="([^"]+)"(?:\s+to="([^"]+)")?\s+id="([^"]+)"\s*>>>(.*?)<<<END_CHANNEL_ASK>>>',
    re.DOTALL,
)
DELEGATE_RE = re.compile(r"<<<OPENCLAW>>>(.*?)<<<END_OPENCLAW>>>", re.DOTALL)

_STRIP_RE = re.compile(
    r"<<<(?:CHANNEL_(?:SEND|ASK)\s+[^>]*|OPENCLAW)>>>.*?<<<END_(?:CHANNEL_(?:SEND|ASK)|OPENCLAW)>>>",
    re.DOTALL,
)

DELEGATE_CHANNEL = "openclaw"


@dataclass(frozen=True)
class ChannelAction:
    """One outbound action found in response text."""

    kind: ActionKind
    channel: str
    content: str
    start_index: int
    to: Optional[str] = None
    ask_id: Optional[str] = None

    @property
    def is_fuzzy_recipient(self) -> bool:
        """A named recipient the gateway must resolve, as opposed to a +E.164 number."""
        return bool(self.to) and not self.to.startswith("+")


def find_markers(text: str) -> list[ChannelAction]:
    """Return every complete marker in *text*, ordered by start offset."""
    actions: list[ChannelAction] = []
    for m in SEND_RE.finditer(text):
        actions.append(
            ChannelAction("send", m.group(1), m.group(3).strip(), m.start(), to=m.group(2) or None)
        )
    for m in ASK_RE.finditer(text):
        actions.append(
            ChannelAction(
                "ask", m.group(1), m.group(4).strip(), m.start(),
                to=m.group(2) or None, ask_id=m.group(3),
            )
        )
    for m in DELEGATE_RE.finditer(text):
        actions.append(ChannelAction("delegate", DELEGATE_CHANNEL, m.group(1).strip(), m.start()))
    actions.sort(key=lambda a: a.start_index)
    return actions


def strip_markers(text: str) -> str:
    """Remove all markers (and their content) for display."""
    return _STRIP_RE.sub("", text).strip()
