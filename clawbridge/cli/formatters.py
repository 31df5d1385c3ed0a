"""CLI formatters — gateway/channel state markers, durations, timestamps, tables."""

from __future__ import annotations

import time
from typing import Any, Iterable

from rich.console import Console
from rich.table import Table
from rich.text import Text

from clawbridge.types import ChannelInfo, SessionInfo

# Controller states and channel statuses share one marker vocabulary.
_MARKERS: dict[str, tuple[str, str]] = {
    "connected": (">", "green"),
    "pairing": ("~", "cyan"),
    "error": ("!", "yellow"),
    "disconnected": ("x", "red"),
    "not_installed": ("-", "dim"),
}


def get_console(no_color: bool = False) -> Console:
    return Console(no_color=no_color, highlight=False)


def status_indicator(status: str) -> Text:
    """Colored one-character marker for a controller state or channel status."""
    symbol, style = _MARKERS.get(status, ("?", "dim"))
    return Text(f"{symbol} ", style=style)


def state_line(status: str, label: str | None = None) -> Text:
    line = status_indicator(status)
    line.append(label if label is not None else status)
    return line


def format_duration(seconds: float) -> str:
    """45 -> "45s", 125 -> "2m05s", 7200 -> "2h 00m"."""
    total = int(seconds)
    if total < 60:
        return f"{seconds:.0f}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"


def format_timestamp_ms(timestamp: int | None) -> str:
    """Local time for a gateway millisecond timestamp; "-" when unknown."""
    if not timestamp:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(timestamp / 1000))


def build_table(title: str, columns: list[str], rows: Iterable[list[Any]]) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(v if isinstance(v, Text) else str(v) for v in row))
    return table


def channels_table(channels: list[ChannelInfo]) -> Table:
    rows = [
        [state_line(c.status), c.type, c.display_name, c.id, c.metadata.get("phoneNumber", "-")]
        for c in channels
    ]
    return build_table("Channels", ["Status", "Type", "Name", "Id", "Address"], rows)


def sessions_table(sessions: list[SessionInfo]) -> Table:
    rows = [
        [s.key, s.channel or "-", s.label or "-", format_timestamp_ms(s.updated_at)]
        for s in sessions
    ]
    return build_table("Sessions", ["Key", "Channel", "Label", "Updated"], rows)
