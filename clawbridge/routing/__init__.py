"""Routing bridge between AI conversations and gateway channels."""

from clawbridge.routing.bridge import RoutingBridge
from clawbridge.routing.delegate import BridgeDelegate
from clawbridge.routing.markers import ChannelAction, find_markers, strip_markers
from clawbridge.routing.state import ActionResult, PendingAsk, format_delivery_note

__all__ = [
    "ActionResult",
    "BridgeDelegate",
    "ChannelAction",
    "PendingAsk",
    "RoutingBridge",
    "find_markers",
    "format_delivery_note",
    "strip_markers",
]
