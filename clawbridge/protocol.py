"""
Gateway wire protocol — frame helpers and request bookkeeping.

JSON frames over a persistent WebSocket:
  Request:  {"type": "req",   "id", "method", "params"}
  Response: {"type": "res",   "id", "ok", "payload"?, "error"?}
  Event:    {"type": "event", "event", "payload", "seq"?}

Responses whose ``payload.status`` is one of INTERMEDIATE_STATUSES are
acknowledgements, not results: the long-running ``agent`` method acks
acceptance first and sends its final response separately.
"""

from __future__ import annotations

import asyncio
import enum
import json
from dataclasses import dataclass, field
from typing import Any

# Frame types
REQUEST = "req"
RESPONSE = "res"
EVENT = "event"

INTERMEDIATE_STATUSES = frozenset({"accepted", "pending", "running"})

# Server-pushed event names with protocol meaning.
CHALLENGE_EVENT = "connect.challenge"
TICK_EVENT = "tick"
SHUTDOWN_EVENT = "shutdown"


def make_request(req_id: str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build a request frame."""
    return {"type": REQUEST, "id": req_id, "method": method, "params": params or {}}


def make_response(
    req_id: str,
    ok: bool,
    payload: dict[str, Any] | None = None,
    error: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a response frame (used by tests and fake gateways)."""
    frame: dict[str, Any] = {"type": RESPONSE, "id": req_id, "ok": ok}
    if payload is not None:
        frame["payload"] = payload
    if error is not None:
        frame["error"] = error
    return frame


def make_event(event: str, payload: dict[str, Any] | None = None, seq: int | None = None) -> dict[str, Any]:
    """Build an event frame (used by tests and fake gateways)."""
    frame: dict[str, Any] = {"type": EVENT, "event": event, "payload": payload or {}}
    if seq is not None:
        frame["seq"] = seq
    return frame


def parse_frame(raw: str | bytes) -> dict[str, Any] | None:
    """Decode one frame. Returns None for anything that is not a typed JSON object."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        return None
    if not isinstance(data, dict) or data.get("type") not in (REQUEST, RESPONSE, EVENT):
        return None
    return data


def response_status(frame: dict[str, Any]) -> str | None:
    payload = frame.get("payload")
    if isinstance(payload, dict):
        status = payload.get("status")
        if isinstance(status, str):
            return status
    return None


def is_intermediate(frame: dict[str, Any]) -> bool:
    """True when a response frame is an ack that must not settle its request."""
    return response_status(frame) in INTERMEDIATE_STATUSES


def error_message(frame: dict[str, Any], default: str = "request failed") -> str:
    error = frame.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    if isinstance(error, str) and error:
        return error
    return default


class RequestState(enum.Enum):
    """Lifecycle of a correlated request."""

    AWAITING_ACK = "awaiting-ack"
    AWAITING_FINAL = "awaiting-final"
    SETTLED = "settled"


@dataclass
class PendingRequest:
    """An outstanding request keyed by correlation id."""

    req_id: str
    method: str
    future: asyncio.Future[dict[str, Any]]
    state: RequestState = RequestState.AWAITING_ACK
    ack_payload: dict[str, Any] = field(default_factory=dict)

    def acknowledge(self, frame: dict[str, Any]) -> None:
        """Record an intermediate response and keep waiting."""
        self.state = RequestState.AWAITING_FINAL
        payload = frame.get("payload")
        if isinstance(payload, dict):
            self.ack_payload = payload

    def settle(self, frame: dict[str, Any]) -> None:
        self.state = RequestState.SETTLED
        if not self.future.done():
            self.future.set_result(frame)

    def fail(self, exc: BaseException) -> None:
        self.state = RequestState.SETTLED
        if not self.future.done():
            self.future.set_exception(exc)

    @property
    def run_id(self) -> str | None:
        run_id = self.ack_payload.get("runId")
        return run_id if isinstance(run_id, str) else None
