"""
Agent stream normalization.

The gateway's agent event taxonomy is not stable. Two payload shapes are
observed in the wild:

  1. stream discriminator:  {"runId", "stream": "assistant", "data": {"delta": "..."}}
     streams: assistant | thinking | reasoning | tool | lifecycle | error
  2. legacy type discriminator: {"type": "text", "content": "..."}
     types: text/content/assistant/block/chunk, thinking/reasoning,
     tool_call/tool_use, tool_result/tool.output, tool_error/tool.error,
     error, done/complete/end, step_completed

normalize_agent_event() maps either shape to at most one StreamChunk and never
raises. Unknown shapes get best-effort text extraction before being dropped.
"""

from __future__ import annotations

import json
import time
from typing import Any

import structlog

from clawbridge.types import StreamChunk, ToolCall

logger = structlog.get_logger(__name__)

_TEXT_TYPES = {"text", "content", "assistant", "block", "chunk"}
_THINKING_TYPES = {"thinking", "reasoning"}
_TOOL_CALL_TYPES = {"tool_call", "tool.call", "tool_use"}
_TOOL_RESULT_TYPES = {"tool_result", "tool.output"}
_TOOL_ERROR_TYPES = {"tool_error", "tool.error"}
_DONE_TYPES = {"done", "complete", "end"}
_STEP_TYPES = {"step_completed", "agent.step_completed"}
_END_PHASES = {"end", "done", "complete", "completed"}
_FALLBACK_TEXT_KEYS = ("content", "text", "message", "delta", "data", "output", "result")


def _as_text(value: Any) -> str | None:
    """Render a payload value as text; empty containers count as nothing."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    try:
        rendered = json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        rendered = str(value)
    if rendered in ("{}", "[]", '""', "null"):
        return None
    return rendered


def _pick(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _fallback_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}"


def event_run_id(payload: dict[str, Any]) -> str | None:
    run_id = payload.get("runId") or payload.get("run_id")
    return run_id if isinstance(run_id, str) else None


def normalize_agent_event(payload: dict[str, Any]) -> StreamChunk | None:
    """Map one agent event payload to a StreamChunk, or None to skip it."""
    if not isinstance(payload, dict):
        return None
    try:
        if isinstance(payload.get("stream"), str):
            return _normalize_stream_shape(payload)
        if "state" in payload and "type" not in payload:
            return _normalize_chat_shape(payload)
        return _normalize_legacy_shape(payload)
    except Exception:
        logger.debug("streaming.normalize_failed", payload_keys=sorted(payload), exc_info=True)
        return None


def _normalize_stream_shape(payload: dict[str, Any]) -> StreamChunk | None:
    stream = payload["stream"]
    data = _dict(payload.get("data"))

    if stream == "assistant":
        text = _as_text(_pick(data, "delta", "text"))
        return StreamChunk(type="text", content=text) if text else None

    if stream in _THINKING_TYPES:
        text = _as_text(_pick(data, "delta", "text", "thinking"))
        return StreamChunk(type="thinking", content=text) if text else None

    if stream == "tool":
        phase = data.get("phase", "start")
        call_id = str(_pick(data, "toolCallId", "id") or _fallback_id("tool"))
        name = str(_pick(data, "name", "tool") or "unknown")
        args = _dict(_pick(data, "args", "input", "arguments"))
        if phase == "result":
            return StreamChunk(
                type="tool_result",
                tool_call=ToolCall(
                    id=call_id,
                    name=name,
                    input=args,
                    output=_as_text(_pick(data, "result", "output")) or "",
                    status="failed" if data.get("isError") else "completed",
                ),
            )
        if phase == "start":
            return StreamChunk(
                type="tool_use",
                tool_call=ToolCall(id=call_id, name=name, input=args),
            )
        return None  # partial tool updates

    if stream == "lifecycle":
        phase = data.get("phase")
        if phase in _END_PHASES:
            return StreamChunk(type="done")
        if phase == "error":
            message = _as_text(_pick(data, "error", "message")) or "Agent run failed"
            return StreamChunk(type="error", content=message)
        return None

    if stream == "error":
        message = _as_text(_pick(data, "error", "message")) or "Unknown gateway error"
        return StreamChunk(type="error", content=message)

    return _extract_fallback_text(data, label=stream)


def _normalize_chat_shape(payload: dict[str, Any]) -> StreamChunk | None:
    # Chat events repeat the assistant stream cumulatively; only errors matter.
    if payload.get("state") == "error":
        message = _as_text(_pick(payload, "errorMessage", "error", "message")) or "Chat run failed"
        return StreamChunk(type="error", content=message)
    return None


def _normalize_legacy_shape(payload: dict[str, Any]) -> StreamChunk | None:
    event_type = str(payload.get("type") or payload.get("event_type") or "")

    if event_type in _TEXT_TYPES:
        text = _as_text(_pick(payload, "content", "text", "delta", "data"))
        return StreamChunk(type="text", content=text) if text else None

    if event_type in _THINKING_TYPES:
        text = _as_text(_pick(payload, "content", "thinking", "text"))
        return StreamChunk(type="thinking", content=text) if text else None

    if event_type in _TOOL_CALL_TYPES:
        status = payload.get("status") or "running"
        call = ToolCall(
            id=str(_pick(payload, "id", "tool_call_id") or _fallback_id("tool")),
            name=str(_pick(payload, "name", "tool") or "unknown"),
            input=_dict(_pick(payload, "input", "arguments")),
        )
        if status in ("completed", "done"):
            call.output = _as_text(_pick(payload, "output", "result")) or ""
            call.status = "completed"
            return StreamChunk(type="tool_result", tool_call=call)
        return StreamChunk(type="tool_use", tool_call=call)

    if event_type in _TOOL_RESULT_TYPES:
        return StreamChunk(
            type="tool_result",
            tool_call=ToolCall(
                id=str(_pick(payload, "tool_use_id", "tool_id") or ""),
                name=str(payload.get("tool_name") or ""),
                output=_as_text(payload.get("content")) or "",
                status="failed" if payload.get("is_error") else "completed",
            ),
        )

    if event_type in _TOOL_ERROR_TYPES:
        return StreamChunk(
            type="tool_result",
            tool_call=ToolCall(
                id=str(payload.get("tool_id") or ""),
                name=str(payload.get("tool_name") or ""),
                output=_as_text(_pick(payload, "error", "message")) or "Tool error",
                status="failed",
            ),
        )

    if event_type == "error":
        message = _as_text(_pick(payload, "error", "message")) or "Unknown gateway error"
        return StreamChunk(type="error", content=message)

    if event_type in _DONE_TYPES:
        return StreamChunk(type="done")

    if event_type in _STEP_TYPES:
        name = _pick(payload, "tool", "name", "step_name")
        output = _as_text(_pick(payload, "output", "result", "text", "content"))
        if name or output:
            return StreamChunk(
                type="tool_result",
                tool_call=ToolCall(
                    id=str(_pick(payload, "id", "tool_id", "step_id") or _fallback_id("step")),
                    name=str(name or "step"),
                    output=output or "",
                    status="completed",
                ),
            )
        summary = _as_text(_pick(payload, "summary", "message"))
        return StreamChunk(type="text", content=summary) if summary else None

    if event_type:
        return _extract_fallback_text(payload, label=event_type)
    return None


def _extract_fallback_text(payload: dict[str, Any], *, label: str) -> StreamChunk | None:
    logger.debug("streaming.unknown_event", event_type=label)
    text = _as_text(_pick(payload, *_FALLBACK_TEXT_KEYS))
    return StreamChunk(type="text", content=text) if text else None


def extract_response_text(payload: dict[str, Any] | None) -> str:
    """Pull the answer text out of a final ``agent`` response payload."""
    if not isinstance(payload, dict):
        return ""
    result = payload.get("result")
    if isinstance(result, dict):
        parts = [
            p.get("text") for p in result.get("payloads") or []
            if isinstance(p, dict) and isinstance(p.get("text"), str)
        ]
        if parts:
            return "\n\n".join(parts)
        text = result.get("text")
        if isinstance(text, str):
            return text
    for key in ("text", "reply", "content", "message", "summary"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def fold_final_text(streamed: str, final: str) -> str | None:
    """Return the part of *final* not already delivered via stream events.

    None when the final text adds nothing (identical to, or contained in,
    what was streamed).
    """
    final_clean = final.strip()
    if not final_clean:
        return None
    streamed_clean = streamed.strip()
    if not streamed_clean:
        return final
    if final_clean == streamed_clean or final_clean in streamed_clean:
        return None
    if final_clean.startswith(streamed_clean):
        remainder = final_clean[len(streamed_clean):]
        return remainder or None
    return final
