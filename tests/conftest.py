"""
Shared fixtures for the clawbridge test suite.

Provides environment isolation, an in-process fake OpenClaw gateway served
over a real aiohttp WebSocket, and a mock GatewayClient for controller and
bridge tests that do not need a socket.
"""

from __future__ import annotations

import json
import os
from typing import Any, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from clawbridge.config import ClawBridgeConfig, GatewayConfig
from clawbridge.protocol import make_event, make_response

MethodHandler = Callable[[web.WebSocketResponse, dict[str, Any]], Awaitable[None]]


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Strip clawbridge/OpenClaw env vars and the on-disk daemon token."""
    for key in list(os.environ):
        if key.startswith(("OPENCLAW_", "CLAWBRIDGE_")):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("clawbridge.config.load_openclaw_token", lambda config_path=None: None)


# ---------------------------------------------------------------------------
# Fake gateway
# ---------------------------------------------------------------------------

class FakeGateway:
    """Scriptable OpenClaw gateway: challenge, connect handshake, per-method replies."""

    def __init__(self) -> None:
        self.url = ""
        self.send_challenge = True
        self.reject_connect = False
        self.handlers: dict[str, MethodHandler] = {}
        self.requests: list[dict[str, Any]] = []
        self.sockets: list[web.WebSocketResponse] = []
        self.connections = 0

    def on(self, method: str, handler: MethodHandler) -> None:
        self.handlers[method] = handler

    def reply(self, method: str, payload: dict[str, Any] | None = None, ok: bool = True) -> None:
        """Answer *method* with a single terminal response."""

        async def _handler(ws: web.WebSocketResponse, frame: dict[str, Any]) -> None:
            await ws.send_json(make_response(frame["id"], ok, payload or {}))

        self.on(method, _handler)

    def methods(self) -> list[str]:
        return [f.get("method") for f in self.requests]

    def last(self, method: str) -> dict[str, Any]:
        return next(f for f in reversed(self.requests) if f.get("method") == method)

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        self.connections += 1
        if self.send_challenge:
            await ws.send_json(make_event("connect.challenge", {"nonce": "nonce-1", "ts": 1}))
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            frame = json.loads(msg.data)
            self.requests.append(frame)
            method = frame.get("method")
            if method == "connect":
                if self.reject_connect:
                    await ws.send_json(
                        make_response(frame["id"], False, error={"message": "unauthorized"})
                    )
                else:
                    await ws.send_json(make_response(frame["id"], True, {"protocol": 3}))
                continue
            handler = self.handlers.get(method)
            if handler is not None:
                await handler(ws, frame)
        return ws

    async def push(self, event: str, payload: dict[str, Any], seq: int | None = None) -> None:
        for ws in self.sockets:
            if not ws.closed:
                await ws.send_json(make_event(event, payload, seq))

    async def drop_connections(self) -> None:
        for ws in self.sockets:
            if not ws.closed:
                await ws.close()


@pytest.fixture
async def fake_gateway():
    gw = FakeGateway()
    app = web.Application()
    app.router.add_get("/", gw.handle_ws)
    server = TestServer(app)
    await server.start_server()
    gw.url = str(server.make_url("/")).replace("http://", "ws://", 1)
    try:
        yield gw
    finally:
        await gw.drop_connections()
        await server.close()


@pytest.fixture
def gateway_config(fake_gateway: FakeGateway) -> GatewayConfig:
    return GatewayConfig(
        url=fake_gateway.url,
        token="secret-token",
        connect_timeout=2.0,
        request_timeout=2.0,
        agent_timeout=5.0,
        reconnect_base_delay=0.05,
    )


# ---------------------------------------------------------------------------
# Mock client / config
# ---------------------------------------------------------------------------

@pytest.fixture
def config(tmp_path) -> ClawBridgeConfig:
    cfg = ClawBridgeConfig()
    cfg.controller.fetch_skills = False
    cfg.bridge.sessions_dir = tmp_path / "sessions"
    cfg.bridge.inbound_first_poll_delay = 0.0
    return cfg


@pytest.fixture
def mock_client() -> MagicMock:
    """A connected GatewayClient double whose request() answers ok by default."""
    client = MagicMock()
    client.is_connected = True
    client.url = "ws://127.0.0.1:18789"
    client.connect = AsyncMock(return_value=True)
    client.request = AsyncMock(return_value={"type": "res", "id": "1", "ok": True, "payload": {}})
    client.dispose = AsyncMock()
    client.subscribe = MagicMock(return_value=MagicMock())
    client.on_connection_change = MagicMock(return_value=MagicMock())
    return client
