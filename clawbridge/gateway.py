"""
Gateway Client — the wire to the OpenClaw daemon.

Persistent aiohttp WebSocket connection carrying correlated request/response
traffic alongside server-pushed events. The server drives the handshake: after
the socket opens the client waits for a ``connect.challenge`` event before
sending its ``connect`` request.

Lifecycle: create → connect() → request()/subscribe()/send_agent_message() → dispose()

Reconnection uses exponential backoff (1s, 2s, 4s, ... capped at 30s) and is
abandoned after max_reconnect_attempts consecutive failures. Any successful
handshake resets the attempt counter.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, AsyncIterator, Callable

import aiohttp
import structlog
from aiohttp import WSMsgType

from clawbridge import __version__
from clawbridge.config import GatewayConfig
from clawbridge.errors import (
    GatewayConnectionError,
    GatewayError,
    GatewayNotConnectedError,
    GatewayRequestError,
    GatewayTimeoutError,
)
from clawbridge.protocol import (
    CHALLENGE_EVENT,
    EVENT,
    RESPONSE,
    SHUTDOWN_EVENT,
    TICK_EVENT,
    PendingRequest,
    error_message,
    is_intermediate,
    make_request,
    parse_frame,
)
from clawbridge.streaming import (
    event_run_id,
    extract_response_text,
    fold_final_text,
    normalize_agent_event,
)
from clawbridge.types import StreamChunk

logger = structlog.get_logger(__name__)

EventListener = Callable[[dict[str, Any], "int | None"], Any]
ConnectionListener = Callable[[bool], Any]

# Event names the gateway has been observed to use for agent run output.
AGENT_EVENT_NAMES = ("agent", "chat", "agent.event", "agent.stream")


def reconnect_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Backoff delay in seconds before reconnect attempt number *attempt* (0-based)."""
    return min(base * (2 ** attempt), cap)


class GatewayClient:
    """WebSocket client for the OpenClaw gateway.

    Owns the socket exclusively. Callers interact only through connect(),
    request(), subscribe(), send_agent_message(), cancel_agent() and dispose().
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        *,
        url: str | None = None,
        token: str | None = None,
    ) -> None:
        self._config = config or GatewayConfig()
        self._url = url or self._config.url
        self._token = token if token is not None else self._config.token
        self._request_timeout = self._config.request_timeout
        self._connect_timeout = self._config.connect_timeout
        self._agent_timeout = self._config.agent_timeout

        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._connected = False
        # Set by a completed handshake, cleared only when that socket goes away
        self._handshaken = False
        self._disposed = False
        self._connecting: asyncio.Task[bool] | None = None
        self._challenge: asyncio.Future[dict[str, Any]] | None = None

        self._request_seq = 0
        self._pending: dict[str, PendingRequest] = {}
        self._listeners: dict[str, list[EventListener]] = {}
        self._connection_listeners: list[ConnectionListener] = []
        # Tasks spawned for async listeners (tracked to cancel on dispose)
        self._listener_tasks: set[asyncio.Task[Any]] = set()

        self._reconnect_task: asyncio.Task[None] | None = None
        self._reconnect_attempts = 0
        self._max_reconnect_attempts = self._config.max_reconnect_attempts

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_connected(self) -> bool:
        """True once the handshake succeeded and the socket is still open."""
        return self._connected and self._ws is not None and not self._ws.closed

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def pending_count(self) -> int:
        """Number of requests still waiting for a terminal response."""
        return len(self._pending)

    # ------------------------------------------------------------------
    # Connect / handshake
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Open the socket and complete the challenge/connect handshake.

        Returns False on timeout, transport error or handshake rejection; in
        those cases a backoff reconnect is scheduled unless disposed.
        Concurrent callers share one in-flight attempt.
        """
        if self.is_connected:
            return True
        if self._connecting is not None and not self._connecting.done():
            return await asyncio.shield(self._connecting)

        self._connecting = asyncio.create_task(self._connect_once(), name="gateway-connect")
        try:
            return await asyncio.shield(self._connecting)
        finally:
            if self._connecting is not None and self._connecting.done():
                self._connecting = None

    async def _connect_once(self) -> bool:
        try:
            await asyncio.wait_for(self._open_and_handshake(), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            logger.info("gateway.connect_timeout", url=self._url, timeout=self._connect_timeout)
        except (aiohttp.ClientError, OSError) as e:
            logger.info("gateway.connect_error", url=self._url, error=str(e))
        except GatewayError as e:
            logger.info("gateway.handshake_failed", url=self._url, error=str(e))
        else:
            self._connected = True
            self._handshaken = True
            self._reconnect_attempts = 0
            logger.info("gateway.connected", url=self._url)
            self._notify_connection(True)
            return True

        await self._close_transport()
        self._schedule_reconnect()
        return False

    async def _open_and_handshake(self) -> None:
        await self._close_transport()
        loop = asyncio.get_running_loop()
        self._challenge = loop.create_future()

        self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(
            self._url,
            heartbeat=30.0,
            max_msg_size=16 * 1024 * 1024,
        )
        self._reader_task = asyncio.create_task(
            self._read_loop(self._ws), name="gateway-reader"
        )
        logger.debug("gateway.socket_open", url=self._url)

        # The server speaks first.
        challenge = await self._challenge
        logger.debug("gateway.challenge_received", has_nonce=bool(challenge.get("nonce")))

        response = await self._send_request("connect", self._handshake_params())
        if response.get("ok") is not True:
            error = response.get("error")
            if not isinstance(error, dict):
                error = {"message": error_message(response, "connect refused")}
            raise GatewayRequestError("connect", error)

    def _handshake_params(self) -> dict[str, Any]:
        cfg = self._config
        params: dict[str, Any] = {
            "minProtocol": cfg.min_protocol,
            "maxProtocol": cfg.max_protocol,
            "client": {
                "id": cfg.client_id,
                "displayName": cfg.client_name,
                "version": __version__,
                "platform": "python",
                "mode": cfg.client_mode,
            },
            "caps": [],
            "role": cfg.role,
            "scopes": list(cfg.scopes),
        }
        if self._token:
            params["auth"] = {"token": self._token}
        return params

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a request and return its terminal response frame.

        Intermediate (ack) responses are absorbed; the call resolves only on
        the final response. Raises GatewayNotConnectedError, GatewayTimeoutError
        or GatewayConnectionError.
        """
        if not self.is_connected:
            raise GatewayNotConnectedError(method)
        return await self._send_request(method, params, timeout=timeout)

    async def _send_request(
        self,
        method: str,
        params: dict[str, Any] | None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        pending = self._register(method)
        try:
            await self._send_frame(make_request(pending.req_id, method, params))
            return await self._await_response(pending, timeout or self._request_timeout)
        finally:
            self._pending.pop(pending.req_id, None)

    def _register(self, method: str) -> PendingRequest:
        self._request_seq += 1
        req_id = str(self._request_seq)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        pending = PendingRequest(req_id=req_id, method=method, future=future)
        self._pending[req_id] = pending
        return pending

    async def _send_frame(self, frame: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise GatewayConnectionError("socket is closed")
        try:
            await ws.send_str(json.dumps(frame))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise GatewayConnectionError(str(e)) from e

    async def _await_response(self, pending: PendingRequest, timeout: float) -> dict[str, Any]:
        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout=timeout)
        except asyncio.TimeoutError:
            pending.fail(GatewayTimeoutError(pending.method, timeout))
            # Mark retrieved so the loop does not warn about it.
            pending.future.exception()
            raise GatewayTimeoutError(pending.method, timeout) from None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, event: str, handler: EventListener) -> Callable[[], None]:
        """Register *handler* for pushed events named *event*.

        Handlers receive ``(payload, seq)`` in receipt order. Returns an
        unsubscribe callable.
        """
        self._listeners.setdefault(event, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._listeners.get(event)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self._listeners[event]

        return _unsubscribe

    def on_connection_change(self, handler: ConnectionListener) -> Callable[[], None]:
        """Register *handler* for connected/disconnected transitions."""
        self._connection_listeners.append(handler)

        def _unsubscribe() -> None:
            if handler in self._connection_listeners:
                self._connection_listeners.remove(handler)

        return _unsubscribe

    def _dispatch_event(self, event: str, payload: dict[str, Any], seq: int | None) -> None:
        for handler in list(self._listeners.get(event, ())):
            self._invoke(handler, payload, seq, event=event)

    def _notify_connection(self, connected: bool) -> None:
        for handler in list(self._connection_listeners):
            self._invoke(handler, connected, event="connection")

    def _invoke(self, handler: Callable[..., Any], *args: Any, event: str) -> None:
        """Invoke a listener with exception isolation; async results are tracked."""
        try:
            result = handler(*args)
        except Exception:
            logger.error("gateway.listener_error", gateway_event=event, exc_info=True)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._listener_tasks.add(task)
            task.add_done_callback(self._on_listener_task_done)

    def _on_listener_task_done(self, task: asyncio.Task[Any]) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("gateway.listener_error", error=str(task.exception()))

    # ------------------------------------------------------------------
    # Read loop
    # ------------------------------------------------------------------

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._handle_message(msg.data)
                elif msg.type == WSMsgType.BINARY:
                    self._handle_message(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("gateway.ws_protocol_error", error=str(ws.exception()))
                    break
                elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("gateway.read_loop_error", error=str(e))
        finally:
            self._on_transport_closed(ws)

    def _handle_message(self, raw: str | bytes) -> None:
        """Route one incoming frame. Never raises out of the read loop."""
        frame = parse_frame(raw)
        if frame is None:
            logger.debug("gateway.frame_unparseable", size=len(raw))
            return

        if frame["type"] == RESPONSE:
            req_id = str(frame.get("id"))
            pending = self._pending.get(req_id)
            if pending is None:
                logger.debug("gateway.response_unmatched", req_id=req_id)
                return
            if is_intermediate(frame):
                pending.acknowledge(frame)
                logger.debug(
                    "gateway.request_acknowledged",
                    method=pending.method,
                    status=frame["payload"]["status"],
                    run_id=pending.run_id,
                )
                return
            self._pending.pop(req_id, None)
            pending.settle(frame)
            return

        if frame["type"] == EVENT:
            name = frame.get("event")
            if not isinstance(name, str):
                return
            payload = frame.get("payload")
            if not isinstance(payload, dict):
                payload = {}
            if name == CHALLENGE_EVENT:
                if self._challenge is not None and not self._challenge.done():
                    self._challenge.set_result(payload)
                return
            seq = frame.get("seq")
            self._dispatch_event(name, payload, seq if isinstance(seq, int) else None)
            if name == TICK_EVENT:
                return
            if name == SHUTDOWN_EVENT:
                logger.info("gateway.shutdown_event", reason=payload.get("reason"))
                self._mark_disconnected()

    def _on_transport_closed(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if ws is not self._ws:
            return  # stale reader from a replaced socket
        handshaken, self._handshaken = self._handshaken, False
        self._ws = None
        if self._challenge is not None and not self._challenge.done():
            self._challenge.set_exception(GatewayConnectionError("socket closed before challenge"))
            self._challenge.exception()
        self._fail_pending(GatewayConnectionError("gateway connection closed"))
        if handshaken:
            logger.info("gateway.disconnected", url=self._url)
            self._mark_disconnected()
            self._schedule_reconnect()

    def _mark_disconnected(self) -> None:
        if self._connected:
            self._connected = False
            self._notify_connection(False)

    def _fail_pending(self, exc: GatewayError) -> None:
        for pending in list(self._pending.values()):
            pending.fail(exc)
        self._pending.clear()

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> float | None:
        """Schedule the next backoff reconnect. Returns the delay, or None if not scheduled."""
        if self._disposed:
            return None
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return None
        if self._reconnect_attempts >= self._max_reconnect_attempts:
            logger.warning("gateway.reconnect_abandoned", attempts=self._reconnect_attempts)
            return None

        delay = reconnect_delay(
            self._reconnect_attempts,
            self._config.reconnect_base_delay,
            self._config.reconnect_max_delay,
        )
        self._reconnect_attempts += 1
        logger.info("gateway.reconnect_scheduled", delay=delay, attempt=self._reconnect_attempts)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name="gateway-reconnect"
        )
        return delay

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if not self._disposed:
            await self.connect()

    # ------------------------------------------------------------------
    # Agent runs
    # ------------------------------------------------------------------

    async def send_agent_message(
        self,
        message: str,
        *,
        session_key: str | None = None,
        thinking: str | None = None,
        model: str | None = None,
        elevated: str | None = None,
        timeout: float | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Run the gateway agent and yield normalized stream chunks.

        Finishes when the correlated request settles and buffered chunks are
        drained, or yields a terminal error chunk when *timeout* (default
        agent_timeout) elapses. Closing the generator releases every listener.
        """
        if not self.is_connected:
            raise GatewayNotConnectedError("agent")

        loop = asyncio.get_running_loop()
        pending = self._register("agent")
        queue: asyncio.Queue[StreamChunk] = asyncio.Queue()

        def _on_event(payload: dict[str, Any], seq: int | None = None) -> None:
            run_id = event_run_id(payload)
            if run_id and pending.run_id and run_id != pending.run_id:
                return
            chunk = normalize_agent_event(payload)
            if chunk is not None:
                queue.put_nowait(chunk)

        unsubscribes = [self.subscribe(name, _on_event) for name in AGENT_EVENT_NAMES]
        params: dict[str, Any] = {"message": message, "idempotencyKey": uuid.uuid4().hex}
        if session_key:
            params["sessionKey"] = session_key
        if thinking:
            params["thinking"] = thinking
        if model:
            params["model"] = model
        if elevated:
            params["elevated"] = elevated

        deadline = loop.time() + (timeout or self._agent_timeout)
        streamed: list[str] = []
        getter: asyncio.Future[StreamChunk] | None = None
        try:
            await self._send_frame(make_request(pending.req_id, "agent", params))
            while True:
                if queue.empty() and pending.future.done():
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.warning("gateway.agent_timeout", run_id=pending.run_id)
                    yield StreamChunk(type="error", content="OpenClaw gateway: request timed out")
                    return
                if queue.empty():
                    getter = asyncio.ensure_future(queue.get())
                    done, _ = await asyncio.wait(
                        {getter, pending.future},
                        timeout=remaining,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    if getter not in done:
                        getter.cancel()
                        getter = None
                        continue
                    chunk = getter.result()
                    getter = None
                else:
                    chunk = queue.get_nowait()
                if chunk.type == "text" and chunk.content:
                    streamed.append(chunk.content)
                yield chunk

            if pending.future.cancelled():
                yield StreamChunk(type="error", content="Agent request cancelled")
                return
            exc = pending.future.exception()
            if exc is not None:
                yield StreamChunk(type="error", content=str(exc))
                return
            response = pending.future.result()
            if response.get("ok") is not True:
                yield StreamChunk(
                    type="error", content=error_message(response, "Agent request failed")
                )
                return
            extra = fold_final_text("".join(streamed), extract_response_text(response.get("payload")))
            if extra:
                yield StreamChunk(type="text", content=extra)
        finally:
            if getter is not None:
                getter.cancel()
            for unsubscribe in unsubscribes:
                unsubscribe()
            self._pending.pop(pending.req_id, None)

    async def cancel_agent(self, run_id: str | None = None) -> None:
        """Best-effort request to stop the running agent. Never raises."""
        if not self.is_connected:
            return
        params = {"runId": run_id} if run_id else {}
        try:
            await self.request("agent.stop", params)
        except GatewayError as e:
            logger.debug("gateway.cancel_failed", error=str(e))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def set_url(self, url: str) -> None:
        """Point the client at a different gateway; takes effect on next connect()."""
        if url == self._url:
            return
        self._url = url
        if self._connected or self._ws is not None:
            self._mark_disconnected()
            await self._close_transport()

    async def _close_transport(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None
        session, self._session = self._session, None
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("gateway.close_failed", error=str(e))
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if session is not None:
            await session.close()
        self._connected = False
        self._handshaken = False

    async def dispose(self) -> None:
        """Close the connection for good: no reconnects, no pending requests, no listeners."""
        self._disposed = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None
        if self._connecting is not None and not self._connecting.done():
            self._connecting.cancel()
        self._connecting = None
        was_connected = self._connected
        await self._close_transport()
        self._fail_pending(GatewayConnectionError("gateway client disposed"))
        for task in list(self._listener_tasks):
            task.cancel()
        self._listener_tasks.clear()
        if was_connected:
            self._notify_connection(False)
        self._listeners.clear()
        self._connection_listeners.clear()
        logger.info("gateway.disposed", url=self._url)
