"""
Gateway error hierarchy.

GatewayClient raises these; GatewayController and RoutingBridge catch them
and report structured failure to their callers instead of propagating.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for all gateway client failures."""


class GatewayConnectionError(GatewayError):
    """The WebSocket transport failed or closed underneath a request."""


class GatewayNotConnectedError(GatewayError):
    """A request was issued while no handshaken connection exists."""

    def __init__(self, method: str = "") -> None:
        self.method = method
        detail = f" (method '{method}')" if method else ""
        super().__init__(f"Gateway not connected{detail}")


class GatewayTimeoutError(GatewayError):
    """No terminal response arrived within the request timeout."""

    def __init__(self, method: str, timeout: float) -> None:
        self.method = method
        self.timeout = timeout
        super().__init__(f"Gateway request '{method}' timed out after {timeout:g}s")


class GatewayRequestError(GatewayError):
    """The gateway answered a request with ``ok: false``."""

    def __init__(self, method: str, error: dict[str, Any] | None = None) -> None:
        self.method = method
        self.error = error or {}
        self.code = self.error.get("code")
        message = self.error.get("message") or f"Gateway request '{method}' failed"
        super().__init__(message)
