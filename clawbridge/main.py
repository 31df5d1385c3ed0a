"""
Main — process-level wiring for clawbridge entry points.

Configures structlog over standard-library logging and builds the
controller/bridge pair from one ClawBridgeConfig. Channel message text is
never written to logs in full.
"""

from __future__ import annotations

import logging

import structlog

from clawbridge.config import ClawBridgeConfig
from clawbridge.controller import GatewayController
from clawbridge.routing import BridgeDelegate, RoutingBridge

_SENSITIVE_KEYS = ("content", "message", "question", "reply", "prompt", "token")
_MAX_DISPLAY_LEN = 80


def _redact_sensitive_fields(logger, method_name, event_dict):
    """
    Structlog processor that truncates message text and hides tokens.

    Channel messages are other people's words; only a short prefix is logged.
    """
    for key in _SENSITIVE_KEYS:
        if key not in event_dict:
            continue
        val = event_dict[key]
        if not isinstance(val, str):
            continue
        if key == "token":
            event_dict[key] = "[REDACTED]"
        elif len(val) > _MAX_DISPLAY_LEN:
            event_dict[key] = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
    return event_dict


_logging_configured = False


def configure_logging(level: int = logging.WARNING) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once; subsequent calls only adjust the level.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        logging.getLogger().setLevel(level)
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _redact_sensitive_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def build_runtime(
    config: ClawBridgeConfig | None = None,
    delegate: BridgeDelegate | None = None,
) -> tuple[GatewayController, RoutingBridge]:
    """Create a controller and a bridge sharing one configuration."""
    config = config or ClawBridgeConfig()
    controller = GatewayController(config)
    bridge = RoutingBridge(controller, config.bridge, delegate=delegate)
    return controller, bridge
