# clawbridge/config.py
"""
Configuration for clawbridge.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. The gateway auth token
falls back to the OpenClaw daemon's own config file when no env value is set.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Annotated, Optional
from pydantic import AliasChoices, BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings, NoDecode
import structlog


logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above clawbridge/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

OPENCLAW_HOME = Path.home() / ".openclaw"

_LINE_COMMENT_RE = re.compile(r"//.*$", re.MULTILINE)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - A single str         → ["value"]
      - Comma-separated str  → ["a", "b"]
      - JSON array str       → ["a", "b"]
      - An existing list     → passthrough with str coercion
    """
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return _coerce_str_list(parsed)
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


# Annotated type for list[str] fields that accept bare values, comma-separated,
# and JSON arrays from environment variables.
StrList = Annotated[list[str], NoDecode, BeforeValidator(_coerce_str_list)]


def load_openclaw_token(config_path: Path | None = None) -> Optional[str]:
    """Read ``gateway.auth.token`` from the OpenClaw daemon config file.

    The file is JSON5-flavoured; line comments and trailing commas are
    stripped before parsing. Returns None when the file is missing,
    unreadable, or carries no token.
    """
    path = config_path or (OPENCLAW_HOME / "openclaw.json")
    if not path.exists():
        return None
    try:
        raw = path.read_text(encoding="utf-8")
        cleaned = _TRAILING_COMMA_RE.sub(r"\1", _LINE_COMMENT_RE.sub("", raw))
        data = json.loads(cleaned)
        token = data.get("gateway", {}).get("auth", {}).get("token")
        if isinstance(token, str) and token.strip():
            return token.strip()
    except Exception as e:
        logger.debug("config.openclaw_config_unreadable", path=str(path), error=str(e))
    return None


class GatewayConfig(BaseSettings):
    """Configuration for the WebSocket connection to the OpenClaw gateway."""

    url: str = Field("ws://127.0.0.1:18789", alias="OPENCLAW_GATEWAY_URL")
    token: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("OPENCLAW_GATEWAY_TOKEN", "CLAWBRIDGE_GATEWAY_TOKEN"),
    )
    # The whole socket-open → challenge → handshake flow shares this budget.
    connect_timeout: float = Field(10.0, alias="CLAWBRIDGE_CONNECT_TIMEOUT")
    request_timeout: float = Field(30.0, alias="CLAWBRIDGE_REQUEST_TIMEOUT")
    # Wall-clock ceiling for one streamed agent run.
    agent_timeout: float = Field(90.0, alias="CLAWBRIDGE_AGENT_TIMEOUT")
    reconnect_base_delay: float = Field(1.0, alias="CLAWBRIDGE_RECONNECT_BASE_DELAY")
    reconnect_max_delay: float = Field(30.0, alias="CLAWBRIDGE_RECONNECT_MAX_DELAY")
    max_reconnect_attempts: int = Field(5, alias="CLAWBRIDGE_MAX_RECONNECT_ATTEMPTS")

    min_protocol: int = Field(3, alias="CLAWBRIDGE_MIN_PROTOCOL")
    max_protocol: int = Field(3, alias="CLAWBRIDGE_MAX_PROTOCOL")
    client_id: str = Field("gateway-client", alias="CLAWBRIDGE_CLIENT_ID")
    client_name: str = Field("clawbridge", alias="CLAWBRIDGE_CLIENT_NAME")
    client_mode: str = Field("backend", alias="CLAWBRIDGE_CLIENT_MODE")
    role: str = Field("operator", alias="CLAWBRIDGE_ROLE")
    scopes: StrList = Field(
        default_factory=lambda: ["operator.read", "operator.write"],
        alias="CLAWBRIDGE_SCOPES",
    )

    model_config = {
        "env_file": _ENV_FILE,
        "extra": "ignore",
        "populate_by_name": True,
        "env_ignore_empty": True,
    }

    @model_validator(mode="after")
    def resolve_token(self) -> "GatewayConfig":
        if isinstance(self.token, str):
            self.token = self.token.strip() or None
        if self.token is None:
            self.token = load_openclaw_token()
        return self

    @model_validator(mode="after")
    def normalize_limits(self) -> "GatewayConfig":
        self.connect_timeout = max(0.1, float(self.connect_timeout))
        self.request_timeout = max(0.1, float(self.request_timeout))
        self.agent_timeout = max(1.0, float(self.agent_timeout))
        self.reconnect_base_delay = max(0.01, float(self.reconnect_base_delay))
        self.reconnect_max_delay = max(self.reconnect_base_delay, float(self.reconnect_max_delay))
        self.max_reconnect_attempts = max(0, int(self.max_reconnect_attempts))
        if self.max_protocol < self.min_protocol:
            self.max_protocol = self.min_protocol
        return self


class ControllerConfig(BaseSettings):
    """Configuration for the daemon lifecycle controller."""

    enabled: bool = Field(True, alias="CLAWBRIDGE_ENABLED")
    command_name: str = Field("openclaw", alias="OPENCLAW_COMMAND")
    # Explicit install location checked before the well-known paths.
    configured_path: Optional[str] = Field(None, alias="OPENCLAW_PATH")
    poll_interval: float = Field(30.0, alias="CLAWBRIDGE_POLL_INTERVAL")
    # Higher-level "is the daemon up yet?" loop, distinct from socket backoff.
    reconnect_interval: float = Field(60.0, alias="CLAWBRIDGE_DAEMON_RECONNECT_INTERVAL")
    daemon_start_timeout: float = Field(10.0, alias="CLAWBRIDGE_DAEMON_START_TIMEOUT")
    daemon_start_grace: float = Field(3.0, alias="CLAWBRIDGE_DAEMON_START_GRACE")
    channel_refresh_delay: float = Field(2.0, alias="CLAWBRIDGE_CHANNEL_REFRESH_DELAY")
    default_session_key: str = Field("main", alias="CLAWBRIDGE_DEFAULT_SESSION_KEY")
    fetch_skills: bool = Field(True, alias="CLAWBRIDGE_FETCH_SKILLS")
    activity_log_max: int = Field(100, alias="CLAWBRIDGE_ACTIVITY_LOG_MAX")

    model_config = {
        "env_file": _ENV_FILE,
        "extra": "ignore",
        "populate_by_name": True,
        "env_ignore_empty": True,
    }

    @model_validator(mode="after")
    def normalize_limits(self) -> "ControllerConfig":
        self.poll_interval = max(1.0, float(self.poll_interval))
        self.reconnect_interval = max(1.0, float(self.reconnect_interval))
        self.daemon_start_timeout = max(1.0, float(self.daemon_start_timeout))
        self.daemon_start_grace = max(0.0, float(self.daemon_start_grace))
        self.channel_refresh_delay = max(0.0, float(self.channel_refresh_delay))
        self.activity_log_max = max(1, int(self.activity_log_max))
        if isinstance(self.configured_path, str):
            self.configured_path = self.configured_path.strip() or None
        return self


class BridgeConfig(BaseSettings):
    """Configuration for the channel routing bridge."""

    inbound_poll_interval: float = Field(10.0, alias="CLAWBRIDGE_INBOUND_POLL_INTERVAL")
    inbound_first_poll_delay: float = Field(2.0, alias="CLAWBRIDGE_INBOUND_FIRST_POLL_DELAY")
    sessions_dir: Path = Field(
        OPENCLAW_HOME / "agents" / "main" / "sessions",
        alias="OPENCLAW_SESSIONS_DIR",
    )
    session_tail_bytes: int = Field(8192, alias="CLAWBRIDGE_SESSION_TAIL_BYTES")
    channel_types: StrList = Field(
        default_factory=lambda: ["whatsapp", "telegram", "signal", "slack", "discord"],
        alias="CLAWBRIDGE_CHANNEL_TYPES",
    )
    contact_ttl_seconds: float = Field(2 * 60 * 60, alias="CLAWBRIDGE_CONTACT_TTL")
    # 0 keeps unresolved asks indefinitely.
    ask_ttl_seconds: float = Field(0.0, alias="CLAWBRIDGE_ASK_TTL")
    dedup_max_entries: int = Field(500, alias="CLAWBRIDGE_DEDUP_MAX")
    dedup_keep_entries: int = Field(250, alias="CLAWBRIDGE_DEDUP_KEEP")
    cancel_keywords: StrList = Field(
        default_factory=lambda: ["/stop", "/cancel", "stop", "cancel"],
        alias="CLAWBRIDGE_CANCEL_KEYWORDS",
    )

    model_config = {
        "env_file": _ENV_FILE,
        "extra": "ignore",
        "populate_by_name": True,
        "env_ignore_empty": True,
    }

    @model_validator(mode="after")
    def normalize_limits(self) -> "BridgeConfig":
        self.inbound_poll_interval = max(0.5, float(self.inbound_poll_interval))
        self.inbound_first_poll_delay = max(0.0, float(self.inbound_first_poll_delay))
        self.session_tail_bytes = max(512, int(self.session_tail_bytes))
        self.contact_ttl_seconds = max(1.0, float(self.contact_ttl_seconds))
        self.ask_ttl_seconds = max(0.0, float(self.ask_ttl_seconds))
        self.dedup_max_entries = max(2, int(self.dedup_max_entries))
        self.dedup_keep_entries = max(1, min(int(self.dedup_keep_entries), self.dedup_max_entries))
        self.channel_types = [c.lower() for c in self.channel_types]
        self.cancel_keywords = [k.lower() for k in self.cancel_keywords]
        self.sessions_dir = self.sessions_dir.expanduser()
        return self


class ClawBridgeConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its config from here. No global state, no
    hidden settings.
    """

    def __init__(self) -> None:
        self.gateway = GatewayConfig()
        self.controller = ControllerConfig()
        self.bridge = BridgeConfig()

    def __repr__(self) -> str:
        return (
            f"ClawBridgeConfig(url={self.gateway.url}, "
            f"poll={self.controller.poll_interval}s, "
            f"inbound_poll={self.bridge.inbound_poll_interval}s)"
        )
