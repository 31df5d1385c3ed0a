"""
clawbridge — OpenClaw gateway client and channel routing bridge.

Connects an AI conversation session to the messaging channels (WhatsApp,
Telegram, Slack, Discord, Signal, ...) managed by a locally running OpenClaw
gateway daemon.

Layers (bottom to top):
    1. GatewayClient (WebSocket protocol, handshake, correlated requests,
       push events, reconnect with backoff)
    2. GatewayController (daemon discovery, status/channel polling,
       change notifications, imperative actions)
    3. RoutingBridge (outbound markers, ask/reply tracking, inbound routing,
       session-file polling fallback)
"""

__version__ = "0.1.0"
