"""ClawBridge - persistent WebSocket bridge to an OpenClaw agent gateway."""

from .bridge import (
    BridgeClient,
    HANDSHAKE_TIMEOUT_SECONDS,
    MAX_RECONNECT_ATTEMPTS,
    REQUEST_TIMEOUT_SECONDS,
)
from .connectivity import ConnectivitySignal
from .protocol import (
    ClientIdentity,
    GatewayProtocol,
    KeyedProtocol,
    Response,
    SingleSlotProtocol,
    get_protocol,
)
from .session import ConnectionState
from .transport import Connection, Transport, TransportHandlers, WebSocketTransport

__all__ = [
    "BridgeClient",
    "ClientIdentity",
    "Connection",
    "ConnectionState",
    "ConnectivitySignal",
    "GatewayProtocol",
    "HANDSHAKE_TIMEOUT_SECONDS",
    "KeyedProtocol",
    "MAX_RECONNECT_ATTEMPTS",
    "REQUEST_TIMEOUT_SECONDS",
    "Response",
    "SingleSlotProtocol",
    "Transport",
    "TransportHandlers",
    "WebSocketTransport",
    "get_protocol",
]
