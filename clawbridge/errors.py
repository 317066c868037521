"""Failure taxonomy for the gateway bridge.

None of these reach callers of ``connect()`` or ``send_message()``. Transport
and handshake errors are raised internally and turned into a ``False`` connect
result; request-level errors are recorded as the reason a pending request was
resolved with ``None``.
"""

from __future__ import annotations


class BridgeError(RuntimeError):
    code = "BRIDGE_ERROR"
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, retryable: bool | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable


class TransportOpenFailure(BridgeError):
    """Network, DNS or HTTP-level refusal while opening the connection."""

    code = "TRANSPORT_OPEN_FAILED"
    retryable = True


class TransportSendFailure(BridgeError):
    code = "TRANSPORT_SEND_FAILED"
    retryable = True


class HandshakeRejected(BridgeError):
    """The gateway declined (or never acknowledged) the connect handshake."""

    code = "HANDSHAKE_REJECTED"


class RequestTimeout(BridgeError):
    code = "REQUEST_TIMEOUT"
    retryable = True


class RequestSuperseded(BridgeError):
    """A newer message replaced an unanswered one on a single-slot protocol."""

    code = "REQUEST_SUPERSEDED"


class PeerDisconnected(BridgeError):
    code = "PEER_DISCONNECTED"
    retryable = True


class MalformedInboundMessage(BridgeError):
    code = "MALFORMED_INBOUND"


class RequestRejected(BridgeError):
    """The gateway answered the request with an error."""

    code = "REQUEST_REJECTED"
