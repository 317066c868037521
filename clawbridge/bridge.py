"""WebSocket bridge to an OpenClaw-style agent gateway.

This is the core of the client. It:
1. Maintains one persistent connection to the gateway
2. Performs the connect handshake when the protocol has one
3. Sends user text queries and correlates replies back to their caller
4. Enforces a reply timeout on every request
5. Reconnects with exponential backoff after an established connection drops

Everything runs on a single event loop. Transport callbacks are synchronous,
so inbound frames are handled strictly in arrival order.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console

from .connectivity import ConnectivitySignal
from .errors import (
    BridgeError,
    HandshakeRejected,
    MalformedInboundMessage,
    PeerDisconnected,
    RequestRejected,
    RequestTimeout,
    TransportOpenFailure,
    TransportSendFailure,
)
from .pending import KeyedRegistry, PendingRequest, SingleSlotRegistry
from .protocol import ClientIdentity, FrameKind, GatewayProtocol, InboundFrame, KeyedProtocol, Response
from .session import ConnectionState, Session
from .transport import Connection, Transport, TransportHandlers, WebSocketTransport

logger = logging.getLogger(__name__)
console = Console()

MAX_RECONNECT_ATTEMPTS = 3
REQUEST_TIMEOUT_SECONDS = 30.0
HANDSHAKE_TIMEOUT_SECONDS = 10.0


class BridgeClient:
    """
    Manages the connection to the gateway and the requests riding on it.

    Construct one per process and hand it to whatever needs to talk to the
    gateway. Callers never see exceptions: a failed ``connect()`` returns
    False, a failed ``send_message()`` returns None, and ``connectivity``
    reports when the gateway becomes reachable or unreachable.
    """

    def __init__(
        self,
        url_supplier: Callable[[], str],
        protocol: Optional[GatewayProtocol] = None,
        transport: Optional[Transport] = None,
        identity: Optional[ClientIdentity] = None,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS,
        log_callback: Callable[[str, str], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.url_supplier = url_supplier
        self.protocol = protocol or KeyedProtocol()
        self.transport = transport or WebSocketTransport()
        self.identity = identity or ClientIdentity()
        self.request_timeout = request_timeout
        self.handshake_timeout = handshake_timeout
        self.log_callback = log_callback
        self._sleep = sleep or asyncio.sleep

        self.connectivity = ConnectivitySignal()

        # Callback for unsolicited gateway events (presence, tick, ...)
        # Signature: (event_name: str, payload: dict) -> None
        self.on_event: Callable[[str, dict], None] | None = None

        self._session = Session()
        self._pending = KeyedRegistry() if self.protocol.keyed else SingleSlotRegistry()
        self._handshake_id: Optional[str] = None
        self._handshake_future: Optional[asyncio.Future] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background_tasks: set[asyncio.Task] = set()

    def _log(self, message: str, level: str = "info"):
        """Log a message through callback or fallback to console."""
        if self.log_callback:
            self.log_callback(message, level)
        else:
            color_map = {
                "info": "cyan",
                "success": "green",
                "error": "red",
                "warn": "yellow",
            }
            color = color_map.get(level, "white")
            console.print(f"[{color}][bridge] {message}[/{color}]")

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        return self._session.is_connected

    @property
    def state(self) -> ConnectionState:
        return self._session.state

    @property
    def reconnect_attempts(self) -> int:
        return self._session.reconnect_attempts

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def connect(self) -> bool:
        """Connect to the gateway.

        Does nothing if a connection is already open or being opened, and
        returns the current connectivity in that case.

        Returns:
            True once connected (and handshaken), False on any failure
        """
        session = self._session
        if session.state is not ConnectionState.DISCONNECTED:
            return session.is_connected

        epoch = session.begin_attempt()
        try:
            url = self.url_supplier()
        except Exception as e:
            return self._connect_failed(epoch, TransportOpenFailure(f"Could not resolve gateway URL: {e}"))

        self._log(f"Connecting to {url}...", "warn")
        try:
            connection = await self.transport.open(url, self._handlers_for(epoch))
        except TransportOpenFailure as e:
            return self._connect_failed(epoch, e)
        except asyncio.CancelledError:
            self._abandon_attempt(epoch)
            raise

        if not session.is_current(epoch):
            # disconnect() was called while the transport was opening
            await connection.close()
            return False
        session.connection = connection

        try:
            await self._perform_handshake(connection)
        except BridgeError as e:
            if session.is_current(epoch):
                session.connection = None
                await connection.close()
            return self._connect_failed(epoch, e)
        except asyncio.CancelledError:
            self._abandon_attempt(epoch)
            raise

        if not session.is_current(epoch):
            # Closed or disconnected between the ACK and now
            return False

        session.transition(ConnectionState.CONNECTED)
        session.reconnect_attempts = 0
        self._cancel_stale_reconnect()
        self._log("Connected to gateway!", "success")
        self.connectivity.publish(True)
        return True

    async def send_message(self, text: str) -> Optional[Response]:
        """Send a message to the gateway and wait for its reply.

        Returns:
            The Response, or None if the connection failed, the gateway
            reported an error, the request timed out or was abandoned
        """
        if not self._session.is_connected:
            if not await self.connect():
                self._log("Cannot send message: not connected", "error")
                return None

        session = self._session
        connection = session.connection
        epoch = session.epoch
        loop = asyncio.get_running_loop()

        request_id = self.protocol.new_request_id()
        request = PendingRequest(request_id, loop.create_future(), loop.time() + self.request_timeout)
        self._pending.register(request)
        request.arm_timer(loop.call_later(self.request_timeout, self._expire, request))

        frame = self.protocol.build_request(request_id, text)
        try:
            await connection.send(json.dumps(frame))
        except TransportSendFailure as e:
            self._pending.discard(request)
            request.fail(e)
            self._log(f"Error sending request: {e}", "error")
            self._connection_lost(epoch, PeerDisconnected(f"Send failed: {e}"))
            return None

        preview = text[:50] + ("..." if len(text) > 50 else "")
        self._log(f"Sent message: {preview}", "info")

        try:
            return await request.future
        except asyncio.CancelledError:
            self._pending.discard(request)
            request.cancel_timer()
            raise

    async def disconnect(self) -> None:
        """Close the connection and abandon everything in flight.

        Safe to call in any state. Cancels a scheduled reconnect and resets
        the reconnect counter.
        """
        session = self._session
        connection = session.reset()
        session.reconnect_attempts = 0

        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        else:
            task = None

        reason = PeerDisconnected("Disconnected by client")
        self._fail_handshake(reason)
        self._fail_all(reason)
        self.connectivity.publish(False)

        if connection is not None:
            await connection.close()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._log("Disconnected from gateway", "warn")

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def _handlers_for(self, epoch: int) -> TransportHandlers:
        return TransportHandlers(
            on_message=lambda raw: self._on_message(epoch, raw),
            on_error=lambda error: self._on_transport_error(epoch, error),
            on_close=lambda: self._on_transport_closed(epoch),
        )

    async def _perform_handshake(self, connection: Connection) -> None:
        """Send the connect request and wait for the gateway to accept it."""
        frame = self.protocol.build_handshake(self.identity)
        if frame is None:
            return

        future = asyncio.get_running_loop().create_future()
        self._handshake_id = frame.get("id")
        self._handshake_future = future
        try:
            await connection.send(json.dumps(frame))
            self._log("Connect request sent, waiting for ACK...", "info")
            await asyncio.wait_for(future, timeout=self.handshake_timeout)
        except asyncio.TimeoutError as e:
            raise HandshakeRejected("Handshake timeout (no response from gateway)") from e
        finally:
            self._handshake_future = None

    def _fail_handshake(self, reason: BridgeError) -> None:
        future = self._handshake_future
        if future is not None and not future.done():
            future.set_exception(reason)

    def _connect_failed(self, epoch: int, error: BridgeError) -> bool:
        session = self._session
        if session.is_current(epoch):
            session.reset()
            self.connectivity.publish(False)
        self._log(f"Connection failed: {error}", "error")
        return False

    def _abandon_attempt(self, epoch: int) -> None:
        """Undo an in-flight connect whose caller was cancelled."""
        session = self._session
        if not session.is_current(epoch):
            return
        connection = session.reset()
        self._fail_handshake(PeerDisconnected("Connect attempt cancelled"))
        self.connectivity.publish(False)
        if connection is not None:
            self._spawn(connection.close())
        self._log("Connect attempt cancelled", "warn")

    def _on_transport_error(self, epoch: int, error: BaseException) -> None:
        if not self._session.is_current(epoch):
            return
        self._log(f"WebSocket error: {error}", "error")
        self._connection_lost(epoch, PeerDisconnected(f"Transport error: {error}"))

    def _on_transport_closed(self, epoch: int) -> None:
        self._connection_lost(epoch, PeerDisconnected("Connection closed by gateway"))

    def _connection_lost(self, epoch: int, reason: BridgeError) -> None:
        session = self._session
        if not session.is_current(epoch) or session.state is ConnectionState.DISCONNECTED:
            return
        if session.state is ConnectionState.CONNECTING:
            # The ACK may already be in; invalidate the attempt so connect() sees a stale epoch
            connection = session.reset()
            self._fail_handshake(reason)
            if connection is not None:
                self._spawn(connection.close())
            self._log(f"Connection lost during handshake: {reason}", "warn")
            return

        connection = session.reset()
        self._log("Disconnected", "warn")
        self.connectivity.publish(False)
        self._fail_all(reason)
        if connection is not None:
            self._spawn(connection.close())

        if session.reconnect_attempts < MAX_RECONNECT_ATTEMPTS:
            self._schedule_reconnect()

    def _cancel_stale_reconnect(self) -> None:
        """Drop a backoff left over from before an explicit connect succeeded."""
        task = self._reconnect_task
        if task is None or task is asyncio.current_task():
            return
        self._reconnect_task = None
        if not task.done():
            task.cancel()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """Retry with exponential backoff: 1s, 2s, 4s, then give up."""
        session = self._session
        try:
            while session.reconnect_attempts < MAX_RECONNECT_ATTEMPTS:
                delay = 2 ** session.reconnect_attempts
                session.reconnect_attempts += 1
                self._log(
                    f"Reconnecting in {delay}s "
                    f"(attempt {session.reconnect_attempts}/{MAX_RECONNECT_ATTEMPTS})...",
                    "warn",
                )
                await self._sleep(delay)
                if session.state is not ConnectionState.DISCONNECTED:
                    return
                if await self.connect():
                    return
            self._log("Max reconnection attempts reached. Manual reconnect required.", "error")
        except asyncio.CancelledError:
            logger.debug("Reconnect cancelled")
            raise

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # =========================================================================
    # Request tracking
    # =========================================================================

    def _expire(self, request: PendingRequest) -> None:
        self._pending.discard(request)
        if request.fail(RequestTimeout(f"No reply within {self.request_timeout:g}s")):
            self._log(f"Request {request.label} timed out", "warn")

    def _fail_all(self, reason: BridgeError) -> None:
        for request in self._pending.drain():
            request.fail(reason)

    # =========================================================================
    # Inbound dispatch
    # =========================================================================

    def _on_message(self, epoch: int, raw: Any) -> None:
        if not self._session.is_current(epoch):
            logger.debug("Ignoring message from a stale connection")
            return

        try:
            frame = self.protocol.decode(raw)
        except MalformedInboundMessage as e:
            self._log(f"Error parsing message: {e}", "error")
            if not self.protocol.keyed:
                # Nothing else will ever arrive for the unkeyed request
                request = self._pending.take()
                if request is not None:
                    request.fail(e)
            return

        if frame.kind in (FrameKind.RESULT, FrameKind.FAILURE) and self._is_handshake_ack(frame):
            self._handle_handshake_ack(frame)
        elif frame.kind == FrameKind.RESULT:
            self._complete(frame)
        elif frame.kind == FrameKind.FAILURE:
            self._reject(frame)
        elif frame.kind == FrameKind.EVENT:
            self._dispatch_event(frame)
        else:
            logger.debug(f"Unknown message type: {frame.frame_type!r}")

    def _is_handshake_ack(self, frame: InboundFrame) -> bool:
        if self._handshake_id is None:
            return False
        return frame.request_id is None or frame.request_id == self._handshake_id

    def _handle_handshake_ack(self, frame: InboundFrame) -> None:
        future = self._handshake_future
        if future is not None and not future.done():
            if frame.ok:
                self._log("Connect handshake successful", "success")
                future.set_result(frame.payload)
            else:
                self._log(f"Connect handshake failed: {frame.error}", "error")
                future.set_exception(HandshakeRejected(frame.error))
            return

        if frame.ok:
            logger.debug("Connect handshake acknowledged")
            return
        self._log(f"Connect handshake failed: {frame.error}", "error")
        self._connection_lost(self._session.epoch, HandshakeRejected(frame.error))

    def _complete(self, frame: InboundFrame) -> None:
        request = self._pending.take(frame.request_id)
        if request is None:
            logger.debug(f"No pending request for {frame.request_id or 'response'}, ignoring")
            return
        if request.resolve(frame.response):
            self._log(f"Response received for {request.label} ({len(frame.response.pages)} page(s))", "success")

    def _reject(self, frame: InboundFrame) -> None:
        request = self._pending.take(frame.request_id)
        if request is None:
            logger.debug(f"No pending request for error {frame.request_id or ''}: {frame.error}")
            return
        request.fail(RequestRejected(frame.error))
        self._log(f"Request {request.label} failed: {frame.error}", "error")

    def _dispatch_event(self, frame: InboundFrame) -> None:
        logger.debug(f"Received event: {frame.event}")
        if self.on_event is None:
            return
        try:
            self.on_event(frame.event, frame.payload)
        except Exception:
            logger.exception("Event handler failed")
