"""Transport boundary between the bridge and the wire.

The bridge only needs four capabilities: open a connection, send text, close,
and be told about inbound messages, errors and closure. ``WebSocketTransport``
provides them on top of the ``websockets`` library; tests substitute their own.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import websockets

from .errors import TransportOpenFailure, TransportSendFailure

logger = logging.getLogger(__name__)


@dataclass
class TransportHandlers:
    """Callbacks a connection reports to, always invoked on the event loop."""
    on_message: Callable[[Any], None]
    on_error: Callable[[BaseException], None]
    on_close: Callable[[], None]


class Connection:
    """An open, bidirectional message stream."""

    async def send(self, text: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class Transport:
    """Factory for connections."""

    async def open(self, url: str, handlers: TransportHandlers) -> Connection:
        """Open a connection to ``url``.

        Raises:
            TransportOpenFailure: if the connection cannot be established
        """
        raise NotImplementedError


class WebSocketConnection(Connection):
    """A live WebSocket plus the task that pumps its inbound messages."""

    def __init__(self, ws, handlers: TransportHandlers, send_timeout: float = 5.0):
        self.ws = ws
        self.handlers = handlers
        self.send_timeout = send_timeout
        self._closing = False
        self._reader_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        error: Optional[BaseException] = None
        try:
            async for message in self.ws:
                try:
                    self.handlers.on_message(message)
                except Exception:
                    logger.exception("Error processing message")
        except asyncio.CancelledError:
            logger.debug("Reader task cancelled")
            raise
        except websockets.ConnectionClosed as e:
            logger.debug("Connection closed: %s", e)
            error = e
        except Exception as e:
            logger.error("WebSocket read error: %s (%s)", e, type(e).__name__)
            error = e

        if self._closing:
            return
        if error is not None:
            self.handlers.on_error(error)
        else:
            self.handlers.on_close()

    async def send(self, text: str) -> None:
        """Send a frame, giving up after ``send_timeout`` seconds.

        A blocked socket must not stall the caller forever, so the write is
        bounded and any failure is reported as TransportSendFailure.
        """
        try:
            await asyncio.wait_for(self.ws.send(text), timeout=self.send_timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"WebSocket send timed out after {self.send_timeout}s - connection may be blocked")
            raise TransportSendFailure(f"Send timed out after {self.send_timeout}s") from e
        except Exception as e:
            logger.error(f"Send error: {e}")
            raise TransportSendFailure(f"Send failed: {e}") from e

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        try:
            await self.ws.close()
        except Exception as e:
            logger.debug("Error while closing WebSocket: %s", e)
        task = self._reader_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class WebSocketTransport(Transport):
    """Opens gateway connections with the ``websockets`` client."""

    def __init__(
        self,
        headers: Optional[dict[str, str]] = None,
        open_timeout: float = 10.0,
        send_timeout: float = 5.0,
        ping_interval: float = 30,
        ping_timeout: float = 10,
    ):
        self.headers = headers or {}
        self.open_timeout = open_timeout
        self.send_timeout = send_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout

    async def open(self, url: str, handlers: TransportHandlers) -> WebSocketConnection:
        try:
            ws = await websockets.connect(
                url,
                additional_headers=self.headers or None,
                open_timeout=self.open_timeout,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
            )
        except websockets.exceptions.InvalidStatus as e:
            # Server rejected the upgrade (e.g., 401, 500)
            status = e.response.status_code
            logger.error("WebSocket connection rejected: HTTP %s", status)
            if status == 401:
                reason = "HTTP 401: Invalid or expired token"
            elif status >= 500:
                reason = f"HTTP {status}: Server error"
            else:
                reason = f"HTTP {status}"
            raise TransportOpenFailure(reason, retryable=status >= 500) from e
        except websockets.exceptions.InvalidURI as e:
            logger.error("Invalid WebSocket URI: %s", e)
            raise TransportOpenFailure(f"Invalid gateway URL: {e}", retryable=False) from e
        except websockets.exceptions.InvalidHandshake as e:
            logger.error("WebSocket handshake failed: %s", e)
            raise TransportOpenFailure(f"Handshake failed: {e}") from e
        except ConnectionRefusedError as e:
            logger.error("Connection refused: %s", e)
            raise TransportOpenFailure("Connection refused - gateway unreachable") from e
        except (OSError, asyncio.TimeoutError) as e:
            logger.error("Network error: %s", e)
            raise TransportOpenFailure(f"Network error: {e}") from e

        connection = WebSocketConnection(ws, handlers, send_timeout=self.send_timeout)
        connection.start()
        return connection
