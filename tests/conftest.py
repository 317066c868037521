"""Pytest fixtures and fake transports for bridge tests."""

import asyncio
import json
from typing import Any, Callable, Optional

import pytest

from clawbridge.bridge import BridgeClient
from clawbridge.errors import TransportOpenFailure, TransportSendFailure
from clawbridge.protocol import KeyedProtocol, SingleSlotProtocol
from clawbridge.transport import Connection, Transport, TransportHandlers

GATEWAY_URL = "ws://gateway.test:3377"


class FakeConnection(Connection):
    """In-memory connection that records frames and lets tests inject replies."""

    def __init__(self, transport: "FakeTransport", handlers: TransportHandlers):
        self.transport = transport
        self.handlers = handlers
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.fail_send = False

    async def send(self, text: str) -> None:
        if self.fail_send:
            raise TransportSendFailure("socket is gone")
        frame = json.loads(text)
        self.sent.append(frame)
        responder = self.transport.responder
        if responder is not None:
            reply = responder(frame)
            if reply is not None:
                asyncio.get_running_loop().call_soon(self.deliver, reply)

    async def close(self) -> None:
        self.closed = True

    def deliver(self, frame: Any) -> None:
        """Push one inbound frame (dict → JSON, anything else as-is)."""
        raw = json.dumps(frame) if isinstance(frame, dict) else frame
        self.handlers.on_message(raw)

    def drop(self) -> None:
        self.handlers.on_close()

    def error(self, exc: Optional[BaseException] = None) -> None:
        self.handlers.on_error(exc or ConnectionResetError("reset by peer"))

    def sent_of(self, **match) -> list[dict[str, Any]]:
        return [f for f in self.sent if all(f.get(k) == v for k, v in match.items())]


class FakeTransport(Transport):
    """Transport whose opens succeed or fail on demand."""

    def __init__(self, responder: Optional[Callable[[dict], Optional[dict]]] = None):
        self.responder = responder
        self.opened_urls: list[str] = []
        self.connections: list[FakeConnection] = []
        self.fail_opens = 0  # Number of upcoming opens that fail
        self.fail_all_after: Optional[int] = None  # Fail every open once this many succeeded
        self.open_gate: Optional[asyncio.Event] = None

    @property
    def open_count(self) -> int:
        return len(self.opened_urls)

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]

    async def open(self, url: str, handlers: TransportHandlers) -> FakeConnection:
        self.opened_urls.append(url)
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise TransportOpenFailure("Connection refused - gateway unreachable")
        if self.fail_all_after is not None and len(self.connections) >= self.fail_all_after:
            raise TransportOpenFailure("Connection refused - gateway unreachable")
        connection = FakeConnection(self, handlers)
        self.connections.append(connection)
        return connection


def accept_handshake(frame: dict) -> Optional[dict]:
    """Responder that acknowledges keyed connect requests."""
    if frame.get("method") == "connect":
        return {"type": "res", "id": frame["id"], "ok": True, "payload": {"type": "hello-ok", "protocol": 3}}
    return None


async def settle(rounds: int = 20) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_client(transport: FakeTransport, protocol=None, **kwargs) -> BridgeClient:
    kwargs.setdefault("log_callback", lambda message, level: None)
    return BridgeClient(
        url_supplier=lambda: GATEWAY_URL,
        protocol=protocol or KeyedProtocol(id_start=1000),
        transport=transport,
        **kwargs,
    )


@pytest.fixture
def keyed_transport() -> FakeTransport:
    return FakeTransport(responder=accept_handshake)


@pytest.fixture
def single_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def keyed_client(keyed_transport, sleeper) -> BridgeClient:
    return make_client(keyed_transport, sleep=sleeper)


@pytest.fixture
def single_client(single_transport, sleeper) -> BridgeClient:
    return make_client(single_transport, protocol=SingleSlotProtocol(), sleep=sleeper)
