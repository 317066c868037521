"""
Tests for the BridgeClient connection state machine.

Covers connect/handshake, connectivity notifications, connection loss,
backoff-scheduled reconnects and explicit disconnects. Transports are faked
and the backoff sleep is recorded instead of awaited, so nothing here waits
on real time except the short handshake timeout test.
"""

import asyncio

import pytest

from clawbridge.bridge import MAX_RECONNECT_ATTEMPTS
from clawbridge.protocol import SingleSlotProtocol
from clawbridge.session import ConnectionState

from conftest import GATEWAY_URL, FakeTransport, accept_handshake, make_client, settle


def record_connectivity(client) -> list[bool]:
    events: list[bool] = []
    client.connectivity.subscribe(events.append)
    return events


class TestConnect:
    """Establishing a connection."""

    @pytest.mark.asyncio
    async def test_connect_performs_handshake(self, keyed_client, keyed_transport):
        """Keyed protocol sends a connect request and waits for the ACK."""
        assert await keyed_client.connect() is True

        assert keyed_client.is_connected
        assert keyed_client.state is ConnectionState.CONNECTED
        assert keyed_transport.opened_urls == [GATEWAY_URL]

        handshake = keyed_transport.last.sent_of(method="connect")
        assert len(handshake) == 1
        params = handshake[0]["params"]
        assert handshake[0]["type"] == "req"
        assert params["minProtocol"] == 3
        assert params["maxProtocol"] == 3
        assert params["role"] == "node"
        assert params["scopes"] == ["node.read", "node.write"]

        await keyed_client.disconnect()

    @pytest.mark.asyncio
    async def test_single_slot_protocol_skips_handshake(self, single_client, single_transport):
        assert await single_client.connect() is True
        assert single_transport.last.sent == []
        await single_client.disconnect()

    @pytest.mark.asyncio
    async def test_connect_is_noop_when_connected(self, keyed_client, keyed_transport):
        await keyed_client.connect()
        assert await keyed_client.connect() is True
        assert keyed_transport.open_count == 1
        await keyed_client.disconnect()

    @pytest.mark.asyncio
    async def test_connect_while_connecting_returns_current_state(self, keyed_client, keyed_transport):
        """A second connect() during an in-flight attempt does not open again."""
        keyed_transport.open_gate = asyncio.Event()
        first = asyncio.create_task(keyed_client.connect())
        await settle()

        assert keyed_client.state is ConnectionState.CONNECTING
        assert await keyed_client.connect() is False
        assert keyed_transport.open_count == 1

        keyed_transport.open_gate.set()
        assert await first is True
        await keyed_client.disconnect()

    @pytest.mark.asyncio
    async def test_open_failure_returns_false_without_reconnect(self, keyed_client, keyed_transport, sleeper):
        """An initial failed connect never schedules an automatic retry."""
        keyed_transport.fail_opens = 1

        assert await keyed_client.connect() is False
        await settle()

        assert keyed_client.state is ConnectionState.DISCONNECTED
        assert keyed_client._reconnect_task is None
        assert sleeper.delays == []
        assert keyed_transport.open_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_during_open_returns_to_disconnected(self, keyed_client, keyed_transport):
        keyed_transport.open_gate = asyncio.Event()
        attempt = asyncio.create_task(keyed_client.connect())
        await settle()

        attempt.cancel()
        with pytest.raises(asyncio.CancelledError):
            await attempt

        assert keyed_client.state is ConnectionState.DISCONNECTED
        keyed_transport.open_gate.set()
        assert await keyed_client.connect() is True
        assert keyed_transport.open_count == 2
        await keyed_client.disconnect()

    @pytest.mark.asyncio
    async def test_cancelled_during_handshake_returns_to_disconnected(self):
        transport = FakeTransport()
        client = make_client(transport, handshake_timeout=5.0)
        attempt = asyncio.create_task(client.connect())
        await settle()
        assert client.state is ConnectionState.CONNECTING

        attempt.cancel()
        with pytest.raises(asyncio.CancelledError):
            await attempt
        await settle()

        assert client.state is ConnectionState.DISCONNECTED
        assert transport.last.closed

        transport.responder = accept_handshake
        assert await client.connect() is True
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_url_supplier_called_once_per_attempt(self, keyed_transport):
        calls = []

        def supplier():
            calls.append(1)
            return GATEWAY_URL

        client = make_client(keyed_transport)
        client.url_supplier = supplier
        await client.connect()
        await client.disconnect()
        await client.connect()
        await client.disconnect()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_url_supplier_error_fails_connect(self, keyed_transport):
        def supplier():
            raise ValueError("Unknown gateway mode 'staging'")

        client = make_client(keyed_transport)
        client.url_supplier = supplier

        assert await client.connect() is False
        assert keyed_transport.open_count == 0


class TestHandshake:
    """Gateway acceptance or rejection of the connect request."""

    @pytest.mark.asyncio
    async def test_rejected_handshake_fails_connect(self):
        def reject(frame):
            if frame.get("method") == "connect":
                return {"type": "res", "id": frame["id"], "ok": False, "error": {"message": "bad token"}}
            return None

        transport = FakeTransport(responder=reject)
        client = make_client(transport)
        events = record_connectivity(client)

        assert await client.connect() is False
        assert client.state is ConnectionState.DISCONNECTED
        assert transport.last.closed
        assert events == []
        assert client._reconnect_task is None

    @pytest.mark.asyncio
    async def test_ack_without_id_is_accepted(self):
        """Some gateways answer the connect request with an id-less res."""
        def ack_without_id(frame):
            if frame.get("method") == "connect":
                return {"type": "res", "ok": True, "payload": {}}
            return None

        client = make_client(FakeTransport(responder=ack_without_id))
        assert await client.connect() is True
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_missing_ack_times_out(self):
        transport = FakeTransport()
        client = make_client(transport, handshake_timeout=0.05)

        assert await client.connect() is False
        assert client.state is ConnectionState.DISCONNECTED
        assert transport.last.closed

    @pytest.mark.asyncio
    async def test_close_during_handshake_fails_connect(self):
        transport = FakeTransport()
        client = make_client(transport, handshake_timeout=5.0)

        attempt = asyncio.create_task(client.connect())
        await settle()
        transport.last.drop()

        assert await attempt is False
        assert client.state is ConnectionState.DISCONNECTED
        assert client._reconnect_task is None

    @pytest.mark.asyncio
    async def test_close_right_after_ack_fails_connect(self):
        """A close that lands before connect() resumes is not lost."""
        transport = FakeTransport()
        client = make_client(transport, handshake_timeout=5.0)
        events = record_connectivity(client)

        def ack_then_close(frame):
            connection = transport.last
            connection.deliver(accept_handshake(frame))
            connection.drop()

        def responder(frame):
            if frame.get("method") == "connect":
                asyncio.get_running_loop().call_soon(ack_then_close, frame)
            return None

        transport.responder = responder

        assert await client.connect() is False
        await settle()

        assert not client.is_connected
        assert client.state is ConnectionState.DISCONNECTED
        assert transport.last.closed
        assert events == []

        transport.responder = accept_handshake
        assert await client.connect() is True
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_late_handshake_failure_forces_disconnect(self, keyed_client, keyed_transport):
        """A failure ACK while connected drops the connection."""
        await keyed_client.connect()
        keyed_transport.fail_all_after = 1

        keyed_transport.last.deliver({"type": "res", "ok": False, "error": "session revoked"})

        assert keyed_client.state is ConnectionState.DISCONNECTED
        assert keyed_client._reconnect_task is not None
        await keyed_client.disconnect()


class TestConnectivitySignal:
    """Connectivity notifications follow real state changes only."""

    @pytest.mark.asyncio
    async def test_transitions_are_deduplicated(self, keyed_client):
        events = record_connectivity(keyed_client)

        await keyed_client.connect()
        await keyed_client.connect()
        await keyed_client.disconnect()
        await keyed_client.disconnect()
        await keyed_client.connect()

        assert events == [True, False, True]
        await keyed_client.disconnect()

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_no_replay(self, keyed_client):
        await keyed_client.connect()
        events = record_connectivity(keyed_client)
        await settle()

        assert events == []
        await keyed_client.disconnect()
        assert events == [False]

    @pytest.mark.asyncio
    async def test_connection_loss_publishes_false(self, keyed_client, keyed_transport):
        events = record_connectivity(keyed_client)
        await keyed_client.connect()
        keyed_transport.fail_all_after = 1

        keyed_transport.last.drop()

        assert events == [True, False]
        await keyed_client.disconnect()


class TestConnectionLoss:
    """Transport close/error while connected."""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, keyed_client, keyed_transport):
        events = record_connectivity(keyed_client)
        await keyed_client.connect()
        keyed_transport.fail_all_after = 1
        connection = keyed_transport.last

        connection.drop()
        connection.drop()
        connection.error()

        assert events == [True, False]
        await keyed_client.disconnect()

    @pytest.mark.asyncio
    async def test_transport_error_disconnects(self, keyed_client, keyed_transport):
        await keyed_client.connect()
        keyed_transport.fail_all_after = 1

        keyed_transport.last.error(RuntimeError("boom"))

        assert keyed_client.state is ConnectionState.DISCONNECTED
        await keyed_client.disconnect()

    @pytest.mark.asyncio
    async def test_stale_connection_events_are_ignored(self, keyed_client, keyed_transport):
        """Events from a replaced connection cannot touch the new one."""
        await keyed_client.connect()
        old = keyed_transport.last
        await keyed_client.disconnect()
        await keyed_client.connect()

        old.drop()
        old.error()
        old.deliver({"type": "res", "ok": False, "error": "stale"})

        assert keyed_client.is_connected
        assert keyed_transport.open_count == 2
        await keyed_client.disconnect()


class TestReconnect:
    """Backoff-scheduled reconnects after an established connection drops."""

    @pytest.mark.asyncio
    async def test_backoff_is_1_2_4_then_stops(self, keyed_client, keyed_transport, sleeper):
        await keyed_client.connect()
        keyed_transport.fail_all_after = 1

        keyed_transport.last.drop()
        await keyed_client._reconnect_task
        await settle()

        assert sleeper.delays == [1, 2, 4]
        assert keyed_transport.open_count == 1 + MAX_RECONNECT_ATTEMPTS
        assert keyed_client.state is ConnectionState.DISCONNECTED
        assert keyed_client.reconnect_attempts == MAX_RECONNECT_ATTEMPTS

    @pytest.mark.asyncio
    async def test_successful_reconnect_resets_attempts(self, keyed_client, keyed_transport, sleeper):
        events = record_connectivity(keyed_client)
        await keyed_client.connect()

        keyed_transport.last.drop()
        await keyed_client._reconnect_task

        assert keyed_client.is_connected
        assert keyed_client.reconnect_attempts == 0
        assert sleeper.delays == [1]
        assert events == [True, False, True]

        # A second drop starts a fresh 1s, 2s, 4s cycle
        keyed_transport.last.drop()
        await keyed_client._reconnect_task
        assert sleeper.delays == [1, 1]
        await keyed_client.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_recovers_after_failures(self, keyed_client, keyed_transport, sleeper):
        await keyed_client.connect()
        keyed_transport.fail_opens = 2

        keyed_transport.last.drop()
        await keyed_client._reconnect_task

        assert sleeper.delays == [1, 2, 4]
        assert keyed_client.is_connected
        assert keyed_client.reconnect_attempts == 0
        await keyed_client.disconnect()

    @pytest.mark.asyncio
    async def test_explicit_connect_after_exhaustion(self, keyed_client, keyed_transport):
        await keyed_client.connect()
        keyed_transport.fail_all_after = 1
        keyed_transport.last.drop()
        await keyed_client._reconnect_task

        keyed_transport.fail_all_after = None
        assert await keyed_client.connect() is True
        assert keyed_client.reconnect_attempts == 0
        await keyed_client.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_scheduled_reconnect(self, keyed_transport):
        """No backoff timer fires after disconnect() and a fresh connect."""
        delays = []
        gate = asyncio.Event()

        async def blocked_sleep(delay):
            delays.append(delay)
            await gate.wait()

        client = make_client(keyed_transport, sleep=blocked_sleep)
        await client.connect()
        keyed_transport.last.drop()
        await settle()
        assert delays == [1]

        await client.disconnect()
        assert client.reconnect_attempts == 0

        assert await client.connect() is True
        gate.set()
        await settle()

        assert client.is_connected
        assert keyed_transport.open_count == 2
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_explicit_connect_during_backoff_restarts_cycle(self, keyed_transport):
        """A drop after an explicit reconnect starts again at 1s."""
        delays = []
        gate = asyncio.Event()

        async def blocked_sleep(delay):
            delays.append(delay)
            await gate.wait()

        client = make_client(keyed_transport, sleep=blocked_sleep)
        await client.connect()
        keyed_transport.last.drop()
        await settle()
        stale = client._reconnect_task

        assert await client.connect() is True
        await settle()
        assert stale.cancelled()

        keyed_transport.last.drop()
        await settle()

        assert delays == [1, 1]
        assert client._reconnect_task is not stale
        await client.disconnect()


class TestDisconnect:
    """Explicit disconnect in every state."""

    @pytest.mark.asyncio
    async def test_disconnect_closes_transport(self, keyed_client, keyed_transport):
        await keyed_client.connect()
        connection = keyed_transport.last

        await keyed_client.disconnect()

        assert connection.closed
        assert keyed_client.state is ConnectionState.DISCONNECTED
        assert keyed_client._reconnect_task is None

    @pytest.mark.asyncio
    async def test_disconnect_when_never_connected(self, keyed_client):
        events = record_connectivity(keyed_client)
        await keyed_client.disconnect()
        assert keyed_client.state is ConnectionState.DISCONNECTED
        assert events == []

    @pytest.mark.asyncio
    async def test_disconnect_while_connecting(self, keyed_client, keyed_transport):
        keyed_transport.open_gate = asyncio.Event()
        attempt = asyncio.create_task(keyed_client.connect())
        await settle()

        await keyed_client.disconnect()
        keyed_transport.open_gate.set()

        assert await attempt is False
        assert keyed_client.state is ConnectionState.DISCONNECTED
        assert keyed_transport.last.closed

    @pytest.mark.asyncio
    async def test_disconnect_during_handshake(self):
        transport = FakeTransport()
        client = make_client(transport, handshake_timeout=5.0, protocol=None)
        attempt = asyncio.create_task(client.connect())
        await settle()

        await client.disconnect()

        assert await attempt is False
        assert client.state is ConnectionState.DISCONNECTED
        assert transport.last.closed

    @pytest.mark.asyncio
    async def test_single_slot_disconnect(self, single_client, single_transport):
        await single_client.connect()
        await single_client.disconnect()
        assert single_transport.last.closed
        assert isinstance(single_client.protocol, SingleSlotProtocol)
