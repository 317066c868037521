"""Connection session tracking for the gateway bridge."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .transport import Connection


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


_ALLOWED_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED},
}


@dataclass
class Session:
    """The single logical connection owned by a BridgeClient.

    ``epoch`` increases on every connection attempt and on every explicit
    disconnect. Transport callbacks capture the epoch they were created for,
    so events from an older connection can be recognised and dropped.
    """

    state: ConnectionState = ConnectionState.DISCONNECTED
    reconnect_attempts: int = 0
    connection: Optional["Connection"] = None
    epoch: int = 0
    last_transition_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def transition(self, next_state: ConnectionState) -> None:
        """Move the session into a new state, validating allowed transitions."""
        if next_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(f"Invalid transition {self.state.value} → {next_state.value}")
        self.state = next_state
        self.last_transition_at = datetime.now(tz=timezone.utc)

    def begin_attempt(self) -> int:
        self.transition(ConnectionState.CONNECTING)
        self.epoch += 1
        return self.epoch

    def is_current(self, epoch: int) -> bool:
        return epoch == self.epoch

    def reset(self) -> Optional["Connection"]:
        """Force the session back to DISCONNECTED and hand back the old connection."""
        connection = self.connection
        self.connection = None
        self.epoch += 1
        if self.state is not ConnectionState.DISCONNECTED:
            self.transition(ConnectionState.DISCONNECTED)
        return connection

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED
