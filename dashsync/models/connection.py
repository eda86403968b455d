"""
Realtime connection state machine.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from ..errors import InvalidTransitionError


class ConnectionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# The only legal edges
ALLOWED_TRANSITIONS = {
    ConnectionStatus.DISCONNECTED: ConnectionStatus.CONNECTING,
    ConnectionStatus.CONNECTING: ConnectionStatus.CONNECTED,
    ConnectionStatus.CONNECTED: ConnectionStatus.DISCONNECTED,
}


@dataclass(frozen=True)
class ConnectionState:
    """Immutable snapshot of the realtime connection."""
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    retry_count: int = 0
    last_error: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def transition_to(self, status: ConnectionStatus) -> 'ConnectionState':
        """Return the state after moving to `status`.

        Raises:
            InvalidTransitionError: if the edge is not part of the state machine
        """
        if ALLOWED_TRANSITIONS[self.status] != status:
            raise InvalidTransitionError(
                f"Illegal connection transition {self.status.value} -> {status.value}"
            )
        if status == ConnectionStatus.CONNECTED:
            return replace(self, status=status, retry_count=0, last_error=None)
        return replace(self, status=status)

    def with_failure(self, error: str) -> 'ConnectionState':
        """Record a failed handshake while still connecting."""
        return replace(self, retry_count=self.retry_count + 1, last_error=error)
