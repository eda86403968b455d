"""
Error taxonomy for the sync engine, cache and realtime channel.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all dashsync errors."""
    pass


class StorageFullError(SyncError):
    """The persistent medium cannot accept more pending operations."""
    pass


class TransientError(SyncError):
    """A failure that is expected to go away on retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(TransientError):
    """Remote service unreachable or answered with a retryable status."""
    pass


class RemoteTimeoutError(TransientError):
    """Remote call did not complete within the configured timeout."""
    pass


class PermanentError(SyncError):
    """A failure that retrying will not fix."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details or {}


class ValidationRejectedError(PermanentError):
    """Remote service rejected the mutation on validation."""
    pass


class ProtocolError(SyncError):
    """Malformed message received on the realtime channel."""
    pass


class ConnectionLostError(SyncError):
    """The realtime transport closed or failed."""
    pass


class InvalidTransitionError(SyncError):
    """Illegal connection state transition."""
    pass


class OperationNotFoundError(SyncError):
    """No pending operation with the given id."""
    pass


class OperationNotTerminalError(SyncError):
    """Eviction was requested for an operation that is not dead-lettered."""
    pass
