"""
Error handling service: turns terminal failures into user-facing notices.
"""

import uuid
from datetime import datetime
from typing import Optional, Any, Dict

from .logging_service import get_logger
from ..errors import (
    ConnectionLostError,
    NetworkError,
    ProtocolError,
    RemoteTimeoutError,
    StorageFullError,
    TransientError,
    ValidationRejectedError,
)

logger = get_logger(__name__)


class ErrorHandler:
    """Centralized error handling service."""

    def __init__(self):
        self.logger = logger

    def handle_exception(
        self,
        exception: Exception,
        context: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Handle exception with logging and user-friendly error message."""
        error_id = self._generate_error_id()

        self.logger.error(
            "Exception occurred",
            error_id=error_id,
            error_type=type(exception).__name__,
            context=context or "unknown context",
            **(additional_data or {}),
        )
        return {
            "success": False,
            "error_id": error_id,
            "message": self._get_user_friendly_message(exception),
            "type": type(exception).__name__,
            "timestamp": datetime.now().isoformat(),
        }

    def handle_dead_letter(self, op_id: int, kind: str, error: str) -> Dict[str, Any]:
        """Build the notice shown for an operation the server will not accept."""
        error_id = self._generate_error_id()

        self.logger.warning(
            "Operation dead-lettered",
            error_id=error_id,
            op_id=op_id,
            kind=kind,
            error=error,
        )
        return {
            "success": False,
            "error_id": error_id,
            "op_id": op_id,
            "kind": kind,
            "message": f"A {kind.replace('-', ' ')} change was rejected and will not sync: {error}",
            "type": "DeadLetter",
            "timestamp": datetime.now().isoformat(),
        }

    def _generate_error_id(self) -> str:
        """Generate unique error ID for tracking."""
        return str(uuid.uuid4())[:8]

    def _get_user_friendly_message(self, exception: Exception) -> str:
        """Convert exception to user-friendly message."""
        exception_messages = {
            StorageFullError: "Local storage is full. Changes cannot be saved until pending changes sync.",
            ValidationRejectedError: "The server rejected this change. Please review it and try again.",
            RemoteTimeoutError: "The server took too long to respond. Changes will sync automatically.",
            NetworkError: "You appear to be offline. Changes will sync when the connection returns.",
            TransientError: "A temporary problem occurred. Changes will sync automatically.",
            ProtocolError: "Received an unreadable update from the server.",
            ConnectionLostError: "Live updates are disconnected. Reconnecting...",
        }

        for exception_type, message in exception_messages.items():
            if isinstance(exception, exception_type):
                return message
        return "An unexpected error occurred. Please try again or contact support."
