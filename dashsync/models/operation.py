"""
Pending operation domain model.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any
import uuid


class OperationKind(Enum):
    """Mutation families submitted by the dashboard."""
    VEHICLE = "vehicle"
    VEHICLE_TRANSACTION = "vehicle-transaction"
    SCRAP_TRANSACTION = "scrap-transaction"
    BILL = "bill"
    EXPENSE = "expense"


class OperationAction(Enum):
    """Action carried in an operation payload."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class PendingOperation:
    """A local mutation waiting for remote confirmation."""
    id: Optional[int]
    kind: OperationKind
    payload: Dict[str, Any]
    idempotency_token: str
    created_at: float
    attempt_count: int = 0
    last_error: Optional[str] = None
    terminal: bool = False

    @classmethod
    def create(
        cls,
        kind: OperationKind,
        payload: Dict[str, Any],
        created_at: float,
        idempotency_token: Optional[str] = None
    ) -> 'PendingOperation':
        """Create a new, not yet persisted operation."""
        return cls(
            id=None,
            kind=kind,
            payload=dict(payload),
            idempotency_token=idempotency_token or str(uuid.uuid4()),
            created_at=created_at,
        )

    @property
    def action(self) -> OperationAction:
        """Action requested by the payload; defaults to create."""
        try:
            return OperationAction(self.payload.get("action", OperationAction.CREATE.value))
        except ValueError:
            return OperationAction.CREATE

    def record_failure(self, error: str, terminal: bool) -> None:
        self.attempt_count += 1
        self.last_error = error
        self.terminal = terminal

    def clear_failure(self) -> None:
        """Return a dead-lettered operation to the active rotation."""
        self.terminal = False
        self.last_error = None
