"""
Optimistic display state.

The dashboard shows the last confirmed summary with every still-pending local change
folded on top. State changes only through reduce(), which never mutates its input.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple, Union

from ..models.operation import OperationAction, OperationKind, PendingOperation
from ..models.records import CommittedRecord, DashboardSummary


@dataclass(frozen=True)
class OverlayEntry:
    op_id: int
    kind: OperationKind
    payload: Dict[str, Any]
    status: str = "pending"
    error: Optional[str] = None
    record: Optional[CommittedRecord] = None

    @classmethod
    def from_operation(cls, operation: PendingOperation) -> 'OverlayEntry':
        return cls(
            op_id=operation.id,
            kind=operation.kind,
            payload=dict(operation.payload),
            status="dead-letter" if operation.terminal else "pending",
            error=operation.last_error if operation.terminal else None,
        )


# Actions

@dataclass(frozen=True)
class Enqueued:
    operation: PendingOperation


@dataclass(frozen=True)
class Committed:
    op_id: int
    record: CommittedRecord


@dataclass(frozen=True)
class DeadLettered:
    op_id: int
    error: str


@dataclass(frozen=True)
class Evicted:
    op_id: int


@dataclass(frozen=True)
class Requeued:
    op_id: int
    payload: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class BaseReplaced:
    summary: DashboardSummary


Action = Union[Enqueued, Committed, DeadLettered, Evicted, Requeued, BaseReplaced]


@dataclass(frozen=True)
class OverlayState:
    """Confirmed base plus ordered pending overlays."""
    base: DashboardSummary = field(default_factory=DashboardSummary)
    # Ordered by op id; committed entries stay until a fresh base reflects them
    pending: Tuple[OverlayEntry, ...] = ()

    def entry(self, op_id: int) -> Optional[OverlayEntry]:
        for item in self.pending:
            if item.op_id == op_id:
                return item
        return None

    def committed_record(self, op_id: int) -> Optional[CommittedRecord]:
        item = self.entry(op_id)
        return item.record if item is not None else None

    @property
    def dead_letters(self) -> Tuple[OverlayEntry, ...]:
        return tuple(item for item in self.pending if item.status == "dead-letter")

    @property
    def summary(self) -> DashboardSummary:
        """Base summary with unconfirmed and just-committed creates applied."""
        return project(self)


def _replace_entry(state: OverlayState, op_id: int, **changes) -> OverlayState:
    pending = tuple(
        replace(item, **changes) if item.op_id == op_id else item
        for item in state.pending
    )
    return replace(state, pending=pending)


def reduce(state: OverlayState, action: Action) -> OverlayState:
    """Return the state after applying one action."""
    if isinstance(action, Enqueued):
        if state.entry(action.operation.id) is not None:
            return state
        entry = OverlayEntry.from_operation(action.operation)
        return replace(state, pending=state.pending + (entry,))

    if isinstance(action, Committed):
        return _replace_entry(state, action.op_id, status="committed", error=None, record=action.record)

    if isinstance(action, DeadLettered):
        return _replace_entry(state, action.op_id, status="dead-letter", error=action.error)

    if isinstance(action, Evicted):
        return replace(state, pending=tuple(item for item in state.pending if item.op_id != action.op_id))

    if isinstance(action, Requeued):
        changes = {"status": "pending", "error": None}
        if action.payload is not None:
            changes["payload"] = dict(action.payload)
        return _replace_entry(state, action.op_id, **changes)

    if isinstance(action, BaseReplaced):
        # A fresh base already includes everything committed so far
        pending = tuple(item for item in state.pending if item.status != "committed")
        return replace(state, base=action.summary, pending=pending)

    raise TypeError(f"Unknown overlay action: {type(action).__name__}")


def _amount(payload: Dict[str, Any], field_name: str) -> float:
    try:
        return float(payload.get(field_name) or 0)
    except (TypeError, ValueError):
        return 0.0


def entry_deltas(entry: OverlayEntry) -> Tuple[float, float, int]:
    """(vehicle, scrap, bills) contribution of one pending change."""
    action = entry.payload.get("action", OperationAction.CREATE.value)
    if action != OperationAction.CREATE.value:
        return 0.0, 0.0, 0

    transaction_type = str(entry.payload.get("transactionType", "")).upper()
    if entry.kind == OperationKind.VEHICLE_TRANSACTION:
        amount = _amount(entry.payload, "amount")
        if transaction_type == "INCOME":
            return amount, 0.0, 0
        if transaction_type == "EXPENSE":
            return -amount, 0.0, 0
    elif entry.kind == OperationKind.SCRAP_TRANSACTION:
        amount = _amount(entry.payload, "totalAmount")
        if transaction_type == "SALE":
            return 0.0, amount, 0
        if transaction_type == "PURCHASE":
            return 0.0, -amount, 0
    elif entry.kind == OperationKind.BILL:
        return 0.0, 0.0, 1
    return 0.0, 0.0, 0


def project(state: OverlayState) -> DashboardSummary:
    vehicle = scrap = 0.0
    bills = 0
    for entry in state.pending:
        if entry.status == "dead-letter":
            continue
        v, s, b = entry_deltas(entry)
        vehicle += v
        scrap += s
        bills += b
    return state.base.with_deltas(vehicle=vehicle, scrap=scrap, bills=bills)
