"""
Pending Operation Repository
Persists mutations that the remote service has not acknowledged yet
"""

import json
from typing import Any, Dict, List, Optional

from .base import BaseRepository, DatabaseConnection
from ..errors import StorageFullError
from ..models.operation import PendingOperation, OperationKind


class OperationRepository(BaseRepository[PendingOperation]):
    """Repository for pending operations, ordered by their local id."""

    def __init__(self, db_connection: DatabaseConnection, max_pending: Optional[int] = None):
        super().__init__(db_connection)
        self.max_pending = max_pending

    def _get_table_name(self) -> str:
        return "pending_operations"

    def _model_to_dict(self, model: PendingOperation) -> Dict[str, Any]:
        """Convert model to dictionary for database storage"""
        return {
            "kind": model.kind.value,
            "payload": json.dumps(model.payload, sort_keys=True),
            "idempotency_token": model.idempotency_token,
            "created_at": model.created_at,
            "attempt_count": model.attempt_count,
            "last_error": model.last_error,
            "terminal": 1 if model.terminal else 0,
        }

    def _row_to_model(self, row: Dict[str, Any]) -> PendingOperation:
        """Convert database row to model"""
        return PendingOperation(
            id=row["id"],
            kind=OperationKind(row["kind"]),
            payload=json.loads(row["payload"]),
            idempotency_token=row["idempotency_token"],
            created_at=row["created_at"],
            attempt_count=row["attempt_count"],
            last_error=row.get("last_error"),
            terminal=bool(row["terminal"]),
        )

    def insert(self, operation: PendingOperation) -> PendingOperation:
        """Persist a new operation and assign its id.

        An operation whose idempotency token is already queued is not stored twice;
        the queued copy is returned instead.

        Raises:
            StorageFullError: if the disk is full or the pending limit is reached
        """
        data = self._model_to_dict(operation)
        with self.db.get_connection() as conn:
            existing = conn.execute(
                "SELECT * FROM pending_operations WHERE idempotency_token = ?",
                (operation.idempotency_token,),
            ).fetchone()
            if existing:
                return self._row_to_model(existing)

            if self.max_pending is not None:
                total = conn.execute(
                    "SELECT COUNT(*) AS total FROM pending_operations"
                ).fetchone()["total"]
                if total >= self.max_pending:
                    raise StorageFullError(
                        f"Pending operation limit of {self.max_pending} reached"
                    )

            columns = ", ".join(data.keys())
            placeholders = ", ".join("?" for _ in data)
            cursor = conn.execute(
                f"INSERT INTO pending_operations ({columns}) VALUES ({placeholders})",
                tuple(data.values()),
            )
            operation.id = cursor.lastrowid
        return operation

    def find_by_id(self, op_id: int) -> Optional[PendingOperation]:
        with self.db.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM pending_operations WHERE id = ?", (op_id,)
            ).fetchone()
        return self._row_to_model(row) if row else None

    def find_batch(self, limit: int, after_id: Optional[int] = None) -> List[PendingOperation]:
        """Get up to `limit` operations in creation order, starting after `after_id`."""
        return self.execute_query(
            "SELECT * FROM pending_operations WHERE id > ? ORDER BY id ASC LIMIT ?",
            (after_id or 0, limit),
        )

    def find_terminal(self) -> List[PendingOperation]:
        """Get dead-lettered operations in creation order."""
        return self.execute_query(
            "SELECT * FROM pending_operations WHERE terminal = 1 ORDER BY id ASC"
        )

    def find_all(self) -> List[PendingOperation]:
        return self.execute_query("SELECT * FROM pending_operations ORDER BY id ASC")

    def update(self, operation: PendingOperation) -> bool:
        """Write back attempt count, error, terminal flag and payload."""
        data = self._model_to_dict(operation)
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE pending_operations
                SET payload = ?, attempt_count = ?, last_error = ?, terminal = ?
                WHERE id = ?
                """,
                (
                    data["payload"],
                    data["attempt_count"],
                    data["last_error"],
                    data["terminal"],
                    operation.id,
                ),
            )
            return cursor.rowcount > 0

    def delete(self, op_id: int) -> bool:
        with self.db.get_connection() as conn:
            cursor = conn.execute("DELETE FROM pending_operations WHERE id = ?", (op_id,))
            return cursor.rowcount > 0

    def count_active(self) -> int:
        """Count operations that are still expected to sync."""
        with self.db.get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM pending_operations WHERE terminal = 0"
            ).fetchone()
        return row["total"]
