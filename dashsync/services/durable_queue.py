"""
Durable local queue of mutations waiting for remote acknowledgment.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from .logging_service import get_logger
from ..errors import OperationNotFoundError, OperationNotTerminalError
from ..models.operation import PendingOperation, OperationKind
from ..repositories.operation_repository import OperationRepository
from ..utils.clock import Clock, SystemClock

logger = get_logger(__name__)


class DurableQueue:
    """Persistent FIFO of PendingOperations.

    Every mutation is committed to SQLite before the call returns, so after a crash
    peek_batch() yields exactly the operations that were never acknowledged.
    Operations on the same id are serialized; different ids proceed independently.
    """

    def __init__(self, repository: OperationRepository, clock: Optional[Clock] = None):
        self.repository = repository
        self.clock = clock or SystemClock()
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def enqueue(
        self,
        kind: OperationKind,
        payload: Dict[str, Any],
        idempotency_token: Optional[str] = None,
    ) -> PendingOperation:
        """Persist a new operation.

        Raises:
            StorageFullError: if the local store cannot take another operation
        """
        operation = PendingOperation.create(
            kind=kind,
            payload=payload,
            created_at=self.clock.now(),
            idempotency_token=idempotency_token,
        )
        operation = await asyncio.to_thread(self.repository.insert, operation)
        logger.info(
            "Operation enqueued",
            op_id=operation.id,
            kind=operation.kind.value,
            token=operation.idempotency_token,
        )
        return operation

    async def peek_batch(self, max_items: int, after_id: Optional[int] = None) -> List[PendingOperation]:
        """Unacknowledged operations in creation order, dead letters included."""
        return await asyncio.to_thread(self.repository.find_batch, max_items, after_id)

    async def get(self, op_id: int) -> Optional[PendingOperation]:
        return await asyncio.to_thread(self.repository.find_by_id, op_id)

    async def mark_synced(self, op_id: int) -> None:
        """Remove an operation the remote service acknowledged."""
        async with self._locks[op_id]:
            removed = await asyncio.to_thread(self.repository.delete, op_id)
        self._locks.pop(op_id, None)
        if removed:
            logger.debug("Operation synced", op_id=op_id)

    async def mark_failed(self, op_id: int, error: str, terminal: bool) -> PendingOperation:
        """Record a failed attempt.

        Raises:
            OperationNotFoundError: if the operation is no longer queued
        """
        async with self._locked(op_id):
            operation = await self._require(op_id)
            operation.record_failure(error, terminal)
            await asyncio.to_thread(self.repository.update, operation)

        log = logger.warning if terminal else logger.info
        log(
            "Operation attempt failed",
            op_id=op_id,
            kind=operation.kind.value,
            attempt_count=operation.attempt_count,
            terminal=terminal,
            error=error,
        )
        return operation

    async def dead_letters(self) -> List[PendingOperation]:
        return await asyncio.to_thread(self.repository.find_terminal)

    async def evict(self, op_id: int) -> PendingOperation:
        """Remove a dead-lettered operation once the caller has consumed it.

        Raises:
            OperationNotFoundError: if the operation is not queued
            OperationNotTerminalError: if the operation may still sync
        """
        async with self._locked(op_id):
            operation = await self._require(op_id)
            if not operation.terminal:
                raise OperationNotTerminalError(
                    f"Operation {op_id} is not dead-lettered and cannot be evicted"
                )
            await asyncio.to_thread(self.repository.delete, op_id)
        self._locks.pop(op_id, None)
        logger.info("Dead letter evicted", op_id=op_id, kind=operation.kind.value)
        return operation

    async def requeue(self, op_id: int, payload: Optional[Dict[str, Any]] = None) -> PendingOperation:
        """Put a dead-lettered operation back in rotation, optionally with a corrected payload."""
        async with self._locked(op_id):
            operation = await self._require(op_id)
            operation.clear_failure()
            if payload is not None:
                operation.payload = dict(payload)
            await asyncio.to_thread(self.repository.update, operation)
        logger.info("Operation requeued", op_id=op_id, kind=operation.kind.value)
        return operation

    async def pending_count(self) -> int:
        """Operations still expected to sync (dead letters excluded)."""
        return await asyncio.to_thread(self.repository.count_active)

    async def all(self) -> List[PendingOperation]:
        return await asyncio.to_thread(self.repository.find_all)

    @asynccontextmanager
    async def _locked(self, op_id: int) -> AsyncIterator[None]:
        """Hold the per-operation lock, forgetting it when the id turns out to be unknown."""
        try:
            async with self._locks[op_id]:
                yield
        except OperationNotFoundError:
            self._locks.pop(op_id, None)
            raise

    async def _require(self, op_id: int) -> PendingOperation:
        operation = await asyncio.to_thread(self.repository.find_by_id, op_id)
        if operation is None:
            raise OperationNotFoundError(f"No pending operation with id {op_id}")
        return operation
