"""
Sync engine: drains the durable queue against the remote commit API.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .backoff import ExponentialBackoff
from .durable_queue import DurableQueue
from .logging_service import get_logger
from .overlay import Action, Committed, DeadLettered, Enqueued, Evicted, Requeued
from .pubsub import Handler, Subscription, Topic
from ..errors import PermanentError, TransientError
from ..models.operation import OperationKind, PendingOperation
from ..models.records import CommittedRecord
from ..utils.clock import Clock, SystemClock

logger = get_logger(__name__)


@dataclass
class DrainReport:
    """Outcome of one drain pass."""
    committed: List[CommittedRecord] = field(default_factory=list)
    dead_lettered: List[int] = field(default_factory=list)
    blocked: int = 0
    halted: bool = False
    retry_delay: Optional[float] = None

    @property
    def committed_count(self) -> int:
        return len(self.committed)


class SyncEngine:
    """Pushes pending operations to the remote service in creation order.

    A transient failure halts the pass and schedules a retry after backoff. A
    permanent failure dead-letters the operation; later operations of the same kind
    wait behind it until it is evicted or requeued, other kinds keep flowing.

    `remote` is anything with ``async submit(kind, payload, idempotency_token)``
    returning a CommittedRecord, normally a RemoteApiClient.
    """

    def __init__(
        self,
        queue: DurableQueue,
        remote: Any,
        clock: Optional[Clock] = None,
        backoff: Optional[ExponentialBackoff] = None,
        batch_size: int = 50,
        drain_interval: float = 30.0,
        max_transient_attempts: Optional[int] = None,
    ):
        self.queue = queue
        self.remote = remote
        self.clock = clock or SystemClock()
        self.backoff = backoff or ExponentialBackoff()
        self.batch_size = batch_size
        self.drain_interval = drain_interval
        self.max_transient_attempts = max_transient_attempts

        self.overlay_events: Topic[Action] = Topic("overlay")
        self.last_report: Optional[DrainReport] = None

        self._drain_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    def subscribe(self, handler: Handler) -> Subscription:
        """Receive Enqueued, Committed, DeadLettered, Evicted and Requeued actions."""
        return self.overlay_events.subscribe(handler)

    async def submit(
        self,
        kind: OperationKind,
        payload: Dict[str, Any],
        idempotency_token: Optional[str] = None,
    ) -> PendingOperation:
        """Queue a local mutation and wake the drain loop."""
        operation = await self.queue.enqueue(kind, payload, idempotency_token)
        await self.overlay_events.publish(Enqueued(operation))
        self.trigger()
        return operation

    def trigger(self) -> None:
        """Ask the run loop for a drain pass as soon as possible."""
        self._wakeup.set()

    async def drain(self) -> DrainReport:
        """Run one drain pass; concurrent calls run one after another."""
        async with self._drain_lock:
            report = await self._drain()
        self.last_report = report
        return report

    async def _drain(self) -> DrainReport:
        report = DrainReport()
        blocked_kinds: Set[OperationKind] = set()
        after_id: Optional[int] = None

        while True:
            batch = await self.queue.peek_batch(self.batch_size, after_id)
            if not batch:
                break

            for operation in batch:
                after_id = operation.id
                if operation.kind in blocked_kinds:
                    report.blocked += 1
                    continue
                if operation.terminal:
                    blocked_kinds.add(operation.kind)
                    continue

                try:
                    record = await self.remote.submit(
                        operation.kind, operation.payload, operation.idempotency_token
                    )
                except TransientError as e:
                    attempts = operation.attempt_count + 1
                    if self.max_transient_attempts is not None and attempts >= self.max_transient_attempts:
                        await self._dead_letter(operation, f"Retry budget exhausted: {e}")
                        report.dead_lettered.append(operation.id)
                        blocked_kinds.add(operation.kind)
                        continue

                    await self.queue.mark_failed(operation.id, str(e), terminal=False)
                    report.halted = True
                    report.retry_delay = self.backoff.next_delay()
                    logger.warning(
                        "Transient commit failure",
                        op_id=operation.id,
                        kind=operation.kind.value,
                        attempt=attempts,
                        delay=round(report.retry_delay, 3),
                        error=str(e),
                    )
                    return report
                except PermanentError as e:
                    await self._dead_letter(operation, str(e))
                    report.dead_lettered.append(operation.id)
                    blocked_kinds.add(operation.kind)
                    continue

                await self.queue.mark_synced(operation.id)
                self.backoff.reset()
                report.committed.append(record)
                logger.info(
                    "Operation committed",
                    op_id=operation.id,
                    kind=operation.kind.value,
                    record_id=record.id,
                )
                await self.overlay_events.publish(Committed(operation.id, record))

            if len(batch) < self.batch_size:
                break

        if report.committed or report.dead_lettered:
            logger.info(
                "Drain pass finished",
                committed=report.committed_count,
                dead_lettered=len(report.dead_lettered),
                blocked=report.blocked,
            )
        return report

    async def _dead_letter(self, operation: PendingOperation, error: str) -> None:
        await self.queue.mark_failed(operation.id, error, terminal=True)
        logger.error(
            "Operation dead-lettered",
            op_id=operation.id,
            kind=operation.kind.value,
            error=error,
        )
        await self.overlay_events.publish(DeadLettered(operation.id, error))

    async def evict(self, op_id: int) -> PendingOperation:
        """Drop a dead letter so later operations of its kind can sync."""
        operation = await self.queue.evict(op_id)
        await self.overlay_events.publish(Evicted(op_id))
        self.trigger()
        return operation

    async def requeue(self, op_id: int, payload: Optional[Dict[str, Any]] = None) -> PendingOperation:
        """Retry a dead letter, optionally with a corrected payload."""
        operation = await self.queue.requeue(op_id, payload)
        await self.overlay_events.publish(Requeued(op_id, payload))
        self.trigger()
        return operation

    async def run(self) -> None:
        """Drain on trigger, on the periodic timer, and after backoff delays."""
        while not self._stopping:
            self._wakeup.clear()
            try:
                report = await self.drain()
                delay = report.retry_delay if report.halted else self.drain_interval
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = self.backoff.next_delay()
                logger.error("Drain pass failed", error=str(e), error_type=type(e).__name__, delay=round(delay, 3))

            await self._wait(delay)

    async def _wait(self, delay: float) -> None:
        timer = asyncio.ensure_future(self.clock.sleep(delay))
        wakeup = asyncio.ensure_future(self._wakeup.wait())
        try:
            await asyncio.wait({timer, wakeup}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (timer, wakeup):
                if not waiter.done():
                    waiter.cancel()
            await asyncio.gather(timer, wakeup, return_exceptions=True)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.ensure_future(self.run())
        return self._task

    async def stop(self) -> None:
        """Cancel the run loop; unacknowledged operations stay queued."""
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
