"""
Reconciler: keeps the displayed dashboard consistent with the remote service.

Push notifications invalidate the affected cache keys and schedule a refresh;
reconnecting after an outage drops the whole cache and refreshes every tracked key
once, since notifications sent while the channel was down are gone.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from .cache_store import CacheStore
from .error_handler import ErrorHandler
from .logging_service import get_logger
from .overlay import Action, BaseReplaced, DeadLettered, Enqueued, Evicted, OverlayState, Requeued, reduce
from .pubsub import Handler, Subscription, Topic
from .realtime_channel import RealtimeChannel
from .sync_engine import SyncEngine
from ..models.connection import ConnectionState, ConnectionStatus
from ..models.notification import NotificationEvent, NotificationKind
from ..models.operation import PendingOperation
from ..models.records import DashboardSummary
from ..utils.clock import Clock, SystemClock

logger = get_logger(__name__)

SUMMARY_KEY = "dashboard-summary"
VEHICLE_TRANSACTIONS_KEY = "vehicle-transactions"
SCRAP_TRANSACTIONS_KEY = "scrap-transactions"
BILLS_KEY = "bills"

_TRANSACTION_KINDS = (NotificationKind.CREATED, NotificationKind.UPDATED, NotificationKind.DELETED)


def affected_keys(event: NotificationEvent) -> List[str]:
    """Cache keys whose remote value may have changed because of `event`."""
    if event.kind in _TRANSACTION_KINDS:
        entity = event.entity_type
        if entity == "vehicle":
            return [SUMMARY_KEY, VEHICLE_TRANSACTIONS_KEY]
        if entity == "scrap":
            return [SUMMARY_KEY, SCRAP_TRANSACTIONS_KEY]
        return [SUMMARY_KEY, VEHICLE_TRANSACTIONS_KEY, SCRAP_TRANSACTIONS_KEY]
    if event.kind == NotificationKind.BILL_GENERATED:
        return [SUMMARY_KEY, BILLS_KEY]
    return [SUMMARY_KEY]


@dataclass(frozen=True)
class DashboardView:
    """Everything the UI needs to render the dashboard header."""
    connection: ConnectionState
    pending_count: int
    summary: DashboardSummary
    dead_letters: Tuple[Dict[str, Any], ...]
    overlay: OverlayState

    @property
    def pending_message(self) -> Optional[str]:
        if not self.pending_count:
            return None
        noun = "change" if self.pending_count == 1 else "changes"
        return f"{self.pending_count} {noun} waiting to sync"


class Reconciler:
    """Wires the realtime channel, cache store and sync engine together."""

    def __init__(
        self,
        cache: CacheStore,
        channel: RealtimeChannel,
        engine: SyncEngine,
        remote: Any,
        clock: Optional[Clock] = None,
        refresh_debounce: float = 0.1,
        tracked_keys: Iterable[str] = (SUMMARY_KEY,),
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.cache = cache
        self.channel = channel
        self.engine = engine
        self.remote = remote
        self.clock = clock or SystemClock()
        self.refresh_debounce = refresh_debounce
        self.tracked_keys = list(tracked_keys)
        self.error_handler = error_handler or ErrorHandler()

        self.views: Topic[DashboardView] = Topic("dashboard-view")
        self.refresh_counts: Counter = Counter()
        self.full_refreshes = 0

        self._overlay = OverlayState()
        self._base_stored_at: Optional[float] = None
        self._notices: Dict[int, Dict[str, Any]] = {}
        self._last_status = channel.state.status
        self._scheduled: Dict[str, asyncio.Task] = {}
        self._reading: Set[str] = set()
        self._trailing: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._subscriptions: List[Subscription] = []

    @property
    def overlay(self) -> OverlayState:
        return self._overlay

    async def start(self) -> None:
        """Seed the overlay from the queue and start listening."""
        await self.seed(await self.engine.queue.all())
        self._subscriptions = [
            self.channel.on_event(self.on_notification),
            self.channel.on_state_change(self.on_state_change),
            self.engine.subscribe(self.on_overlay_action),
        ]

    async def seed(self, operations: Iterable[PendingOperation]) -> None:
        """Rebuild overlays for operations that survived a restart."""
        for operation in operations:
            self._overlay = reduce(self._overlay, Enqueued(operation))
            if operation.terminal:
                self._record_dead_letter(operation.id, operation.last_error or "rejected")

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._scheduled.clear()
        self._reading.clear()
        self._trailing.clear()

    def subscribe(self, handler: Handler) -> Subscription:
        """Receive a DashboardView after every change to displayed state."""
        return self.views.subscribe(handler)

    # Notifications

    async def on_notification(self, event: NotificationEvent) -> None:
        keys = affected_keys(event)
        logger.debug("Notification received", kind=event.kind.value, keys=keys)
        for key in keys:
            was_cached = await self.cache.invalidate(key)
            if was_cached or key in self.tracked_keys:
                self.schedule_refresh(key)

    def schedule_refresh(self, key: str) -> None:
        """Refresh `key` after the debounce window, coalescing repeated requests.

        Requests inside the window join the pending refresh. A request that arrives
        while the read is in flight queues exactly one trailing refresh.
        """
        if key in self._scheduled:
            if key in self._reading:
                self._trailing.add(key)
            return
        task = self._spawn(self._debounced_refresh(key))
        self._scheduled[key] = task

    async def _debounced_refresh(self, key: str) -> None:
        try:
            await self.clock.sleep(self.refresh_debounce)
            while True:
                self._reading.add(key)
                self._trailing.discard(key)
                await self._refresh_key(key)
                self._reading.discard(key)
                if key not in self._trailing:
                    break
        finally:
            self._reading.discard(key)
            self._trailing.discard(key)
            self._scheduled.pop(key, None)
        await self._publish_view()

    async def _refresh_key(self, key: str) -> None:
        try:
            await self.cache.refresh(key, self.remote.loader(key))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Refresh failed", key=key, error=str(e), error_type=type(e).__name__)
            return
        self.refresh_counts[key] += 1
        if key == SUMMARY_KEY:
            self._sync_base()

    # Connectivity

    async def on_state_change(self, state: ConnectionState) -> None:
        previous, self._last_status = self._last_status, state.status
        if state.status == ConnectionStatus.CONNECTED and previous != ConnectionStatus.CONNECTED:
            self._spawn(self.reconcile())
        elif state.status != previous:
            await self._publish_view()

    async def reconcile(self) -> None:
        """Full refresh after (re)connecting, then let queued changes sync."""
        logger.info("Reconciling after reconnect", tracked_keys=self.tracked_keys)
        await self.cache.invalidate_all()
        await asyncio.gather(*(self._refresh_key(key) for key in self.tracked_keys))
        self.full_refreshes += 1
        self.engine.trigger()
        await self._publish_view()

    # Local changes

    async def on_overlay_action(self, action: Action) -> None:
        self._overlay = reduce(self._overlay, action)
        if isinstance(action, DeadLettered):
            self._record_dead_letter(action.op_id, action.error)
        elif isinstance(action, (Evicted, Requeued)):
            self._notices.pop(action.op_id, None)
        await self._publish_view()

    def _record_dead_letter(self, op_id: int, error: str) -> None:
        entry = self._overlay.entry(op_id)
        kind = entry.kind.value if entry is not None else "unknown"
        self._notices[op_id] = self.error_handler.handle_dead_letter(op_id, kind, error)

    async def resolve_dead_letter(self, op_id: int, payload: Optional[Dict[str, Any]] = None) -> PendingOperation:
        """Send a rejected change again, optionally corrected."""
        return await self.engine.requeue(op_id, payload)

    async def discard_dead_letter(self, op_id: int) -> PendingOperation:
        """Give up on a rejected change and unblock its kind."""
        return await self.engine.evict(op_id)

    # Reads

    async def read(self, key: str) -> Any:
        """Read-through for the UI: fresh or stale values return immediately."""
        value = await self.cache.read_through(key, self.remote.loader(key))
        if key == SUMMARY_KEY:
            self._sync_base()
        return value

    def _sync_base(self) -> None:
        """Adopt a newer stored summary as the confirmed base."""
        entry = self.cache.memory_cache.get(SUMMARY_KEY)
        if entry is None:
            return
        if self._base_stored_at is not None and entry.stored_at <= self._base_stored_at:
            return
        try:
            summary = DashboardSummary.model_validate(entry.value)
        except ValidationError as e:
            logger.warning("Unreadable dashboard summary", error_count=e.error_count())
            return
        self._base_stored_at = entry.stored_at
        self._overlay = reduce(self._overlay, BaseReplaced(summary))

    async def view(self) -> DashboardView:
        self._sync_base()
        return DashboardView(
            connection=self.channel.state,
            pending_count=await self.engine.queue.pending_count(),
            summary=self._overlay.summary,
            dead_letters=tuple(self._notices[op_id] for op_id in sorted(self._notices)),
            overlay=self._overlay,
        )

    async def _publish_view(self) -> None:
        if len(self.views):
            await self.views.publish(await self.view())

    async def wait_idle(self) -> None:
        """Wait until scheduled refreshes and reconciliations have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
