"""
Dependency Injection Container

This module wires the queue, cache, realtime channel, sync engine and reconciler
together. A Container is created at process start, passed by reference and shut
down on exit; nothing here is a module-level instance.
"""

import asyncio
from typing import Any, Dict, Optional

from .config.settings import Settings
from .repositories.base import DatabaseConnection
from .repositories.operation_repository import OperationRepository
from .repositories.cache_repository import CacheEntryRepository
from .services.backoff import ExponentialBackoff
from .services.cache_store import CacheStore
from .services.durable_queue import DurableQueue
from .services.error_handler import ErrorHandler
from .services.logging_service import get_logger
from .services.realtime_channel import AiohttpWebSocketTransport, RealtimeChannel, Transport
from .services.reconciler import Reconciler
from .services.remote_api import RemoteApiClient
from .services.sync_engine import SyncEngine
from .utils.clock import Clock, SystemClock

logger = get_logger(__name__)


class Container:
    """Dependency injection container for managing application services."""

    def __init__(self):
        self._singletons: Dict[str, Any] = {}
        self._settings: Optional[Settings] = None
        self._db_connection: Optional[DatabaseConnection] = None
        self._sweeper: Optional[asyncio.Task] = None
        self._started = False

    def configure(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        remote: Any = None,
        transport: Optional[Transport] = None,
    ) -> 'Container':
        """Build every component from settings.

        `remote` and `transport` replace the HTTP client and WebSocket transport,
        e.g. with in-process fakes.
        """
        self._settings = settings or Settings()
        self._singletons['clock'] = clock or SystemClock()
        self._db_connection = DatabaseConnection(
            self._settings.storage.path, timeout=self._settings.storage.connection_timeout
        )
        self._db_connection.init_schema()

        self._register_repositories()
        self._register_services(remote, transport)
        return self

    def get_settings(self) -> Settings:
        """Get application settings."""
        if not self._settings:
            self._settings = Settings()
        return self._settings

    def get_db_connection(self) -> DatabaseConnection:
        """Get database connection."""
        if not self._db_connection:
            raise RuntimeError("Container is not configured")
        return self._db_connection

    def _register_repositories(self) -> None:
        """Register repository instances."""
        db = self.get_db_connection()
        settings = self.get_settings()

        self._singletons['operation_repository'] = OperationRepository(
            db, max_pending=settings.storage.max_pending_operations
        )
        self._singletons['cache_repository'] = CacheEntryRepository(db)

    def _register_services(self, remote: Any, transport: Optional[Transport]) -> None:
        """Register service instances."""
        settings = self.get_settings()
        clock = self._singletons['clock']

        if remote is None:
            remote = RemoteApiClient(
                settings.remote.base_url,
                request_timeout=settings.remote.request_timeout,
                transient_statuses=settings.remote.transient_statuses,
            )
        if transport is None:
            transport = AiohttpWebSocketTransport(
                settings.realtime.url, heartbeat=settings.realtime.heartbeat_seconds
            )

        queue = DurableQueue(self._singletons['operation_repository'], clock)
        cache = CacheStore(
            self._singletons['cache_repository'],
            clock,
            default_ttl=settings.cache.default_ttl_seconds,
            max_stale=settings.cache.max_stale_seconds,
        )
        channel = RealtimeChannel(
            transport,
            topic=settings.realtime.topic,
            clock=clock,
            backoff=ExponentialBackoff(
                base=settings.realtime.backoff_base_seconds,
                factor=settings.realtime.backoff_factor,
                cap=settings.realtime.backoff_cap_seconds,
                jitter=settings.realtime.backoff_jitter,
            ),
            handshake_timeout=settings.realtime.handshake_timeout,
            malformed_threshold=settings.realtime.malformed_threshold,
            stable_after=settings.realtime.stable_after_seconds,
        )
        engine = SyncEngine(
            queue,
            remote,
            clock=clock,
            backoff=ExponentialBackoff(
                base=settings.sync.backoff_base_seconds,
                factor=settings.sync.backoff_factor,
                cap=settings.sync.backoff_cap_seconds,
                jitter=settings.sync.backoff_jitter,
            ),
            batch_size=settings.sync.batch_size,
            drain_interval=settings.sync.drain_interval_seconds,
            max_transient_attempts=settings.sync.max_transient_attempts,
        )
        error_handler = ErrorHandler()
        reconciler = Reconciler(
            cache,
            channel,
            engine,
            remote,
            clock=clock,
            refresh_debounce=settings.reconciler.refresh_debounce_seconds,
            tracked_keys=settings.reconciler.tracked_keys,
            error_handler=error_handler,
        )

        self._singletons['remote'] = remote
        self._singletons['transport'] = transport
        self._singletons['durable_queue'] = queue
        self._singletons['cache_store'] = cache
        self._singletons['realtime_channel'] = channel
        self._singletons['sync_engine'] = engine
        self._singletons['error_handler'] = error_handler
        self._singletons['reconciler'] = reconciler

    def get_clock(self) -> Clock:
        return self._singletons['clock']

    def get_remote(self) -> Any:
        return self._singletons['remote']

    def get_durable_queue(self) -> DurableQueue:
        return self._singletons['durable_queue']

    def get_cache_store(self) -> CacheStore:
        return self._singletons['cache_store']

    def get_realtime_channel(self) -> RealtimeChannel:
        return self._singletons['realtime_channel']

    def get_sync_engine(self) -> SyncEngine:
        return self._singletons['sync_engine']

    def get_reconciler(self) -> Reconciler:
        return self._singletons['reconciler']

    def get_error_handler(self) -> ErrorHandler:
        return self._singletons['error_handler']

    async def start(self) -> None:
        """Warm the cache, restore overlays and start the background loops."""
        if self._started:
            return
        if not self._singletons:
            self.configure()

        remote = self.get_remote()
        if hasattr(remote, "open"):
            await remote.open()

        await self.get_cache_store().load()
        await self.get_reconciler().start()
        self.get_sync_engine().start()
        self.get_realtime_channel().start()
        self._sweeper = asyncio.ensure_future(self._sweep_cache())
        self._started = True
        logger.info(
            "dashsync started",
            storage=self.get_settings().storage.path,
            pending=await self.get_durable_queue().pending_count(),
        )

    async def _sweep_cache(self) -> None:
        interval = self.get_settings().cache.sweep_interval_seconds
        clock = self.get_clock()
        cache = self.get_cache_store()
        while True:
            await clock.sleep(interval)
            try:
                await cache.sweep()
            except Exception as e:
                logger.error("Cache sweep failed", error=str(e))

    async def shutdown(self) -> None:
        """Stop background work and release resources. Queued operations persist."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

        if self._singletons:
            await self.get_realtime_channel().close()
            await self.get_sync_engine().stop()
            await self.get_reconciler().close()
            await self.get_cache_store().close()
            remote = self.get_remote()
            if hasattr(remote, "close"):
                await remote.close()

        if self._db_connection:
            self._db_connection.close()
        self._started = False
        logger.info("dashsync stopped")

    async def __aenter__(self) -> 'Container':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
