"""
Caching service for remote read results with stale-while-revalidate reads
"""

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from .logging_service import get_logger
from ..models.cache_entry import CacheEntry, CacheLookup, CacheStatus
from ..repositories.cache_repository import CacheEntryRepository
from ..utils.clock import Clock, SystemClock

logger = get_logger(__name__)

Loader = Callable[[], Awaitable[Any]]


class CacheStore:
    """TTL cache kept in memory and written through to SQLite.

    Stale entries stay readable until ``ttl + max_stale`` so the dashboard can keep
    showing the last known figures while offline.
    """

    def __init__(
        self,
        repository: Optional[CacheEntryRepository] = None,
        clock: Optional[Clock] = None,
        default_ttl: float = 300.0,
        max_stale: float = 86_400.0,
    ):
        self.repository = repository
        self.clock = clock or SystemClock()
        self.default_ttl = default_ttl
        self.max_stale = max_stale
        self.memory_cache: Dict[str, CacheEntry] = {}
        self.cache_stats = {"hits": 0, "misses": 0, "stale_hits": 0, "refreshes": 0}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._inflight: Dict[str, Tuple[Tuple[int, int], asyncio.Task]] = {}
        self._loads: Set[asyncio.Task] = set()
        self._generations: Dict[str, int] = defaultdict(int)
        self._epoch = 0
        self._background: Set[asyncio.Task] = set()

    async def load(self) -> int:
        """Warm the memory cache from the persisted entries."""
        if self.repository is None:
            return 0
        entries = await asyncio.to_thread(self.repository.find_all)
        now = self.clock.now()
        loaded = 0
        for entry in entries:
            if not entry.is_expired(now, self.max_stale):
                self.memory_cache[entry.key] = entry
                loaded += 1
        logger.info("Cache warmed", entries=loaded)
        return loaded

    def get(self, key: str) -> CacheLookup:
        """Look a key up without touching the remote service."""
        entry = self.memory_cache.get(key)
        now = self.clock.now()
        if entry is None or entry.is_expired(now, self.max_stale):
            self.cache_stats["misses"] += 1
            return CacheLookup.miss()

        if entry.is_fresh(now):
            self.cache_stats["hits"] += 1
            return CacheLookup(CacheStatus.FRESH, entry.value, entry.stored_at)

        self.cache_stats["stale_hits"] += 1
        return CacheLookup(CacheStatus.STALE, entry.value, entry.stored_at)

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> Optional[CacheEntry]:
        return await self._store(key, value, ttl, self._generation(key))

    def _generation(self, key: str) -> Tuple[int, int]:
        return self._epoch, self._generations[key]

    async def _store(
        self, key: str, value: Any, ttl: Optional[float], generation: Tuple[int, int]
    ) -> Optional[CacheEntry]:
        """Write an entry unless the key was invalidated after `generation` was taken."""
        entry = CacheEntry(
            key=key,
            value=value,
            stored_at=self.clock.now(),
            ttl=ttl if ttl is not None else self.default_ttl,
        )
        async with self._locks[key]:
            if self._generation(key) != generation:
                logger.debug("Discarding value loaded before invalidation", key=key)
                return None
            self.memory_cache[key] = entry
            if self.repository is not None:
                await asyncio.to_thread(self.repository.upsert, entry)
        return entry

    async def invalidate(self, key: str) -> bool:
        async with self._locks[key]:
            self._generations[key] += 1
            deleted = self.memory_cache.pop(key, None) is not None
            if self.repository is not None:
                deleted = await asyncio.to_thread(self.repository.delete, key) or deleted
        if deleted:
            logger.debug("Cache entry invalidated", key=key)
        return deleted

    async def invalidate_all(self) -> int:
        """Drop every entry, used after the realtime channel was down."""
        self._epoch += 1
        count = len(self.memory_cache)
        self.memory_cache.clear()
        # Wait out writes that passed their generation check before the epoch moved
        for lock in list(self._locks.values()):
            async with lock:
                pass
        if self.repository is not None:
            count = max(count, await asyncio.to_thread(self.repository.delete_all))
        logger.info("Cache cleared", entries=count)
        return count

    async def refresh(self, key: str, loader: Loader, ttl: Optional[float] = None) -> Any:
        """Load a key and store the result, sharing one load among concurrent callers.

        Every caller waiting on the same key receives the same value, or the same
        exception if the load fails. A load started before the key was invalidated
        is never joined and its result is not stored.
        """
        return await asyncio.shield(self._start_refresh(key, loader, ttl))

    def _start_refresh(self, key: str, loader: Loader, ttl: Optional[float]) -> asyncio.Task:
        generation = self._generation(key)
        current = self._inflight.get(key)
        if current is not None and current[0] == generation:
            return current[1]
        task = asyncio.ensure_future(self._load_and_store(key, loader, ttl, generation))
        self._inflight[key] = (generation, task)
        self._loads.add(task)
        task.add_done_callback(self._loads.discard)
        return task

    def refreshing(self, key: str) -> bool:
        """True while a load for the current contents of `key` is in flight."""
        current = self._inflight.get(key)
        return current is not None and current[0] == self._generation(key)

    async def _load_and_store(
        self, key: str, loader: Loader, ttl: Optional[float], generation: Tuple[int, int]
    ) -> Any:
        self.cache_stats["refreshes"] += 1
        try:
            value = await loader()
            await self._store(key, value, ttl, generation)
            return value
        finally:
            current = self._inflight.get(key)
            if current is not None and current[0] == generation:
                del self._inflight[key]

    async def read_through(self, key: str, loader: Loader, ttl: Optional[float] = None) -> Any:
        """Return the cached value, refreshing it as needed.

        Fresh: returned as is. Stale: returned immediately while one background
        refresh runs. Miss: the caller waits for the refresh.
        """
        lookup = self.get(key)
        if lookup.status == CacheStatus.FRESH:
            return lookup.value
        if lookup.status == CacheStatus.STALE:
            self._refresh_in_background(key, loader, ttl)
            return lookup.value
        return await self.refresh(key, loader, ttl)

    def _refresh_in_background(self, key: str, loader: Loader, ttl: Optional[float]) -> None:
        if self.refreshing(key):
            return
        task = asyncio.ensure_future(self._background_refresh(self._start_refresh(key, loader, ttl), key))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_refresh(self, refresh: asyncio.Task, key: str) -> None:
        try:
            await asyncio.shield(refresh)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Background refresh failed, serving stale value", key=key, error=str(e))

    async def sweep(self) -> int:
        """Delete entries too old to serve even as stale fallback."""
        now = self.clock.now()
        expired = [k for k, e in self.memory_cache.items() if e.is_expired(now, self.max_stale)]
        for key in expired:
            del self.memory_cache[key]
        removed = len(expired)
        if self.repository is not None:
            removed = max(removed, await asyncio.to_thread(self.repository.delete_expired, now, self.max_stale))
        if removed:
            logger.info("Expired cache entries swept", entries=removed)
        return removed

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        stats = self.cache_stats.copy()
        lookups = stats["hits"] + stats["stale_hits"] + stats["misses"]
        stats["hit_rate"] = (stats["hits"] + stats["stale_hits"]) / lookups if lookups > 0 else 0
        stats["memory_cache_size"] = len(self.memory_cache)
        return stats

    async def close(self) -> None:
        """Cancel background refreshes."""
        tasks = list(self._background) + list(self._loads)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._loads.clear()
        self._inflight.clear()
