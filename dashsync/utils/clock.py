"""
Time sources used by the queue, cache and timers.

SystemClock is used in production. ManualClock only moves when advanced, which lets
tests expire TTLs and fire backoff timers deterministically.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import List, Tuple


class Clock(ABC):
    """Wall-clock time plus an awaitable sleep."""

    @abstractmethod
    def now(self) -> float:
        """Seconds since the epoch."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        pass


class SystemClock(Clock):

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock(Clock):
    """Clock that only advances when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._sleepers: List[Tuple[float, asyncio.Future]] = []

    def now(self) -> float:
        return self._now

    @property
    def sleeper_count(self) -> int:
        """Number of coroutines currently blocked in sleep()."""
        return len([s for s in self._sleepers if not s[1].done()])

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return

        future = asyncio.get_running_loop().create_future()
        entry = (self._now + seconds, future)
        self._sleepers.append(entry)
        try:
            await future
        finally:
            self._sleepers = [s for s in self._sleepers if s is not entry]

    async def advance(self, seconds: float) -> None:
        """Move time forward and wake every sleeper whose deadline has passed."""
        self._now += seconds
        for deadline, future in list(self._sleepers):
            if deadline <= self._now and not future.done():
                future.set_result(None)
        # Let woken tasks run up to their next suspension point
        for _ in range(10):
            await asyncio.sleep(0)
