"""
Cache entry model and lookup result.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class CacheStatus(Enum):
    FRESH = "fresh"
    STALE = "stale"
    MISS = "miss"


@dataclass
class CacheEntry:
    """A remote-read result stored with its time-to-live."""
    key: str
    value: Any
    stored_at: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.stored_at

    def is_fresh(self, now: float) -> bool:
        return self.age(now) < self.ttl

    def is_expired(self, now: float, max_stale: float) -> bool:
        """True once the entry is too old to serve even as a stale fallback."""
        return self.age(now) >= self.ttl + max_stale


@dataclass(frozen=True)
class CacheLookup:
    """Result of CacheStore.get()."""
    status: CacheStatus
    value: Any = None
    stored_at: Optional[float] = None

    @property
    def hit(self) -> bool:
        return self.status != CacheStatus.MISS

    @property
    def fresh(self) -> bool:
        return self.status == CacheStatus.FRESH

    @classmethod
    def miss(cls) -> 'CacheLookup':
        return cls(status=CacheStatus.MISS)
