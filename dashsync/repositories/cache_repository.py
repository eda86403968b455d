"""
Cache Entry Repository
Persists remote read results so a restarted client can serve them stale
"""

import json
from typing import Any, Dict, List, Optional

from .base import BaseRepository
from ..models.cache_entry import CacheEntry


class CacheEntryRepository(BaseRepository[CacheEntry]):
    """Repository for cache entries keyed by cache key"""

    def _get_table_name(self) -> str:
        return "cache_entries"

    def _model_to_dict(self, model: CacheEntry) -> Dict[str, Any]:
        return {
            "key": model.key,
            "value": json.dumps(model.value, default=str),
            "stored_at": model.stored_at,
            "ttl": model.ttl,
        }

    def _row_to_model(self, row: Dict[str, Any]) -> CacheEntry:
        return CacheEntry(
            key=row["key"],
            value=json.loads(row["value"]),
            stored_at=row["stored_at"],
            ttl=row["ttl"],
        )

    def upsert(self, entry: CacheEntry) -> None:
        data = self._model_to_dict(entry)
        with self.db.get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries (key, value, stored_at, ttl)
                VALUES (?, ?, ?, ?)
                """,
                (data["key"], data["value"], data["stored_at"], data["ttl"]),
            )

    def find_by_key(self, key: str) -> Optional[CacheEntry]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM cache_entries WHERE key = ?", (key,)).fetchone()
        return self._row_to_model(row) if row else None

    def find_all(self) -> List[CacheEntry]:
        return self.execute_query("SELECT * FROM cache_entries")

    def delete(self, key: str) -> bool:
        with self.db.get_connection() as conn:
            cursor = conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def delete_all(self) -> int:
        with self.db.get_connection() as conn:
            cursor = conn.execute("DELETE FROM cache_entries")
            return cursor.rowcount

    def delete_expired(self, now: float, max_stale: float) -> int:
        """Delete entries older than their ttl plus the stale allowance."""
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM cache_entries WHERE ? - stored_at >= ttl + ?",
                (now, max_stale),
            )
            return cursor.rowcount
