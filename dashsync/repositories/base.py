"""
Base repository classes and database connection management.
"""

import sqlite3
import threading
from contextlib import contextmanager
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, TypeVar, Generic

import structlog

from ..errors import StorageFullError

logger = structlog.get_logger(__name__)

T = TypeVar('T')

SQLITE_FULL = 13

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS pending_operations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        idempotency_token TEXT NOT NULL UNIQUE,
        created_at REAL NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        terminal INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cache_entries (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        stored_at REAL NOT NULL,
        ttl REAL NOT NULL
    )
    """,
)


def is_storage_full(error: sqlite3.Error) -> bool:
    """True if SQLite reported that the disk or database is full."""
    if getattr(error, "sqlite_errorcode", None) == SQLITE_FULL:
        return True
    return "database or disk is full" in str(error).lower()


class DatabaseConnection:
    """Serialized access to the local SQLite database.

    One connection is shared by every repository. Statements run one at a time under
    a lock so callers on worker threads never interleave writes.
    """

    def __init__(self, db_path: str = "dashsync.db", timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self._lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

    @staticmethod
    def _dict_factory(cursor, row):
        """Convert row to dictionary"""
        return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}

    def _connect(self) -> sqlite3.Connection:
        if self._connection is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=self.timeout)
            conn.row_factory = self._dict_factory
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            self._connection = conn
        return self._connection

    @contextmanager
    def get_connection(self):
        """Yield the connection inside a transaction; commit on success."""
        with self._lock:
            conn = self._connect()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                if is_storage_full(e):
                    logger.error("Local storage is full", db_path=self.db_path)
                    raise StorageFullError(f"Local storage is full: {e}") from e
                logger.error("Database error", error=str(e))
                raise
            except BaseException:
                conn.rollback()
                raise

    def init_schema(self) -> None:
        """Create the pending operation and cache tables if missing."""
        with self.get_connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.debug("Database schema ready", db_path=self.db_path)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


class BaseRepository(ABC, Generic[T]):
    """Base repository class with common lookups."""

    def __init__(self, db_connection: DatabaseConnection):
        self.db = db_connection
        self._table_name = self._get_table_name()

    @abstractmethod
    def _get_table_name(self) -> str:
        """Return the table name for this repository."""
        pass

    @abstractmethod
    def _row_to_model(self, row: Dict[str, Any]) -> T:
        """Convert database row to model instance."""
        pass

    @abstractmethod
    def _model_to_dict(self, model: T) -> Dict[str, Any]:
        """Convert model instance to dictionary for database storage."""
        pass

    def count(self) -> int:
        """Count total entities."""
        with self.db.get_connection() as conn:
            cursor = conn.execute(f"SELECT COUNT(*) AS total FROM {self._table_name}")
            return cursor.fetchone()["total"]

    def execute_query(self, query: str, params: tuple = ()) -> List[T]:
        """Execute custom query and return models."""
        with self.db.get_connection() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_model(row) for row in cursor.fetchall()]
