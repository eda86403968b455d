"""
Repository Layer

This module provides data access abstractions over the local SQLite store
following the Repository pattern for clean separation of concerns.
"""

from .base import BaseRepository, DatabaseConnection, is_storage_full
from .operation_repository import OperationRepository
from .cache_repository import CacheEntryRepository

__all__ = [
    "BaseRepository",
    "DatabaseConnection",
    "is_storage_full",
    "OperationRepository",
    "CacheEntryRepository",
]
