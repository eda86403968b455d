"""
Domain Models

This module contains the entities and value objects shared by the durable queue,
cache store, realtime channel and reconciler.
"""

# Base models
from .base import BaseModel

# Core domain models
from .operation import PendingOperation, OperationKind, OperationAction
from .cache_entry import CacheEntry, CacheLookup, CacheStatus
from .connection import ConnectionState, ConnectionStatus, ALLOWED_TRANSITIONS
from .notification import NotificationEvent, NotificationKind, WIRE_EVENT_NAMES
from .records import CommittedRecord, DashboardSummary

# Re-export all models for easier imports
__all__ = [
    "BaseModel",

    # Operation models
    "PendingOperation",
    "OperationKind",
    "OperationAction",

    # Cache models
    "CacheEntry",
    "CacheLookup",
    "CacheStatus",

    # Realtime models
    "ConnectionState",
    "ConnectionStatus",
    "ALLOWED_TRANSITIONS",
    "NotificationEvent",
    "NotificationKind",
    "WIRE_EVENT_NAMES",

    # Remote records
    "CommittedRecord",
    "DashboardSummary",
]
