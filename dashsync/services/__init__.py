"""
Services package initialization.

This module provides access to all service classes used in the application.
"""

from .logging_service import configure_logging, get_logger
from .error_handler import ErrorHandler
from .pubsub import Topic, Subscription
from .backoff import ExponentialBackoff
from .durable_queue import DurableQueue
from .cache_store import CacheStore
from .remote_api import RemoteApiClient, READ_ENDPOINTS
from .realtime_channel import RealtimeChannel, Transport, AiohttpWebSocketTransport
from .overlay import OverlayState, reduce
from .sync_engine import SyncEngine, DrainReport
from .reconciler import Reconciler, DashboardView, affected_keys

__all__ = [
    "configure_logging",
    "get_logger",
    "ErrorHandler",
    "Topic",
    "Subscription",
    "ExponentialBackoff",
    "DurableQueue",
    "CacheStore",
    "RemoteApiClient",
    "READ_ENDPOINTS",
    "RealtimeChannel",
    "Transport",
    "AiohttpWebSocketTransport",
    "OverlayState",
    "reduce",
    "SyncEngine",
    "DrainReport",
    "Reconciler",
    "DashboardView",
    "affected_keys",
]
