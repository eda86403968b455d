"""
Configuration module for dashsync.
"""

from .settings import (
    Settings,
    StorageConfig,
    RemoteConfig,
    SyncConfig,
    CacheConfig,
    RealtimeConfig,
    ReconcilerConfig,
    AppConfig,
    Environment,
)
from .environment import EnvironmentManager

__all__ = [
    "Settings",
    "StorageConfig",
    "RemoteConfig",
    "SyncConfig",
    "CacheConfig",
    "RealtimeConfig",
    "ReconcilerConfig",
    "AppConfig",
    "Environment",
    "EnvironmentManager",
]
