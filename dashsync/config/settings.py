"""
Application settings and configuration management using Pydantic BaseSettings.
"""

from typing import Optional, List
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from enum import Enum


class Environment(str, Enum):
    """Environment enumeration"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class StorageConfig(BaseSettings):
    """Local persistence settings (pending operations and cache entries)."""
    path: str = Field(default="dashsync.db")
    connection_timeout: float = Field(default=30.0, gt=0)
    max_pending_operations: Optional[int] = Field(default=10_000, ge=1)

    @property
    def absolute_path(self) -> str:
        """Get absolute path to the local database."""
        if self.path == ":memory:":
            return self.path
        return str(Path(self.path).resolve())

    model_config = SettingsConfigDict(env_prefix="DASHSYNC_STORAGE_")


class RemoteConfig(BaseSettings):
    """Remote dashboard service settings."""
    base_url: str = Field(default="http://localhost:5001")
    request_timeout: float = Field(default=10.0, gt=0)
    # 4xx statuses retried as transient; every 5xx is transient regardless
    transient_statuses: List[int] = Field(default_factory=lambda: [401, 403, 408, 425, 429])

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator('transient_statuses')
    @classmethod
    def validate_statuses(cls, v: List[int]) -> List[int]:
        invalid = [status for status in v if not 400 <= status < 500]
        if invalid:
            raise ValueError(f"Transient statuses must be 4xx codes, got {invalid}")
        return v

    model_config = SettingsConfigDict(env_prefix="DASHSYNC_REMOTE_")


class SyncConfig(BaseSettings):
    """Sync engine drain and retry policy."""
    batch_size: int = Field(default=50, ge=1)
    drain_interval_seconds: float = Field(default=30.0, gt=0)
    backoff_base_seconds: float = Field(default=1.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    backoff_cap_seconds: float = Field(default=60.0, gt=0)
    backoff_jitter: float = Field(default=0.2, ge=0.0, lt=1.0)
    # None retries transient failures forever
    max_transient_attempts: Optional[int] = Field(default=None, ge=1)

    model_config = SettingsConfigDict(env_prefix="DASHSYNC_SYNC_")


class CacheConfig(BaseSettings):
    """Cache store freshness and retention."""
    default_ttl_seconds: float = Field(default=300.0, gt=0)
    max_stale_seconds: float = Field(default=86_400.0, ge=0)
    sweep_interval_seconds: float = Field(default=600.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="DASHSYNC_CACHE_")


class RealtimeConfig(BaseSettings):
    """Realtime push channel settings."""
    url: str = Field(default="ws://localhost:5001/ws")
    topic: str = Field(default="dashboard", min_length=1)
    handshake_timeout: float = Field(default=20.0, gt=0)
    heartbeat_seconds: float = Field(default=30.0, gt=0)
    backoff_base_seconds: float = Field(default=1.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    backoff_cap_seconds: float = Field(default=30.0, gt=0)
    backoff_jitter: float = Field(default=0.5, ge=0.0, lt=1.0)
    malformed_threshold: int = Field(default=5, ge=1)
    # A connection up this long counts as healthy and restarts the reconnect backoff
    stable_after_seconds: float = Field(default=30.0, ge=0)

    model_config = SettingsConfigDict(env_prefix="DASHSYNC_REALTIME_")


class ReconcilerConfig(BaseSettings):
    """Reconciler refresh behaviour."""
    refresh_debounce_seconds: float = Field(default=0.1, ge=0)
    tracked_keys: List[str] = Field(default_factory=lambda: ["dashboard-summary"])

    model_config = SettingsConfigDict(env_prefix="DASHSYNC_RECONCILER_")


class AppConfig(BaseSettings):
    """Application configuration settings."""
    environment: Environment = Field(default=Environment.DEVELOPMENT)
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    model_config = SettingsConfigDict(env_prefix="DASHSYNC_APP_")


class Settings(BaseSettings):
    """Centralized application settings manager using Pydantic BaseSettings."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    app: AppConfig = Field(default_factory=AppConfig)

    def __init__(self, **kwargs):
        self._load_env_file()
        super().__init__(**kwargs)

    @staticmethod
    def _load_env_file() -> None:
        """Load environment variables from .env file."""
        env_file = Path('.env')
        if env_file.exists():
            from dotenv import load_dotenv
            load_dotenv(env_file)

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore'  # Allow extra fields to be ignored
    )
