"""
Environment detection and per-environment defaults.
"""

import os
from typing import Optional

from .settings import Environment


class EnvironmentManager:
    """Resolves the running environment and the defaults that depend on it."""

    def __init__(self, env: Optional[Environment] = None):
        self.env = env or self._detect_environment()

    @staticmethod
    def _detect_environment() -> Environment:
        """Detect current environment from the ENVIRONMENT variable."""
        env_str = os.getenv("ENVIRONMENT", "development").lower()
        try:
            return Environment(env_str)
        except ValueError:
            return Environment.DEVELOPMENT

    def is_development(self) -> bool:
        return self.env == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    def is_testing(self) -> bool:
        return self.env == Environment.TESTING

    def get_log_level(self) -> str:
        """Get appropriate log level for environment."""
        level_map = {
            Environment.DEVELOPMENT: "DEBUG",
            Environment.STAGING: "INFO",
            Environment.PRODUCTION: "WARNING",
            Environment.TESTING: "ERROR",
        }
        return os.getenv("LOG_LEVEL", level_map[self.env])

    def use_json_logs(self) -> bool:
        """Machine-readable logs everywhere except a developer's console."""
        return not (self.is_development() or self.is_testing())
