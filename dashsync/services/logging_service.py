"""
Logging service for application-wide structured logging.
"""

import logging
import sys
from typing import Optional

import structlog

from ..config.environment import EnvironmentManager


def configure_logging(log_level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Configure structlog on top of the standard logging module.

    Call this once at application startup; loggers obtained earlier through
    get_logger() pick the configuration up on first use.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL. Defaults per environment.
        json_output: Render JSON lines instead of console output. Defaults per environment.
    """
    env_manager = EnvironmentManager()
    level_name = (log_level or env_manager.get_log_level()).upper()
    level = getattr(logging, level_name, logging.INFO)
    if json_output is None:
        json_output = env_manager.use_json_logs()

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance"""
    return structlog.get_logger(name or "dashsync")
