"""
Logging Configuration Module
Provides consistent logging across the application.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

from kaos_sync.config_manager import ConfigManager

# Used when the 'logging.levels' section is absent
DEFAULT_LOGGER_LEVELS = {
    'urllib3': 'WARNING',
    'requests': 'WARNING',
    'sqlalchemy.engine': 'WARNING',
    'apscheduler': 'WARNING',
}


def _to_level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level


def setup_logging(level: Optional[str] = None) -> None:
    """
    Setup application-wide logging configuration.
    Call this once at application startup.

    Args:
        level: Overrides 'logging.level' (e.g. from a --log-level flag)
    """
    config = ConfigManager()
    log_config = config.get_logging_config()

    # Get configuration values
    log_level = _to_level(level or log_config.get('level', 'INFO'))
    log_format = log_config.get('format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    log_file = log_config.get('file', './logs/kaos_sync.log')
    max_bytes = log_config.get('max_bytes', 10485760)  # 10MB
    backup_count = log_config.get('backup_count', 5)
    logger_levels: Dict[str, str] = log_config.get('levels') or DEFAULT_LOGGER_LEVELS

    # Create formatter
    formatter = logging.Formatter(log_format)

    # Setup root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear existing handlers
    root_logger.handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler with rotation; an empty 'file' keeps logs on the console
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Per-logger levels: third-party noise down, quota or scheduler tracing up
    for logger_name, logger_level in logger_levels.items():
        logging.getLogger(logger_name).setLevel(_to_level(logger_level))


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the specified module.

    Args:
        name: Module name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


class LoggerMixin:
    """Mixin class to add logging capability to any class."""

    @property
    def logger(self) -> logging.Logger:
        """Get logger for this class."""
        return logging.getLogger(self.__class__.__module__ + '.' + self.__class__.__name__)
