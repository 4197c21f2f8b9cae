"""
Load Method Module
Selects how issue data is obtained, switchable at runtime.
"""

import threading
from enum import Enum
from typing import Optional

from kaos_sync.config_manager import ConfigManager
from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)


class LoadMethod(str, Enum):
    """Source of issue data for a sync."""
    API_REST = 'API_REST'   # Jira REST API, quota-limited
    LOCAL = 'LOCAL'         # Only data already stored locally

    @classmethod
    def from_string(cls, value: Optional[str]) -> 'LoadMethod':
        """Parse a method name, falling back to API_REST for unknown values."""
        if value:
            try:
                return cls(value.strip().upper())
            except ValueError:
                logger.warning(f"Unknown load method '{value}', using API_REST")
        return cls.API_REST


class LoadMethodConfig:
    """
    Holds the active load method.

    Reads and writes go through a lock so a switch made by an administrator
    is seen by every worker on its next read.
    """

    def __init__(self, initial: LoadMethod = LoadMethod.API_REST):
        self._lock = threading.Lock()
        self._method = initial

    @classmethod
    def from_config(cls, config: Optional[ConfigManager] = None) -> 'LoadMethodConfig':
        sync_config = (config or ConfigManager()).get_sync_config()
        return cls(LoadMethod.from_string(sync_config.get('load_method')))

    def get_method(self) -> LoadMethod:
        with self._lock:
            return self._method

    def set_method(self, method) -> LoadMethod:
        """
        Switch the active method.

        Args:
            method: LoadMethod or its name

        Returns:
            The previous method
        """
        if not isinstance(method, LoadMethod):
            try:
                method = LoadMethod(str(method).strip().upper())
            except ValueError:
                raise ValueError(f"Unknown load method: {method}")

        with self._lock:
            previous = self._method
            self._method = method

        if previous != method:
            logger.info(f"Load method switched from {previous.value} to {method.value}")
        return previous


_load_config: Optional[LoadMethodConfig] = None
_load_config_lock = threading.Lock()


def get_load_method_config() -> LoadMethodConfig:
    """Get the process-wide load method holder."""
    global _load_config
    with _load_config_lock:
        if _load_config is None:
            _load_config = LoadMethodConfig.from_config()
        return _load_config
