"""
Configuration Manager Module
Handles loading and accessing application configuration from YAML files and environment variables.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv


class ConfigManager:
    """Manages application configuration from YAML files and environment variables."""

    _instance = None
    _config: Dict = None
    _alert_rules: Dict = None

    def __new__(cls):
        """Singleton pattern for configuration."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        """Initialize configuration if not already loaded."""
        if self._config is None:
            self._load_configuration()

    def _load_configuration(self) -> None:
        """Load all configuration files."""
        # Load environment variables from .env file
        load_dotenv()

        self._config_dir = self._find_config_dir()

        config_path = self._config_dir / 'config.yaml'
        self._config = self._load_yaml_with_env(config_path)

        # Default alert rules, seeded into the database on demand
        rules_path = self._config_dir / 'alert_rules.yaml'
        self._alert_rules = self._load_yaml_with_env(rules_path)

    def _find_config_dir(self) -> Path:
        """Find the configuration directory."""
        env_config_dir = os.getenv('CONFIG_DIR')
        if env_config_dir:
            return Path(env_config_dir)

        possible_paths = [
            Path(__file__).parent.parent / 'config',  # Relative to kaos_sync/
            Path.cwd() / 'config',
            Path('/app/config'),  # Docker container
        ]

        for path in possible_paths:
            if path.exists():
                return path

        raise FileNotFoundError("Configuration directory not found")

    def _load_yaml_with_env(self, file_path: Path) -> Dict:
        """
        Load YAML file with environment variable substitution.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} syntax.
        """
        if not file_path.exists():
            return {}

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        content = self._substitute_env_vars(content)

        return yaml.safe_load(content) or {}

    def _substitute_env_vars(self, content: str) -> str:
        """
        Substitute environment variables in string.

        Supports:
        - ${VAR_NAME} - Required variable
        - ${VAR_NAME:-default} - Variable with default value
        """
        pattern = r'\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}'

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2)

            value = os.getenv(var_name)
            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                return match.group(0)  # Return original if not found

        return re.sub(pattern, replacer, content)

    # ========================================
    # Configuration Getters
    # ========================================

    def get_jira_config(self) -> Dict:
        """Get Jira API configuration."""
        return self._config.get('jira', {})

    def get_database_config(self) -> Dict:
        """Get database configuration."""
        return self._config.get('database', {})

    def get_sync_config(self) -> Dict:
        """Get sync and quota configuration."""
        return self._config.get('sync', {})

    def get_alerts_config(self) -> Dict:
        """Get alert engine configuration."""
        return self._config.get('alerts', {})

    def get_email_config(self) -> Dict:
        """Get email digest configuration."""
        return self._config.get('email', {})

    def get_logging_config(self) -> Dict:
        """Get logging configuration."""
        return self._config.get('logging', {})

    def get_scheduler_config(self) -> Dict:
        """Get scheduler configuration."""
        return self._config.get('scheduler', {})

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """
        Get a nested configuration value.

        Args:
            dotted_key: Path such as 'sync.quota_limit'
            default: Value returned when any segment is missing
        """
        node = self._config
        for part in dotted_key.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    # ========================================
    # Alert Rule Defaults
    # ========================================

    def get_default_alert_rules(self) -> List[Dict]:
        """Get default alert rule definitions."""
        return self._alert_rules.get('rules', [])

    def get_default_alert_rule(self, name: str) -> Optional[Dict]:
        """Get a default alert rule definition by name."""
        for rule in self.get_default_alert_rules():
            if rule.get('name') == name:
                return rule
        return None

    def reload(self) -> None:
        """Reload configuration from files."""
        self._config = None
        self._alert_rules = None
        self._load_configuration()


# Convenience function
def get_config() -> ConfigManager:
    """Get the singleton configuration manager instance."""
    return ConfigManager()
