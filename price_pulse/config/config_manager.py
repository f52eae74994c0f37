"""
Configuration management for the price tracker.
"""
import os
import yaml
import json
from typing import Any, Dict, List, Optional
from pathlib import Path

from ..models.interfaces import IConfigManager


def _defaults() -> Dict[str, Any]:
    """Built-in values; every call returns a fresh copy."""
    return {
        # HTTP fetcher settings
        'fetcher': {
            'request_timeout': 10,
            'max_redirects': 5,
            'connection_limit': 20,
            'connection_limit_per_host': 2,
            'rotate_user_agents': True,
        },

        # Retry on network-level failures only
        'retry': {
            'max_retries': 2,
            'base_delay': 1.0,
            'max_delay': 8.0,
            'exponential_base': 2.0,
            'jitter': True,
            'total_timeout': 60.0,
        },

        # Scheduler settings (seconds)
        'scheduler': {
            'tick_interval': 60,
            'check_interval': 300,
            'max_concurrent': 5,
            'failure_threshold': 5,
        },

        # Tracking policy
        'tracking': {
            'persist_history': True,
            'deactivate_on_trigger': False,
            'retain_orphan_products': False,
            'history_limit': 50,
        },

        # Database settings
        'database': {
            'path': '',
        },

        # Logging settings
        'logging': {
            'level': 'INFO',
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            'file_path': 'price_pulse.log',
            'max_file_size': 10485760,  # 10MB
            'backup_count': 5
        },

        # Retailer table: one entry per supported domain
        'site_profiles': [],
    }


def _deep_merge(base: dict, override: dict) -> None:
    """Merge ``override`` into ``base`` section by section.

    Lists (such as ``site_profiles``) are replaced, not concatenated.
    """
    for key, value in override.items():
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


class ConfigManager(IConfigManager):
    """Layered settings: built-in defaults, then files, then environment variables."""

    ENV_MAPPINGS = {
        'DATABASE_PATH': 'database.path',
        'LOG_LEVEL': 'logging.level',
        'CHECK_INTERVAL': 'scheduler.check_interval',
        'TICK_INTERVAL': 'scheduler.tick_interval',
        'MAX_CONCURRENT': 'scheduler.max_concurrent',
        'FAILURE_THRESHOLD': 'scheduler.failure_threshold',
        'REQUEST_TIMEOUT': 'fetcher.request_timeout',
        'MAX_REDIRECTS': 'fetcher.max_redirects',
        'MAX_RETRIES': 'retry.max_retries',
    }

    REQUIRED_PROFILE_KEYS = ('id', 'domain_pattern', 'price_selector')

    def __init__(self, config_path: Optional[str] = None):
        self._config: Dict[str, Any] = _defaults()
        self.config_path = config_path
        self._load_environment_variables()

        if config_path:
            self.load_config(config_path)

    def _load_environment_variables(self) -> None:
        """Apply overrides from ENV_MAPPINGS; unset or empty variables are ignored."""
        for env_var, config_key in self.ENV_MAPPINGS.items():
            raw = os.getenv(env_var)
            if raw:
                self.set(config_key, raw)

    @staticmethod
    def _coerce(raw: str) -> Any:
        """Turn an environment string into a bool, int or float when it looks like one."""
        lowered = raw.strip().lower()
        if lowered in ('true', 'false'):
            return lowered == 'true'
        if not any(ch.isdigit() for ch in lowered):
            return raw
        for cast in (int, float):
            try:
                return cast(lowered)
            except ValueError:
                continue
        return raw

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a dotted key such as ``scheduler.max_concurrent``."""
        node: Any = self._config
        for part in key.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Assign a dotted key, creating intermediate sections as needed."""
        *sections, leaf = key.split('.')
        node = self._config
        for section in sections:
            node = node.setdefault(section, {})
        node[leaf] = self._coerce(value) if isinstance(value, str) else value

    @staticmethod
    def _format_of(path: Path) -> str:
        suffix = path.suffix.lower()
        if suffix in ('.yml', '.yaml'):
            return 'yaml'
        if suffix == '.json':
            return 'json'
        raise ValueError(f"Unsupported configuration file format: {path.suffix}")

    def load_config(self, config_path: str) -> None:
        """Merge a YAML or JSON file into the current values.

        Environment variables are re-applied afterwards so they win over
        file values.
        """
        path = Path(config_path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            text = path.read_text(encoding='utf-8')
            if self._format_of(path) == 'yaml':
                loaded = yaml.safe_load(text) or {}
            else:
                loaded = json.loads(text)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise RuntimeError(f"Failed to load configuration from {config_path}: {e}") from e

        if not isinstance(loaded, dict):
            raise RuntimeError(f"Configuration in {config_path} must be a mapping")

        _deep_merge(self._config, loaded)
        self._load_environment_variables()
        self.config_path = config_path

    def save_config(self, config_path: str) -> None:
        """Write the effective configuration to a YAML or JSON file."""
        path = Path(config_path)
        try:
            if self._format_of(path) == 'yaml':
                text = yaml.safe_dump(self._config, default_flow_style=False, sort_keys=False)
            else:
                text = json.dumps(self._config, indent=2)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding='utf-8')
        except (OSError, ValueError) as e:
            raise RuntimeError(f"Failed to save configuration to {config_path}: {e}") from e

    def get_fetcher_config(self) -> dict:
        """Get HTTP fetcher configuration."""
        return self.get('fetcher', {})

    def get_retry_config(self) -> dict:
        """Get retry policy configuration."""
        return self.get('retry', {})

    def get_scheduler_config(self) -> dict:
        """Get scheduler configuration."""
        return self.get('scheduler', {})

    def get_tracking_config(self) -> dict:
        """Get tracking policy configuration."""
        return self.get('tracking', {})

    def get_database_config(self) -> dict:
        """Get database-specific configuration."""
        return self.get('database', {})

    def get_logging_config(self) -> dict:
        """Get logging-specific configuration."""
        return self.get('logging', {})

    def get_site_profiles(self) -> List[dict]:
        """Get the raw retailer table."""
        return self.get('site_profiles', []) or []

    def validate_config(self) -> bool:
        """Validate configuration values."""
        errors = []

        for key in ('scheduler.tick_interval', 'scheduler.check_interval',
                    'scheduler.max_concurrent', 'fetcher.request_timeout'):
            value = self.get(key)
            if not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"{key} must be a positive number")

        max_retries = self.get('retry.max_retries')
        if not isinstance(max_retries, int) or max_retries < 0:
            errors.append("retry.max_retries must be a non-negative integer")

        seen_ids = set()
        for index, profile in enumerate(self.get_site_profiles()):
            missing = [k for k in self.REQUIRED_PROFILE_KEYS if not profile.get(k)]
            if missing:
                errors.append(f"site_profiles[{index}] is missing {missing}")
            elif profile['id'] in seen_ids:
                errors.append(f"site_profiles[{index}] duplicates id '{profile['id']}'")
            else:
                seen_ids.add(profile['id'])

        if errors:
            raise ValueError(f"Invalid configuration: {'; '.join(errors)}")

        return True


# Global configuration instance
config = ConfigManager()
