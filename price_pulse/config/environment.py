"""
Environment variables and filesystem locations for the tracker.
"""
import os
import sys
import logging
from typing import Optional
from pathlib import Path

from dotenv import load_dotenv

# Variables from a local .env file; real environment variables win
load_dotenv()

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _directory(variable: str, default: str, create: bool = True) -> Path:
    path = Path(os.getenv(variable, default))
    if create:
        path.mkdir(parents=True, exist_ok=True)
    return path


class Environment:
    """Accessors for ENVIRONMENT, DATA_DIR, LOGS_DIR, CONFIG_DIR and friends."""

    @staticmethod
    def get_env() -> str:
        """Deployment name: development, production or testing."""
        return os.getenv('ENVIRONMENT', 'development').lower()

    @staticmethod
    def is_production() -> bool:
        return Environment.get_env() == 'production'

    @staticmethod
    def get_data_dir() -> Path:
        """Directory holding the SQLite database, created on demand."""
        return _directory('DATA_DIR', 'data')

    @staticmethod
    def get_logs_dir() -> Path:
        """Directory holding rotated log files, created on demand."""
        return _directory('LOGS_DIR', 'logs')

    @staticmethod
    def get_config_dir() -> Path:
        """Directory searched for config.yaml; never created."""
        return _directory('CONFIG_DIR', 'config', create=False)

    @staticmethod
    def get_config_file() -> Optional[str]:
        return os.getenv('CONFIG_FILE')

    @staticmethod
    def get_database_path() -> str:
        """DATABASE_PATH, or price_pulse.db inside DATA_DIR."""
        return os.getenv('DATABASE_PATH') or os.path.join(os.getenv('DATA_DIR', 'data'), 'price_pulse.db')

    @staticmethod
    def get_log_level() -> str:
        return os.getenv('LOG_LEVEL', 'INFO').upper()

    @staticmethod
    def setup_basic_logging() -> None:
        """Console logging used until the configuration is loaded."""
        logging.basicConfig(
            level=getattr(logging, Environment.get_log_level(), logging.INFO),
            format=DEFAULT_FORMAT,
            handlers=[logging.StreamHandler(sys.stdout)]
        )
