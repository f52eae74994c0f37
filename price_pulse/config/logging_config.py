"""
Logging setup: a rotating log file plus console output.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from .environment import DEFAULT_FORMAT, Environment
from .config_manager import config, ConfigManager

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ('aiohttp', 'asyncio')


def _resolve_level(name) -> int:
    level = getattr(logging, str(name).upper(), None)
    return level if isinstance(level, int) else logging.INFO


def _rotating_file_handler(log_file: Path, log_config: dict, formatter: logging.Formatter) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=log_config.get('max_file_size', 10 * 1024 * 1024),
        backupCount=log_config.get('backup_count', 5),
        encoding='utf-8'
    )
    handler.setFormatter(formatter)
    return handler


def configure_logging(config_manager: Optional[ConfigManager] = None) -> logging.Logger:
    """Replace the root handlers using the ``logging`` config section.

    Production consoles only show warnings; the file keeps the full level.
    """
    log_config = (config_manager or config).get_logging_config()
    level = _resolve_level(log_config.get('level', Environment.get_log_level()))
    formatter = logging.Formatter(log_config.get('format', DEFAULT_FORMAT))
    log_file = Environment.get_logs_dir() / log_config.get('file_path', 'price_pulse.log')

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    root.addHandler(_rotating_file_handler(log_file, log_config, formatter))

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(max(level, logging.WARNING) if Environment.is_production() else level)
    console.setFormatter(formatter)
    root.addHandler(console)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(
        f"Logging at {logging.getLevelName(level)} to {log_file} "
        f"(environment: {Environment.get_env()})"
    )
    return logger
