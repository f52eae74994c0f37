"""
Main application entry point for the price tracker.

    python -m price_pulse.main [--config PATH] [--once]
"""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .config.environment import Environment
from .config.config_manager import config, ConfigManager
from .config.logging_config import configure_logging
from .database.connection import DatabaseConnection
from .database.repository import AlertRepository, PriceHistoryRepository, TrackedProductRepository
from .services.error_handler import ErrorHandler
from .services.extractor import PriceExtractor, SiteProfileRegistry
from .services.http_client import HttpFetcher
from .services.notification_service import NotificationService
from .services.price_tracking import ThresholdEvaluator
from .services.retry_policy import RetryConfig, RetryingFetcher
from .services.scheduler import PriceCheckScheduler


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Periodic product price tracker")
    parser.add_argument('--config', help="Configuration file (YAML or JSON)")
    parser.add_argument('--once', action='store_true', help="Run a single check tick and exit")
    return parser.parse_args(argv)


def load_configuration(config_manager: ConfigManager, config_path: Optional[str] = None) -> bool:
    """Load configuration from files and environment variables."""
    logger = logging.getLogger(__name__)

    config_dir = Environment.get_config_dir()
    env = Environment.get_env()
    paths = [p for p in (config_dir / "config.yaml", config_dir / f"config.{env}.yaml") if p.exists()]

    # An explicitly requested file must exist
    custom_path = config_path or Environment.get_config_file()
    if custom_path:
        if not Path(custom_path).exists():
            logger.error(f"Configuration file not found: {custom_path}")
            return False
        paths.append(Path(custom_path))

    for path in paths:
        try:
            logger.info(f"Loading configuration from {path}")
            config_manager.load_config(str(path))
        except RuntimeError as e:
            logger.error(f"Error loading configuration: {e}")
            return False

    try:
        config_manager.validate_config()
        logger.info("Configuration validated successfully")
    except ValueError as e:
        logger.error(f"Configuration validation failed: {e}")
        return False

    return True


def build_scheduler(config_manager: ConfigManager, database: DatabaseConnection,
                    notifier: Optional[NotificationService] = None) -> PriceCheckScheduler:
    """Wire the fetcher, extractor, evaluator and store into a scheduler."""
    http_fetcher = HttpFetcher.from_config(config_manager.get_fetcher_config())
    fetcher = RetryingFetcher(
        http_fetcher,
        RetryConfig.from_dict(config_manager.get_retry_config()),
        attempt_timeout=http_fetcher.request_timeout
    )
    registry = SiteProfileRegistry.from_config(config_manager.get_site_profiles())
    tracking_config = config_manager.get_tracking_config()

    return PriceCheckScheduler.from_config(
        config_manager,
        product_repo=TrackedProductRepository(database),
        alert_repo=AlertRepository(database),
        history_repo=PriceHistoryRepository(database),
        fetcher=fetcher,
        extractor=PriceExtractor(registry),
        evaluator=ThresholdEvaluator(tracking_config.get('deactivate_on_trigger', False)),
        notifier=notifier or NotificationService(),
        error_handler=ErrorHandler(),
    )


def setup_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    """Set up signal handlers for graceful shutdown."""
    def signal_handler():
        logging.getLogger(__name__).info("Shutdown signal received, stopping scheduler...")
        stop_event.set()

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)


async def run(args: argparse.Namespace) -> int:
    """Run the tracker until stopped; returns the process exit code."""
    Environment.setup_basic_logging()
    logger = logging.getLogger(__name__)

    if not load_configuration(config, args.config):
        return 1
    configure_logging(config)
    logger.info(f"Starting price tracker in {Environment.get_env()} mode")

    database = DatabaseConnection(config.get('database.path') or None)
    database.create_tables()
    scheduler = build_scheduler(config, database)
    logger.info(f"Loaded {len(scheduler.extractor.registry)} site profiles")

    try:
        if args.once:
            result = await scheduler.tick()
            logger.info(
                f"Tick finished: {len(result.outcomes)} checked, "
                f"{len(result.skipped_in_flight)} skipped, {len(result.events)} notifications"
            )
        else:
            stop_event = asyncio.Event()
            setup_signal_handlers(asyncio.get_running_loop(), stop_event)
            await scheduler.start()
            await stop_event.wait()
            await scheduler.stop()
    finally:
        logger.info("Shutting down services...")
        await scheduler.fetcher.close()
        database.close()
        logger.info("All services shut down")

    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
