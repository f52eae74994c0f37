"""
Pytest configuration and fixtures for testing.
"""
import pytest
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock

from price_pulse.database.connection import DatabaseConnection
from price_pulse.database.repository import (
    AlertRepository, PriceHistoryRepository, TrackedProductRepository
)
from price_pulse.config.config_manager import ConfigManager
from price_pulse.models.product_data import SiteProfile
from price_pulse.services.extractor import PriceExtractor, SiteProfileRegistry


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    temp_dir = tempfile.TemporaryDirectory()
    db_path = Path(temp_dir.name) / "test_db.sqlite"

    # Initialize database connection
    db = DatabaseConnection(str(db_path))
    db.create_tables()

    yield db

    # Clean up
    db.close()
    temp_dir.cleanup()


@pytest.fixture
def repositories(temp_db):
    """Product, alert and history repositories on the temporary database."""
    return (
        TrackedProductRepository(temp_db),
        AlertRepository(temp_db),
        PriceHistoryRepository(temp_db),
    )


@pytest.fixture
def config_manager():
    """Create a config manager with test settings."""
    config = ConfigManager()

    # Set test configuration values
    config.set('database.path', ':memory:')
    config.set('logging.level', 'INFO')
    config.set('scheduler.check_interval', 300)
    config.set('scheduler.max_concurrent', 2)
    config.set('site_profiles', [
        {'id': 'example', 'domain_pattern': 'example.com', 'price_selector': '.price'},
    ])

    return config


@pytest.fixture
def example_profile():
    return SiteProfile(
        profile_id="example",
        domain_pattern="example.com",
        price_selector=".price",
        title_selector="h1",
        image_selector="img.product",
    )


@pytest.fixture
def extractor(example_profile):
    """Extractor with a single profile for example.com."""
    return PriceExtractor(SiteProfileRegistry([example_profile]))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    """Notifier mock recording every event."""
    mock = AsyncMock()
    mock.notify = AsyncMock()
    return mock
