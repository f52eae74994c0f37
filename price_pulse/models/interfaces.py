"""
Base interfaces for the price tracking components.
"""
from abc import ABC, abstractmethod
from typing import Any

from .product_data import RawPage, NotificationEvent


class IFetcher(ABC):
    """Interface for page fetchers."""

    @abstractmethod
    async def fetch(self, url: str) -> RawPage:
        """Fetch a product page or raise a FetchError."""
        pass

    async def close(self) -> None:
        """Release any held resources."""


class INotifier(ABC):
    """Interface for notification delivery."""

    @abstractmethod
    async def notify(self, event: NotificationEvent) -> None:
        """Deliver a notification event."""
        pass


class IConfigManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Set configuration value."""
        pass

    @abstractmethod
    def load_config(self, config_path: str) -> None:
        """Load configuration from file."""
        pass

    @abstractmethod
    def save_config(self, config_path: str) -> None:
        """Save configuration to file."""
        pass
