"""
Product and alert management for the external alert CRUD surface.
Handles alert creation and removal, product previews and read-only queries.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union

from ..config.config_manager import ConfigManager
from ..database.repository import AlertRepository, PriceHistoryRepository, TrackedProductRepository
from ..models.interfaces import IFetcher
from ..models.product_data import Alert, PriceRecord, TrackedProduct, format_price, to_minor_units
from .extractor import PriceExtractor
from .http_client import validate_url


class ProductManager:
    """Alert CRUD on top of the tracked product store."""

    def __init__(self, fetcher: IFetcher, extractor: PriceExtractor,
                 product_repo: Optional[TrackedProductRepository] = None,
                 alert_repo: Optional[AlertRepository] = None,
                 history_repo: Optional[PriceHistoryRepository] = None,
                 retain_orphan_products: bool = False,
                 failure_threshold: int = 5,
                 history_limit: int = 50):
        """Initialize product manager with repositories."""
        self.logger = logging.getLogger(__name__)
        self.fetcher = fetcher
        self.extractor = extractor
        self.product_repo = product_repo or TrackedProductRepository()
        self.alert_repo = alert_repo or AlertRepository()
        self.history_repo = history_repo or PriceHistoryRepository()
        self.retain_orphan_products = retain_orphan_products
        self.failure_threshold = failure_threshold
        self.history_limit = history_limit

    @classmethod
    def from_config(cls, config_manager: ConfigManager, fetcher: IFetcher, extractor: PriceExtractor,
                    **repositories) -> 'ProductManager':
        """Build a product manager from the ``tracking`` and ``scheduler`` config sections."""
        tracking_config = config_manager.get_tracking_config()
        return cls(
            fetcher, extractor,
            retain_orphan_products=tracking_config.get('retain_orphan_products', False),
            failure_threshold=config_manager.get('scheduler.failure_threshold', 5),
            history_limit=tracking_config.get('history_limit', 50),
            **repositories
        )

    async def preview_product(self, url: str) -> PriceRecord:
        """
        Fetch and extract a product page once, without tracking it.

        Raises:
            FetchError or ExtractError subclasses
        """
        validate_url(url)
        profile = self.extractor.registry.resolve(url)
        page = await self.fetcher.fetch(url)
        return self.extractor.extract(page, product_id="", profile=profile)

    async def add_alert(self, user_id: str, url: str,
                        target_price: Union[Decimal, str, int]) -> Alert:
        """
        Create an alert, tracking the product URL if it is new.

        Args:
            user_id: Owner of the alert
            url: Product page URL
            target_price: Target amount in major units, e.g. ``Decimal("50.00")``

        Returns:
            The stored alert

        Raises:
            InvalidUrl: if the URL is not an absolute http(s) URL
            UnsupportedSite: if no single site profile covers the URL
            ValueError: if the target is not a positive amount or storage fails
        """
        url = url.strip()
        validate_url(url)

        try:
            target = to_minor_units(target_price)
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid target price: {target_price!r}") from e
        if target <= 0:
            raise ValueError(f"Target price must be positive, got {target_price!r}")

        product = self.product_repo.get_product_by_url(url)
        if product is None:
            profile = self.extractor.registry.resolve(url)
            product = TrackedProduct.create_new(url, profile.profile_id)
            if not self.product_repo.add_product(product):
                raise ValueError(f"Could not track product {url}")
            self.logger.info(f"Tracking new product {product.product_id} ({profile.profile_id}): {url}")

        alert = Alert.create_new(user_id, product.product_id, target)
        if not self.alert_repo.add_alert(alert):
            raise ValueError(f"Could not store alert for {url}")

        self.logger.info(
            f"Alert {alert.alert_id} added for user {user_id}: {url} at {format_price(target)}"
        )
        return alert

    async def remove_alert(self, alert_id: str, user_id: str) -> bool:
        """
        Remove a user's alert.

        When the last alert of a product goes, the product and its history
        are deleted unless orphan products are retained.
        """
        alert = self.alert_repo.get_alert(alert_id)
        if alert is None or alert.user_id != user_id:
            self.logger.warning(f"Alert {alert_id} not found for user {user_id}")
            return False

        if not self.alert_repo.delete_alert(alert_id):
            return False
        self.logger.info(f"Alert {alert_id} removed by user {user_id}")

        if not self.retain_orphan_products and self.alert_repo.count_alerts_for_product(alert.product_id) == 0:
            self.product_repo.delete_product(alert.product_id)
            self.logger.info(f"Product {alert.product_id} has no alerts left and was removed")
        return True

    async def get_user_alerts(self, user_id: str) -> List[Alert]:
        """Get every alert owned by a user, newest first."""
        return self.alert_repo.get_alerts_for_user(user_id)

    async def get_product(self, product_id: str) -> Optional[TrackedProduct]:
        return self.product_repo.get_product(product_id)

    async def get_price_history(self, product_id: str, limit: Optional[int] = None) -> List[PriceRecord]:
        """Get recent price observations of a product, newest first.

        ``limit`` defaults to the configured ``tracking.history_limit``.
        """
        return self.history_repo.get_history(product_id, limit or self.history_limit)

    async def get_failing_products(self) -> List[TrackedProduct]:
        """Get products at or over the consecutive failure threshold."""
        return self.product_repo.get_failing_products(self.failure_threshold)
