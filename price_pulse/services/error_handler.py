"""
Error taxonomy and centralized error accounting for the price tracker.

Per-product errors are raised by the fetcher and extractor, caught at the
scheduler boundary and reported here, where they are categorized, logged
with the product identity and counted.
"""
import asyncio
import logging
import sqlite3
from collections import defaultdict
from enum import Enum
from typing import Dict, Any, Optional, Tuple

import aiohttp

from ..models.product_data import utc_now


class TrackerError(Exception):
    """Base class for errors raised while checking a product."""
    kind = "tracker_error"


class FetchError(TrackerError):
    """A product page could not be retrieved."""
    kind = "fetch_error"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class FetchTimeout(FetchError):
    kind = "timeout"


class ConnectionFailed(FetchError):
    kind = "connection_failed"


class TooManyRedirects(FetchError):
    kind = "too_many_redirects"


class InvalidUrl(FetchError):
    kind = "invalid_url"


class HttpError(FetchError):
    kind = "http_error"

    def __init__(self, status: int, url: Optional[str] = None):
        super().__init__(f"HTTP {status}", url)
        self.status = status


class ExtractError(TrackerError):
    """A price record could not be extracted from a page."""
    kind = "extract_error"


class UnsupportedSite(ExtractError):
    kind = "unsupported_site"


class PriceNotFound(ExtractError):
    kind = "price_not_found"


class PriceUnparsable(ExtractError):
    kind = "price_unparsable"


class ErrorCategory(Enum):
    """Error categories for classification and handling."""
    NETWORK = "network"
    PARSING = "parsing"
    CONFIGURATION = "configuration"
    DATABASE = "database"
    NOTIFICATION = "notification"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Error severity levels for prioritization."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ErrorHandler:
    """Categorizes, logs and counts errors reported by the scheduler."""

    def __init__(self):
        """Initialize error handler."""
        self.logger = logging.getLogger(__name__)
        self._error_counts: Dict[str, int] = defaultdict(int)
        self._last_errors: Dict[str, Dict[str, Any]] = {}

    def categorize(self, error: Exception) -> Tuple[ErrorCategory, ErrorSeverity]:
        """Categorize an error by type and determine severity."""
        if isinstance(error, UnsupportedSite):
            return ErrorCategory.CONFIGURATION, ErrorSeverity.MEDIUM
        if isinstance(error, ExtractError):
            return ErrorCategory.PARSING, ErrorSeverity.MEDIUM
        if isinstance(error, HttpError):
            severity = ErrorSeverity.MEDIUM if error.status >= 500 else ErrorSeverity.LOW
            return ErrorCategory.NETWORK, severity
        if isinstance(error, (FetchError, aiohttp.ClientError, ConnectionError, asyncio.TimeoutError)):
            return ErrorCategory.NETWORK, ErrorSeverity.LOW
        if isinstance(error, sqlite3.Error):
            return ErrorCategory.DATABASE, ErrorSeverity.HIGH
        return ErrorCategory.UNKNOWN, ErrorSeverity.HIGH

    @staticmethod
    def error_kind(error: Exception) -> str:
        """Stable identifier for an error, used in logs and failure records."""
        return getattr(error, 'kind', error.__class__.__name__)

    def handle_product_error(self, error: Exception, product_id: str, url: str = "") -> Dict[str, Any]:
        """Log a per-product error and update counters."""
        category, severity = self.categorize(error)
        kind = self.error_kind(error)
        error_data = {
            "timestamp": utc_now().isoformat(),
            "product_id": product_id,
            "url": url,
            "category": category.value,
            "severity": severity.value,
            "kind": kind,
            "message": str(error),
        }

        self._error_counts[f"{category.value}:{kind}"] += 1
        self._last_errors[category.value] = error_data

        message = f"Check failed for product {product_id} ({url}): {kind}: {error}"
        if severity == ErrorSeverity.HIGH:
            self.logger.error(message, exc_info=error)
        elif severity == ErrorSeverity.MEDIUM:
            self.logger.warning(message)
        else:
            self.logger.info(message)

        return error_data

    def handle_notification_error(self, error: Exception, alert_id: str) -> Dict[str, Any]:
        """Log a failed notification delivery; the check itself still succeeded."""
        kind = self.error_kind(error)
        error_data = {
            "timestamp": utc_now().isoformat(),
            "alert_id": alert_id,
            "category": ErrorCategory.NOTIFICATION.value,
            "severity": ErrorSeverity.MEDIUM.value,
            "kind": kind,
            "message": str(error),
        }

        self._error_counts[f"{ErrorCategory.NOTIFICATION.value}:{kind}"] += 1
        self._last_errors[ErrorCategory.NOTIFICATION.value] = error_data
        self.logger.error(f"Notification for alert {alert_id} failed: {kind}: {error}", exc_info=error)
        return error_data

    def get_error_counts(self) -> Dict[str, int]:
        """Get error counts keyed by ``category:kind``."""
        return dict(self._error_counts)

    def get_last_error(self, category: ErrorCategory) -> Optional[Dict[str, Any]]:
        """Get the most recent error recorded for a category."""
        return self._last_errors.get(category.value)

    def reset(self) -> None:
        """Clear counters."""
        self._error_counts.clear()
        self._last_errors.clear()
