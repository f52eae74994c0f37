"""
Core data models for the price tracking system.

Prices are integer minor units (cents) throughout; ``Decimal`` is only used
when a price is parsed from or presented to a human.
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from fnmatch import fnmatch
from typing import Optional, Dict, Any
import uuid

MINOR_UNITS = 100


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_decimal(minor_units: int) -> Decimal:
    """Convert minor units to a two-place Decimal amount."""
    return (Decimal(minor_units) / MINOR_UNITS).quantize(Decimal('0.01'))


def to_minor_units(amount) -> int:
    """Convert a Decimal, int or numeric string amount to minor units."""
    value = Decimal(str(amount)).quantize(Decimal('0.01'))
    return int(value * MINOR_UNITS)


def format_price(minor_units: Optional[int]) -> str:
    """Format minor units for log and message output."""
    if minor_units is None:
        return "n/a"
    return f"{to_decimal(minor_units):,}"


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class CheckState(Enum):
    """Per-product check state."""
    IDLE = "idle"
    CHECKING = "checking"


@dataclass
class SiteProfile:
    """Extraction rules for one retailer domain."""
    profile_id: str
    domain_pattern: str
    price_selector: str
    title_selector: str = ""
    image_selector: str = ""
    original_price_selector: str = ""

    def matches(self, host: str) -> bool:
        """Check whether a host name is covered by this profile.

        A plain pattern matches the host itself and any of its subdomains;
        a pattern containing ``*`` or ``?`` is matched as a shell glob.
        """
        host = host.lower().rstrip('.')
        pattern = self.domain_pattern.lower()
        if any(ch in pattern for ch in '*?['):
            return fnmatch(host, pattern)
        return host == pattern or host.endswith('.' + pattern)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SiteProfile':
        """Create instance from a configuration entry."""
        return cls(
            profile_id=data.get('id') or data['profile_id'],
            domain_pattern=data['domain_pattern'],
            price_selector=data['price_selector'],
            title_selector=data.get('title_selector', ''),
            image_selector=data.get('image_selector', ''),
            original_price_selector=data.get('original_price_selector', ''),
        )


@dataclass
class TrackedProduct:
    """A product URL under periodic price observation."""
    product_id: str
    url: str
    site_profile_id: str
    last_known_price: Optional[int] = None
    last_checked_at: Optional[datetime] = None
    last_attempted_at: Optional[datetime] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    title: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utc_now()

    @classmethod
    def create_new(cls, url: str, site_profile_id: str) -> 'TrackedProduct':
        """Create a new tracked product with generated ID."""
        return cls(product_id=str(uuid.uuid4()), url=url, site_profile_id=site_profile_id)

    def is_due(self, now: datetime, interval: timedelta) -> bool:
        """Whether the last check or attempt is older than ``interval``."""
        reference = max(
            (t for t in (self.last_checked_at, self.last_attempted_at) if t is not None),
            default=None
        )
        return reference is None or now - reference >= interval

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for database storage."""
        data = asdict(self)
        for key in ('last_checked_at', 'last_attempted_at', 'created_at'):
            data[key] = _format_datetime(data[key])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrackedProduct':
        """Create instance from dictionary."""
        data = dict(data)
        for key in ('last_checked_at', 'last_attempted_at', 'created_at'):
            data[key] = _parse_datetime(data.get(key))
        return cls(**data)


@dataclass
class Alert:
    """A user's request to be notified when a product reaches a target price."""
    alert_id: str
    user_id: str
    product_id: str
    target_price: int
    created_at: Optional[datetime] = None
    active: bool = True
    triggered_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utc_now()

    @classmethod
    def create_new(cls, user_id: str, product_id: str, target_price: int) -> 'Alert':
        """Create a new alert with generated ID."""
        return cls(
            alert_id=str(uuid.uuid4()),
            user_id=user_id,
            product_id=product_id,
            target_price=target_price
        )

    def validate(self) -> bool:
        """Validate alert data."""
        return bool(self.alert_id and self.user_id and self.product_id) and self.target_price > 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for database storage."""
        data = asdict(self)
        data['created_at'] = _format_datetime(data['created_at'])
        data['triggered_at'] = _format_datetime(data['triggered_at'])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Alert':
        """Create instance from dictionary."""
        data = dict(data)
        data['created_at'] = _parse_datetime(data.get('created_at'))
        data['triggered_at'] = _parse_datetime(data.get('triggered_at'))
        # SQLite stores booleans as 0/1
        data['active'] = bool(data.get('active', True))
        return cls(**data)


@dataclass(frozen=True)
class RawPage:
    """A fetched product page."""
    url: str
    final_url: str
    status: int
    html: str
    fetched_at: datetime


@dataclass(frozen=True)
class PriceRecord:
    """One price observation of a product."""
    product_id: str
    price: int
    captured_at: datetime
    title: Optional[str] = None
    image_url: Optional[str] = None
    original_price: Optional[int] = None

    @property
    def amount(self) -> Decimal:
        return to_decimal(self.price)


@dataclass(frozen=True)
class NotificationEvent:
    """Emitted when a product's price crosses at or below an alert target."""
    alert_id: str
    product_id: str
    observed_price: int
    target_price: int
    user_id: str = ""
    url: str = ""
    title: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @property
    def observed_amount(self) -> Decimal:
        return to_decimal(self.observed_price)

    @property
    def target_amount(self) -> Decimal:
        return to_decimal(self.target_price)


@dataclass(frozen=True)
class PriceChange:
    """Price change between two observations."""
    previous_price: int
    current_price: int

    @property
    def change_amount(self) -> int:
        return self.current_price - self.previous_price

    @property
    def change_percentage(self) -> float:
        if not self.previous_price:
            return 0.0
        return round(self.change_amount * 100.0 / self.previous_price, 2)
