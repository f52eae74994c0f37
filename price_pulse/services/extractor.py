"""
Price extraction from retailer product pages.

A ``SiteProfileRegistry`` maps retailer domains to CSS selector sets; adding
a retailer is a configuration entry, not code. ``PriceExtractor`` applies a
profile to a fetched page and yields a ``PriceRecord``.
"""
import logging
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Iterable, Iterator, List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from ..models.product_data import SiteProfile, RawPage, PriceRecord, MINOR_UNITS
from .error_handler import UnsupportedSite, PriceNotFound, PriceUnparsable

logger = logging.getLogger(__name__)

# A run of digits and separators; a space only counts as a thousands
# separator when exactly three digits follow it ("1 299,99").
PRICE_TOKEN = re.compile(r'\d(?:[\d.,]|[ \u00a0\u202f](?=\d{3}(?!\d)))*')
WHITESPACE = re.compile(r'[\s\u00a0\u202f]')
# A minus sign before the amount, possibly with a currency symbol or code between
NEGATIVE_PREFIX = re.compile(r'[-\u2212][\s\u00a0]*(?:[^\w\s]{1,3}|[A-Za-z]{3})?[\s\u00a0]*$')


def _normalize_separators(token: str) -> str:
    """Rewrite a digit/separator token into a plain ``1234.56`` string."""
    dots, commas = token.count('.'), token.count(',')
    if dots and commas:
        decimal_sep = '.' if token.rfind('.') > token.rfind(',') else ','
        thousands_sep = ',' if decimal_sep == '.' else '.'
        return token.replace(thousands_sep, '').replace(decimal_sep, '.')

    sep = '.' if dots else ',' if commas else None
    if sep is None:
        return token
    if token.count(sep) > 1:
        return token.replace(sep, '')

    whole, fraction = token.split(sep)
    if len(fraction) == 3:
        # "1,299" / "1.299": thousands grouping
        return whole + fraction
    return f"{whole}.{fraction}"


def parse_price(text: Optional[str]) -> int:
    """
    Parse a displayed price into integer minor units.

    Currency symbols, words and thousands separators are stripped. Both
    ``1,299.99`` and ``1.299,99`` conventions are understood.

    Raises:
        PriceUnparsable: if no positive amount can be read
    """
    if not text or not text.strip():
        raise PriceUnparsable("Empty price text")

    match = PRICE_TOKEN.search(text)
    if not match:
        raise PriceUnparsable(f"No number in price text {text!r}")
    if NEGATIVE_PREFIX.search(text[:match.start()]):
        raise PriceUnparsable(f"Negative price text {text!r}")

    token = WHITESPACE.sub('', match.group(0)).rstrip('.,')
    try:
        amount = Decimal(_normalize_separators(token))
    except InvalidOperation as e:
        raise PriceUnparsable(f"Cannot read price from {text!r}") from e

    amount = amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise PriceUnparsable(f"Price must be positive, got {amount} from {text!r}")
    return int(amount * MINOR_UNITS)


class SiteProfileRegistry:
    """Lookup table from retailer domain to extraction profile."""

    def __init__(self, profiles: Optional[Iterable[SiteProfile]] = None):
        self._profiles: Dict[str, SiteProfile] = {}
        for profile in profiles or []:
            self.register(profile)

    @classmethod
    def from_config(cls, entries: Iterable[dict]) -> 'SiteProfileRegistry':
        """Build a registry from the ``site_profiles`` config list."""
        return cls(SiteProfile.from_dict(entry) for entry in entries)

    def register(self, profile: SiteProfile) -> None:
        """Add a profile; profile ids must be unique."""
        if profile.profile_id in self._profiles:
            raise ValueError(f"Duplicate site profile id: {profile.profile_id}")
        self._profiles[profile.profile_id] = profile

    def get(self, profile_id: str) -> Optional[SiteProfile]:
        return self._profiles.get(profile_id)

    def resolve(self, url: str) -> SiteProfile:
        """
        Find the single profile whose domain pattern matches ``url``.

        Raises:
            UnsupportedSite: if no profile, or more than one, matches
        """
        host = urlparse(url).hostname
        if not host:
            raise UnsupportedSite(f"No host in URL {url!r}")

        matches = [p for p in self._profiles.values() if p.matches(host)]
        if not matches:
            raise UnsupportedSite(f"No site profile for {host}")
        if len(matches) > 1:
            ids = ', '.join(p.profile_id for p in matches)
            raise UnsupportedSite(f"Ambiguous site profiles for {host}: {ids}")
        return matches[0]

    def __len__(self) -> int:
        return len(self._profiles)

    def __iter__(self) -> Iterator[SiteProfile]:
        return iter(self._profiles.values())


class PriceExtractor:
    """Applies site profiles to fetched pages."""

    def __init__(self, registry: SiteProfileRegistry, parser: str = 'lxml'):
        self.registry = registry
        self.parser = parser

    def extract(self, page: RawPage, product_id: str,
                profile: Optional[SiteProfile] = None) -> PriceRecord:
        """
        Extract a price record from a page.

        Args:
            page: Fetched page
            product_id: Product the observation belongs to
            profile: Profile to apply; resolved from ``page.url`` when omitted

        Raises:
            UnsupportedSite, PriceNotFound, PriceUnparsable
        """
        profile = profile or self.registry.resolve(page.url)
        soup = BeautifulSoup(page.html, self.parser)

        texts = self._select_texts(soup, profile.price_selector)
        if not texts:
            raise PriceNotFound(f"Selector {profile.price_selector!r} matched nothing on {page.url}")

        price = self._first_price(texts)
        if price is None:
            raise PriceUnparsable(f"Could not parse a price from {texts[:3]!r} on {page.url}")

        return PriceRecord(
            product_id=product_id,
            price=price,
            captured_at=page.fetched_at,
            title=self._extract_title(soup, profile),
            image_url=self._extract_image(soup, profile, page.final_url or page.url),
            original_price=self._extract_original_price(soup, profile),
        )

    def _select_texts(self, soup: BeautifulSoup, selector: str, separator: str = "") -> List[str]:
        return [el.get_text(separator, strip=True) for el in soup.select(selector)]

    def _first_price(self, texts: List[str]) -> Optional[int]:
        for text in texts:
            try:
                return parse_price(text)
            except PriceUnparsable:
                continue
        return None

    def _extract_title(self, soup: BeautifulSoup, profile: SiteProfile) -> Optional[str]:
        if profile.title_selector:
            texts = [t for t in self._select_texts(soup, profile.title_selector, " ") if t]
            if texts:
                return texts[0]

        meta = soup.find('meta', attrs={'property': 'og:title'})
        if meta and meta.get('content'):
            return meta['content'].strip()
        if soup.title and soup.title.string:
            return soup.title.string.strip()
        return None

    def _extract_image(self, soup: BeautifulSoup, profile: SiteProfile, base_url: str) -> Optional[str]:
        src = None
        if profile.image_selector:
            element = soup.select_one(profile.image_selector)
            if element is not None:
                src = element.get('src') or element.get('data-src') or element.get('content')

        if not src:
            meta = soup.find('meta', attrs={'property': 'og:image'})
            src = meta.get('content') if meta else None

        return urljoin(base_url, src) if src else None

    def _extract_original_price(self, soup: BeautifulSoup, profile: SiteProfile) -> Optional[int]:
        if not profile.original_price_selector:
            return None
        price = self._first_price(self._select_texts(soup, profile.original_price_selector))
        if price is None:
            logger.debug(f"No original price found with {profile.original_price_selector!r}")
        return price
