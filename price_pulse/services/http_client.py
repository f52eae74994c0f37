"""
HTTP fetcher for retailer product pages.
"""
import asyncio
import logging
import random
from typing import Dict, Any, Optional
from urllib.parse import urlparse

import aiohttp

from ..models.interfaces import IFetcher
from ..models.product_data import RawPage, utc_now
from .error_handler import (
    ConnectionFailed, FetchTimeout, HttpError, InvalidUrl, TooManyRedirects
)

logger = logging.getLogger(__name__)

USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15',
]


def validate_url(url: str) -> str:
    """Return ``url`` if it is an absolute http(s) URL, else raise InvalidUrl."""
    if not isinstance(url, str):
        raise InvalidUrl(f"URL must be a string, got {type(url).__name__}")
    parsed = urlparse(url.strip())
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        raise InvalidUrl(f"Not an absolute http(s) URL: {url!r}", url)
    return url.strip()


class HttpFetcher(IFetcher):
    """
    Single-attempt page fetcher on a pooled aiohttp session.

    Retries are not done here; wrap in ``RetryingFetcher`` for that.
    """

    def __init__(self, request_timeout: float = 10, max_redirects: int = 5,
                 rotate_user_agents: bool = True):
        """Initialize the fetcher."""
        self.request_timeout = request_timeout
        self.max_redirects = max_redirects
        self.rotate_user_agents = rotate_user_agents
        self.connection_limit = 20
        self.connection_limit_per_host = 2
        self.session: Optional[aiohttp.ClientSession] = None

    def configure(self, config: Dict[str, Any]) -> None:
        """Configure the fetcher from the ``fetcher`` config section."""
        self.request_timeout = config.get('request_timeout', self.request_timeout)
        self.max_redirects = config.get('max_redirects', self.max_redirects)
        self.rotate_user_agents = config.get('rotate_user_agents', self.rotate_user_agents)
        self.connection_limit = config.get('connection_limit', self.connection_limit)
        self.connection_limit_per_host = config.get('connection_limit_per_host', self.connection_limit_per_host)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'HttpFetcher':
        fetcher = cls()
        fetcher.configure(config)
        return fetcher

    async def get_session(self) -> aiohttp.ClientSession:
        """Get or create an aiohttp session with connection pooling."""
        if self.session is None or self.session.closed:
            conn = aiohttp.TCPConnector(
                limit=self.connection_limit,
                limit_per_host=self.connection_limit_per_host,
                ttl_dns_cache=300,
                enable_cleanup_closed=True
            )
            self.session = aiohttp.ClientSession(
                connector=conn,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                headers={'Connection': 'keep-alive'}
            )
        return self.session

    def get_request_headers(self) -> Dict[str, str]:
        """Get browser-like request headers."""
        user_agent = random.choice(USER_AGENTS) if self.rotate_user_agents else USER_AGENTS[0]
        return {
            'User-Agent': user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.9',
            'Accept-Encoding': 'gzip, deflate',
            'Upgrade-Insecure-Requests': '1',
        }

    async def fetch(self, url: str) -> RawPage:
        """
        Fetch a product page.

        Args:
            url: Absolute http(s) URL

        Returns:
            RawPage with the decoded body

        Raises:
            InvalidUrl, FetchTimeout, ConnectionFailed, TooManyRedirects, HttpError
        """
        url = validate_url(url)
        session = await self.get_session()

        try:
            async with session.get(
                url,
                headers=self.get_request_headers(),
                allow_redirects=True,
                max_redirects=self.max_redirects
            ) as response:
                if response.status >= 400:
                    logger.debug(f"HTTP {response.status} for {url}")
                    raise HttpError(response.status, url)
                html = await response.text(errors='replace')
                logger.debug(f"Fetched {url} ({response.status}, {len(html)} chars)")
                return RawPage(
                    url=url,
                    final_url=str(response.url),
                    status=response.status,
                    html=html,
                    fetched_at=utc_now()
                )
        except aiohttp.TooManyRedirects as e:
            raise TooManyRedirects(f"More than {self.max_redirects} redirects", url) from e
        except asyncio.TimeoutError as e:
            raise FetchTimeout(f"Timed out after {self.request_timeout}s", url) from e
        except aiohttp.ClientResponseError as e:
            raise HttpError(e.status, url) from e
        except aiohttp.ClientError as e:
            raise ConnectionFailed(f"Connection error: {e}", url) from e

    async def close(self) -> None:
        """Close the HTTP session."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
