"""
Retry policy for page fetches.

``RetryingFetcher`` wraps any fetcher and retries network-level failures
(timeouts, connection errors) with exponential backoff. HTTP error statuses
are surfaced immediately.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ..models.interfaces import IFetcher
from ..models.product_data import RawPage
from .error_handler import ConnectionFailed, FetchTimeout

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (FetchTimeout, ConnectionFailed)


@dataclass
class RetryConfig:
    """Configuration for retry mechanisms."""
    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: bool = True
    total_timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RetryConfig':
        """Create instance from the ``retry`` config section."""
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in fields})


class ExponentialBackoff:
    """Exponential backoff implementation with jitter."""

    def __init__(self, config: RetryConfig):
        self.config = config
        self.attempt = 0

    def reset(self) -> None:
        """Reset the backoff counter."""
        self.attempt = 0

    def get_delay(self) -> float:
        """Get the delay for the current attempt and advance."""
        delay = self.config.base_delay * (self.config.exponential_base ** self.attempt)
        delay = min(delay, self.config.max_delay)

        # Add jitter to prevent thundering herd
        if self.config.jitter:
            delay += random.uniform(0, delay * 0.1)

        self.attempt += 1
        return delay


class RetryingFetcher(IFetcher):
    """Fetcher decorator applying a retry policy to another fetcher."""

    def __init__(self, fetcher: IFetcher, retry_config: RetryConfig,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 attempt_timeout: float = 0.0):
        self.fetcher = fetcher
        # Worst-case duration of one attempt, reserved from the retry budget
        self.attempt_timeout = attempt_timeout
        self.retry_config = retry_config
        self._sleep = sleep
        self._clock = clock

    async def fetch(self, url: str) -> RawPage:
        """
        Fetch with retries.

        Makes at most ``max_retries + 1`` attempts. Gives up early when the
        next backoff plus a full ``attempt_timeout`` would overrun
        ``total_timeout``. The last retryable error is re-raised once attempts
        are exhausted.
        """
        backoff = ExponentialBackoff(self.retry_config)
        started = self._clock()
        attempts = self.retry_config.max_retries + 1

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.fetcher.fetch(url)
            except RETRYABLE_ERRORS as e:
                if attempt >= attempts:
                    logger.warning(f"Giving up on {url} after {attempt} attempts: {e.kind}")
                    raise

                delay = backoff.get_delay()
                budget = self.retry_config.total_timeout
                if budget is not None and (self._clock() - started) + delay + self.attempt_timeout > budget:
                    logger.warning(f"Retry budget of {budget}s exhausted for {url} after {attempt} attempts")
                    raise

                logger.info(f"{e.kind} fetching {url} (attempt {attempt}/{attempts}), retrying in {delay:.2f}s")
                await self._sleep(delay)

    async def close(self) -> None:
        await self.fetcher.close()
