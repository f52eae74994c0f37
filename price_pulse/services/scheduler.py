"""
Periodic price check scheduler.

Each tick enqueues the tracked products that are due, runs
fetch -> extract -> evaluate -> persist -> notify for each of them on a
bounded worker pool, and isolates per-product failures. A product is never
checked twice concurrently, however many ticks overlap.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..config.config_manager import ConfigManager
from ..database.repository import AlertRepository, PriceHistoryRepository, TrackedProductRepository
from ..models.interfaces import IFetcher, INotifier
from ..models.product_data import (
    CheckState, NotificationEvent, PriceRecord, SiteProfile, TrackedProduct, format_price, utc_now
)
from .error_handler import ErrorHandler
from .extractor import PriceExtractor
from .price_tracking import ThresholdEvaluator


class CheckStatus(Enum):
    """Outcome of one product check."""
    UPDATED = "updated"
    FAILED = "failed"
    DISCARDED = "discarded"
    SKIPPED = "skipped"


@dataclass
class CheckOutcome:
    """Result of checking a single product."""
    product_id: str
    status: CheckStatus
    record: Optional[PriceRecord] = None
    events: List[NotificationEvent] = field(default_factory=list)
    error_kind: Optional[str] = None


@dataclass
class TickResult:
    """What a tick launched and what came of it."""
    started_at: datetime
    outcomes: List[CheckOutcome] = field(default_factory=list)
    skipped_in_flight: List[str] = field(default_factory=list)

    @property
    def events(self) -> List[NotificationEvent]:
        return [event for outcome in self.outcomes for event in outcome.events]


class PriceCheckScheduler:
    """Owns the check loop, its worker pool and the in-flight registry."""

    def __init__(self,
                 product_repo: TrackedProductRepository,
                 alert_repo: AlertRepository,
                 history_repo: PriceHistoryRepository,
                 fetcher: IFetcher,
                 extractor: PriceExtractor,
                 evaluator: ThresholdEvaluator,
                 notifier: INotifier,
                 error_handler: Optional[ErrorHandler] = None,
                 check_interval: float = 300,
                 tick_interval: float = 60,
                 max_concurrent: int = 5,
                 failure_threshold: int = 5,
                 persist_history: bool = True,
                 clock: Callable[[], datetime] = utc_now,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.logger = logging.getLogger(__name__)
        self.product_repo = product_repo
        self.alert_repo = alert_repo
        self.history_repo = history_repo
        self.fetcher = fetcher
        self.extractor = extractor
        self.evaluator = evaluator
        self.notifier = notifier
        self.error_handler = error_handler or ErrorHandler()

        self.check_interval = timedelta(seconds=check_interval)
        self.tick_interval = tick_interval
        self.max_concurrent = max_concurrent
        self.failure_threshold = failure_threshold
        self.persist_history = persist_history
        self._clock = clock
        self._sleep = sleep

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._in_flight: Set[str] = set()
        self._tick_tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self.running = False

    @classmethod
    def from_config(cls, config_manager: ConfigManager, **components) -> 'PriceCheckScheduler':
        """Build a scheduler from the ``scheduler`` and ``tracking`` config sections."""
        scheduler_config = config_manager.get_scheduler_config()
        tracking_config = config_manager.get_tracking_config()
        return cls(
            check_interval=scheduler_config.get('check_interval', 300),
            tick_interval=scheduler_config.get('tick_interval', 60),
            max_concurrent=scheduler_config.get('max_concurrent', 5),
            failure_threshold=scheduler_config.get('failure_threshold', 5),
            persist_history=tracking_config.get('persist_history', True),
            **components
        )

    def get_state(self, product_id: str) -> CheckState:
        """Current check state of a product."""
        return CheckState.CHECKING if product_id in self._in_flight else CheckState.IDLE

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    async def start(self) -> None:
        """Start the periodic tick loop."""
        if self.running:
            return
        self.running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        self.logger.info(
            f"Scheduler started: tick every {self.tick_interval}s, "
            f"check interval {self.check_interval.total_seconds():.0f}s, "
            f"max {self.max_concurrent} concurrent checks"
        )

    async def stop(self) -> None:
        """Stop ticking; checks already in flight are allowed to finish."""
        self.running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)
        self.logger.info(f"Scheduler stopped: {self.get_status()}")

    async def run_forever(self) -> None:
        """Start the loop and block until it is stopped or cancelled."""
        await self.start()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def _run_loop(self) -> None:
        while self.running:
            # Ticks run as their own tasks so a slow check never delays the next tick
            task = asyncio.create_task(self.tick())
            self._tick_tasks.add(task)
            task.add_done_callback(self._on_tick_done)
            await self._sleep(self.tick_interval)

    def _on_tick_done(self, task: asyncio.Task) -> None:
        self._tick_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Tick failed: {task.exception()}", exc_info=task.exception())

    async def tick(self) -> TickResult:
        """Check every due product that is not already being checked."""
        now = self._clock()
        result = TickResult(started_at=now)
        due = self.product_repo.get_due_products(now, self.check_interval)

        claimed = []
        for product in due:
            if self._claim(product.product_id):
                claimed.append(product)
            else:
                result.skipped_in_flight.append(product.product_id)

        if claimed:
            self.logger.debug(f"Tick: checking {len(claimed)} products, {len(result.skipped_in_flight)} in flight")
            result.outcomes = list(await asyncio.gather(*(self._execute(p) for p in claimed)))

        return result

    async def check_product(self, product: TrackedProduct) -> CheckOutcome:
        """Check a single product now, unless a check of it is already running."""
        if not self._claim(product.product_id):
            return CheckOutcome(product.product_id, CheckStatus.SKIPPED)
        return await self._execute(product)

    def _claim(self, product_id: str) -> bool:
        if product_id in self._in_flight:
            return False
        self._in_flight.add(product_id)
        return True

    async def _execute(self, product: TrackedProduct) -> CheckOutcome:
        try:
            async with self._semaphore:
                return await self._run_check(product)
        finally:
            self._in_flight.discard(product.product_id)

    def _profile_for(self, product: TrackedProduct) -> SiteProfile:
        profile = self.extractor.registry.get(product.site_profile_id)
        return profile or self.extractor.registry.resolve(product.url)

    async def _run_check(self, product: TrackedProduct) -> CheckOutcome:
        self.logger.debug(f"Checking product {product.product_id}: {product.url}")
        try:
            profile = self._profile_for(product)
            page = await self.fetcher.fetch(product.url)
            record = self.extractor.extract(page, product.product_id, profile)
        except Exception as e:
            return self._handle_failure(product, e)

        try:
            return await self._apply_result(product, replace(record, captured_at=self._clock()))
        except Exception as e:
            return self._handle_failure(product, e)

    def _handle_failure(self, product: TrackedProduct, error: Exception) -> CheckOutcome:
        self.error_handler.handle_product_error(error, product.product_id, product.url)
        kind = ErrorHandler.error_kind(error)

        failures = self.product_repo.record_failure(product.product_id, f"{kind}: {error}", self._clock())
        if failures is not None and failures == self.failure_threshold:
            self.logger.warning(
                f"Product {product.product_id} ({product.url}) has failed {failures} consecutive checks"
            )
        return CheckOutcome(product.product_id, CheckStatus.FAILED, error_kind=kind)

    async def _apply_result(self, product: TrackedProduct, record: PriceRecord) -> CheckOutcome:
        current = self.product_repo.get_product(product.product_id)
        alerts = self.alert_repo.get_alerts_for_product(product.product_id, active_only=True) if current else []
        if current is None or not alerts:
            self.logger.info(f"Product {product.product_id} is no longer tracked, discarding result")
            return CheckOutcome(product.product_id, CheckStatus.DISCARDED, record=record)

        if not self.product_repo.record_check(record, expected_last_checked_at=product.last_checked_at):
            self.logger.warning(f"Product {product.product_id} was updated concurrently, discarding result")
            return CheckOutcome(product.product_id, CheckStatus.DISCARDED, record=record)

        change = self.evaluator.detect_price_change(current.last_known_price, record.price)
        if change and self.evaluator.is_significant_price_change(change):
            self.logger.info(
                f"Price of {current.url} moved {format_price(change.previous_price)} -> "
                f"{format_price(change.current_price)} ({change.change_percentage:+.2f}%)"
            )

        result = self.evaluator.evaluate(
            record, alerts,
            previous_price=current.last_known_price,
            previous_checked_at=current.last_checked_at,
            url=current.url
        )

        if self.persist_history:
            self.history_repo.add_record(record)
        if result.deactivated_alert_ids:
            self.alert_repo.deactivate_alerts(result.deactivated_alert_ids, record.captured_at)

        for event in result.events:
            await self._notify(event)

        return CheckOutcome(product.product_id, CheckStatus.UPDATED, record=record, events=result.events)

    async def _notify(self, event: NotificationEvent) -> None:
        try:
            await self.notifier.notify(event)
        except Exception as e:
            self.error_handler.handle_notification_error(e, event.alert_id)

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of scheduler state for logs."""
        return {
            "running": self.running,
            "in_flight": sorted(self._in_flight),
            "error_counts": self.error_handler.get_error_counts(),
        }
