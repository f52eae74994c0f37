"""
Tests for the price check scheduler.
"""
import asyncio
import sqlite3
import logging
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from price_pulse.models.interfaces import IFetcher
from price_pulse.models.product_data import Alert, CheckState, PriceRecord, RawPage, TrackedProduct
from price_pulse.services.error_handler import ConnectionFailed, HttpError
from price_pulse.services.price_tracking import ThresholdEvaluator
from price_pulse.services.scheduler import CheckStatus, PriceCheckScheduler

ITEM_URL = "https://example.com/item"


def price_page(amount: str) -> str:
    return f'<html><body><h1>Widget</h1><span class="price">{amount}</span></body></html>'


class FakeFetcher(IFetcher):
    """Serves canned pages; a list value is consumed one entry per fetch."""

    def __init__(self, pages, delay=0.0):
        self.pages = pages
        self.delay = delay
        self.calls = []
        self.active = 0
        self.peak = 0
        self.started = asyncio.Event()
        self.gate = None
        self.on_fetch = None

    async def fetch(self, url):
        self.calls.append(url)
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.on_fetch is not None:
                self.on_fetch(url)

            result = self.pages[url]
            if isinstance(result, list):
                result = result.pop(0)
            if isinstance(result, Exception):
                raise result
            return RawPage(url=url, final_url=url, status=200, html=result, fetched_at=None)
        finally:
            self.active -= 1


def make_scheduler(repositories, fetcher, extractor, notifier, clock, evaluator=None, **kwargs):
    product_repo, alert_repo, history_repo = repositories
    return PriceCheckScheduler(
        product_repo, alert_repo, history_repo,
        fetcher=fetcher,
        extractor=extractor,
        evaluator=evaluator or ThresholdEvaluator(),
        notifier=notifier,
        clock=clock,
        **kwargs
    )


def track(repositories, clock, url=ITEM_URL, target_price=5000, user_id="user-1"):
    """Store a product with one alert created an hour before the clock."""
    product_repo, alert_repo, _ = repositories
    product = TrackedProduct.create_new(url, "example")
    assert product_repo.add_product(product)
    alert = Alert.create_new(user_id, product.product_id, target_price)
    alert.created_at = clock.now - timedelta(hours=1)
    assert alert_repo.add_alert(alert)
    return product, alert


@pytest.mark.asyncio
async def test_end_to_end_price_below_target(repositories, extractor, notifier, clock):
    """$49.99 on example.com against a 50.00 target yields one notification."""
    product, alert = track(repositories, clock, target_price=5000)
    fetcher = FakeFetcher({ITEM_URL: price_page("$49.99")})
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock)

    result = await scheduler.tick()

    assert len(result.outcomes) == 1
    outcome = result.outcomes[0]
    assert outcome.status == CheckStatus.UPDATED
    assert outcome.record.price == 4999
    assert outcome.record.captured_at == clock.now

    notifier.notify.assert_awaited_once()
    event = notifier.notify.await_args.args[0]
    assert event.alert_id == alert.alert_id
    assert event.observed_amount == Decimal("49.99")
    assert event.target_amount == Decimal("50.00")
    assert event.url == ITEM_URL
    assert event.title == "Widget"

    product_repo, _, history_repo = repositories
    stored = product_repo.get_product(product.product_id)
    assert stored.last_known_price == 4999
    assert stored.last_checked_at == clock.now
    assert stored.title == "Widget"
    assert [r.price for r in history_repo.get_history(product.product_id)] == [4999]


@pytest.mark.asyncio
async def test_three_ticks_notify_once(repositories, extractor, notifier, clock):
    """Prices 120, 95, 90 against a 100 target notify once, on the second tick."""
    track(repositories, clock, target_price=10000)
    fetcher = FakeFetcher({ITEM_URL: [price_page("$120.00"), price_page("$95.00"), price_page("$90.00")]})
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock, check_interval=300)

    events_per_tick = []
    for _ in range(3):
        result = await scheduler.tick()
        events_per_tick.append(len(result.events))
        clock.advance(300)

    assert events_per_tick == [0, 1, 0]
    assert notifier.notify.await_count == 1
    assert notifier.notify.await_args.args[0].observed_price == 9500
    assert len(fetcher.calls) == 3


@pytest.mark.asyncio
async def test_products_not_due_are_skipped(repositories, extractor, notifier, clock):
    track(repositories, clock)
    fetcher = FakeFetcher({ITEM_URL: [price_page("$60.00"), price_page("$61.00")]})
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock, check_interval=300)

    await scheduler.tick()
    clock.advance(299)
    result = await scheduler.tick()

    assert result.outcomes == []
    assert len(fetcher.calls) == 1


@pytest.mark.asyncio
async def test_overlapping_ticks_never_check_a_product_twice(repositories, extractor, notifier, clock):
    """A product still in flight is skipped by the next tick."""
    product, _ = track(repositories, clock)
    fetcher = FakeFetcher({ITEM_URL: price_page("$60.00")})
    fetcher.gate = asyncio.Event()
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock)

    first = asyncio.create_task(scheduler.tick())
    await fetcher.started.wait()
    assert scheduler.get_state(product.product_id) == CheckState.CHECKING

    clock.advance(600)
    second = await scheduler.tick()
    assert second.skipped_in_flight == [product.product_id]
    assert second.outcomes == []

    skipped = await scheduler.check_product(product)
    assert skipped.status == CheckStatus.SKIPPED

    fetcher.gate.set()
    first_result = await first

    assert [o.status for o in first_result.outcomes] == [CheckStatus.UPDATED]
    assert len(fetcher.calls) == 1
    assert scheduler.get_state(product.product_id) == CheckState.IDLE
    assert scheduler.in_flight == set()


@pytest.mark.asyncio
async def test_concurrency_is_bounded(repositories, extractor, notifier, clock):
    """No more than max_concurrent checks run at once."""
    urls = [f"https://example.com/item-{i}" for i in range(6)]
    for url in urls:
        track(repositories, clock, url=url)
    fetcher = FakeFetcher({url: price_page("$60.00") for url in urls}, delay=0.01)
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock, max_concurrent=2)

    result = await scheduler.tick()

    assert len(result.outcomes) == 6
    assert all(o.status == CheckStatus.UPDATED for o in result.outcomes)
    assert fetcher.peak == 2


@pytest.mark.asyncio
async def test_failure_is_isolated_and_recorded(repositories, extractor, notifier, clock):
    """One failing product does not affect the others."""
    broken, _ = track(repositories, clock, url="https://example.com/broken")
    working, _ = track(repositories, clock, url=ITEM_URL)
    fetcher = FakeFetcher({
        "https://example.com/broken": ConnectionFailed("refused", "https://example.com/broken"),
        ITEM_URL: price_page("$60.00"),
    })
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock)

    result = await scheduler.tick()

    statuses = {o.product_id: o for o in result.outcomes}
    assert statuses[broken.product_id].status == CheckStatus.FAILED
    assert statuses[broken.product_id].error_kind == "connection_failed"
    assert statuses[working.product_id].status == CheckStatus.UPDATED

    product_repo = repositories[0]
    stored = product_repo.get_product(broken.product_id)
    assert stored.consecutive_failures == 1
    assert stored.last_error.startswith("connection_failed")
    assert stored.last_attempted_at == clock.now
    assert stored.last_known_price is None
    assert scheduler.error_handler.get_error_counts() == {"network:connection_failed": 1}


@pytest.mark.asyncio
async def test_extraction_failure_is_recorded(repositories, extractor, notifier, clock):
    product, _ = track(repositories, clock)
    fetcher = FakeFetcher({ITEM_URL: "<html><body>Sold out</body></html>"})
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock)

    outcome = await scheduler.check_product(product)

    assert outcome.status == CheckStatus.FAILED
    assert outcome.error_kind == "price_not_found"
    notifier.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_failure_threshold_warns_once_and_success_resets(repositories, extractor, notifier, clock, caplog):
    product, _ = track(repositories, clock)
    fetcher = FakeFetcher({ITEM_URL: [HttpError(503, ITEM_URL)] * 3 + [price_page("$60.00")]})
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock, failure_threshold=2)
    caplog.set_level(logging.WARNING, logger="price_pulse.services.scheduler")

    for _ in range(4):
        await scheduler.tick()
        clock.advance(300)

    warnings = [r for r in caplog.records if "consecutive checks" in r.getMessage()]
    assert len(warnings) == 1
    assert repositories[0].get_product(product.product_id).consecutive_failures == 0


@pytest.mark.asyncio
async def test_result_discarded_when_product_removed(repositories, extractor, notifier, clock):
    """A check finishing after its product was deleted changes nothing."""
    product, _ = track(repositories, clock, target_price=10000)
    product_repo, _, history_repo = repositories
    fetcher = FakeFetcher({ITEM_URL: price_page("$49.99")})
    fetcher.on_fetch = lambda url: product_repo.delete_product(product.product_id)
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock)

    result = await scheduler.tick()

    assert result.outcomes[0].status == CheckStatus.DISCARDED
    assert product_repo.get_product(product.product_id) is None
    assert history_repo.get_history(product.product_id) == []
    notifier.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_result_discarded_when_alerts_removed(repositories, extractor, notifier, clock):
    product, alert = track(repositories, clock, target_price=10000)
    _, alert_repo, _ = repositories
    fetcher = FakeFetcher({ITEM_URL: price_page("$49.99")})
    fetcher.on_fetch = lambda url: alert_repo.delete_alert(alert.alert_id)
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock)

    outcome = await scheduler.check_product(product)

    assert outcome.status == CheckStatus.DISCARDED
    assert repositories[0].get_product(product.product_id).last_known_price is None
    notifier.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_concurrent_writer_wins_compare_and_set(repositories, extractor, notifier, clock):
    """A result is dropped if another check was recorded while it ran."""
    product, _ = track(repositories, clock, target_price=10000)
    product_repo = repositories[0]
    fetcher = FakeFetcher({ITEM_URL: price_page("$49.99")})
    fetcher.on_fetch = lambda url: product_repo.record_check(
        PriceRecord(product_id=product.product_id, price=20000, captured_at=clock.now), None
    )
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock)

    outcome = await scheduler.check_product(product)

    assert outcome.status == CheckStatus.DISCARDED
    assert product_repo.get_product(product.product_id).last_known_price == 20000
    notifier.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_notifier_failure_does_not_fail_check(repositories, extractor, clock):
    track(repositories, clock, target_price=10000)
    notifier = AsyncMock()
    notifier.notify = AsyncMock(side_effect=RuntimeError("mail server down"))
    fetcher = FakeFetcher({ITEM_URL: price_page("$49.99")})
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock)

    result = await scheduler.tick()

    assert result.outcomes[0].status == CheckStatus.UPDATED
    assert len(result.events) == 1
    notifier.notify.assert_awaited_once()
    assert scheduler.error_handler.get_error_counts() == {"notification:RuntimeError": 1}
    assert scheduler.get_status()["error_counts"] == {"notification:RuntimeError": 1}


@pytest.mark.asyncio
async def test_deactivate_on_trigger_stops_tracking(repositories, extractor, notifier, clock):
    product, alert = track(repositories, clock, target_price=10000)
    fetcher = FakeFetcher({ITEM_URL: [price_page("$49.99"), price_page("$39.99")]})
    scheduler = make_scheduler(
        repositories, fetcher, extractor, notifier, clock,
        evaluator=ThresholdEvaluator(deactivate_on_trigger=True)
    )

    await scheduler.tick()
    clock.advance(300)
    second = await scheduler.tick()

    stored = repositories[1].get_alert(alert.alert_id)
    assert not stored.active
    assert stored.triggered_at is not None
    assert second.outcomes == []
    assert notifier.notify.await_count == 1


@pytest.mark.asyncio
async def test_history_not_persisted_when_disabled(repositories, extractor, notifier, clock):
    product, _ = track(repositories, clock)
    fetcher = FakeFetcher({ITEM_URL: price_page("$60.00")})
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock, persist_history=False)

    await scheduler.tick()

    assert repositories[2].get_history(product.product_id) == []
    assert repositories[0].get_product(product.product_id).last_known_price == 6000


@pytest.mark.asyncio
async def test_start_and_stop(repositories, extractor, notifier, clock):
    """The periodic loop ticks until stopped."""
    track(repositories, clock)
    fetcher = FakeFetcher({ITEM_URL: price_page("$60.00")})
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock, tick_interval=0.01)

    await scheduler.start()
    assert scheduler.running
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert not scheduler.running
    # The clock does not move, so the product is only due once
    assert len(fetcher.calls) == 1


def test_from_config(repositories, extractor, notifier, config_manager):
    product_repo, alert_repo, history_repo = repositories
    scheduler = PriceCheckScheduler.from_config(
        config_manager,
        product_repo=product_repo,
        alert_repo=alert_repo,
        history_repo=history_repo,
        fetcher=FakeFetcher({}),
        extractor=extractor,
        evaluator=ThresholdEvaluator(),
        notifier=notifier,
    )

    assert scheduler.max_concurrent == 2
    assert scheduler.check_interval == timedelta(seconds=300)


@pytest.mark.asyncio
async def test_flood_of_triggers_checks_product_once(repositories, extractor, notifier, clock):
    """Many concurrent ticks and direct checks of one product fetch it once."""
    product, _ = track(repositories, clock)
    fetcher = FakeFetcher({ITEM_URL: price_page("$60.00")})
    fetcher.gate = asyncio.Event()
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock)

    ticks = [asyncio.create_task(scheduler.tick()) for _ in range(20)]
    checks = [asyncio.create_task(scheduler.check_product(product)) for _ in range(20)]
    await fetcher.started.wait()
    await asyncio.wait(ticks[1:] + checks)
    assert scheduler.get_status()["in_flight"] == [product.product_id]

    fetcher.gate.set()
    tick_results = await asyncio.gather(*ticks)
    check_results = await asyncio.gather(*checks)

    assert len(fetcher.calls) == 1
    assert [o.status for o in tick_results[0].outcomes] == [CheckStatus.UPDATED]
    assert all(r.skipped_in_flight == [product.product_id] for r in tick_results[1:])
    assert all(o.status == CheckStatus.SKIPPED for o in check_results)
    assert scheduler.in_flight == set()


@pytest.mark.asyncio
async def test_store_error_fails_only_that_product(repositories, extractor, notifier, clock):
    """A database error while applying one result does not abort the tick."""
    locked, _ = track(repositories, clock, url="https://example.com/locked")
    working, _ = track(repositories, clock, url=ITEM_URL)
    fetcher = FakeFetcher({
        "https://example.com/locked": price_page("$60.00"),
        ITEM_URL: price_page("$61.00"),
    })
    scheduler = make_scheduler(repositories, fetcher, extractor, notifier, clock)

    product_repo = repositories[0]
    get_product = product_repo.get_product

    def flaky_get_product(product_id):
        if product_id == locked.product_id:
            raise sqlite3.OperationalError("database is locked")
        return get_product(product_id)

    product_repo.get_product = flaky_get_product

    result = await scheduler.tick()

    statuses = {o.product_id: o for o in result.outcomes}
    assert statuses[locked.product_id].status == CheckStatus.FAILED
    assert statuses[locked.product_id].error_kind == "OperationalError"
    assert statuses[working.product_id].status == CheckStatus.UPDATED
    assert scheduler.error_handler.get_error_counts() == {"database:OperationalError": 1}
    assert scheduler.in_flight == set()

    product_repo.get_product = get_product
    assert product_repo.get_product(locked.product_id).consecutive_failures == 1
