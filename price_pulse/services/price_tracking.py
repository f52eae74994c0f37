"""
Threshold evaluation and price change analysis.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from ..models.product_data import Alert, NotificationEvent, PriceChange, PriceRecord, format_price


@dataclass(frozen=True)
class EvaluationResult:
    """Events to dispatch plus the alert state changes to apply."""
    events: List[NotificationEvent] = field(default_factory=list)
    deactivated_alert_ids: List[str] = field(default_factory=list)


class ThresholdEvaluator:
    """
    Compares a fresh price observation against a product's alerts.

    An event is emitted only on the transition into ``price <= target``:
    the previous observation must have been above the target, or absent.
    Repeated low prices therefore notify once per crossing.
    """

    def __init__(self, deactivate_on_trigger: bool = False):
        self.logger = logging.getLogger(__name__)
        self.deactivate_on_trigger = deactivate_on_trigger

    @staticmethod
    def is_crossing(price: int, target: int, previous_price: Optional[int]) -> bool:
        """Whether ``price`` crosses at or below ``target`` coming from ``previous_price``."""
        if price > target:
            return False
        return previous_price is None or previous_price > target

    def evaluate(self, record: PriceRecord, alerts: Iterable[Alert],
                 previous_price: Optional[int] = None,
                 previous_checked_at: Optional[datetime] = None,
                 url: str = "") -> EvaluationResult:
        """
        Evaluate alerts against a price record.

        Args:
            record: New observation
            alerts: Alerts to consider; inactive ones and alerts of other
                products are ignored
            previous_price: Last known price of the product, if any
            previous_checked_at: When ``previous_price`` was observed. Alerts
                created after that moment have no previous price of their own.
            url: Product URL, copied onto events

        Returns:
            EvaluationResult; alert deactivations are only listed when
            ``deactivate_on_trigger`` is set
        """
        events = []
        deactivated = []

        for alert in alerts:
            if not alert.active or alert.product_id != record.product_id:
                continue

            baseline = previous_price
            if previous_checked_at is not None and alert.created_at and alert.created_at > previous_checked_at:
                baseline = None

            if not self.is_crossing(record.price, alert.target_price, baseline):
                continue

            events.append(NotificationEvent(
                alert_id=alert.alert_id,
                product_id=record.product_id,
                observed_price=record.price,
                target_price=alert.target_price,
                user_id=alert.user_id,
                url=url,
                title=record.title,
                occurred_at=record.captured_at
            ))
            if self.deactivate_on_trigger:
                deactivated.append(alert.alert_id)

            self.logger.info(
                f"Alert {alert.alert_id} triggered: {format_price(record.price)} "
                f"<= target {format_price(alert.target_price)} "
                f"(previous {format_price(baseline)})"
            )

        return EvaluationResult(events=events, deactivated_alert_ids=deactivated)

    @staticmethod
    def detect_price_change(previous_price: Optional[int], current_price: int) -> Optional[PriceChange]:
        """Get the change between two observations, or None if unchanged or first."""
        if previous_price is None or previous_price == current_price:
            return None
        return PriceChange(previous_price=previous_price, current_price=current_price)

    @staticmethod
    def is_significant_price_change(price_change: PriceChange, threshold_percent: float = 5.0) -> bool:
        """Check if a price change is significant enough to call out."""
        return abs(price_change.change_percentage) >= threshold_percent
