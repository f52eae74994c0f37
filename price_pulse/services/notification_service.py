"""
In-process notification dispatcher.

Delivery (email, push) lives outside this package; senders register an
async callback and receive every ``NotificationEvent``.
"""
import logging
from typing import Awaitable, Callable, List

from ..models.interfaces import INotifier
from ..models.product_data import NotificationEvent, format_price

NotificationCallback = Callable[[NotificationEvent], Awaitable[None]]


class NotificationService(INotifier):
    """Logs notification events and fans them out to registered callbacks."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._callbacks: List[NotificationCallback] = []
        self.sent_count = 0
        self.failed_count = 0

    def register_callback(self, callback: NotificationCallback) -> None:
        """Register an async callback for notification events."""
        self._callbacks.append(callback)

    def unregister_callback(self, callback: NotificationCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def notify(self, event: NotificationEvent) -> None:
        """Dispatch an event to every callback; one failing callback does not stop the rest."""
        self.logger.info(
            f"Price alert {event.alert_id} for user {event.user_id}: "
            f"{event.title or event.url} at {format_price(event.observed_price)} "
            f"(target {format_price(event.target_price)})"
        )

        for callback in self._callbacks:
            try:
                await callback(event)
                self.sent_count += 1
            except Exception as e:
                self.failed_count += 1
                self.logger.error(f"Notification callback {callback!r} failed for alert {event.alert_id}: {e}",
                                  exc_info=True)
