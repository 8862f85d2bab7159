import logging
from typing import Callable, Union

from .models import BalanceChanged, WithdrawalStatusChanged

logger = logging.getLogger(__name__)

LedgerEvent = Union[BalanceChanged, WithdrawalStatusChanged]
Subscriber = Callable[[LedgerEvent], None]


class EventPublisher:
    """Fan-out of ledger events to the notification channel (bot, socket push).

    Delivery belongs to the subscribers; a failing subscriber is logged and
    never rolls back the ledger write that produced the event.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event: LedgerEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, type(event).__name__)
