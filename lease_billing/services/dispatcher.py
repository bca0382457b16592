"""Delivers domain billing events to the notification collaborator"""

import logging
from typing import Iterable, Protocol

from lease_billing.domain.models import BillingEvent
from lease_billing.infrastructure.observability.metrics import notification_failure_counter

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def deliver(self, event: BillingEvent) -> None: ...


class BillingEventDispatcher:
    """
    Hands committed events to the sink one by one.

    Delivery happens after the ledger write is committed; a sink failure is
    logged and counted but never undoes the financial state it describes.
    """

    def __init__(self, sink: NotificationSink):
        self.sink = sink

    async def dispatch(self, events: Iterable[BillingEvent]) -> int:
        delivered = 0
        for event in events:
            try:
                await self.sink.deliver(event)
                delivered += 1
            except Exception:
                notification_failure_counter.inc()
                logger.exception(
                    "Billing event delivery failed",
                    extra={"event": event.kind.value, "payment_id": event.payment_id},
                )
        return delivered
