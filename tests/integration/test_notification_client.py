"""Integration tests for notification delivery and the event dispatcher"""

import json
import pytest
from datetime import date
from decimal import Decimal

import httpx

from lease_billing.domain.models import BillingEvent, BillingEventKind
from lease_billing.domain.retry import RetryPolicy
from lease_billing.infrastructure.clients.notifications import NotificationClient
from lease_billing.services.dispatcher import BillingEventDispatcher

NO_BACKOFF = RetryPolicy(max_attempts=3, backoff_base=0.0, retryable=(httpx.HTTPStatusError, httpx.RequestError))


def event(kind=BillingEventKind.PAYMENT_SUCCEEDED) -> BillingEvent:
    return BillingEvent(
        kind=kind,
        payment_id="b6b5a9a4-0000-0000-0000-000000000001",
        payment_number="PAY-202401-ABC123",
        payer_id="tenant_1",
        amount=Decimal("1200.00"),
        due_date=date(2024, 1, 31),
        payload={"days_overdue": 3},
    )


async def test_delivers_event_body():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200)

    client = NotificationClient("http://notify.test/events", policy=NO_BACKOFF, transport=httpx.MockTransport(handler))
    await client.deliver(event())

    [request] = received
    body = json.loads(request.content)
    assert body["event"] == "payment_succeeded"
    assert body["amount"] == "1200.00"
    assert body["days_overdue"] == 3


async def test_retries_server_errors():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503 if calls["count"] < 3 else 200)

    client = NotificationClient("http://notify.test/events", policy=NO_BACKOFF, transport=httpx.MockTransport(handler))
    await client.deliver(event())

    assert calls["count"] == 3


async def test_gives_up_after_policy_attempts():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    client = NotificationClient("http://notify.test/events", policy=NO_BACKOFF, transport=httpx.MockTransport(handler))
    with pytest.raises(httpx.HTTPStatusError):
        await client.deliver(event())


async def test_dispatcher_survives_sink_failure():
    """A failed notification never propagates back into billing"""

    class FlakySink:
        def __init__(self):
            self.delivered = []

        async def deliver(self, billing_event):
            if billing_event.kind == BillingEventKind.PAYMENT_OVERDUE:
                raise RuntimeError("sink down")
            self.delivered.append(billing_event)

    sink = FlakySink()
    delivered = await BillingEventDispatcher(sink).dispatch(
        [event(BillingEventKind.PAYMENT_OVERDUE), event(BillingEventKind.PAYMENT_SUCCEEDED)]
    )

    assert delivered == 1
    assert [e.kind for e in sink.delivered] == [BillingEventKind.PAYMENT_SUCCEEDED]
