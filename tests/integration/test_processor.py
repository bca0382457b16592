"""Integration tests for charge, retry, cancel and refund against the mock gateway"""

import pytest
from datetime import date
from decimal import Decimal

import httpx

from lease_billing.domain.exceptions import (
    IllegalTransitionError,
    PaymentValidationError,
    RetryNotAllowedError,
)
from lease_billing.domain.models import Err, Ok
from lease_billing.services.processor import PaymentProcessor
from lease_billing.services.schedules import ScheduleService
from mock.gateway_server import main as gateway_server


@pytest.fixture
def processor(db, gateway, dispatcher, fast_retry) -> PaymentProcessor:
    return PaymentProcessor(db, gateway, dispatcher, retry_policy=fast_retry)


async def settle_at_gateway(intent_id: str, outcome: str = "succeed") -> None:
    """Finish a processing intent out of band, as the card network would"""
    transport = httpx.ASGITransport(app=gateway_server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway.test") as client:
        response = await client.post(f"/v1/test_helpers/intents/{intent_id}/{outcome}")
        response.raise_for_status()


async def test_charge_succeeds(db, processor, sink, make_payment, make_method):
    method = make_method()
    payment = make_payment()

    result = await processor.charge(payment)

    assert isinstance(result, Ok)
    assert payment.status == "succeeded"
    assert payment.gateway_charge_id.startswith("ch_")
    assert payment.gateway_intent_id.startswith("pi_")
    assert payment.payment_method_id == method.id
    assert payment.attempt_count == 1
    assert sink.kinds() == ["payment_succeeded"]


async def test_charge_declined(db, processor, sink, make_payment, make_method):
    """A decline is final for this attempt and not retried automatically"""
    make_method(gateway_id="pm_card_declined")
    payment = make_payment()

    result = await processor.charge(payment)

    assert isinstance(result, Err)
    assert result.error.code == "card_declined"
    assert result.error.retryable is False
    assert payment.status == "failed"
    assert payment.failure_reason == "card_declined: Your card was declined."
    assert sink.kinds() == ["payment_failed"]


async def test_charge_left_processing(db, processor, sink, make_payment, make_method):
    make_method(gateway_id="pm_card_processing")
    payment = make_payment()

    result = await processor.charge(payment)

    assert isinstance(result, Ok)
    assert payment.status == "processing"
    assert payment.gateway_intent_id is not None
    assert sink.delivered == []


async def test_charge_gateway_unavailable(db, processor, sink, make_payment, make_method):
    """Exhausted transient failures leave the payment failed and retryable"""
    make_method(gateway_id="pm_card_unavailable")
    payment = make_payment()

    result = await processor.charge(payment)

    assert isinstance(result, Err)
    assert result.error.retryable is True
    assert result.error.code == "service_unavailable"
    assert payment.status == "failed"
    assert payment.attempt_count == 1


async def test_charge_without_method(db, processor, make_payment):
    payment = make_payment()

    result = await processor.charge(payment)

    assert isinstance(result, Err)
    assert result.error.code == "payment_method_required"
    assert payment.status == "pending"
    assert payment.attempt_count == 0


async def test_charge_skips_expired_card(db, processor, make_payment, make_method):
    make_method(exp_year=2020, exp_month=1)
    payment = make_payment()

    result = await processor.charge(payment)

    assert result.error.code == "payment_method_required"


async def test_retry_after_decline(db, processor, sink, make_payment, make_method):
    method = make_method(gateway_id="pm_card_declined")
    payment = make_payment()
    await processor.charge(payment)

    # Payer fixes the card on file
    method.gateway_payment_method_id = "pm_card_visa"
    db.commit()
    result = await processor.retry(payment)

    assert isinstance(result, Ok)
    assert payment.status == "succeeded"
    assert payment.attempt_count == 2
    assert payment.failure_reason is None
    assert sink.kinds() == ["payment_failed", "payment_succeeded"]


async def test_retry_rejected_for_fresh_pending(db, processor, make_payment, make_method):
    """A pending payment inside the grace window may still be in flight"""
    make_method()
    payment = make_payment()

    with pytest.raises(RetryNotAllowedError):
        await processor.retry(payment)


async def test_retry_rejected_after_max_attempts(db, gateway, dispatcher, fast_retry, make_payment, make_method):
    processor = PaymentProcessor(db, gateway, dispatcher, retry_policy=fast_retry, max_attempts=1)
    make_method(gateway_id="pm_card_declined")
    payment = make_payment()
    await processor.charge(payment)

    with pytest.raises(RetryNotAllowedError):
        await processor.retry(payment)
    assert payment.attempt_count == 1


async def test_retry_rejected_for_succeeded(db, processor, make_payment, make_method):
    make_method()
    payment = make_payment()
    await processor.charge(payment)

    with pytest.raises(RetryNotAllowedError):
        await processor.retry(payment)


async def test_cancel_pending(db, processor, make_payment):
    payment = make_payment()

    await processor.cancel(payment, reason="Lease terminated")

    assert payment.status == "canceled"
    assert payment.failure_reason == "Lease terminated"


async def test_cancel_processing_cancels_intent(db, processor, make_payment, make_method):
    make_method(gateway_id="pm_card_processing")
    payment = make_payment()
    await processor.charge(payment)

    await processor.cancel(payment, reason="duplicate")

    assert payment.status == "canceled"
    assert gateway_server.INTENTS[payment.gateway_intent_id]["status"] == "canceled"


async def test_cancel_loses_to_settlement(db, processor, sink, make_payment, make_method):
    """If the gateway settled first, the success is recorded and the cancel rejected"""
    make_method(gateway_id="pm_card_processing")
    payment = make_payment()
    await processor.charge(payment)
    await settle_at_gateway(payment.gateway_intent_id)

    with pytest.raises(IllegalTransitionError):
        await processor.cancel(payment)

    assert payment.status == "succeeded"
    assert sink.kinds() == ["payment_succeeded"]


async def test_cancel_succeeded_rejected(db, processor, make_payment, make_method):
    make_method()
    payment = make_payment()
    await processor.charge(payment)

    with pytest.raises(IllegalTransitionError):
        await processor.cancel(payment)


async def test_cancel_period_payment_advances_schedule(db, processor, make_schedule):
    today = date(2024, 1, 31)
    schedule = make_schedule(start_date=today, day_of_month=31)
    payment = ScheduleService(db).create_payment_for_current_period(schedule, advance=False, today=today).payment

    await processor.cancel(payment)

    assert schedule.next_payment_date == date(2024, 2, 29)


async def test_partial_then_full_refund(db, processor, make_payment, make_method):
    make_method()
    payment = make_payment()
    await processor.charge(payment)

    await processor.refund(payment, Decimal("400.00"), reason="prorated move-out")
    assert payment.status == "refunded"
    assert payment.refunded_amount == Decimal("400.00")

    await processor.refund(payment)
    assert payment.refunded_amount == Decimal("1000.00")
    assert len(payment.payment_metadata["refund_ids"]) == 2

    with pytest.raises(PaymentValidationError):
        await processor.refund(payment, Decimal("0.01"))


async def test_refund_over_amount_rejected(db, processor, make_payment, make_method):
    make_method()
    payment = make_payment()
    await processor.charge(payment)

    with pytest.raises(PaymentValidationError):
        await processor.refund(payment, Decimal("1000.01"))
    assert payment.status == "succeeded"


async def test_refund_requires_settled_payment(db, processor, make_payment):
    with pytest.raises(IllegalTransitionError):
        await processor.refund(make_payment())


def test_create_payment_rejects_foreign_method(db, processor, make_method):
    method = make_method(user_id="tenant_2")

    with pytest.raises(PaymentValidationError):
        processor.create_payment("lease_1", "tenant_1", "rent", Decimal("100.00"), payment_method_id=method.id)


def test_create_payment_defaults_description(db, processor):
    payment = processor.create_payment("lease_1", "tenant_1", "security_deposit", Decimal("1500.00"))

    assert payment.status == "pending"
    assert payment.description
    assert payment.payment_number.startswith("PAY-")
