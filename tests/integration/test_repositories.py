"""Integration tests for the ledger's idempotency keys and compare-and-swap writes"""

import pytest
import uuid
from datetime import date
from decimal import Decimal

from lease_billing.domain.exceptions import ConcurrencyConflictError, DuplicatePaymentError, PaymentNotFoundError
from lease_billing.domain.models import GatewayPaymentMethod
from lease_billing.domain.payments import mark_canceled, mark_failed, mark_processing
from lease_billing.infrastructure.database.repositories import PaymentMethodRepository, PaymentRepository

DUE = date(2024, 1, 31)


def test_period_key_rejects_duplicate(db, make_payment):
    """One live payment per (lease, type, due date)"""
    make_payment(due_date=DUE)
    with pytest.raises(DuplicatePaymentError):
        make_payment(due_date=DUE)

    # Savepoint rollback leaves the session usable
    assert len(PaymentRepository(db).list_by_lease("lease_1")) == 1


def test_period_key_ignores_canceled(db, make_payment):
    repo = PaymentRepository(db)
    first = make_payment(due_date=DUE)
    repo.apply_transition(first, mark_canceled(first, "duplicate"))

    second = make_payment(due_date=DUE)

    assert repo.find_period_payment("lease_1", "rent", DUE).id == second.id


def test_late_fee_key_is_separate(db, make_payment):
    """Late fees do not collide on the period key; their own key is the original payment"""
    original = make_payment(due_date=DUE)
    make_payment(payment_type="late_fee", due_date=DUE, amount=Decimal("100.00"), late_fee_for_payment_id=original.id)

    with pytest.raises(DuplicatePaymentError):
        make_payment(
            payment_type="late_fee", due_date=date(2024, 2, 1), amount=Decimal("100.00"),
            late_fee_for_payment_id=original.id,
        )
    assert PaymentRepository(db).find_late_fee_for(original.id) is not None


def test_require_raises_for_missing_payment(db, make_payment):
    repo = PaymentRepository(db)
    payment = make_payment(due_date=DUE)

    assert repo.require(payment.id) is payment
    with pytest.raises(PaymentNotFoundError):
        repo.require(uuid.uuid4())


def test_transition_is_compare_and_swap(db, make_payment):
    """A transition computed from a stale read is rejected, not overwritten"""
    repo = PaymentRepository(db)
    payment = make_payment()
    stale = mark_processing(payment)
    repo.apply_transition(payment, mark_failed(payment, "declined"))

    with pytest.raises(ConcurrencyConflictError):
        repo.apply_transition(payment, stale)
    assert payment.status == "failed"


def test_transition_writes_changes(db, make_payment):
    repo = PaymentRepository(db)
    payment = make_payment()

    repo.apply_transition(payment, mark_processing(payment))

    assert payment.status == "processing"
    assert payment.attempt_count == 1


def test_attach_intent_requires_processing(db, make_payment):
    repo = PaymentRepository(db)
    payment = make_payment()
    with pytest.raises(ConcurrencyConflictError):
        repo.attach_intent(payment, "pi_1")

    repo.apply_transition(payment, mark_processing(payment))
    repo.attach_intent(payment, "pi_1")

    assert repo.get_by_intent_id("pi_1").id == payment.id


def test_list_overdue_and_reminders(db, make_payment):
    repo = PaymentRepository(db)
    overdue = make_payment(due_date=date(2024, 1, 1))
    make_payment(due_date=date(2024, 1, 20))
    canceled = make_payment(due_date=date(2024, 1, 2), lease_agreement_id="lease_2")
    repo.apply_transition(canceled, mark_canceled(canceled))

    assert [p.id for p in repo.list_overdue(date(2024, 1, 10))] == [overdue.id]
    assert len(repo.list_pending_due_on([date(2024, 1, 20), date(2024, 1, 17)])) == 1


def test_first_method_becomes_default(db):
    repo = PaymentMethodRepository(db)
    first = repo.upsert_from_gateway("tenant_1", GatewayPaymentMethod("pm_1", "cus_1", "card", "4242", "visa", 12, 2030))
    second = repo.upsert_from_gateway("tenant_1", GatewayPaymentMethod("pm_2", "cus_1", "card", "1111", "visa", 1, 2031))

    assert first.is_default is True
    assert second.is_default is False

    refreshed = repo.upsert_from_gateway("tenant_1", GatewayPaymentMethod("pm_1", "cus_1", "card", "4242", "visa", 6, 2032))
    assert refreshed.id == first.id
    assert refreshed.exp_year == 2032


def test_removing_default_promotes_remaining(db, make_payment):
    repo = PaymentMethodRepository(db)
    repo.upsert_from_gateway("tenant_1", GatewayPaymentMethod("pm_1", "cus_1", "card"))
    repo.upsert_from_gateway("tenant_1", GatewayPaymentMethod("pm_2", "cus_1", "card"))
    default = repo.get_default_for_user("tenant_1")
    payment = make_payment(payment_method_id=default.id)

    assert repo.remove_by_gateway_id("pm_1") is True
    assert repo.get_default_for_user("tenant_1").gateway_payment_method_id == "pm_2"
    db.refresh(payment)
    assert payment.payment_method_id is None
    assert repo.remove_by_gateway_id("pm_missing") is False
