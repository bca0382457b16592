"""Unit tests for late fee calculation"""

from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

from lease_billing.domain.models import LateFeePolicy
from lease_billing.domain.payments import calculate_late_fee, late_fee_applicable

DUE = date(2024, 3, 1)


def rent(amount="1000.00", status="pending", payment_type="rent"):
    return SimpleNamespace(amount=Decimal(amount), status=status, payment_type=payment_type, due_date=DUE)


def test_late_fee_six_days_overdue():
    """$1000 rent, 6 days overdue, defaults: $50 + 5% of $1000 = $100"""
    assert calculate_late_fee(rent(), DUE + timedelta(days=6)) == Decimal("100.00")


def test_late_fee_below_threshold():
    """2 days overdue is under the 5 day threshold"""
    payment = rent()
    today = DUE + timedelta(days=2)

    assert not late_fee_applicable(payment, today)
    assert calculate_late_fee(payment, today) == Decimal("0.00")


def test_late_fee_at_threshold():
    assert calculate_late_fee(rent(), DUE + timedelta(days=5)) == Decimal("100.00")


def test_late_fee_only_for_rent():
    today = DUE + timedelta(days=10)
    assert calculate_late_fee(rent(payment_type="utility"), today) == Decimal("0.00")
    assert calculate_late_fee(rent(payment_type="late_fee"), today) == Decimal("0.00")


def test_late_fee_not_for_settled_payment():
    assert calculate_late_fee(rent(status="succeeded"), DUE + timedelta(days=10)) == Decimal("0.00")


def test_late_fee_rounds_to_cents():
    """$1234.57 * 5% = 61.7285 -> $111.73 with the flat fee"""
    assert calculate_late_fee(rent("1234.57"), DUE + timedelta(days=6)) == Decimal("111.73")


def test_late_fee_custom_policy():
    policy = LateFeePolicy(flat_amount=Decimal("25.00"), rate=Decimal("0.10"), threshold_days=3)
    assert calculate_late_fee(rent(), DUE + timedelta(days=3), policy) == Decimal("125.00")
    assert calculate_late_fee(rent(), DUE + timedelta(days=2), policy) == Decimal("0.00")
