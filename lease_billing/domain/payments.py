"""Payment state machine - pure transition functions, predicates and late-fee math"""

import secrets
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, FrozenSet, List, Optional

from lease_billing.domain.exceptions import (
    IllegalTransitionError,
    PaymentValidationError,
    ReconciliationConflictError,
)
from lease_billing.domain.models import (
    BillingEvent,
    BillingEventKind,
    LateFeePolicy,
    PaymentStatus,
    PaymentType,
    Transition,
)
from lease_billing.utils.date_utils import as_utc, end_of_month, utcnow

CENT = Decimal("0.01")

# failed -> processing is a retry attempt on the same row, never automatic
ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING, PaymentStatus.FAILED, PaymentStatus.CANCELED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PROCESSING}),
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.CANCELED: frozenset(),
}

TERMINAL_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED, PaymentStatus.CANCELED})

# Money is still owed on these
OUTSTANDING_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED})

DEFAULT_RETRY_GRACE = timedelta(hours=1)

DEFAULT_DESCRIPTIONS = {
    PaymentType.RENT: "Monthly rent payment",
    PaymentType.SECURITY_DEPOSIT: "Security deposit",
    PaymentType.LATE_FEE: "Late payment fee",
}


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def status_of(payment) -> PaymentStatus:
    return PaymentStatus(payment.status)


def can_transition(from_status: PaymentStatus, to_status: PaymentStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


def is_valid_path(statuses: List[PaymentStatus]) -> bool:
    """True when consecutive observed statuses only follow allowed edges"""
    return all(
        a == b or can_transition(a, b)
        for a, b in zip(statuses, statuses[1:])
    )


def _transition(payment, to_status: PaymentStatus, changes=None, events=None, guard=None) -> Transition:
    current = status_of(payment)
    if not can_transition(current, to_status):
        raise IllegalTransitionError(payment.id, current.value, to_status.value)
    return Transition(
        payment_id=payment.id,
        from_status=current,
        to_status=to_status,
        changes=changes or {},
        events=events or [],
        guard=guard or {},
    )


def billing_event(payment, kind: BillingEventKind, **payload) -> BillingEvent:
    return BillingEvent(
        kind=kind,
        payment_id=str(payment.id),
        payment_number=payment.payment_number,
        payer_id=payment.payer_id,
        amount=Decimal(payment.amount),
        due_date=payment.due_date,
        payload={k: v for k, v in payload.items() if v is not None},
    )


def mark_processing(payment) -> Transition:
    """pending -> processing"""
    if status_of(payment) != PaymentStatus.PENDING:
        raise IllegalTransitionError(payment.id, payment.status, PaymentStatus.PROCESSING.value)
    return _transition(
        payment,
        PaymentStatus.PROCESSING,
        changes={"attempt_count": (payment.attempt_count or 0) + 1},
    )


def begin_retry(payment, now: Optional[datetime] = None, grace: timedelta = DEFAULT_RETRY_GRACE) -> Transition:
    """Start a new processing attempt on a failed or stale pending payment"""
    if not is_retry_eligible(payment, now=now, grace=grace):
        raise IllegalTransitionError(payment.id, payment.status, PaymentStatus.PROCESSING.value)
    return _transition(
        payment,
        PaymentStatus.PROCESSING,
        changes={"attempt_count": (payment.attempt_count or 0) + 1, "failure_reason": None},
    )


def mark_succeeded(payment, charge_ref: Optional[str], paid_at: Optional[datetime] = None) -> Transition:
    """
    processing -> succeeded.

    Repeating the call on a succeeded payment with the same charge reference is
    a no-op; a different reference means the gateway and the ledger disagree.
    """
    current = status_of(payment)
    if current == PaymentStatus.SUCCEEDED:
        if payment.gateway_charge_id == charge_ref or charge_ref is None:
            return Transition(payment.id, current, current, noop=True)
        raise ReconciliationConflictError(
            f"Payment {payment.payment_number} already succeeded with charge "
            f"{payment.gateway_charge_id}, gateway reports {charge_ref}"
        )
    return _transition(
        payment,
        PaymentStatus.SUCCEEDED,
        changes={
            "paid_at": paid_at or utcnow(),
            "gateway_charge_id": charge_ref,
            "failure_reason": None,
        },
        events=[billing_event(payment, BillingEventKind.PAYMENT_SUCCEEDED)],
    )


def mark_failed(payment, reason: str) -> Transition:
    """pending | processing -> failed"""
    reason = reason or "Payment failed"
    return _transition(
        payment,
        PaymentStatus.FAILED,
        changes={"failure_reason": reason},
        events=[billing_event(payment, BillingEventKind.PAYMENT_FAILED, failure_reason=reason)],
    )


def mark_canceled(payment, reason: Optional[str] = None) -> Transition:
    """pending | processing -> canceled; a succeeded payment must be refunded instead"""
    changes: Dict[str, Any] = {}
    if reason:
        changes["failure_reason"] = reason
    return _transition(payment, PaymentStatus.CANCELED, changes=changes)


def record_refund(payment, amount: Decimal, refund_ref: str) -> Transition:
    """
    succeeded | refunded -> refunded, partial or full.

    The cumulative refunded amount never exceeds the payment amount. The
    refunded amount read here is part of the write guard so two concurrent
    refunds cannot both be counted against the same balance.
    """
    current = status_of(payment)
    if current not in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
        raise IllegalTransitionError(payment.id, current.value, PaymentStatus.REFUNDED.value)

    already = Decimal(payment.refunded_amount or 0)
    if amount <= 0:
        raise PaymentValidationError("Refund amount must be positive")
    if amount > refundable_amount(payment):
        raise PaymentValidationError(
            f"Refund of {amount} exceeds remaining balance {refundable_amount(payment)}"
        )

    metadata = dict(payment.payment_metadata or {})
    metadata["refund_ids"] = list(metadata.get("refund_ids", [])) + [refund_ref]
    return Transition(
        payment_id=payment.id,
        from_status=current,
        to_status=PaymentStatus.REFUNDED,
        changes={"refunded_amount": (already + amount).quantize(CENT), "payment_metadata": metadata},
        guard={"refunded_amount": payment.refunded_amount},
    )


def refundable_amount(payment) -> Decimal:
    return (Decimal(payment.amount) - Decimal(payment.refunded_amount or 0)).quantize(CENT)


def is_retry_eligible(payment, now: Optional[datetime] = None, grace: timedelta = DEFAULT_RETRY_GRACE) -> bool:
    """
    Failed payments are always eligible. Pending ones only once older than the
    grace window, so an attempt that may still be in flight is left alone.
    """
    current = status_of(payment)
    if current == PaymentStatus.FAILED:
        return True
    if current == PaymentStatus.PENDING and payment.created_at is not None:
        now = now or utcnow()
        return as_utc(payment.created_at) < as_utc(now) - grace
    return False


def is_overdue(payment, today: Optional[date] = None) -> bool:
    today = today or date.today()
    return (
        payment.due_date is not None
        and payment.due_date < today
        and status_of(payment) in OUTSTANDING_STATUSES
    )


def days_overdue(payment, today: Optional[date] = None) -> int:
    today = today or date.today()
    if not is_overdue(payment, today):
        return 0
    return (today - payment.due_date).days


def late_fee_applicable(payment, today: Optional[date] = None, policy: LateFeePolicy = LateFeePolicy()) -> bool:
    return (
        PaymentType(payment.payment_type) == PaymentType.RENT
        and is_overdue(payment, today)
        and days_overdue(payment, today) >= policy.threshold_days
    )


def calculate_late_fee(payment, today: Optional[date] = None, policy: LateFeePolicy = LateFeePolicy()) -> Decimal:
    """
    Flat fee plus a percentage of the original amount, 0 when not applicable.

    Example:
        $1000 rent, 6 days overdue, defaults -> 50 + 0.05 * 1000 = $100.00
    """
    if not late_fee_applicable(payment, today, policy):
        return Decimal("0.00")
    fee = policy.flat_amount + Decimal(payment.amount) * policy.rate
    return fee.quantize(CENT, rounding=ROUND_HALF_UP)


def generate_payment_number(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"PAY-{today.strftime('%Y%m')}-{secrets.token_hex(3).upper()}"


def default_description(payment_type: PaymentType) -> str:
    return DEFAULT_DESCRIPTIONS.get(payment_type, payment_type.value.replace("_", " ").capitalize())


def validate_new_payment(
    amount: Decimal,
    payment_type: str,
    payer_id: Optional[str],
    lease_agreement_id: Optional[str],
    due_date: Optional[date],
    today: Optional[date] = None,
    window_days: int = 365,
) -> PaymentType:
    """Reject invalid payments before anything is persisted"""
    try:
        parsed_type = PaymentType(payment_type)
    except ValueError:
        raise PaymentValidationError(f"Unknown payment type: {payment_type}")
    if amount is None or Decimal(amount) <= 0:
        raise PaymentValidationError("Payment amount must be positive")
    if not payer_id:
        raise PaymentValidationError("Payment payer is required")
    if not lease_agreement_id:
        raise PaymentValidationError("Payment lease agreement is required")
    if due_date is not None:
        today = today or date.today()
        window = timedelta(days=window_days)
        if due_date < today - window:
            raise PaymentValidationError("Due date cannot be more than 1 year in the past")
        if due_date > today + window:
            raise PaymentValidationError("Due date cannot be more than 1 year in the future")
    return parsed_type


def payment_method_usable(method, today: Optional[date] = None) -> bool:
    """Cards past the last day of their expiry month cannot be charged"""
    if method is None:
        return False
    if method.method_type != "card" or not method.exp_month or not method.exp_year:
        return True
    today = today or date.today()
    return end_of_month(method.exp_year, method.exp_month) >= today
