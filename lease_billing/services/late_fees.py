"""Late fee calculator - derives penalty payments from overdue rent"""

import logging
from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

from lease_billing.config import settings
from lease_billing.domain.exceptions import DuplicatePaymentError
from lease_billing.domain.models import LateFeePolicy, PaymentType
from lease_billing.domain.payments import calculate_late_fee, days_overdue
from lease_billing.infrastructure.database.models import Payment
from lease_billing.infrastructure.database.repositories import PaymentRepository

logger = logging.getLogger(__name__)


def late_fee_policy_from_settings() -> LateFeePolicy:
    return LateFeePolicy(
        flat_amount=settings.late_fee_flat_amount,
        rate=settings.late_fee_rate,
        threshold_days=settings.late_fee_threshold_days,
    )


class LateFeeCalculator:
    """
    Creates at most one late-fee payment per overdue rent payment.

    The dedup key is the unique `late_fee_for_payment_id` column; the read
    check only avoids a pointless insert, the constraint decides races.
    """

    def __init__(self, db: Session, policy: Optional[LateFeePolicy] = None):
        self.db = db
        self.policy = policy or late_fee_policy_from_settings()
        self.payments = PaymentRepository(db)

    def run(self, today: Optional[date] = None) -> List[Payment]:
        today = today or date.today()
        created = []
        for payment in self.payments.list_overdue(today, PaymentType.RENT):
            late_fee = self.apply(payment, today)
            if late_fee is not None:
                created.append(late_fee)
        return created

    def apply(self, payment: Payment, today: Optional[date] = None) -> Optional[Payment]:
        today = today or date.today()
        amount = calculate_late_fee(payment, today, self.policy)
        if amount <= 0:
            return None
        if self.payments.find_late_fee_for(payment.id) is not None:
            return None

        overdue_days = days_overdue(payment, today)
        try:
            late_fee = self.payments.create(
                today=today,
                lease_agreement_id=payment.lease_agreement_id,
                payer_id=payment.payer_id,
                payment_type=PaymentType.LATE_FEE.value,
                amount=amount,
                due_date=today,
                description=f"Late fee for overdue {payment.payment_type} payment",
                late_fee_for_payment_id=payment.id,
                payment_metadata={"original_payment_id": str(payment.id), "days_overdue": overdue_days},
            )
        except DuplicatePaymentError:
            logger.info("Late fee already created concurrently", extra={"payment_id": str(payment.id)})
            return None

        logger.info(
            "Late fee created",
            extra={
                "payment_id": str(payment.id),
                "late_fee_payment_id": str(late_fee.id),
                "amount": str(amount),
                "days_overdue": overdue_days,
            },
        )
        return late_fee
