"""Recurring schedule service: creation, idempotent period materialization, advancing"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from lease_billing.domain.exceptions import DuplicatePaymentError, ScheduleInactiveError
from lease_billing.domain.models import PaymentType
from lease_billing.domain.payments import validate_new_payment
from lease_billing.domain.schedules import next_step, period_description, validate_schedule
from lease_billing.infrastructure.database.models import Payment, PaymentSchedule
from lease_billing.infrastructure.database.repositories import PaymentRepository, ScheduleRepository

logger = logging.getLogger(__name__)


@dataclass
class MaterializedPayment:
    payment: Payment
    created: bool


class ScheduleService:
    def __init__(self, db: Session):
        self.db = db
        self.schedules = ScheduleRepository(db)
        self.payments = PaymentRepository(db)

    def create_schedule(
        self,
        lease_agreement_id: str,
        payer_id: str,
        payment_type: str,
        amount: Decimal,
        frequency: str,
        start_date: date,
        end_date: Optional[date] = None,
        next_payment_date: Optional[date] = None,
        day_of_month: Optional[int] = None,
        auto_pay: bool = False,
        description: Optional[str] = None,
        today: Optional[date] = None,
    ) -> PaymentSchedule:
        next_payment_date = next_payment_date or start_date
        parsed_type, parsed_frequency = validate_schedule(
            payment_type, amount, frequency, start_date, end_date, next_payment_date, day_of_month, today
        )
        return self.schedules.create(
            lease_agreement_id=lease_agreement_id,
            payer_id=payer_id,
            payment_type=parsed_type.value,
            amount=Decimal(amount),
            frequency=parsed_frequency.value,
            start_date=start_date,
            end_date=end_date,
            next_payment_date=next_payment_date,
            day_of_month=day_of_month,
            auto_pay=auto_pay,
            is_active=True,
            description=description,
        )

    def create_payment_for_current_period(
        self,
        schedule: PaymentSchedule,
        advance: bool = True,
        today: Optional[date] = None,
    ) -> MaterializedPayment:
        """
        Return the period's payment, creating it at most once.

        The read-side check covers the common case; the partial unique index on
        (lease, type, due date) settles concurrent callers, and the loser gets
        the winner's row back. Only the creator advances the schedule.

        Raises:
            ScheduleInactiveError: schedule is deactivated
        """
        if not schedule.is_active:
            raise ScheduleInactiveError(f"Schedule {schedule.id} is inactive")

        due_date = schedule.next_payment_date
        existing = self.payments.find_period_payment(schedule.lease_agreement_id, schedule.payment_type, due_date)
        if existing is not None:
            logger.info(
                "Payment already exists for schedule period",
                extra={"schedule_id": str(schedule.id), "payment_id": str(existing.id), "due_date": due_date.isoformat()},
            )
            return MaterializedPayment(existing, created=False)

        payment_type = validate_new_payment(
            schedule.amount, schedule.payment_type, schedule.payer_id, schedule.lease_agreement_id, None
        )
        try:
            payment = self.payments.create(
                today=today,
                lease_agreement_id=schedule.lease_agreement_id,
                payer_id=schedule.payer_id,
                schedule_id=schedule.id,
                payment_type=payment_type.value,
                amount=schedule.amount,
                due_date=due_date,
                description=schedule.description or period_description(PaymentType(payment_type), due_date),
            )
        except DuplicatePaymentError:
            existing = self.payments.find_period_payment(schedule.lease_agreement_id, schedule.payment_type, due_date)
            if existing is None:
                raise
            logger.info(
                "Concurrent materialization lost the race, using existing payment",
                extra={"schedule_id": str(schedule.id), "payment_id": str(existing.id)},
            )
            return MaterializedPayment(existing, created=False)

        logger.info(
            "Payment created for schedule period",
            extra={"schedule_id": str(schedule.id), "payment_id": str(payment.id), "payment_number": payment.payment_number},
        )
        if advance:
            self.advance_to_next(schedule)
        return MaterializedPayment(payment, created=True)

    def advance_to_next(self, schedule: PaymentSchedule) -> bool:
        """
        Move the schedule to its next due date, or deactivate it when that date
        falls past the end date. Returns True only if this call advanced it.
        """
        expected = schedule.next_payment_date
        new_date = next_step(schedule)
        if new_date is None:
            self.schedules.deactivate(schedule)
            logger.info("Schedule ran past its end date, deactivated", extra={"schedule_id": str(schedule.id)})
            return False

        advanced = self.schedules.advance(schedule, expected, new_date)
        if not advanced:
            logger.info(
                "Schedule already advanced by another worker",
                extra={"schedule_id": str(schedule.id), "next_payment_date": schedule.next_payment_date.isoformat()},
            )
        return advanced

    def deactivate(self, schedule: PaymentSchedule) -> PaymentSchedule:
        return self.schedules.deactivate(schedule)
