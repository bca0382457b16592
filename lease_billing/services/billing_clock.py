"""Billing clock - one periodic pass over due schedules, reminders and late fees"""

import logging
import time
from datetime import date, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from lease_billing.config import settings
from lease_billing.domain.models import (
    BillingEvent,
    BillingEventKind,
    ClockRunSummary,
    LateFeePolicy,
    Ok,
    PaymentStatus,
    PaymentType,
)
from lease_billing.domain.payments import billing_event, days_overdue, payment_method_usable, status_of
from lease_billing.domain.retry import RetryPolicy
from lease_billing.infrastructure.clients.gateway import GatewayClient
from lease_billing.infrastructure.database.repositories import (
    PaymentMethodRepository,
    PaymentRepository,
    ScheduleRepository,
)
from lease_billing.infrastructure.database.session import SessionLocal
from lease_billing.infrastructure.observability.logging import log_clock_run
from lease_billing.infrastructure.observability.metrics import record_clock_run
from lease_billing.services.dispatcher import BillingEventDispatcher
from lease_billing.services.late_fees import LateFeeCalculator
from lease_billing.services.processor import PaymentProcessor
from lease_billing.services.schedules import ScheduleService

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"
CHARGED = "charged"
METHOD_REQUIRED = "payment_method_required"


class BillingClock:
    """
    Run-once orchestrator invoked by an external periodic trigger.

    Each schedule is billed in its own session and transaction scope; an error
    on one schedule is rolled back, recorded in the run summary and does not
    stop the pass. Nothing is kept between runs beyond the database.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        dispatcher: BillingEventDispatcher,
        session_factory: Callable[[], Session] = SessionLocal,
        late_fee_policy: Optional[LateFeePolicy] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_attempts: Optional[int] = None,
        reminder_days_before: Optional[List[int]] = None,
    ):
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.late_fee_policy = late_fee_policy
        self.retry_policy = retry_policy
        self.max_attempts = max_attempts or settings.max_charge_attempts
        self.reminder_days_before = (
            reminder_days_before if reminder_days_before is not None else settings.reminder_days_before
        )

    async def run_once(self, today: Optional[date] = None) -> ClockRunSummary:
        start_time = time.time()
        today = today or date.today()
        summary = ClockRunSummary(run_date=today)

        with self.session_factory() as db:
            schedule_ids = ScheduleRepository(db).list_due_ids(today)
        summary.schedules_due = len(schedule_ids)

        for schedule_id in schedule_ids:
            with self.session_factory() as db:
                try:
                    outcome = await self._bill_schedule(db, schedule_id, today)
                except Exception as e:
                    db.rollback()
                    logger.exception("Billing schedule failed", extra={"schedule_id": str(schedule_id)})
                    summary.errors.append(f"{schedule_id}: {e}")
                    continue
            self._tally(summary, outcome)

        await self._send_notices(today, summary)
        self._create_late_fees(today, summary)

        record_clock_run(summary)
        log_clock_run(summary, (time.time() - start_time) * 1000)
        return summary

    @staticmethod
    def _tally(summary: ClockRunSummary, outcome: str) -> None:
        if outcome == SUCCEEDED:
            summary.charged += 1
            summary.succeeded += 1
        elif outcome == FAILED:
            summary.charged += 1
            summary.failed += 1
        elif outcome == CHARGED:
            summary.charged += 1
        elif outcome == METHOD_REQUIRED:
            summary.payment_method_required += 1
        else:
            summary.skipped += 1

    async def _bill_schedule(self, db: Session, schedule_id, today: date) -> str:
        schedule = ScheduleRepository(db).get(schedule_id)
        if schedule is None or not schedule.is_active or schedule.next_payment_date > today:
            return SKIPPED

        service = ScheduleService(db)
        materialized = service.create_payment_for_current_period(schedule, advance=False, today=today)
        payment = materialized.payment
        db.commit()

        status = status_of(payment)
        if status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
            # Settled out of band (webhook or manual retry); catch the schedule up
            service.advance_to_next(schedule)
            db.commit()
            return SKIPPED
        if status == PaymentStatus.PROCESSING:
            return SKIPPED
        if status == PaymentStatus.FAILED and (payment.attempt_count or 0) >= self.max_attempts:
            logger.warning(
                "Automatic retries exhausted",
                extra={"payment_id": str(payment.id), "attempt_count": payment.attempt_count},
            )
            return SKIPPED

        method = PaymentMethodRepository(db).get_default_for_user(payment.payer_id)
        if not payment_method_usable(method, today):
            logger.warning(
                "No usable default payment method, leaving payment pending",
                extra={"payment_id": str(payment.id), "payer_id": payment.payer_id},
            )
            if materialized.created:
                await self.dispatcher.dispatch([billing_event(payment, BillingEventKind.PAYMENT_METHOD_REQUIRED)])
            return METHOD_REQUIRED

        processor = PaymentProcessor(
            db, self.gateway, self.dispatcher, retry_policy=self.retry_policy, max_attempts=self.max_attempts
        )
        result = await processor.charge(payment, method)
        if not isinstance(result, Ok):
            return FAILED
        if status_of(payment) != PaymentStatus.SUCCEEDED:
            return CHARGED

        service.advance_to_next(schedule)
        db.commit()
        return SUCCEEDED

    async def _send_notices(self, today: date, summary: ClockRunSummary) -> None:
        events: List[BillingEvent] = []
        with self.session_factory() as db:
            payments = PaymentRepository(db)
            reminder_dates = [today + timedelta(days=days) for days in self.reminder_days_before]
            for payment in payments.list_pending_due_on(reminder_dates):
                events.append(
                    billing_event(
                        payment,
                        BillingEventKind.PAYMENT_DUE_REMINDER,
                        days_until_due=(payment.due_date - today).days,
                    )
                )
            summary.reminders_sent = len(events)

            for payment in payments.list_overdue(today):
                events.append(
                    billing_event(payment, BillingEventKind.PAYMENT_OVERDUE, days_overdue=days_overdue(payment, today))
                )
            summary.overdue_notices = len(events) - summary.reminders_sent

        await self.dispatcher.dispatch(events)

    def _create_late_fees(self, today: date, summary: ClockRunSummary) -> None:
        with self.session_factory() as db:
            overdue_ids = [p.id for p in PaymentRepository(db).list_overdue(today, PaymentType.RENT)]

        for payment_id in overdue_ids:
            with self.session_factory() as db:
                try:
                    payment = PaymentRepository(db).require(payment_id)
                    late_fee = LateFeeCalculator(db, self.late_fee_policy).apply(payment, today)
                    db.commit()
                except Exception as e:
                    db.rollback()
                    logger.exception("Late fee failed", extra={"payment_id": str(payment_id)})
                    summary.errors.append(f"late fee {payment_id}: {e}")
                    continue
            if late_fee is not None:
                summary.late_fees_created += 1
