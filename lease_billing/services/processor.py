"""Payment processor - charge, retry, cancel and refund against the gateway"""

import dataclasses
import logging
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from lease_billing.config import settings
from lease_billing.domain.exceptions import (
    ConcurrencyConflictError,
    GatewayDeclinedError,
    GatewayError,
    GatewayRequestError,
    IllegalTransitionError,
    PaymentValidationError,
    RetryNotAllowedError,
)
from lease_billing.domain.models import ChargeFailure, Err, Ok, PaymentStatus, Result
from lease_billing.domain.payments import (
    begin_retry,
    default_description,
    from_cents,
    is_retry_eligible,
    mark_canceled,
    mark_failed,
    mark_processing,
    payment_method_usable,
    record_refund,
    refundable_amount,
    status_of,
    to_cents,
    validate_new_payment,
)
from lease_billing.domain.retry import RetryPolicy, run_with_retry
from lease_billing.infrastructure.clients.gateway import GatewayClient, gateway_retry_policy
from lease_billing.infrastructure.database.models import Payment, PaymentMethod
from lease_billing.infrastructure.database.repositories import (
    PaymentMethodRepository,
    PaymentRepository,
    ScheduleRepository,
)
from lease_billing.infrastructure.observability.logging import log_charge_outcome
from lease_billing.services.dispatcher import BillingEventDispatcher
from lease_billing.services.reconciler import GatewayReconciler
from lease_billing.services.schedules import ScheduleService

logger = logging.getLogger(__name__)


class PaymentProcessor:
    """
    Drives charge attempts for one payment at a time.

    The attempt is claimed (status CAS to processing) and committed before the
    gateway is called, so no database lock is held across network I/O and a
    concurrent worker sees the attempt as in flight. Unlike the services that
    only stage changes, this class commits on its own.
    """

    def __init__(
        self,
        db: Session,
        gateway: GatewayClient,
        dispatcher: BillingEventDispatcher,
        retry_policy: Optional[RetryPolicy] = None,
        max_attempts: Optional[int] = None,
        retry_grace: Optional[timedelta] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.retry_policy = retry_policy or gateway_retry_policy()
        self.max_attempts = max_attempts or settings.max_charge_attempts
        self.retry_grace = retry_grace or timedelta(minutes=settings.retry_grace_minutes)
        self.payments = PaymentRepository(db)
        self.methods = PaymentMethodRepository(db)
        self.reconciler = GatewayReconciler(db)

    def create_payment(
        self,
        lease_agreement_id: str,
        payer_id: str,
        payment_type: str,
        amount: Decimal,
        due_date: Optional[date] = None,
        description: Optional[str] = None,
        payment_method_id=None,
        today: Optional[date] = None,
    ) -> Payment:
        """
        Create a one-off pending payment.

        Raises:
            PaymentValidationError: invalid amount, type, parties or due date
            DuplicatePaymentError: a live payment already holds the period key
        """
        parsed_type = validate_new_payment(
            amount,
            payment_type,
            payer_id,
            lease_agreement_id,
            due_date,
            today=today,
            window_days=settings.payment_due_window_days,
        )
        if payment_method_id is not None:
            method = self.methods.get(payment_method_id)
            if method is None or method.user_id != payer_id:
                raise PaymentValidationError("Payment method does not belong to the payer")
        return self.payments.create(
            today=today,
            lease_agreement_id=lease_agreement_id,
            payer_id=payer_id,
            payment_type=parsed_type.value,
            amount=Decimal(amount),
            due_date=due_date,
            description=description or default_description(parsed_type),
            payment_method_id=payment_method_id,
        )

    def resolve_method(self, payment: Payment) -> Optional[PaymentMethod]:
        """The payment's own method if it still exists, else the payer's default"""
        if payment.payment_method_id is not None:
            method = self.methods.get(payment.payment_method_id)
            if method is not None:
                return method
        return self.methods.get_default_for_user(payment.payer_id)

    async def charge(
        self,
        payment: Payment,
        method: Optional[PaymentMethod] = None,
        now: Optional[datetime] = None,
    ) -> Result[Payment, ChargeFailure]:
        """
        Submit one charge attempt and apply the synchronous result.

        Returns Ok(payment) when the gateway accepted the charge (succeeded,
        or still processing and left to the webhook), Err(ChargeFailure)
        otherwise. A definitive decline is not retryable by the caller;
        exhausted transient failures are.

        Raises:
            IllegalTransitionError: payment is not pending or retry-eligible
            ConcurrencyConflictError: another worker claimed the attempt first
        """
        start_time = time.time()
        method = method or self.resolve_method(payment)
        if not payment_method_usable(method):
            return Err(ChargeFailure("payment_method_required", "No usable payment method on file", retryable=False))

        if status_of(payment) == PaymentStatus.PENDING:
            claim = mark_processing(payment)
        else:
            claim = begin_retry(payment, now=now, grace=self.retry_grace)
        claim = dataclasses.replace(claim, changes={**claim.changes, "payment_method_id": method.id})
        self.payments.apply_transition(payment, claim)
        self.db.commit()

        attempt = payment.attempt_count
        customer_id = self.methods.customer_for_user(payment.payer_id)

        async def create_intent():
            return await self.gateway.create_intent(
                amount_cents=to_cents(Decimal(payment.amount)),
                payment_method_id=method.gateway_payment_method_id,
                idempotency_key=f"{payment.payment_number}-{attempt}",
                customer_id=customer_id,
                description=payment.description,
                metadata={
                    "payment_id": str(payment.id),
                    "payment_number": payment.payment_number,
                    "payer_id": payment.payer_id,
                },
            )

        try:
            intent = await run_with_retry(
                create_intent, self.retry_policy, task_name=f"charge {payment.payment_number}"
            )
        except GatewayDeclinedError as e:
            failure = ChargeFailure(e.code or "card_declined", str(e), retryable=False)
            return await self._fail_attempt(payment, failure, start_time)
        except GatewayError as e:
            failure = ChargeFailure(e.code or "gateway_error", str(e), retryable=e.retryable)
            return await self._fail_attempt(payment, failure, start_time)

        events = []
        try:
            self.payments.attach_intent(payment, intent.intent_id)
            outcome = self.reconciler.apply_intent(payment, intent)
            self.db.commit()
            events = outcome.events
        except ConcurrencyConflictError:
            # A webhook for this intent got there first; its result stands
            self.db.rollback()
            self.db.refresh(payment)
            logger.info(
                "Charge result already applied by webhook",
                extra={"payment_id": str(payment.id), "intent_id": intent.intent_id},
            )

        await self.dispatcher.dispatch(events)
        status = status_of(payment)
        log_charge_outcome(
            str(payment.id),
            payment.payment_number,
            status.value,
            attempt,
            (time.time() - start_time) * 1000,
            payment.failure_reason,
        )

        if status == PaymentStatus.FAILED:
            return Err(
                ChargeFailure(intent.failure_code or "payment_failed", payment.failure_reason or "", retryable=True)
            )
        if status == PaymentStatus.CANCELED:
            return Err(ChargeFailure("canceled", payment.failure_reason or "Payment canceled", retryable=False))
        return Ok(payment)

    async def _fail_attempt(self, payment: Payment, failure: ChargeFailure, start_time: float) -> Err:
        events = []
        try:
            if status_of(payment) in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                transition = mark_failed(payment, f"{failure.code}: {failure.message}")
                self.payments.apply_transition(payment, transition)
                events = transition.events
            self.db.commit()
        except ConcurrencyConflictError:
            self.db.rollback()
            self.db.refresh(payment)

        await self.dispatcher.dispatch(events)
        log_charge_outcome(
            str(payment.id),
            payment.payment_number,
            payment.status,
            payment.attempt_count,
            (time.time() - start_time) * 1000,
            payment.failure_reason,
        )
        return Err(failure)

    async def retry(self, payment: Payment, now: Optional[datetime] = None) -> Result[Payment, ChargeFailure]:
        """
        User-initiated retry on the same payment row.

        Raises:
            RetryNotAllowedError: not retry-eligible or attempts exhausted
        """
        if not is_retry_eligible(payment, now=now, grace=self.retry_grace):
            raise RetryNotAllowedError(
                f"Payment {payment.payment_number} is {payment.status} and not eligible for retry"
            )
        if (payment.attempt_count or 0) >= self.max_attempts:
            raise RetryNotAllowedError(
                f"Payment {payment.payment_number} reached the limit of {self.max_attempts} attempts"
            )
        return await self.charge(payment, now=now)

    async def cancel(self, payment: Payment, reason: Optional[str] = None) -> Payment:
        """
        Cancel a pending or processing payment.

        An in-flight intent is canceled at the gateway first; if the gateway
        has already settled it, the settlement is recorded and the
        cancellation rejected.

        Raises:
            IllegalTransitionError: payment is not pending or processing
        """
        current = status_of(payment)
        if current not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            raise IllegalTransitionError(payment.id, current.value, PaymentStatus.CANCELED.value)

        events = []
        if current == PaymentStatus.PROCESSING and payment.gateway_intent_id:
            try:
                intent = await self.gateway.cancel_intent(payment.gateway_intent_id, reason)
            except GatewayRequestError:
                intent = await self.gateway.retrieve_intent(payment.gateway_intent_id)
            outcome = self.reconciler.apply_intent(payment, intent)
            events = outcome.events
        else:
            self.payments.apply_transition(payment, mark_canceled(payment, reason or "Canceled by request"))
        self._release_schedule_period(payment)
        self.db.commit()
        await self.dispatcher.dispatch(events)

        if status_of(payment) != PaymentStatus.CANCELED:
            raise IllegalTransitionError(payment.id, payment.status, PaymentStatus.CANCELED.value)
        logger.info("Payment canceled", extra={"payment_id": str(payment.id), "reason": reason})
        return payment

    def _release_schedule_period(self, payment: Payment) -> None:
        """A canceled period payment moves its schedule on instead of being re-billed"""
        if status_of(payment) != PaymentStatus.CANCELED or payment.schedule_id is None:
            return
        schedule = ScheduleRepository(self.db).get(payment.schedule_id)
        if schedule is not None and schedule.is_active and schedule.next_payment_date == payment.due_date:
            ScheduleService(self.db).advance_to_next(schedule)

    async def refund(self, payment: Payment, amount: Optional[Decimal] = None, reason: Optional[str] = None) -> Payment:
        """
        Refund part or all of a settled payment.

        Raises:
            IllegalTransitionError: payment is not succeeded or refunded
            PaymentValidationError: amount is not within the refundable balance
        """
        current = status_of(payment)
        if current not in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
            raise IllegalTransitionError(payment.id, current.value, PaymentStatus.REFUNDED.value)
        if not payment.gateway_charge_id:
            raise PaymentValidationError(f"Payment {payment.payment_number} has no gateway charge to refund")

        amount = Decimal(amount) if amount is not None else refundable_amount(payment)
        if amount <= 0 or amount > refundable_amount(payment):
            raise PaymentValidationError(
                f"Refund of {amount} is outside the refundable balance {refundable_amount(payment)}"
            )

        # Keyed by the balance already refunded so a repeated request is deduplicated
        idempotency_key = f"{payment.payment_number}-refund-{to_cents(Decimal(payment.refunded_amount or 0))}"

        async def create_refund():
            return await self.gateway.create_refund(
                payment.gateway_charge_id, to_cents(amount), idempotency_key=idempotency_key, reason=reason
            )

        refund = await run_with_retry(create_refund, self.retry_policy, task_name=f"refund {payment.payment_number}")
        self.payments.apply_transition(
            payment, record_refund(payment, from_cents(refund.amount_cents), refund.refund_id)
        )
        self.db.commit()
        logger.info(
            "Payment refunded",
            extra={
                "payment_id": str(payment.id),
                "refund_id": refund.refund_id,
                "amount": str(amount),
                "refunded_amount": str(payment.refunded_amount),
            },
        )
        return payment
