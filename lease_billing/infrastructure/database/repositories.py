"""Data access layer for billing entities"""

import logging
import uuid
from datetime import date
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lease_billing.domain.exceptions import ConcurrencyConflictError, DuplicatePaymentError, PaymentNotFoundError
from lease_billing.domain.models import GatewayEvent, GatewayPaymentMethod, PaymentStatus, PaymentType, Transition
from lease_billing.domain.payments import generate_payment_number
from lease_billing.infrastructure.database.models import (
    BillingCustomer,
    GatewayEventRecord,
    Payment,
    PaymentMethod,
    PaymentSchedule,
)
from lease_billing.infrastructure.observability.metrics import payment_transition_counter
from lease_billing.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


class PaymentRepository:
    """Repository for payments; every status write is a compare-and-swap"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return self.db.get(Payment, payment_id)

    def require(self, payment_id: uuid.UUID) -> Payment:
        """
        Raises:
            PaymentNotFoundError: no payment with this id
        """
        payment = self.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return payment

    def get_by_number(self, payment_number: str) -> Optional[Payment]:
        return self.db.execute(
            select(Payment).where(Payment.payment_number == payment_number)
        ).scalar_one_or_none()

    def get_by_intent_id(self, intent_id: str) -> Optional[Payment]:
        return self.db.execute(
            select(Payment).where(Payment.gateway_intent_id == intent_id)
        ).scalar_one_or_none()

    def find_period_payment(self, lease_agreement_id: str, payment_type: str, due_date: date) -> Optional[Payment]:
        """Live payment holding the (lease, type, due date) key, if any"""
        return self.db.execute(
            select(Payment).where(
                Payment.lease_agreement_id == lease_agreement_id,
                Payment.payment_type == payment_type,
                Payment.due_date == due_date,
                Payment.status != PaymentStatus.CANCELED.value,
                Payment.late_fee_for_payment_id.is_(None),
            )
        ).scalar_one_or_none()

    def find_late_fee_for(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return self.db.execute(
            select(Payment).where(Payment.late_fee_for_payment_id == payment_id)
        ).scalar_one_or_none()

    def _unused_payment_number(self, today: Optional[date]) -> str:
        while True:
            number = generate_payment_number(today)
            if self.get_by_number(number) is None:
                return number

    def create(self, today: Optional[date] = None, **fields) -> Payment:
        """
        Insert a payment inside a savepoint.

        Raises:
            DuplicatePaymentError: a live payment already holds the period key
                or the late-fee key; only the savepoint is rolled back
        """
        fields.setdefault("payment_number", self._unused_payment_number(today))
        fields.setdefault("status", PaymentStatus.PENDING.value)
        fields.setdefault("payment_metadata", {})
        payment = Payment(**fields)
        try:
            with self.db.begin_nested():
                self.db.add(payment)
                self.db.flush()
        except IntegrityError as e:
            raise DuplicatePaymentError(
                f"Payment already exists for lease {fields.get('lease_agreement_id')} "
                f"{fields.get('payment_type')} due {fields.get('due_date')}"
            ) from e
        return payment

    def apply_transition(self, payment: Payment, transition: Transition) -> Payment:
        """
        Write a state-machine transition only if the row still holds the
        expected pre-state.

        Raises:
            ConcurrencyConflictError: another writer changed the row first
        """
        if transition.noop:
            return payment

        stmt = update(Payment).where(
            Payment.id == payment.id,
            Payment.status == transition.from_status.value,
        )
        for column, expected in transition.guard.items():
            attr = getattr(Payment, column)
            stmt = stmt.where(attr.is_(None) if expected is None else attr == expected)

        values = {Payment.status: transition.to_status.value, Payment.updated_at: utcnow()}
        values.update({getattr(Payment, column): value for column, value in transition.changes.items()})

        result = self.db.execute(stmt.values(values).execution_options(synchronize_session=False))
        self.db.refresh(payment)
        if result.rowcount != 1:
            raise ConcurrencyConflictError(
                f"Payment {payment.payment_number} changed concurrently "
                f"(expected {transition.from_status.value}, found {payment.status}); retry the operation"
            )

        payment_transition_counter.labels(
            from_status=transition.from_status.value,
            to_status=transition.to_status.value,
        ).inc()
        logger.info(
            "Payment transition",
            extra={
                "payment_id": str(payment.id),
                "payment_number": payment.payment_number,
                "from_status": transition.from_status.value,
                "to_status": transition.to_status.value,
            },
        )
        return payment

    def attach_intent(self, payment: Payment, intent_id: str) -> Payment:
        """Record the gateway intent of the in-flight attempt"""
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PROCESSING.value)
            .values({Payment.gateway_intent_id: intent_id, Payment.updated_at: utcnow()})
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(payment)
        if result.rowcount != 1 and payment.gateway_intent_id != intent_id:
            raise ConcurrencyConflictError(
                f"Payment {payment.payment_number} left processing before intent {intent_id} was recorded"
            )
        return payment

    def list_by_lease(self, lease_agreement_id: str, limit: int = 50) -> List[Payment]:
        return list(
            self.db.execute(
                select(Payment)
                .where(Payment.lease_agreement_id == lease_agreement_id)
                .order_by(Payment.due_date.desc(), Payment.created_at.desc())
                .limit(limit)
            ).scalars()
        )

    def list_pending_due_on(self, due_dates: Iterable[date]) -> List[Payment]:
        return list(
            self.db.execute(
                select(Payment)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.due_date.in_(list(due_dates)),
                )
                .order_by(Payment.due_date)
            ).scalars()
        )

    def list_overdue(self, today: date, payment_type: Optional[PaymentType] = None) -> List[Payment]:
        """Pending or failed payments whose due date has passed"""
        stmt = select(Payment).where(
            Payment.due_date < today,
            Payment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]),
        )
        if payment_type is not None:
            stmt = stmt.where(Payment.payment_type == payment_type.value)
        return list(self.db.execute(stmt.order_by(Payment.due_date)).scalars())


class ScheduleRepository:
    """Repository for recurring payment schedules"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields) -> PaymentSchedule:
        schedule = PaymentSchedule(**fields)
        self.db.add(schedule)
        self.db.flush()
        return schedule

    def get(self, schedule_id: uuid.UUID) -> Optional[PaymentSchedule]:
        return self.db.get(PaymentSchedule, schedule_id)

    def list_due_ids(self, today: date) -> List[uuid.UUID]:
        """Active auto-pay schedules due today or earlier"""
        return list(
            self.db.execute(
                select(PaymentSchedule.id)
                .where(
                    PaymentSchedule.is_active.is_(True),
                    PaymentSchedule.auto_pay.is_(True),
                    PaymentSchedule.next_payment_date <= today,
                )
                .order_by(PaymentSchedule.next_payment_date)
            ).scalars()
        )

    def advance(self, schedule: PaymentSchedule, expected: date, new_date: date) -> bool:
        """
        Move next_payment_date forward only if nobody advanced it already.

        Returns False when another writer got there first.
        """
        result = self.db.execute(
            update(PaymentSchedule)
            .where(
                PaymentSchedule.id == schedule.id,
                PaymentSchedule.next_payment_date == expected,
                PaymentSchedule.is_active.is_(True),
            )
            .values({PaymentSchedule.next_payment_date: new_date, PaymentSchedule.updated_at: utcnow()})
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(schedule)
        return result.rowcount == 1

    def deactivate(self, schedule: PaymentSchedule) -> PaymentSchedule:
        self.db.execute(
            update(PaymentSchedule)
            .where(PaymentSchedule.id == schedule.id)
            .values({PaymentSchedule.is_active: False, PaymentSchedule.updated_at: utcnow()})
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(schedule)
        return schedule


class PaymentMethodRepository:
    """Repository for the local payment-method mirror and gateway customers"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, method_id: uuid.UUID) -> Optional[PaymentMethod]:
        return self.db.get(PaymentMethod, method_id)

    def get_by_gateway_id(self, gateway_payment_method_id: str) -> Optional[PaymentMethod]:
        return self.db.execute(
            select(PaymentMethod).where(PaymentMethod.gateway_payment_method_id == gateway_payment_method_id)
        ).scalar_one_or_none()

    def get_default_for_user(self, user_id: str) -> Optional[PaymentMethod]:
        return self.db.execute(
            select(PaymentMethod).where(PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True))
        ).scalars().first()

    def list_for_user(self, user_id: str) -> List[PaymentMethod]:
        return list(
            self.db.execute(
                select(PaymentMethod)
                .where(PaymentMethod.user_id == user_id)
                .order_by(PaymentMethod.created_at.desc())
            ).scalars()
        )

    def user_for_customer(self, gateway_customer_id: str) -> Optional[str]:
        return self.db.execute(
            select(BillingCustomer.user_id).where(BillingCustomer.gateway_customer_id == gateway_customer_id)
        ).scalar_one_or_none()

    def customer_for_user(self, user_id: str) -> Optional[str]:
        return self.db.execute(
            select(BillingCustomer.gateway_customer_id).where(BillingCustomer.user_id == user_id)
        ).scalar_one_or_none()

    def link_customer(self, user_id: str, gateway_customer_id: str) -> BillingCustomer:
        customer = BillingCustomer(user_id=user_id, gateway_customer_id=gateway_customer_id)
        self.db.add(customer)
        self.db.flush()
        return customer

    def upsert_from_gateway(self, user_id: str, data: GatewayPaymentMethod) -> PaymentMethod:
        """Create or refresh the mirror row; a payer's first method becomes default"""
        method = self.get_by_gateway_id(data.payment_method_id)
        if method is None:
            method = PaymentMethod(
                user_id=user_id,
                gateway_payment_method_id=data.payment_method_id,
                is_default=self.get_default_for_user(user_id) is None,
            )
            self.db.add(method)
        method.method_type = data.method_type
        method.last_four = data.last_four
        method.brand = data.brand
        method.exp_month = data.exp_month
        method.exp_year = data.exp_year
        self.db.flush()
        return method

    def set_default(self, method: PaymentMethod) -> PaymentMethod:
        """Make `method` the payer's only default"""
        self.db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == method.user_id, PaymentMethod.id != method.id)
            .values({PaymentMethod.is_default: False})
            .execution_options(synchronize_session="fetch")
        )
        method.is_default = True
        self.db.flush()
        return method

    def remove_by_gateway_id(self, gateway_payment_method_id: str) -> bool:
        """Drop the mirror row; the newest remaining method inherits default"""
        method = self.get_by_gateway_id(gateway_payment_method_id)
        if method is None:
            return False
        user_id, was_default = method.user_id, method.is_default
        self.db.execute(
            update(Payment)
            .where(Payment.payment_method_id == method.id)
            .values({Payment.payment_method_id: None})
            .execution_options(synchronize_session=False)
        )
        self.db.delete(method)
        self.db.flush()
        if was_default:
            remaining = self.list_for_user(user_id)
            if remaining:
                remaining[0].is_default = True
                self.db.flush()
        return True


class GatewayEventRepository:
    """Repository for applied gateway events"""

    def __init__(self, db: Session):
        self.db = db

    def record(self, event: GatewayEvent, object_id: Optional[str]) -> Optional[GatewayEventRecord]:
        """
        Claim an external event id. Returns None when the id was already
        claimed, which makes the event a duplicate delivery.
        """
        record = GatewayEventRecord(event_id=event.event_id, kind=event.kind, object_id=object_id)
        try:
            with self.db.begin_nested():
                self.db.add(record)
                self.db.flush()
        except IntegrityError:
            return None
        return record

    def get(self, event_id: str) -> Optional[GatewayEventRecord]:
        return self.db.execute(
            select(GatewayEventRecord).where(GatewayEventRecord.event_id == event_id)
        ).scalar_one_or_none()

    def set_outcome(self, record: GatewayEventRecord, outcome: str, detail: Optional[str] = None) -> None:
        record.outcome = outcome
        record.detail = detail
        self.db.flush()


