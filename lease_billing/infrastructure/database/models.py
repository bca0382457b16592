"""SQLAlchemy ORM models for the billing ledger"""

import uuid
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship

from lease_billing.utils.date_utils import utcnow

Base = declarative_base()

# At most one live payment per (lease, type, due date); late fees are keyed by
# the payment they penalize instead
PERIOD_KEY_PREDICATE = "status != 'canceled' AND late_fee_for_payment_id IS NULL"


class BillingCustomer(Base):
    """Payer's customer record at the gateway"""

    __tablename__ = "billing_customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, unique=True)
    gateway_customer_id = Column(Text, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class PaymentMethod(Base):
    """Local mirror of a stored payment method owned by the gateway"""

    __tablename__ = "payment_methods"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    gateway_payment_method_id = Column(Text, nullable=False, unique=True)
    method_type = Column(Text, nullable=False)  # card | bank_account
    last_four = Column(Text, nullable=True)
    brand = Column(Text, nullable=True)
    exp_month = Column(Integer, nullable=True)
    exp_year = Column(Integer, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class PaymentSchedule(Base):
    """Recurring obligation of a lease"""

    __tablename__ = "payment_schedules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lease_agreement_id = Column(Text, nullable=False, index=True)
    payer_id = Column(Text, nullable=False)
    payment_type = Column(Text, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    frequency = Column(Text, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    next_payment_date = Column(Date, nullable=False, index=True)
    day_of_month = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    auto_pay = Column(Boolean, nullable=False, default=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    payments = relationship("Payment", back_populates="schedule")


class Payment(Base):
    """One money movement and its lifecycle; never deleted"""

    __tablename__ = "payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_number = Column(Text, nullable=False, unique=True)
    lease_agreement_id = Column(Text, nullable=False, index=True)
    payer_id = Column(Text, nullable=False, index=True)
    payment_method_id = Column(
        UUID(as_uuid=True), ForeignKey("payment_methods.id", ondelete="SET NULL"), nullable=True
    )
    schedule_id = Column(UUID(as_uuid=True), ForeignKey("payment_schedules.id"), nullable=True)
    payment_type = Column(Text, nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(Text, nullable=False, default="pending", index=True)
    description = Column(Text, nullable=True)
    due_date = Column(Date, nullable=True, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    gateway_intent_id = Column(Text, nullable=True, unique=True)
    gateway_charge_id = Column(Text, nullable=True)
    refunded_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    attempt_count = Column(Integer, nullable=False, default=0)
    late_fee_for_payment_id = Column(
        UUID(as_uuid=True), ForeignKey("payments.id"), nullable=True, unique=True
    )
    payment_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    schedule = relationship("PaymentSchedule", back_populates="payments")
    payment_method = relationship("PaymentMethod")

    __table_args__ = (
        Index(
            "uq_payments_period",
            "lease_agreement_id",
            "payment_type",
            "due_date",
            unique=True,
            postgresql_where=text(PERIOD_KEY_PREDICATE),
            sqlite_where=text(PERIOD_KEY_PREDICATE),
        ),
    )


class GatewayEventRecord(Base):
    """Reconciliation record: one row per external event id ever applied"""

    __tablename__ = "gateway_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(Text, nullable=False, unique=True)
    kind = Column(Text, nullable=False)
    object_id = Column(Text, nullable=True, index=True)
    outcome = Column(Text, nullable=False, default="received")
    detail = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
