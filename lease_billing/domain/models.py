"""Domain models - pure Python dataclasses and enums representing billing entities"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union


class PaymentType(str, Enum):
    RENT = "rent"
    SECURITY_DEPOSIT = "security_deposit"
    LATE_FEE = "late_fee"
    UTILITY = "utility"
    MAINTENANCE_FEE = "maintenance_fee"
    OTHER = "other"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class Frequency(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class BillingEventKind(str, Enum):
    """Events delivered to the notification sink"""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_DUE_REMINDER = "payment_due_reminder"
    PAYMENT_OVERDUE = "payment_overdue"
    PAYMENT_METHOD_REQUIRED = "payment_method_required"


class GatewayEventKind(str, Enum):
    """Webhook event kinds the reconciler understands"""

    INTENT_SUCCEEDED = "intent.succeeded"
    INTENT_FAILED = "intent.failed"
    INTENT_PROCESSING = "intent.processing"
    INTENT_CANCELED = "intent.canceled"
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"
    PAYMENT_METHOD_DETACHED = "payment_method.detached"


# Payment types a recurring schedule may produce
SCHEDULABLE_TYPES = frozenset(
    {PaymentType.RENT, PaymentType.UTILITY, PaymentType.MAINTENANCE_FEE, PaymentType.OTHER}
)


@dataclass(frozen=True)
class BillingEvent:
    """Structured billing event for the notification collaborator"""

    kind: BillingEventKind
    payment_id: str
    payment_number: str
    payer_id: str
    amount: Decimal
    due_date: Optional[date]
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.kind.value,
            "payment_id": self.payment_id,
            "payment_number": self.payment_number,
            "payer_id": self.payer_id,
            "amount": str(self.amount),
            "due_date": self.due_date.isoformat() if self.due_date else None,
            **self.payload,
        }


@dataclass(frozen=True)
class Transition:
    """
    Outcome of a state-machine operation.

    `changes` are the column values to write alongside the new status and
    `guard` holds extra columns that must still match for the write to apply.
    A no-op transition writes nothing and emits nothing.
    """

    payment_id: Any
    from_status: PaymentStatus
    to_status: PaymentStatus
    changes: Dict[str, Any] = field(default_factory=dict)
    events: List[BillingEvent] = field(default_factory=list)
    guard: Dict[str, Any] = field(default_factory=dict)
    noop: bool = False


@dataclass(frozen=True)
class LateFeePolicy:
    """Flat component + percentage of the overdue amount"""

    flat_amount: Decimal = Decimal("50.00")
    rate: Decimal = Decimal("0.05")
    threshold_days: int = 5


T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True)
class ChargeFailure:
    """Why a charge attempt did not go through"""

    code: str
    message: str
    retryable: bool


@dataclass
class GatewayIntent:
    """Charge intent as reported by the gateway"""

    intent_id: str
    status: str  # requires_confirmation | processing | succeeded | failed | canceled
    amount_cents: int
    charge_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    cancellation_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayRefund:
    refund_id: str
    charge_id: str
    amount_cents: int
    status: str


@dataclass
class GatewayPaymentMethod:
    """Stored payment method as reported by the gateway"""

    payment_method_id: str
    customer_id: Optional[str]
    method_type: str  # card | bank_account
    last_four: Optional[str] = None
    brand: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None


@dataclass
class GatewayEvent:
    """One externally delivered webhook notification"""

    event_id: str
    kind: str
    created: Optional[datetime]
    data: Dict[str, Any]


@dataclass
class ClockRunSummary:
    """Per-run counters of a billing clock pass"""

    run_date: date
    schedules_due: int = 0
    charged: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    payment_method_required: int = 0
    reminders_sent: int = 0
    overdue_notices: int = 0
    late_fees_created: int = 0
    errors: List[str] = field(default_factory=list)
