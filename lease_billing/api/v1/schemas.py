"""Pydantic schemas for API request/response validation"""

from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class ScheduleCreateRequest(BaseModel):
    """Request body for POST /v1/schedules"""

    lease_agreement_id: str = Field(..., min_length=1)
    payer_id: str = Field(..., min_length=1)
    payment_type: str = "rent"
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    frequency: str = "monthly"
    start_date: date
    end_date: Optional[date] = None
    next_payment_date: Optional[date] = None
    day_of_month: Optional[int] = Field(None, ge=1, le=31)
    auto_pay: bool = False
    description: Optional[str] = None


class ScheduleResponse(BaseModel):
    schedule_id: str
    lease_agreement_id: str
    payer_id: str
    payment_type: str
    amount: Decimal
    frequency: str
    start_date: date
    end_date: Optional[date] = None
    next_payment_date: date
    day_of_month: Optional[int] = None
    is_active: bool
    auto_pay: bool
    description: Optional[str] = None


class PaymentCreateRequest(BaseModel):
    """Request body for POST /v1/payments"""

    lease_agreement_id: str = Field(..., min_length=1)
    payer_id: str = Field(..., min_length=1)
    payment_type: str
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    due_date: Optional[date] = None
    description: Optional[str] = None
    payment_method_id: Optional[str] = None


class PaymentResponse(BaseModel):
    payment_id: str
    payment_number: str
    lease_agreement_id: str
    payer_id: str
    payment_type: str
    amount: Decimal
    status: str
    description: Optional[str] = None
    due_date: Optional[date] = None
    paid_at: Optional[str] = None
    failure_reason: Optional[str] = None
    refunded_amount: Decimal
    attempt_count: int
    overdue: bool
    days_overdue: int
    late_fee_for_payment_id: Optional[str] = None
    created_at: str


class PaymentListResponse(BaseModel):
    lease_agreement_id: str
    payments: List[PaymentResponse]


class MaterializedPaymentResponse(BaseModel):
    """Response for POST /v1/schedules/{schedule_id}/payments"""

    created: bool
    payment: PaymentResponse


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    """Omit amount to refund the whole remaining balance"""

    amount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    reason: Optional[str] = None


class ChargeResponse(BaseModel):
    """Outcome of a charge or retry attempt"""

    success: bool
    payment: PaymentResponse
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    retryable: Optional[bool] = None


class WebhookResponse(BaseModel):
    received: bool = True
    outcome: str


class BillingRunRequest(BaseModel):
    run_date: Optional[date] = None


class BillingRunResponse(BaseModel):
    """Per-run counters of one billing clock pass"""

    run_date: date
    schedules_due: int
    charged: int
    succeeded: int
    failed: int
    skipped: int
    payment_method_required: int
    reminders_sent: int
    overdue_notices: int
    late_fees_created: int
    errors: List[str]


class PaymentMethodAttachRequest(BaseModel):
    """Request body for POST /v1/payment_methods"""

    user_id: str = Field(..., min_length=1)
    gateway_payment_method_id: str = Field(..., min_length=1)
    make_default: bool = False


class PaymentMethodResponse(BaseModel):
    payment_method_id: str
    user_id: str
    gateway_payment_method_id: str
    method_type: str
    brand: Optional[str] = None
    last_four: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool
    expired: bool


class PaymentMethodListResponse(BaseModel):
    user_id: str
    payment_methods: List[PaymentMethodResponse]
