"""/v1/payments - one-off payments, retry, cancel and refund"""

import logging
import uuid
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from lease_billing.api.dependencies import get_dispatcher, get_gateway_client, get_request_id
from lease_billing.api.v1.schemas import (
    CancelRequest,
    ChargeResponse,
    PaymentCreateRequest,
    PaymentListResponse,
    PaymentResponse,
    RefundRequest,
)
from lease_billing.domain.exceptions import (
    ConcurrencyConflictError,
    DuplicatePaymentError,
    GatewayError,
    IllegalTransitionError,
    PaymentNotFoundError,
    PaymentValidationError,
    RetryNotAllowedError,
)
from lease_billing.domain.models import Ok
from lease_billing.domain.payments import days_overdue, is_overdue
from lease_billing.infrastructure.clients.gateway import GatewayClient
from lease_billing.infrastructure.database.models import Payment
from lease_billing.infrastructure.database.repositories import PaymentRepository
from lease_billing.infrastructure.database.session import get_db
from lease_billing.services.dispatcher import BillingEventDispatcher
from lease_billing.services.processor import PaymentProcessor

router = APIRouter()


def to_payment_response(payment: Payment) -> PaymentResponse:
    today = date.today()
    return PaymentResponse(
        payment_id=str(payment.id),
        payment_number=payment.payment_number,
        lease_agreement_id=payment.lease_agreement_id,
        payer_id=payment.payer_id,
        payment_type=payment.payment_type,
        amount=payment.amount,
        status=payment.status,
        description=payment.description,
        due_date=payment.due_date,
        paid_at=payment.paid_at.isoformat() if payment.paid_at else None,
        failure_reason=payment.failure_reason,
        refunded_amount=payment.refunded_amount,
        attempt_count=payment.attempt_count,
        overdue=is_overdue(payment, today),
        days_overdue=days_overdue(payment, today),
        late_fee_for_payment_id=str(payment.late_fee_for_payment_id) if payment.late_fee_for_payment_id else None,
        created_at=payment.created_at.isoformat(),
    )


def parse_id(value: str, kind: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {kind} ID format")


def load_payment(db: Session, payment_id: str) -> Payment:
    try:
        return PaymentRepository(db).require(parse_id(payment_id, "payment"))
    except PaymentNotFoundError:
        raise HTTPException(status_code=404, detail="Payment not found")


@router.post("/payments", response_model=PaymentResponse, status_code=201)
def create_payment(
    request_body: PaymentCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    dispatcher: BillingEventDispatcher = Depends(get_dispatcher),
):
    """Create a one-off pending payment (deposit, fee, ad-hoc charge)"""
    request_id = get_request_id(request)
    method_id = parse_id(request_body.payment_method_id, "payment method") if request_body.payment_method_id else None
    processor = PaymentProcessor(db, gateway, dispatcher)
    try:
        payment = processor.create_payment(
            lease_agreement_id=request_body.lease_agreement_id,
            payer_id=request_body.payer_id,
            payment_type=request_body.payment_type,
            amount=request_body.amount,
            due_date=request_body.due_date,
            description=request_body.description,
            payment_method_id=method_id,
        )
        db.commit()
    except PaymentValidationError as e:
        db.rollback()
        logging.warning(f"Invalid payment: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=422, detail=str(e))
    except DuplicatePaymentError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    return to_payment_response(payment)


@router.get("/payments", response_model=PaymentListResponse)
def list_payments(
    lease_agreement_id: str = Query(..., description="Lease agreement identifier"),
    db: Session = Depends(get_db),
):
    """Most recent payments of a lease, newest due date first"""
    payments = PaymentRepository(db).list_by_lease(lease_agreement_id, limit=50)
    return PaymentListResponse(
        lease_agreement_id=lease_agreement_id,
        payments=[to_payment_response(p) for p in payments],
    )


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: str, db: Session = Depends(get_db)):
    return to_payment_response(load_payment(db, payment_id))


@router.post("/payments/{payment_id}/retry", response_model=ChargeResponse)
async def retry_payment(
    payment_id: str,
    request: Request,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    dispatcher: BillingEventDispatcher = Depends(get_dispatcher),
):
    """
    Start a new charge attempt on a failed (or stale pending) payment.

    Returns:
        success flag with the payment; decline details when the attempt failed
    """
    request_id = get_request_id(request)
    payment = load_payment(db, payment_id)
    processor = PaymentProcessor(db, gateway, dispatcher)

    try:
        result = await processor.retry(payment)
    except (RetryNotAllowedError, IllegalTransitionError) as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except ConcurrencyConflictError as e:
        db.rollback()
        logging.info(f"Concurrent retry rejected: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=409, detail="Payment changed concurrently, retry the operation")

    if isinstance(result, Ok):
        return ChargeResponse(success=True, payment=to_payment_response(result.value))
    return ChargeResponse(
        success=False,
        payment=to_payment_response(payment),
        failure_code=result.error.code,
        failure_message=result.error.message,
        retryable=result.error.retryable,
    )


@router.post("/payments/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: str,
    request: Request,
    request_body: CancelRequest | None = None,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    dispatcher: BillingEventDispatcher = Depends(get_dispatcher),
):
    """Cancel a pending or processing payment; settled payments need a refund"""
    request_id = get_request_id(request)
    payment = load_payment(db, payment_id)
    reason = request_body.reason if request_body else None

    try:
        payment = await PaymentProcessor(db, gateway, dispatcher).cancel(payment, reason)
    except IllegalTransitionError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except ConcurrencyConflictError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Payment changed concurrently, retry the operation")
    except GatewayError as e:
        db.rollback()
        logging.error(f"Gateway error on cancel: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503 if e.retryable else 502, detail="Payment gateway error")

    return to_payment_response(payment)


@router.post("/payments/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: str,
    request: Request,
    request_body: RefundRequest | None = None,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    dispatcher: BillingEventDispatcher = Depends(get_dispatcher),
):
    """Refund part or all of a settled payment"""
    request_id = get_request_id(request)
    payment = load_payment(db, payment_id)
    request_body = request_body or RefundRequest()

    try:
        payment = await PaymentProcessor(db, gateway, dispatcher).refund(
            payment, request_body.amount, request_body.reason
        )
    except PaymentValidationError as e:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    except IllegalTransitionError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except ConcurrencyConflictError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Payment changed concurrently, retry the operation")
    except GatewayError as e:
        db.rollback()
        logging.error(f"Gateway error on refund: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503 if e.retryable else 502, detail="Payment gateway error")

    return to_payment_response(payment)
