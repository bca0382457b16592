"""/v1/payment_methods - stored payment methods of a payer"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from lease_billing.api.dependencies import get_gateway_client, get_request_id
from lease_billing.api.v1.payments import parse_id
from lease_billing.api.v1.schemas import (
    PaymentMethodAttachRequest,
    PaymentMethodListResponse,
    PaymentMethodResponse,
)
from lease_billing.domain.exceptions import GatewayError, PaymentMethodError
from lease_billing.domain.payments import payment_method_usable
from lease_billing.infrastructure.clients.gateway import GatewayClient
from lease_billing.infrastructure.database.models import PaymentMethod
from lease_billing.infrastructure.database.repositories import PaymentMethodRepository
from lease_billing.infrastructure.database.session import get_db
from lease_billing.services.payment_methods import PaymentMethodService

router = APIRouter()


def to_payment_method_response(method: PaymentMethod) -> PaymentMethodResponse:
    return PaymentMethodResponse(
        payment_method_id=str(method.id),
        user_id=method.user_id,
        gateway_payment_method_id=method.gateway_payment_method_id,
        method_type=method.method_type,
        brand=method.brand,
        last_four=method.last_four,
        exp_month=method.exp_month,
        exp_year=method.exp_year,
        is_default=method.is_default,
        expired=not payment_method_usable(method),
    )


def load_payment_method(db: Session, method_id: str) -> PaymentMethod:
    method = PaymentMethodRepository(db).get(parse_id(method_id, "payment method"))
    if not method:
        raise HTTPException(status_code=404, detail="Payment method not found")
    return method


@router.get("/payment_methods", response_model=PaymentMethodListResponse)
def list_payment_methods(
    user_id: str = Query(..., description="Payer identifier"),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
):
    methods = PaymentMethodService(db, gateway).list_for_user(user_id)
    return PaymentMethodListResponse(
        user_id=user_id,
        payment_methods=[to_payment_method_response(m) for m in methods],
    )


@router.post("/payment_methods", response_model=PaymentMethodResponse, status_code=201)
async def attach_payment_method(
    request_body: PaymentMethodAttachRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
):
    """
    Attach a payment method tokenized by the gateway to the payer.

    The payer's first method becomes the default auto-pay source.
    """
    request_id = get_request_id(request)
    try:
        method = await PaymentMethodService(db, gateway).attach(
            request_body.user_id,
            request_body.gateway_payment_method_id,
            make_default=request_body.make_default,
        )
        db.commit()
    except PaymentMethodError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except GatewayError as e:
        db.rollback()
        logging.error(f"Gateway error on attach: {e}", extra={"request_id": request_id})
        if e.retryable:
            raise HTTPException(status_code=503, detail="Payment gateway error")
        raise HTTPException(status_code=422, detail=str(e))

    return to_payment_method_response(method)


@router.get("/payment_methods/{method_id}", response_model=PaymentMethodResponse)
def get_payment_method(method_id: str, db: Session = Depends(get_db)):
    return to_payment_method_response(load_payment_method(db, method_id))


@router.post("/payment_methods/{method_id}/make_default", response_model=PaymentMethodResponse)
def make_default_payment_method(
    method_id: str,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
):
    method = PaymentMethodService(db, gateway).make_default(load_payment_method(db, method_id))
    db.commit()
    return to_payment_method_response(method)


@router.delete("/payment_methods/{method_id}")
async def delete_payment_method(
    method_id: str,
    request: Request,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
):
    """Detach a payment method; payments that used it drop the reference"""
    request_id = get_request_id(request)
    method = load_payment_method(db, method_id)

    try:
        await PaymentMethodService(db, gateway).detach(method)
        db.commit()
    except PaymentMethodError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except GatewayError as e:
        db.rollback()
        logging.error(f"Gateway error on detach: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503 if e.retryable else 502, detail="Payment gateway error")

    return {"deleted": True, "payment_method_id": method_id}
