"""POST /v1/webhooks/gateway - gateway event ingress"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from lease_billing.api.dependencies import get_dispatcher, get_request_id
from lease_billing.api.v1.schemas import WebhookResponse
from lease_billing.config import settings
from lease_billing.domain.exceptions import ConcurrencyConflictError, WebhookSignatureError
from lease_billing.infrastructure.clients.gateway import SIGNATURE_HEADER, construct_event
from lease_billing.infrastructure.database.session import get_db
from lease_billing.services.dispatcher import BillingEventDispatcher
from lease_billing.services.reconciler import GatewayReconciler

router = APIRouter()


@router.post("/webhooks/gateway", response_model=WebhookResponse)
async def receive_gateway_event(
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: BillingEventDispatcher = Depends(get_dispatcher),
):
    """
    Verify and apply one gateway event.

    Status codes drive the gateway's redelivery:
    - 200: applied, duplicate, ignored or about an unknown object
    - 400: bad signature or malformed payload (never retried successfully)
    - 409: lost an optimistic-concurrency race, redeliver
    - 500: unexpected failure, redeliver
    """
    request_id = get_request_id(request)
    payload = await request.body()

    try:
        event = construct_event(
            payload,
            request.headers.get(SIGNATURE_HEADER),
            settings.gateway_webhook_secret,
            tolerance_seconds=settings.webhook_tolerance_seconds,
        )
    except WebhookSignatureError as e:
        logging.warning(f"Rejected gateway webhook: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=400, detail="Invalid signature")
    except (ValueError, KeyError) as e:
        logging.warning(f"Malformed gateway webhook: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        outcome = GatewayReconciler(db).handle_event(event)
        db.commit()
    except ConcurrencyConflictError as e:
        db.rollback()
        logging.info(f"Webhook lost a concurrent update: {e}", extra={"request_id": request_id, "event_id": event.event_id})
        raise HTTPException(status_code=409, detail="Concurrent update, redeliver")
    except (ValueError, KeyError) as e:
        db.rollback()
        logging.warning(f"Malformed gateway event object: {e}", extra={"request_id": request_id, "event_id": event.event_id})
        raise HTTPException(status_code=400, detail="Invalid event object")
    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error applying webhook: {e}", extra={"request_id": request_id, "event_id": event.event_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    await dispatcher.dispatch(outcome.events)
    return WebhookResponse(outcome=outcome.outcome)
