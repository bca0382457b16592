"""POST /v1/billing/run - trigger one billing clock pass"""

import dataclasses
from typing import Callable

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lease_billing.api.dependencies import get_dispatcher, get_gateway_client, get_session_factory
from lease_billing.api.v1.schemas import BillingRunRequest, BillingRunResponse
from lease_billing.infrastructure.clients.gateway import GatewayClient
from lease_billing.services.billing_clock import BillingClock
from lease_billing.services.dispatcher import BillingEventDispatcher

router = APIRouter()


@router.post("/billing/run", response_model=BillingRunResponse)
async def run_billing(
    request_body: BillingRunRequest | None = None,
    gateway: GatewayClient = Depends(get_gateway_client),
    dispatcher: BillingEventDispatcher = Depends(get_dispatcher),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """
    Run the billing clock once, as the periodic trigger would.

    Returns:
        Per-run counters; per-schedule errors are listed, not raised
    """
    run_date = request_body.run_date if request_body else None
    clock = BillingClock(gateway, dispatcher, session_factory=session_factory)
    summary = await clock.run_once(run_date)
    return BillingRunResponse(**dataclasses.asdict(summary))
