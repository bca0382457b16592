"""Payment gateway HTTP client and webhook payload verification"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from lease_billing.config import settings
from lease_billing.domain.exceptions import (
    GatewayDeclinedError,
    GatewayError,
    GatewayRateLimitedError,
    GatewayRequestError,
    GatewayUnavailableError,
    WebhookSignatureError,
)
from lease_billing.domain.models import GatewayEvent, GatewayIntent, GatewayPaymentMethod, GatewayRefund
from lease_billing.domain.retry import RetryPolicy
from lease_billing.infrastructure.observability.metrics import gateway_failure_counter, gateway_latency_histogram

SIGNATURE_HEADER = "Gateway-Signature"


def gateway_retry_policy() -> RetryPolicy:
    """Retries network failures, 5xx and rate limiting; declines are final"""
    return RetryPolicy(
        max_attempts=settings.gateway_max_retries,
        backoff_base=settings.gateway_backoff_base,
        retryable=(GatewayUnavailableError, GatewayRateLimitedError),
    )


def parse_intent(data: Dict[str, Any]) -> GatewayIntent:
    error = data.get("last_payment_error") or {}
    return GatewayIntent(
        intent_id=data["id"],
        status=data["status"],
        amount_cents=int(data.get("amount", 0)),
        charge_id=data.get("latest_charge"),
        failure_code=error.get("code"),
        failure_message=error.get("message"),
        cancellation_reason=data.get("cancellation_reason"),
        metadata=data.get("metadata") or {},
    )


def parse_payment_method(data: Dict[str, Any]) -> GatewayPaymentMethod:
    method_type = data.get("type", "card")
    if method_type == "card":
        card = data.get("card") or {}
        return GatewayPaymentMethod(
            payment_method_id=data["id"],
            customer_id=data.get("customer"),
            method_type="card",
            last_four=card.get("last4"),
            brand=card.get("brand"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
        )
    if method_type == "us_bank_account":
        bank = data.get("us_bank_account") or {}
        return GatewayPaymentMethod(
            payment_method_id=data["id"],
            customer_id=data.get("customer"),
            method_type="bank_account",
            last_four=bank.get("last4"),
            brand=bank.get("bank_name"),
        )
    raise ValueError(f"Unsupported payment method type: {method_type}")


def parse_refund(data: Dict[str, Any]) -> GatewayRefund:
    return GatewayRefund(
        refund_id=data["id"],
        charge_id=data["charge"],
        amount_cents=int(data["amount"]),
        status=data.get("status", "succeeded"),
    )


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def construct_event(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> GatewayEvent:
    """
    Verify a webhook signature and parse the event.

    Header format: "t=<unix seconds>,v1=<hex HMAC-SHA256 of '<t>.<body>'>".

    Raises:
        WebhookSignatureError: missing, malformed, stale or mismatched signature
        ValueError: body is not a well-formed event
    """
    if not signature_header:
        raise WebhookSignatureError("Missing signature header")
    try:
        parts = dict(item.split("=", 1) for item in signature_header.split(","))
        timestamp = int(parts["t"])
        provided = parts["v1"]
    except (KeyError, ValueError) as e:
        raise WebhookSignatureError("Malformed signature header") from e

    expected = compute_signature(payload, secret, timestamp)
    if not hmac.compare_digest(expected, provided):
        raise WebhookSignatureError("Signature mismatch")

    now = time.time() if now is None else now
    if abs(now - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    body = json.loads(payload)
    created = body.get("created")
    return GatewayEvent(
        event_id=body["id"],
        kind=body["type"],
        created=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
        data=(body.get("data") or {}).get("object") or {},
    )


def _error_from_response(response: httpx.Response) -> GatewayError:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        error = {}
    code = error.get("code")
    message = error.get("message") or f"Gateway error: {response.status_code}"
    if response.status_code == 402:
        return GatewayDeclinedError(message, code=code or "card_declined")
    if response.status_code == 429:
        return GatewayRateLimitedError(message, code=code or "rate_limited")
    if response.status_code >= 500:
        return GatewayUnavailableError(message, code=code)
    return GatewayRequestError(message, code=code)


_FAILURE_KINDS = {
    GatewayDeclinedError: "declined",
    GatewayRateLimitedError: "rate_limited",
    GatewayUnavailableError: "unavailable",
    GatewayRequestError: "request",
}


class GatewayClient:
    """Client for the external payment gateway API"""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.gateway_api_base
        self.api_key = api_key or settings.gateway_api_key
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Dict[str, Any]:
        """
        Raises:
            GatewayUnavailableError: timeout, network failure or 5xx
            GatewayRateLimitedError: 429
            GatewayDeclinedError: 402
            GatewayRequestError: any other 4xx
        """
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            try:
                with gateway_latency_histogram.labels(operation=operation).time():
                    response = await client.request(method, path, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                gateway_failure_counter.labels(operation=operation, kind="unavailable").inc()
                raise GatewayUnavailableError(f"Gateway timeout after {self.timeout}s") from e
            except httpx.RequestError as e:
                gateway_failure_counter.labels(operation=operation, kind="unavailable").inc()
                raise GatewayUnavailableError(f"Gateway unreachable: {e}") from e
            except httpx.HTTPStatusError as e:
                error = _error_from_response(e.response)
                gateway_failure_counter.labels(operation=operation, kind=_FAILURE_KINDS[type(error)]).inc()
                raise error from e
            except ValueError as e:
                gateway_failure_counter.labels(operation=operation, kind="request").inc()
                raise GatewayRequestError(f"Invalid response from gateway: {e}") from e

    async def create_intent(
        self,
        amount_cents: int,
        payment_method_id: str,
        idempotency_key: str,
        customer_id: str | None = None,
        description: str | None = None,
        metadata: Dict[str, Any] | None = None,
        currency: str | None = None,
        confirm: bool = True,
    ) -> GatewayIntent:
        data = await self._request(
            "create_intent",
            "POST",
            "/v1/intents",
            {
                "amount": amount_cents,
                "currency": currency or settings.currency,
                "payment_method": payment_method_id,
                "customer": customer_id,
                "description": description,
                "metadata": metadata or {},
                "confirm": confirm,
            },
            idempotency_key=idempotency_key,
        )
        return parse_intent(data)

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        return parse_intent(await self._request("retrieve_intent", "GET", f"/v1/intents/{intent_id}"))

    async def cancel_intent(self, intent_id: str, reason: str | None = None) -> GatewayIntent:
        data = await self._request(
            "cancel_intent", "POST", f"/v1/intents/{intent_id}/cancel", {"cancellation_reason": reason}
        )
        return parse_intent(data)

    async def create_refund(
        self,
        charge_id: str,
        amount_cents: int,
        idempotency_key: str,
        reason: str | None = None,
    ) -> GatewayRefund:
        data = await self._request(
            "create_refund",
            "POST",
            "/v1/refunds",
            {"charge": charge_id, "amount": amount_cents, "reason": reason or "requested_by_customer"},
            idempotency_key=idempotency_key,
        )
        return parse_refund(data)

    async def create_customer(self, user_id: str, idempotency_key: str) -> str:
        """Create the gateway customer that stored payment methods hang off; returns its id"""
        data = await self._request(
            "create_customer",
            "POST",
            "/v1/customers",
            {"metadata": {"user_id": user_id}},
            idempotency_key=idempotency_key,
        )
        return data["id"]

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> GatewayPaymentMethod:
        data = await self._request(
            "attach_payment_method",
            "POST",
            f"/v1/payment_methods/{payment_method_id}/attach",
            {"customer": customer_id},
        )
        return parse_payment_method(data)

    async def detach_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod:
        data = await self._request(
            "detach_payment_method", "POST", f"/v1/payment_methods/{payment_method_id}/detach"
        )
        return parse_payment_method(data)
