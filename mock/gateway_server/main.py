from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
import secrets
import time

app = FastAPI(title="Mock Payment Gateway", version="1.0.0")

# Test payment methods steer the outcome of a charge
DECLINED = "pm_card_declined"
PROCESSING = "pm_card_processing"
UNAVAILABLE = "pm_card_unavailable"

INTENTS: dict = {}
REFUNDS: dict = {}
PAYMENT_METHODS: dict = {}
CUSTOMERS: dict = {}
IDEMPOTENT_RESPONSES: dict = {}


def reset():
    for store in (INTENTS, REFUNDS, PAYMENT_METHODS, CUSTOMERS, IDEMPOTENT_RESPONSES):
        store.clear()


def _id(prefix):
    return f"{prefix}_{secrets.token_hex(8)}"


def _error(status_code, code, message):
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


def _replay(key, scope):
    if key and (scope, key) in IDEMPOTENT_RESPONSES:
        status_code, content = IDEMPOTENT_RESPONSES[(scope, key)]
        return JSONResponse(status_code=status_code, content=content)
    return None


def _remember(key, scope, status_code, content):
    if key:
        IDEMPOTENT_RESPONSES[(scope, key)] = (status_code, dict(content))
    return JSONResponse(status_code=status_code, content=content)


def _confirm(intent):
    method = intent["payment_method"]
    if method == DECLINED:
        intent["status"] = "requires_payment_method"
        intent["last_payment_error"] = {"code": "card_declined", "message": "Your card was declined."}
        return 402, {"error": intent["last_payment_error"]}
    if method == PROCESSING:
        intent["status"] = "processing"
    else:
        intent["status"] = "succeeded"
        intent["latest_charge"] = _id("ch")
    return 200, intent


def _card():
    return {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2099}


@app.get("/health")
def health(): return {"status": "ok"}


@app.post("/v1/intents")
async def create_intent(request: Request, idempotency_key: str | None = Header(None)):
    replay = _replay(idempotency_key, "intents")
    if replay is not None:
        return replay
    body = await request.json()
    if body.get("payment_method") == UNAVAILABLE:
        return _error(503, "service_unavailable", "Gateway temporarily unavailable")
    if not body.get("amount") or body["amount"] <= 0:
        return _remember(idempotency_key, "intents", 400, {"error": {"code": "amount_invalid", "message": "Amount must be positive"}})

    intent = {
        "id": _id("pi"),
        "object": "intent",
        "amount": body["amount"],
        "currency": body.get("currency", "usd"),
        "customer": body.get("customer"),
        "description": body.get("description"),
        "payment_method": body.get("payment_method"),
        "metadata": body.get("metadata") or {},
        "status": "requires_confirmation",
        "latest_charge": None,
        "last_payment_error": None,
        "cancellation_reason": None,
        "created": int(time.time()),
    }
    INTENTS[intent["id"]] = intent
    status_code, content = _confirm(intent) if body.get("confirm", True) else (200, intent)
    return _remember(idempotency_key, "intents", status_code, content)


@app.get("/v1/intents/{intent_id}")
def retrieve_intent(intent_id: str):
    intent = INTENTS.get(intent_id)
    if not intent:
        return _error(404, "resource_missing", "No such intent")
    return intent


@app.post("/v1/intents/{intent_id}/cancel")
async def cancel_intent(intent_id: str, request: Request):
    intent = INTENTS.get(intent_id)
    if not intent:
        return _error(404, "resource_missing", "No such intent")
    if intent["status"] in ("succeeded", "canceled"):
        return _error(409, "intent_unexpected_state", f"Intent is {intent['status']}")
    body = await request.json() if await request.body() else {}
    intent["status"] = "canceled"
    intent["cancellation_reason"] = body.get("cancellation_reason") or "requested_by_customer"
    return intent


@app.post("/v1/test_helpers/intents/{intent_id}/{outcome}")
def settle_intent(intent_id: str, outcome: str):
    """Finish a processing intent the way the card network eventually would"""
    intent = INTENTS.get(intent_id)
    if not intent:
        raise HTTPException(status_code=404, detail="No such intent")
    if outcome == "succeed":
        intent["status"] = "succeeded"
        intent["latest_charge"] = _id("ch")
    elif outcome == "fail":
        intent["status"] = "failed"
        intent["last_payment_error"] = {"code": "insufficient_funds", "message": "Insufficient funds"}
    else:
        raise HTTPException(status_code=400, detail="outcome must be succeed or fail")
    return intent


@app.post("/v1/refunds")
async def create_refund(request: Request, idempotency_key: str | None = Header(None)):
    replay = _replay(idempotency_key, "refunds")
    if replay is not None:
        return replay
    body = await request.json()
    intent = next((i for i in INTENTS.values() if i["latest_charge"] == body.get("charge")), None)
    if not intent or intent["status"] != "succeeded":
        return _error(404, "resource_missing", "No such charge")
    refunded = sum(r["amount"] for r in REFUNDS.values() if r["charge"] == body["charge"])
    if body["amount"] <= 0 or refunded + body["amount"] > intent["amount"]:
        return _remember(idempotency_key, "refunds", 400, {"error": {"code": "amount_too_large", "message": "Refund exceeds charge"}})
    refund = {
        "id": _id("re"),
        "object": "refund",
        "charge": body["charge"],
        "amount": body["amount"],
        "reason": body.get("reason"),
        "status": "succeeded",
    }
    REFUNDS[refund["id"]] = refund
    return _remember(idempotency_key, "refunds", 200, refund)


@app.post("/v1/customers")
async def create_customer(request: Request, idempotency_key: str | None = Header(None)):
    replay = _replay(idempotency_key, "customers")
    if replay is not None:
        return replay
    body = await request.json()
    customer = {"id": _id("cus"), "object": "customer", "metadata": body.get("metadata") or {}}
    CUSTOMERS[customer["id"]] = customer
    return _remember(idempotency_key, "customers", 200, customer)


@app.post("/v1/payment_methods/{payment_method_id}/attach")
async def attach_payment_method(payment_method_id: str, request: Request):
    body = await request.json()
    if body.get("customer") not in CUSTOMERS:
        return _error(404, "resource_missing", "No such customer")
    method = PAYMENT_METHODS.setdefault(
        payment_method_id,
        {"id": payment_method_id, "object": "payment_method", "type": "card", "card": _card()},
    )
    method["customer"] = body.get("customer")
    return method


@app.post("/v1/payment_methods/{payment_method_id}/detach")
def detach_payment_method(payment_method_id: str):
    method = PAYMENT_METHODS.get(payment_method_id)
    if not method:
        return _error(404, "resource_missing", "No such payment method")
    method["customer"] = None
    return method
