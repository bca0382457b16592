"""
E2E tests for tenant personas through the HTTP API and the mock gateway.

The mock gateway runs in-process; the card on file steers each outcome.

Tenant personas:
- tenant_reliable: valid card, rent collected on the due date
- tenant_declined: card declined, failure notice and late fee after the grace period
- tenant_no_card: nothing on file, asked once for a payment method
- tenant_slow_bank: charge stays processing until the gateway webhook settles it
- tenant_new_card: adds a card through the API after a missed run, next run collects
"""

import json
import time
from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from lease_billing.config import settings
from lease_billing.infrastructure.clients.gateway import SIGNATURE_HEADER, compute_signature
from lease_billing.infrastructure.database.repositories import PaymentRepository

RENT_DAY = date(2024, 1, 31)


def start_lease(client: TestClient, tenant: str) -> str:
    response = client.post(
        "/v1/schedules",
        json={
            "lease_agreement_id": f"lease_{tenant}",
            "payer_id": tenant,
            "payment_type": "rent",
            "amount": "1000.00",
            "frequency": "monthly",
            "start_date": RENT_DAY.isoformat(),
            "day_of_month": 31,
            "auto_pay": True,
        },
    )
    assert response.status_code == 201
    return response.json()["schedule_id"]


def run_billing(client: TestClient, run_date: date) -> dict:
    response = client.post("/v1/billing/run", json={"run_date": run_date.isoformat()})
    assert response.status_code == 200
    return response.json()


def lease_payments(client: TestClient, tenant: str) -> list:
    return client.get("/v1/payments", params={"lease_agreement_id": f"lease_{tenant}"}).json()["payments"]


@pytest.mark.integration
def test_tenant_reliable_pays_on_time(client, db, sink, make_method):
    """
    tenant_reliable: valid card on file
    Expected: one succeeded payment, schedule moves to Feb 29
    """
    schedule_id = start_lease(client, "tenant_reliable")
    make_method(user_id="tenant_reliable")
    db.commit()

    summary = run_billing(client, RENT_DAY)

    assert summary["succeeded"] == 1
    [payment] = lease_payments(client, "tenant_reliable")
    assert payment["status"] == "succeeded"
    assert payment["due_date"] == "2024-01-31"
    db.expire_all()
    assert client.get(f"/v1/schedules/{schedule_id}").json()["next_payment_date"] == "2024-02-29"
    assert sink.kinds() == ["payment_succeeded"]


@pytest.mark.integration
def test_tenant_declined_accrues_late_fee(client, db, sink, make_method):
    """
    tenant_declined: card declined on every attempt
    Expected: failed rent, failure notice, one late fee after the threshold
    """
    start_lease(client, "tenant_declined")
    make_method(user_id="tenant_declined", gateway_id="pm_card_declined")
    db.commit()

    first = run_billing(client, RENT_DAY)
    assert first["failed"] == 1
    assert "payment_failed" in sink.kinds()

    later = run_billing(client, RENT_DAY + timedelta(days=6))
    assert later["late_fees_created"] == 1
    assert later["overdue_notices"] >= 1

    payments = lease_payments(client, "tenant_declined")
    rent = next(p for p in payments if p["payment_type"] == "rent")
    late_fee = next(p for p in payments if p["payment_type"] == "late_fee")
    assert rent["status"] == "failed"
    assert late_fee["amount"] == "100.00"
    assert late_fee["late_fee_for_payment_id"] == rent["payment_id"]


@pytest.mark.integration
def test_tenant_no_card_asked_once(client, db, sink):
    """
    tenant_no_card: no payment method on file
    Expected: payment stays pending, one payment_method_required notice
    """
    start_lease(client, "tenant_no_card")

    run_billing(client, RENT_DAY)
    summary = run_billing(client, RENT_DAY)

    assert summary["payment_method_required"] == 1
    assert sink.kinds().count("payment_method_required") == 1
    [payment] = lease_payments(client, "tenant_no_card")
    assert payment["status"] == "pending"


@pytest.mark.integration
def test_tenant_slow_bank_settled_by_webhook(client, db, sink, make_method):
    """
    tenant_slow_bank: charge accepted but still processing
    Expected: webhook settles it, next pass moves the schedule on
    """
    schedule_id = start_lease(client, "tenant_slow_bank")
    make_method(user_id="tenant_slow_bank", gateway_id="pm_card_processing")
    db.commit()

    assert run_billing(client, RENT_DAY)["charged"] == 1
    db.expire_all()
    [payment] = lease_payments(client, "tenant_slow_bank")
    assert payment["status"] == "processing"

    intent_id = PaymentRepository(db).get_by_number(payment["payment_number"]).gateway_intent_id
    db.commit()
    body = {
        "id": "evt_slow_bank",
        "type": "intent.succeeded",
        "created": int(time.time()),
        "data": {"object": {"id": intent_id, "status": "succeeded", "amount": 100000, "latest_charge": "ch_slow"}},
    }
    payload = json.dumps(body).encode("utf-8")
    timestamp = int(time.time())
    signature = compute_signature(payload, settings.gateway_webhook_secret, timestamp)
    webhook = client.post(
        "/v1/webhooks/gateway", content=payload, headers={SIGNATURE_HEADER: f"t={timestamp},v1={signature}"}
    )
    assert webhook.json()["outcome"] == "applied"

    run_billing(client, RENT_DAY)

    db.expire_all()
    assert client.get(f"/v1/schedules/{schedule_id}").json()["next_payment_date"] == "2024-02-29"
    assert sink.kinds() == ["payment_succeeded"]


@pytest.mark.integration
def test_tenant_new_card_collected_after_adding_card(client, db, sink):
    """
    tenant_new_card: no card on the first run, adds one through the API
    Expected: payment_method_required once, then the pending rent is collected
    """
    schedule_id = start_lease(client, "tenant_new_card")
    assert run_billing(client, RENT_DAY)["payment_method_required"] == 1

    added = client.post(
        "/v1/payment_methods",
        json={"user_id": "tenant_new_card", "gateway_payment_method_id": "pm_card_visa"},
    )
    assert added.status_code == 201
    assert added.json()["is_default"] is True

    summary = run_billing(client, RENT_DAY)

    assert summary["succeeded"] == 1
    [payment] = lease_payments(client, "tenant_new_card")
    assert payment["status"] == "succeeded"
    db.expire_all()
    assert client.get(f"/v1/schedules/{schedule_id}").json()["next_payment_date"] == "2024-02-29"
    assert sink.kinds() == ["payment_method_required", "payment_succeeded"]
