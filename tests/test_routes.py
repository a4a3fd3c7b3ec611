"""HTTP surface: auth, leads, credits and payments."""

import orjson
import pytest

from marketplace.core.security import sign_webhook_payload

pytestmark = pytest.mark.asyncio

WEBHOOK_SECRET = "whsec_test"


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert "X-Request-ID" in r.headers


async def test_requires_session(client):
    r = await client.get("/v1/credits/balance")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"
    r = await client.get("/v1/credits/balance", headers={"Cookie": "marketplace_session=forged"})
    assert r.status_code == 401


async def test_customers_cannot_buy_leads(client, make_user, auth_headers):
    customer = await make_user(user_type="customer")
    r = await client.get("/v1/leads", headers=auth_headers(customer))
    assert r.status_code == 403


async def test_balance_and_packages(client, make_user, fund, auth_headers):
    user = await make_user()
    await fund(user.id, 6)
    r = await client.get("/v1/credits/balance", headers=auth_headers(user))
    assert r.status_code == 200
    body = r.json()
    assert body["balance"] == 6
    assert body["low_credits"] is True
    assert body["auto_top_up"]["enabled"] is False

    r = await client.get("/v1/credits/packages")
    assert [p["id"] for p in r.json()["packages"]] == ["starter", "professional", "business"]


async def test_lead_contact_flow(client, make_user, make_request, fund, experienced, auth_headers):
    customer = await make_user(user_type="customer", categories=[])
    provider = await make_user()
    request = await make_request(customer)
    await experienced(provider.id)
    headers = auth_headers(provider)

    r = await client.get("/v1/leads", headers=headers)
    assert r.status_code == 200
    assert [lead["id"] for lead in r.json()["leads"]] == [str(request.id)]

    r = await client.get(f"/v1/leads/{request.id}/contact", headers=headers)
    assert r.json()["credits_required"] == 5
    assert r.json()["can_afford"] is False

    r = await client.post(f"/v1/leads/{request.id}/contact", headers=headers)
    assert r.status_code == 402
    error = r.json()["error"]
    assert error["code"] == "INSUFFICIENT_CREDITS"
    assert error["details"]["credits_required"] == 5

    await fund(provider.id, 5)
    r = await client.post(f"/v1/leads/{request.id}/contact", json={"message": "Free tomorrow"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["credits_charged"] == 5
    assert r.json()["customer"]["email"] == customer.email

    r = await client.post(f"/v1/leads/{request.id}/contact", headers=headers)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "DUPLICATE_CONTACT"

    r = await client.get("/v1/credits/ledger", headers=headers, params={"kind": "spend"})
    entries = r.json()["entries"]
    assert [(e["amount"], e["balance_after"]) for e in entries] == [(-5, 0)]

    r = await client.get(f"/v1/leads/{request.id}/providers", headers=auth_headers(customer))
    assert r.status_code == 200
    assert r.json()["providers"][0]["provider_id"] == str(provider.id)


async def test_checkout_and_webhook(client, make_user, auth_headers, gateway):
    user = await make_user()
    r = await client.post("/v1/payments/checkout", json={"package_id": "starter"}, headers=auth_headers(user))
    assert r.status_code == 200
    reference = r.json()["reference"]
    assert r.json()["order_id"] == "order_1"

    # Razorpay does not copy order notes onto the payment
    payload = orjson.dumps(
        {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_9", "order_id": "order_1", "amount": 39200, "notes": []}}},
        }
    )
    signature = sign_webhook_payload(payload, WEBHOOK_SECRET)
    headers = {"X-Razorpay-Signature": signature, "Content-Type": "application/json"}

    r = await client.post("/v1/payments/webhook", content=payload, headers=headers)
    assert r.json() == {"status": "ok", "replayed": False}
    r = await client.post("/v1/payments/webhook", content=payload, headers=headers)
    assert r.json() == {"status": "ok", "replayed": True}

    r = await client.get("/v1/credits/balance", headers=auth_headers(user))
    assert r.json()["balance"] == 280
    r = await client.get("/v1/credits/ledger", headers=auth_headers(user))
    entries = r.json()["entries"]
    assert [e["status"] for e in entries] == ["completed"]
    assert entries[0]["purpose"] == "credit_purchase"
    assert reference.startswith("cp_")

    r = await client.post("/v1/payments/webhook", content=payload, headers={"X-Razorpay-Signature": "nope"})
    assert r.status_code == 400

    ignored = orjson.dumps({"event": "refund.created", "payload": {}})
    r = await client.post(
        "/v1/payments/webhook",
        content=ignored,
        headers={"X-Razorpay-Signature": sign_webhook_payload(ignored, WEBHOOK_SECRET)},
    )
    assert r.json() == {"status": "ignored"}


async def test_checkout_rejects_unknown_package(client, make_user, auth_headers):
    user = await make_user()
    r = await client.post("/v1/payments/checkout", json={"package_id": "gold"}, headers=auth_headers(user))
    assert r.status_code == 400


async def test_auto_top_up_settings(client, make_user, auth_headers):
    user = await make_user()
    headers = auth_headers(user)
    r = await client.put("/v1/credits/auto-top-up", json={"enabled": True}, headers=headers)
    assert r.status_code == 400

    r = await client.put(
        "/v1/credits/auto-top-up",
        json={"enabled": True, "threshold": 15, "package_id": "professional", "payment_method_ref": "token_1"},
        headers=headers,
    )
    assert r.status_code == 200
    assert r.json()["auto_top_up"] == {
        "enabled": True,
        "threshold": 15,
        "package_id": "professional",
        "has_payment_method": True,
    }

    r = await client.put("/v1/credits/auto-top-up", json={"threshold": -1}, headers=headers)
    assert r.status_code == 422
