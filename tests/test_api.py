import json
import uuid

import pytest
import stripe
from fastapi.testclient import TestClient

from creditledger.api.deps import sign_webhook_body
from creditledger.server import app
from creditledger.services.auth_service import create_token
from creditledger.services.ledger import CreditLedgerService, set_ledger
from creditledger.services.overage import MockPaymentGateway

INTERNAL = {"X-Internal-Token": "test-internal-token"}


@pytest.fixture
def client():
    set_ledger(None)
    with TestClient(app) as c:
        yield c
    set_ledger(None)


@pytest.fixture
def shop():
    return f"shop-{uuid.uuid4().hex[:10]}.myshopify.com"


def merchant(shop):
    return {"Authorization": f"Bearer {create_token(shop)}"}


def signed(payload, secret=None):
    body = json.dumps(payload).encode("utf-8")
    sig = sign_webhook_body(body) if secret is None else sign_webhook_body(body, secret)
    return body, {"Content-Type": "application/json", "X-Webhook-Hmac-Sha256": sig}


def activate(client, shop, **extra):
    res = client.post("/api/accounts/activate", json={"accountId": shop, **extra}, headers=INTERNAL)
    assert res.status_code == 200, res.text
    return res.json()


def test_api_root(client):
    assert client.get("/api/").status_code == 200


def test_activation_grants_trial(client, shop):
    data = activate(client, shop)
    assert data["started"] is True
    assert data["phase"] == "active"
    assert data["balances"]["trial"] == 100


def test_consume_requires_internal_token(client, shop):
    res = client.post("/api/usage/consume", json={"accountId": shop, "quantity": 1})
    assert res.status_code == 401


def test_consume_returns_camel_case_breakdown(client, shop):
    activate(client, shop)
    res = client.post(
        "/api/usage/consume",
        json={"accountId": shop, "quantity": 3, "idempotencyKey": "gen-1"},
        headers=INTERNAL,
    )
    assert res.status_code == 200
    data = res.json()
    assert data["trialUsed"] == 3
    assert data["overageBilled"] == 0
    assert data["balances"]["trial"] == 97
    assert data["replayed"] is False

    replay = client.post(
        "/api/usage/consume",
        json={"accountId": shop, "quantity": 3, "idempotencyKey": "gen-1"},
        headers=INTERNAL,
    ).json()
    assert replay["replayed"] is True
    assert replay["balances"]["trial"] == 97


def test_overage_without_payment_method_is_402(client, shop):
    activate(client, shop)
    res = client.post(
        "/api/usage/consume",
        json={"accountId": shop, "quantity": 101, "idempotencyKey": "gen-2"},
        headers=INTERNAL,
    )
    assert res.status_code == 402
    body = res.json()
    assert body["error"] == "overage_unavailable"
    assert body["reason"] == "no_payment_method"
    assert "payment method" in body["message"]

    balance = client.get("/api/credits/balance", headers=merchant(shop)).json()
    assert balance["trial"] == 100


def test_overage_with_payment_method(client, shop):
    activate(client, shop, billingCustomerId="cus_test")
    res = client.post(
        "/api/usage/consume",
        json={"accountId": shop, "quantity": 102, "idempotencyKey": "gen-3"},
        headers=INTERNAL,
    )
    assert res.status_code == 200
    assert res.json()["overageBilled"] == 2
    assert res.json()["overageAmountCents"] == 40

    summary = client.get("/api/credits/overage", headers=merchant(shop)).json()
    assert summary["overageUnits"] == 2
    assert summary["cappedAmountCents"] == 5000


def test_consume_unknown_account_is_404(client, shop):
    res = client.post("/api/usage/consume", json={"accountId": shop, "quantity": 1}, headers=INTERNAL)
    assert res.status_code == 404


def test_refund(client, shop):
    activate(client, shop)
    client.post(
        "/api/usage/consume",
        json={"accountId": shop, "quantity": 2, "idempotencyKey": "gen-4"},
        headers=INTERNAL,
    )
    res = client.post(
        "/api/usage/refund",
        json={"accountId": shop, "idempotencyKey": "gen-4", "reason": "generation_failed"},
        headers=INTERNAL,
    )
    assert res.status_code == 200
    assert res.json()["restored"] == {"trial": 2}
    assert res.json()["balances"]["trial"] == 100


def test_period_renewed_webhook(client, shop):
    payload = {
        "accountId": shop,
        "periodId": "sub-1#2025-03",
        "includedCredits": 100,
        "periodStart": "2025-03-01T00:00:00Z",
        "periodEnd": "2025-03-31T00:00:00Z",
    }
    body, headers = signed(payload)

    first = client.post("/api/webhooks/billing/period-renewed", content=body, headers=headers)
    again = client.post("/api/webhooks/billing/period-renewed", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["received"] is True
    assert first.json()["applied"] is True
    assert again.json()["applied"] is False
    assert client.get("/api/credits/balance", headers=merchant(shop)).json()["plan"] == 100


def test_webhook_with_bad_signature_is_rejected(client, shop):
    body, headers = signed(
        {"accountId": shop, "periodId": "p", "includedCredits": 100}, secret="not-the-secret"
    )
    res = client.post("/api/webhooks/billing/period-renewed", content=body, headers=headers)
    assert res.status_code == 401

    res = client.post(
        "/api/webhooks/billing/period-renewed",
        content=body,
        headers={"Content-Type": "application/json"},
    )
    assert res.status_code == 401


def test_negative_included_credits_is_422(client, shop):
    body, headers = signed({"accountId": shop, "periodId": "p", "includedCredits": -1})
    res = client.post("/api/webhooks/billing/period-renewed", content=body, headers=headers)
    assert res.status_code == 422


def test_purchase_confirmed_webhook(client, shop):
    body, headers = signed(
        {"accountId": shop, "packageId": "large", "creditAmount": 200, "transactionId": "order-9"}
    )
    res = client.post("/api/webhooks/billing/purchase-confirmed", content=body, headers=headers)
    assert res.status_code == 200
    assert res.json()["balances"]["purchased"] == 200

    body, headers = signed(
        {"accountId": shop, "packageId": "large", "creditAmount": 10, "transactionId": "order-10"}
    )
    res = client.post("/api/webhooks/billing/purchase-confirmed", content=body, headers=headers)
    assert res.status_code == 422


def test_trial_ended_webhook(client, shop):
    activate(client, shop)
    body, headers = signed({"accountId": shop, "reason": "admin"})
    res = client.post("/api/webhooks/billing/trial-ended", content=body, headers=headers)
    assert res.status_code == 200
    assert res.json()["ended"] is True
    assert res.json()["trialBalance"] == 100


def test_balance_requires_merchant_token(client, shop):
    assert client.get("/api/credits/balance").status_code == 401
    assert client.get("/api/credits/balance", headers={"Authorization": "Bearer junk"}).status_code == 401


def test_coupon_redeem(client, shop):
    res = client.post(
        "/api/credits/coupons/redeem",
        json={"couponCode": "welcome50", "transactionId": "c-1"},
        headers=merchant(shop),
    )
    assert res.status_code == 200
    assert res.json()["balances"]["coupon"] == 50

    res = client.post(
        "/api/credits/coupons/redeem",
        json={"couponCode": "HOLIDAY25"},
        headers=merchant(shop),
    )
    assert res.status_code == 400
    assert res.json()["error"] == "EXPIRED_CODE"


def test_test_mode_purchase_completes_instantly(client, shop):
    res = client.post("/api/credits/purchase", json={"packageId": "small"}, headers=merchant(shop))
    assert res.status_code == 200
    assert res.json()["status"] == "completed"
    assert client.get("/api/credits/balance", headers=merchant(shop)).json()["purchased"] == 50

    history = client.get("/api/credits/history", headers=merchant(shop)).json()
    assert history[0]["reason"] == "credit_purchase"
    assert history[0]["balanceAfter"] == 50


def test_invalid_package_is_400(client, shop):
    res = client.post("/api/credits/purchase", json={"packageId": "mega"}, headers=merchant(shop))
    assert res.status_code == 400


def test_catalog_endpoints(client):
    packages = client.get("/api/credits/packages").json()
    assert [p["id"] for p in packages] == ["small", "medium", "large"]
    assert packages[1]["recommended"] is True
    assert packages[0]["priceDisplay"] == "$10.00"

    plans = client.get("/api/credits/plans").json()
    assert {p["handle"] for p in plans} == {"pro-monthly", "pro-annual"}
    assert all(p["overageUnitCents"] == 20 for p in plans)


def test_trial_status_and_admin_end(client, shop):
    activate(client, shop)
    status = client.get("/api/credits/trial", headers=merchant(shop)).json()
    assert status["phase"] == "active"
    assert status["daysRemaining"] in (29, 30)

    res = client.post(f"/api/accounts/{shop}/trial/end", headers=INTERNAL)
    assert res.status_code == 200
    assert res.json()["endReason"] == "admin"


def test_provider_outage_asks_to_retry(client, shop):
    set_ledger(CreditLedgerService(
        gateway=MockPaymentGateway(fail_with=stripe.APIConnectionError("network down")),
        timeout_seconds=1,
    ))
    activate(client, shop, billingCustomerId="cus_test")

    res = client.post(
        "/api/usage/consume",
        json={"accountId": shop, "quantity": 102, "idempotencyKey": "gen-outage"},
        headers=INTERNAL,
    )

    assert res.status_code == 402
    body = res.json()
    assert body["reason"] == "payment_provider_error"
    assert "try again" in body["message"]
    assert "payment method" not in body["message"]


def test_pending_overage_charge_is_reconciled(client, shop):
    gateway = MockPaymentGateway(charge_fail_with=stripe.APIConnectionError("network down"))
    set_ledger(CreditLedgerService(gateway=gateway, timeout_seconds=1))
    activate(client, shop, billingCustomerId="cus_test")

    res = client.post(
        "/api/usage/consume",
        json={"accountId": shop, "quantity": 101, "idempotencyKey": "gen-pending"},
        headers=INTERNAL,
    )
    assert res.status_code == 200
    assert client.get("/api/credits/overage", headers=merchant(shop)).json()["pendingAmountCents"] == 20

    gateway.charge_fail_with = None
    res = client.post(f"/api/accounts/{shop}/overage/reconcile", headers=INTERNAL)

    assert res.status_code == 200
    assert res.json() == {"submitted": 1, "billed": 1, "pending": 0}
    assert len(gateway.charges) == 1
    assert client.get("/api/credits/overage", headers=merchant(shop)).json()["pendingAmountCents"] == 0


def test_annual_rollover_settles_overage(client, shop):
    gateway = MockPaymentGateway()
    set_ledger(CreditLedgerService(gateway=gateway))
    activate(client, shop, planHandle="pro-annual", billingCustomerId="cus_test")
    client.post(
        "/api/usage/consume",
        json={"accountId": shop, "quantity": 105, "idempotencyKey": "gen-annual"},
        headers=INTERNAL,
    )
    summary = client.get("/api/credits/overage", headers=merchant(shop)).json()
    assert summary["billingMode"] == "monthly_settlement"
    assert summary["accruedAmountCents"] == 100
    assert gateway.charges == []

    res = client.post(f"/api/accounts/{shop}/rollover", headers=INTERNAL)

    assert res.status_code == 200
    settlement = res.json()["overageSettlement"]
    assert settlement["billed"] is True
    assert settlement["amountCents"] == 100
    assert len(gateway.charges) == 1


def test_trial_notification_endpoint(client, shop):
    activate(client, shop)
    client.post(
        "/api/usage/consume",
        json={"accountId": shop, "quantity": 80, "idempotencyKey": "gen-warn"},
        headers=INTERNAL,
    )
    status = client.get("/api/credits/trial", headers=merchant(shop)).json()
    assert status["creditsUsed"] == 80
    assert status["notificationThreshold"] == 80

    res = client.post(f"/api/accounts/{shop}/trial/notifications/80", headers=INTERNAL)
    assert res.status_code == 200
    assert res.json()["marked"] is True
    assert res.json()["notificationThreshold"] is None
    assert res.json()["notificationsSent"] == [80]

    res = client.post(f"/api/accounts/{shop}/trial/notifications/85", headers=INTERNAL)
    assert res.status_code == 422
