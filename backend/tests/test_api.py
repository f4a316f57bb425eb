import hashlib
import hmac
import json
from datetime import timedelta

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from servicepay.core.config import PaymentPolicy, settings
from servicepay.core.database import utcnow
from servicepay.core.dependencies import (
    get_crypto_service,
    get_gateway,
    get_lifecycle_store,
    get_nowpayments_client,
    get_policy,
    get_reference_generator,
    get_webhook_service,
)
from servicepay.core.errors import register_exception_handlers
from servicepay.models.payment_model import PaymentStatus
from servicepay.routers import admin_router, payment_router, webhooks
from servicepay.services.crypto import CryptoPaymentService
from servicepay.services.lifecycle import PaymentLifecycleStore
from servicepay.services.nowpayments import NowPaymentsClient
from servicepay.services.paystack import PaystackGateway
from servicepay.services.references import ReferenceGenerator
from servicepay.services.webhook_service import WebhookService

WEBHOOK_SECRET = "sk_test_api"


def paystack_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "fx.test":
        return httpx.Response(200, json={"rates": {"NGN": 1600}})
    if request.url.path == "/transaction/initialize":
        payload = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "status": True,
                "data": {
                    "authorization_url": f"https://checkout.paystack.test/{payload['reference']}",
                    "access_code": "code",
                    "reference": payload["reference"],
                },
            },
        )
    if request.url.path == "/transaction":
        return httpx.Response(
            200, json={"status": True, "data": [{"id": 1, "reference": "pay_x", "amount": 50000}], "meta": {"total": 1}}
        )
    return httpx.Response(404, json={"status": False, "message": "Transaction reference not found"})


@pytest.fixture
def api_store(session_factory):
    return PaymentLifecycleStore(session_factory)


@pytest.fixture
def client(api_store):
    gateway = PaystackGateway(
        "sk_test",
        "https://api.paystack.test",
        exchange_rate_url="https://fx.test/v4/latest",
        transport=httpx.MockTransport(paystack_handler),
    )
    crypto = CryptoPaymentService({"usdt-trc20": "TXYZopYRdj2D9XRtbG411XZZ3kM5VkAeBf"})

    app = FastAPI()
    register_exception_handlers(app)
    for module in (payment_router, admin_router, webhooks):
        app.include_router(module.router, prefix="/api")

    app.dependency_overrides[get_lifecycle_store] = lambda: api_store
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_crypto_service] = lambda: crypto
    app.dependency_overrides[get_nowpayments_client] = lambda: NowPaymentsClient("", "https://np.test/v1")
    app.dependency_overrides[get_reference_generator] = lambda: ReferenceGenerator()
    app.dependency_overrides[get_policy] = lambda: PaymentPolicy()
    app.dependency_overrides[get_webhook_service] = lambda: WebhookService(api_store, paystack_secret=WEBHOOK_SECRET)

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {settings.ADMIN_API_KEY}", "X-Admin-User": "ops@servicepay.test"}


@pytest.fixture
def open_request(make_request):
    return make_request(link_expiry=utcnow() + timedelta(hours=1))


def create_split(client, request_id, key=None):
    body = {"requestId": request_id, "paymentMethod": "card_gateway", "amount": "500.00", "paymentType": "split"}
    if key:
        body["idempotencyKey"] = key
    return client.post("/api/payments/create", json=body)


def send_webhook(client, event, secret=WEBHOOK_SECRET):
    body = json.dumps(event).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
    return client.post(
        "/api/webhooks/paystack",
        content=body,
        headers={"x-paystack-signature": signature, "content-type": "application/json"},
    )


def test_admin_routes_require_a_token(client):
    assert client.get("/api/payments").status_code == 401
    assert client.get("/api/payments", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_quote_lists_both_options(client, open_request):
    response = client.get(f"/api/payments/quote/{open_request}")

    assert response.status_code == 200
    body = response.json()
    assert body["payable"] is True
    assert body["split"]["amount"] == "500.00"
    assert body["full"]["amount"] == "900.00"


def test_create_and_replay(client, open_request):
    first = create_split(client, open_request, key="checkout-1")
    second = create_split(client, open_request, key="checkout-1")

    assert first.status_code == 201
    assert first.json()["checkoutUrl"].startswith("https://checkout.paystack.test/pay_")
    assert second.status_code == 201
    assert second.json()["paymentId"] == first.json()["paymentId"]
    assert second.json()["replayed"] is True


def test_expired_link_is_gone(client, make_request):
    request_id = make_request(link_expiry=utcnow() - timedelta(minutes=5))

    response = create_split(client, request_id)

    assert response.status_code == 410
    assert response.json()["success"] is False
    assert response.json()["action"] == "link_unusable"


def test_webhook_then_admin_approval(client, open_request, admin_headers):
    created = create_split(client, open_request).json()
    event = {"event": "charge.success", "data": {"reference": created["reference"], "amount": 50000, "id": 5}}

    assert send_webhook(client, event).json()["payment_status"] == "success"

    approve = client.post(f"/api/payments/{created['paymentId']}/approve", headers=admin_headers)
    assert approve.status_code == 200
    assert approve.json()["payment"]["payment_status"] == "confirmed"

    again = client.post(f"/api/payments/{created['paymentId']}/approve", headers=admin_headers)
    assert again.status_code == 409
    assert again.json()["error"] == "invalid_state_transition"
    assert again.json()["details"]["current_status"] == "confirmed"

    audit = client.get(f"/api/payments/{created['paymentId']}/audit", headers=admin_headers).json()
    assert [e["action"] for e in audit["entries"]][-1] == "payment_approved"
    assert audit["entries"][-1]["actor"] == "ops@servicepay.test"


def test_webhook_with_bad_signature(client, open_request):
    created = create_split(client, open_request).json()
    event = {"event": "charge.success", "data": {"reference": created["reference"], "amount": 50000}}

    response = send_webhook(client, event, secret="forged")

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_signature"


def test_delete_guards_and_decline(client, open_request, make_payment, admin_headers):
    confirmed = make_payment(open_request, status=PaymentStatus.CONFIRMED)
    pending = make_payment(open_request, sequence=2)

    assert client.delete(f"/api/payments/{confirmed}", headers=admin_headers).status_code == 409

    declined = client.delete(f"/api/payments/{pending}", params={"reason": "Duplicate"}, headers=admin_headers)
    assert declined.json()["payment"]["payment_status"] == "declined"

    deleted = client.delete(f"/api/payments/{pending}", headers=admin_headers)
    assert deleted.json() == {"success": True, "message": "Payment deleted", "paymentId": pending}
    assert client.get(f"/api/payments/{pending}", headers=admin_headers).status_code == 404


def test_manual_payment_and_stats(client, open_request, admin_headers):
    response = client.post(
        "/api/payments/manual",
        json={"requestId": open_request, "amount": "500.00", "paymentDate": "2026-03-01T10:00:00", "reference": "TRX-9"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json()["payment"]["payment_status"] == "confirmed"
    assert response.json()["request"]["partial_payment_status"] == "first_paid"

    stats = client.get("/api/payments/stats", headers=admin_headers).json()["stats"]
    assert stats["confirmedPayments"] == 1
    assert stats["totalRevenue"] == "500.00"


def test_cleanup_accepts_the_cron_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-only-secret")

    response = client.get("/api/payments/cleanup", headers={"Authorization": "Bearer cron-only-secret"})

    assert response.status_code == 200
    assert response.json()["dry_run"] is True


def test_pricing_rejects_out_of_range_discount(client, open_request, admin_headers):
    response = client.patch(
        f"/api/service-requests/{open_request}/pricing",
        json={"admin_discount_percent": "70"},
        headers=admin_headers,
    )

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_issue_payment_link(client, open_request, admin_headers):
    response = client.post(f"/api/service-requests/{open_request}/payment-link", headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["url"].endswith(f"/payment/{open_request}")


def test_exchange_rate_and_gateway_listing(client, admin_headers):
    rate = client.get("/api/exchange-rate", params={"from": "usd", "to": "ngn"}).json()
    assert rate == {"from": "USD", "to": "NGN", "rate": "1600", "source": "exchangerate-api", "cached": False}

    listing = client.get("/api/payments/gateway-transactions", headers=admin_headers).json()
    assert listing["data"][0]["reference"] == "pay_x"
    assert listing["cached"] is False


def test_processor_currencies_when_not_configured(client):
    response = client.get("/api/payments/crypto/currencies")

    assert response.status_code == 200
    assert response.json() == {"available": False, "currencies": []}


def test_processor_checkout_is_refused_when_not_configured(client, open_request):
    response = client.post(
        "/api/payments/create",
        json={
            "requestId": open_request,
            "paymentMethod": "crypto",
            "amount": "500.00",
            "paymentType": "split",
            "metadata": {"processor": "nowpayments", "payCurrency": "btc"},
        },
    )

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"
