import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from servicepay.core.config import Settings
from servicepay.core.errors import GatewayError, GatewayUnavailableError, PaymentValidationError
from servicepay.models.payment_model import CreatePaymentRequest, PaymentStatus
from servicepay.models.request_model import PartialPaymentStatus
from servicepay.services.circuit_breaker import CircuitState
from servicepay.services.crypto import CryptoPaymentService
from servicepay.services.nowpayments import NowPaymentsClient, ProcessorPayment
from servicepay.services.payment_service import PaymentService
from servicepay.services.paystack import PaystackGateway
from servicepay.services.rails import build_rails
from servicepay.services.references import ReferenceGenerator

PAY_ADDRESS = "bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh"


class FakeProcessor:
    """Answers the handful of processor endpoints the client uses."""

    def __init__(self):
        self.currencies = ["btc", "eth", "usdttrc20", "xmr"]
        self.min_amount = 0.0001
        self.estimate = 0.01
        self.status = "waiting"
        self.created = []
        self.calls = []
        self.outage = False
        self.refuse = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path, request.headers.get("x-api-key")))
        if self.outage:
            return httpx.Response(503, json={"message": "maintenance"})
        if path == "/v1/currencies":
            return httpx.Response(200, json={"currencies": self.currencies})
        if path == "/v1/min-amount":
            return httpx.Response(200, json={"currency_from": "btc", "currency_to": "usd", "min_amount": self.min_amount})
        if path == "/v1/estimate":
            return httpx.Response(200, json={"estimated_amount": self.estimate})
        if path == "/v1/payment" and request.method == "POST":
            payload = json.loads(request.content)
            self.created.append(payload)
            if self.refuse:
                return httpx.Response(400, json={"message": self.refuse})
            return httpx.Response(
                201,
                json={
                    "payment_id": "5745459419",
                    "payment_status": "waiting",
                    "pay_address": PAY_ADDRESS,
                    "price_amount": payload["price_amount"],
                    "price_currency": payload["price_currency"],
                    "pay_amount": 0.01,
                    "pay_currency": payload["pay_currency"],
                    "order_id": payload["order_id"],
                    "expiration_estimate_date": "2026-03-02T12:20:00.000Z",
                },
            )
        if path.startswith("/v1/payment/"):
            return httpx.Response(
                200,
                json={
                    "payment_id": path.rsplit("/", 1)[-1],
                    "payment_status": self.status,
                    "pay_address": PAY_ADDRESS,
                    "pay_amount": 0.01,
                    "actually_paid": 0.01 if self.status == "finished" else 0,
                    "pay_currency": "btc",
                    "payin_hash": "ab" * 32 if self.status == "finished" else None,
                },
            )
        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
def processor():
    return FakeProcessor()


def make_client(processor, **overrides):
    kwargs = dict(
        ipn_callback_url="https://api.servicepay.test/api/webhooks/nowpayments",
        transport=httpx.MockTransport(processor),
    )
    kwargs.update(overrides)
    return NowPaymentsClient("np_test", "https://np.test/v1", **kwargs)


def test_create_payment_uses_our_reference_as_order_id(processor):
    client = make_client(processor)

    result = asyncio.run(client.create_payment(Decimal("500.00"), "BTC", "crypto_7_abc"))

    payload = processor.created[0]
    assert payload["order_id"] == "crypto_7_abc"
    assert payload["price_amount"] == 500.0
    assert payload["price_currency"] == "usd"
    assert payload["pay_currency"] == "btc"
    assert payload["ipn_callback_url"] == "https://api.servicepay.test/api/webhooks/nowpayments"
    assert all(key == "np_test" for _, _, key in processor.calls)
    assert result.payment_id == "5745459419"
    assert result.pay_amount == Decimal("0.01")
    assert result.amount_display == "0.01"
    assert "bitcoin%3A" + PAY_ADDRESS in result.qr_code_url()


def test_unsupported_currency_is_refused_before_creating(processor):
    client = make_client(processor)

    with pytest.raises(PaymentValidationError):
        asyncio.run(client.create_payment(Decimal("500.00"), "doge", "crypto_7_abc"))

    assert processor.created == []


def test_amount_below_processor_minimum_is_refused(processor):
    processor.min_amount = 0.05
    client = make_client(processor)

    with pytest.raises(PaymentValidationError) as exc:
        asyncio.run(client.create_payment(Decimal("20.00"), "btc", "crypto_7_abc"))

    assert exc.value.details["minimum"] == "0.05"
    assert processor.created == []


def test_refusal_is_a_gateway_error_that_keeps_the_breaker_closed(processor):
    processor.refuse = "pay_currency is invalid"
    client = make_client(processor)

    with pytest.raises(GatewayError) as exc:
        asyncio.run(client.create_payment(Decimal("500.00"), "btc", "crypto_7_abc"))

    assert exc.value.raw_message == "pay_currency is invalid"
    assert client.breaker.failure_count == 0


def test_outages_open_the_breaker(processor):
    processor.outage = True
    client = make_client(processor)

    for _ in range(5):
        with pytest.raises(GatewayUnavailableError):
            asyncio.run(client.get_payment_status("5745459419"))

    assert client.breaker.state == CircuitState.OPEN


def test_currency_list_is_cached(processor):
    client = make_client(processor)

    asyncio.run(client.is_currency_supported("btc"))
    asyncio.run(client.is_currency_supported("eth"))

    assert [path for _, path, _ in processor.calls] == ["/v1/currencies"]


def test_currency_listing_falls_back_while_processor_is_down(processor):
    processor.outage = True
    client = make_client(processor)

    listing = asyncio.run(client.payment_currencies())

    assert listing["fallback"] is True
    assert [c["id"] for c in listing["currencies"]] == ["btc", "eth", "usdt", "usdc"]


def test_currency_listing_puts_popular_stablecoins_first(processor):
    client = make_client(processor)

    listing = asyncio.run(client.payment_currencies())

    assert [c["id"] for c in listing["currencies"]] == ["usdttrc20", "btc", "eth"]
    assert listing["currencies"][0]["network"] == "TRC20"
    assert listing["totalAvailable"] == 4


def test_unconfigured_client_makes_no_calls(processor):
    client = NowPaymentsClient("", "https://np.test/v1", transport=httpx.MockTransport(processor))

    with pytest.raises(PaymentValidationError):
        asyncio.run(client.get_payment_status("1"))

    assert processor.calls == []


def test_settings_drive_the_client():
    client = NowPaymentsClient.from_settings(
        Settings(
            NOWPAYMENTS_API_KEY="np_live",
            NOWPAYMENTS_IPN_CALLBACK_URL="https://api.test/ipn",
            NOWPAYMENTS_CURRENCIES_CACHE_TTL_SECONDS=90,
        )
    )

    assert client.configured
    assert client.base_url == "https://api.nowpayments.io/v1"
    assert client.ipn_callback_url == "https://api.test/ipn"
    assert client.currencies_cache.ttl_seconds == 90


def test_status_mapping():
    assert ProcessorPayment.from_api({"payment_status": "finished"}).observed_status == PaymentStatus.CONFIRMED
    assert ProcessorPayment.from_api({"payment_status": "partially_paid"}).observed_status == PaymentStatus.PROCESSING
    assert ProcessorPayment.from_api({"payment_status": "expired"}).observed_status == PaymentStatus.CANCELLED
    assert ProcessorPayment.from_api({"payment_status": "waiting"}).observed_status is None


# --------------------------------------------------------------
# Through the crypto rail
# --------------------------------------------------------------
@pytest.fixture
def service(store, policy, clock, processor):
    gateway = PaystackGateway("sk_test", "https://api.paystack.test", transport=httpx.MockTransport(processor))
    crypto = CryptoPaymentService({}, now=clock)
    rails = build_rails(gateway, crypto, Settings(), make_client(processor))
    return PaymentService(store, rails, ReferenceGenerator(), policy, now=clock)


def create_processor_payment(service, request_id):
    body = CreatePaymentRequest.model_validate(
        {
            "requestId": request_id,
            "paymentMethod": "crypto",
            "amount": "500.00",
            "paymentType": "split",
            "metadata": {"processor": "nowpayments", "payCurrency": "btc"},
        }
    )
    return asyncio.run(service.create_payment(body))


def test_processor_intent_is_stored_on_the_payment(service, store, make_request, processor):
    request_id = make_request(cost="1000.00")

    response = create_processor_payment(service, request_id)

    assert response["cryptoAddress"] == PAY_ADDRESS
    assert response["cryptoAmount"] == "0.01"
    assert response["crypto"]["processor"] == "nowpayments"
    assert processor.created[0]["order_id"] == response["reference"]
    payment = asyncio.run(store.get(response["paymentId"]))
    assert payment.gateway_reference == "5745459419"
    assert payment.crypto_symbol == "BTC"
    # Our own reference keeps resolving after the processor id is attached
    assert asyncio.run(store.get_by_reference(response["reference"])).id == payment.id


def test_polling_applies_processor_status(service, store, make_request, load_request, processor):
    request_id = make_request(cost="1000.00")
    response = create_processor_payment(service, request_id)

    processor.status = "waiting"
    idle = asyncio.run(service.verify_payment(response["reference"]))
    assert idle["status"] == "pending"
    assert idle["updated"] is False

    processor.status = "confirming"
    assert asyncio.run(service.verify_payment(response["reference"]))["status"] == "processing"

    processor.status = "finished"
    done = asyncio.run(service.verify_payment(response["reference"]))
    assert done["status"] == "confirmed"
    assert done["updated"] is True
    assert ("GET", "/v1/payment/5745459419", "np_test") in processor.calls

    request = load_request(request_id)
    assert request.partial_payment_status == PartialPaymentStatus.FIRST_PAID
    assert request.balance_due == Decimal("500.00")

    again = asyncio.run(service.verify_payment(response["reference"]))
    assert again["updated"] is False
    audit = asyncio.run(store.audit_trail(response["paymentId"]))
    assert [entry.action for entry in audit].count("payment_verified") == 2


def test_processor_failure_releases_the_payment(service, store, make_request, processor):
    request_id = make_request(cost="1000.00")
    processor.refuse = "pay_currency is invalid"

    with pytest.raises(GatewayError):
        create_processor_payment(service, request_id)

    payments, _ = asyncio.run(store.list_payments(request_id=request_id))
    assert [p.payment_status for p in payments] == [PaymentStatus.FAILED]


def test_processor_needs_a_currency(service, make_request, processor):
    request_id = make_request(cost="1000.00")
    body = CreatePaymentRequest.model_validate(
        {
            "requestId": request_id,
            "paymentMethod": "crypto",
            "amount": "500.00",
            "paymentType": "split",
            "metadata": {"processor": "nowpayments"},
        }
    )

    with pytest.raises(PaymentValidationError):
        asyncio.run(service.create_payment(body))

    assert processor.calls == []
