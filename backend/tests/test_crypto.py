import asyncio
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from conftest import NOW
from servicepay.core.config import Settings
from servicepay.core.errors import GatewayUnavailableError, PaymentValidationError
from servicepay.services.crypto import (
    CryptoPaymentService,
    explorer_url,
    get_network,
    qr_code_url,
    validate_transaction_hash,
)
from servicepay.services.ttl_cache import TTLCache

TRON_ADDRESS = "TXYZopYRdj2D9XRtbG411XZZ3kM5VkAeBf"
BTC_ADDRESS = "bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh"
ETH_ADDRESS = "0x" + "ab" * 20


class PriceFeed:
    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body if body is not None else {
            "bitcoin": {"usd": 50000, "usd_24h_change": 1.5},
            "ethereum": {"usd": 2500},
        }
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        return httpx.Response(self.status, json=self.body)


def make_service(feed, **overrides):
    kwargs = dict(
        addresses={"usdt-trc20": TRON_ADDRESS, "btc": BTC_ADDRESS, "eth": ETH_ADDRESS, "usdc-erc20": None},
        price_api_url="https://prices.test/simple/price",
        price_cache=TTLCache(120),
        transport=httpx.MockTransport(feed),
        now=lambda: NOW,
    )
    kwargs.update(overrides)
    return CryptoPaymentService(**kwargs)


def generate(service, network_id, amount, reference="crypto_1_abc"):
    return asyncio.run(service.generate_payment_details(network_id, Decimal(amount), reference))


def test_stablecoin_uses_fixed_rate_without_price_call():
    feed = PriceFeed()
    service = make_service(feed)

    details = generate(service, "usdt-trc20", "250")

    assert details.amount_display == "250.000000"
    assert details.exchange_rate == Decimal("1.00")
    assert details.address == TRON_ADDRESS
    # TRC20 has no URI scheme; the QR code carries the bare address
    assert details.payment_uri == TRON_ADDRESS
    assert details.expires_at == NOW + timedelta(hours=24)
    assert any("crypto_1_abc" in step for step in details.instructions)
    assert feed.calls == 0
    assert service.price_requests == 0


def test_volatile_asset_converts_at_spot_price_with_native_precision():
    feed = PriceFeed()
    service = make_service(feed)

    details = generate(service, "btc", "100")

    assert details.amount_display == "0.00200000"
    assert details.exchange_rate == Decimal("50000")
    assert details.payment_uri.startswith(f"bitcoin:{BTC_ADDRESS}?amount=0.00200000")
    assert details.to_dict()["amountCrypto"] == "0.00200000"


def test_price_is_cached():
    feed = PriceFeed()
    service = make_service(feed)

    generate(service, "btc", "100")
    generate(service, "btc", "200", reference="crypto_2_abc")

    assert feed.calls == 1


def test_ethereum_uri_scheme():
    service = make_service(PriceFeed())

    details = generate(service, "eth", "50")

    assert details.amount_display == "0.020000000000000000"
    assert details.payment_uri.startswith(f"ethereum:{ETH_ADDRESS}?value=")


def test_price_failure_for_volatile_asset_raises():
    service = make_service(PriceFeed(status=500))

    with pytest.raises(GatewayUnavailableError):
        generate(service, "btc", "100")


def test_price_failure_for_stablecoin_falls_back_to_par():
    service = make_service(PriceFeed(status=500))

    price = asyncio.run(service.get_crypto_price("USDT"))

    assert price.price == Decimal("1.00")
    assert price.source == "fallback"


@pytest.mark.parametrize("network_id,amount", [("usdt-trc20", "0.50"), ("btc", "5"), ("btc", "150000")])
def test_amount_outside_network_bounds_is_rejected(network_id, amount):
    feed = PriceFeed()
    service = make_service(feed)

    with pytest.raises(PaymentValidationError):
        generate(service, network_id, amount)
    assert feed.calls == 0


def test_network_without_address_is_unavailable():
    service = make_service(PriceFeed())

    with pytest.raises(PaymentValidationError):
        generate(service, "usdc-erc20", "100")


def test_unknown_network_is_rejected():
    with pytest.raises(PaymentValidationError):
        get_network("doge")


def test_supported_networks_flags_availability():
    networks = {n["id"]: n for n in make_service(PriceFeed()).supported_networks()}

    assert networks["usdt-trc20"]["available"] is True
    assert networks["usdc-erc20"]["available"] is False
    assert networks["btc"]["isStablecoin"] is False


@pytest.mark.parametrize(
    "network_id,tx_hash,valid",
    [
        ("btc", "a" * 64, True),
        ("usdt-trc20", "0123456789abcdef" * 4, True),
        ("btc", "0x" + "a" * 64, False),
        ("eth", "0x" + "f" * 64, True),
        ("usdt-erc20", "f" * 64, False),
        ("eth", "0x" + "f" * 63, False),
        ("doge", "a" * 64, False),
        ("btc", "", False),
    ],
)
def test_transaction_hash_format(network_id, tx_hash, valid):
    assert validate_transaction_hash(network_id, tx_hash) is valid


def test_explorer_and_qr_links():
    assert explorer_url("usdt-trc20", "abc") == "https://tronscan.org/#/transaction/abc"
    assert explorer_url("doge", "abc") is None
    assert qr_code_url("bitcoin:abc?amount=1").startswith("https://api.qrserver.com/v1/create-qr-code/?size=300x300")


def test_injected_price_cache_is_used_with_its_own_clock():
    feed = PriceFeed()
    ticks = [0.0]
    service = make_service(feed, price_cache=TTLCache(120, clock=lambda: ticks[0]))

    generate(service, "btc", "100")
    ticks[0] = 119
    generate(service, "btc", "100", reference="crypto_2_abc")
    ticks[0] = 121
    generate(service, "btc", "100", reference="crypto_3_abc")

    assert feed.calls == 2


def test_price_cache_ttl_comes_from_settings():
    service = CryptoPaymentService.from_settings(Settings(CRYPTO_PRICE_CACHE_TTL_SECONDS=45))

    assert service.price_cache.ttl_seconds == 45
