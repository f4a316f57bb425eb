# services/nowpayments.py
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from servicepay.core.config import Settings, settings as default_settings
from servicepay.core.errors import GatewayError, GatewayUnavailableError, PaymentValidationError
from servicepay.models.payment_model import PaymentStatus
from servicepay.services.circuit_breaker import CircuitBreaker
from servicepay.services.crypto import qr_code_url
from servicepay.services.ttl_cache import TTLCache, make_key

logger = logging.getLogger("servicepay.nowpayments")

PROCESSOR = "nowpayments"

# Processor payment_status -> lifecycle status (shared by IPN and polling)
NOWPAYMENTS_STATUS_MAP = {
    "finished": PaymentStatus.CONFIRMED,
    "confirming": PaymentStatus.PROCESSING,
    "confirmed": PaymentStatus.PROCESSING,
    "sending": PaymentStatus.PROCESSING,
    "partially_paid": PaymentStatus.PROCESSING,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.FAILED,
    "expired": PaymentStatus.CANCELLED,
}

POPULAR = {"btc", "eth", "usdt", "usdc", "ltc", "doge", "bnb", "ada", "dot", "sol"}
STABLECOINS = ("usdt", "usdc", "dai", "busd", "tusd", "usdp")

# Served when the currency list cannot be fetched
FALLBACK_CURRENCIES = [
    {"id": "btc", "symbol": "BTC", "network": "Bitcoin", "isStablecoin": False, "isPopular": True},
    {"id": "eth", "symbol": "ETH", "network": "Ethereum", "isStablecoin": False, "isPopular": True},
    {"id": "usdt", "symbol": "USDT", "network": "ERC20", "isStablecoin": True, "isPopular": True},
    {"id": "usdc", "symbol": "USDC", "network": "ERC20", "isStablecoin": True, "isPopular": True},
]


def network_name(currency: str) -> str:
    code = (currency or "").lower()
    if code == "btc":
        return "Bitcoin"
    if code == "eth":
        return "Ethereum"
    for suffix in ("erc20", "trc20", "bep20"):
        if suffix in code:
            return suffix.upper()
    return "Unknown"


def describe_currency(code: str) -> Dict[str, Any]:
    lower = code.lower()
    return {
        "id": lower,
        "symbol": code.upper(),
        "network": network_name(lower),
        "isStablecoin": any(s in lower for s in STABLECOINS),
        "isPopular": lower in POPULAR or "usdt" in lower,
    }


def _qr_content(address: str, amount: str, currency: str) -> str:
    code = currency.lower()
    if code == "btc":
        return f"bitcoin:{address}?amount={amount}"
    if code == "eth" or "erc20" in code:
        return f"ethereum:{address}?value={amount}"
    return address


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


@dataclass
class ProcessorPayment:
    payment_id: str
    status: str
    pay_address: Optional[str]
    pay_amount: Optional[Decimal]
    pay_currency: str
    price_amount: Optional[Decimal]
    price_currency: Optional[str]
    order_id: Optional[str] = None
    actually_paid: Optional[Decimal] = None
    payin_hash: Optional[str] = None
    expiration_estimate_date: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ProcessorPayment":
        return cls(
            payment_id=str(data.get("payment_id") or ""),
            status=str(data.get("payment_status") or "unknown").lower(),
            pay_address=data.get("pay_address"),
            pay_amount=_decimal(data.get("pay_amount")),
            pay_currency=str(data.get("pay_currency") or "").upper(),
            price_amount=_decimal(data.get("price_amount")),
            price_currency=data.get("price_currency"),
            order_id=data.get("order_id"),
            actually_paid=_decimal(data.get("actually_paid")),
            payin_hash=data.get("payin_hash"),
            expiration_estimate_date=data.get("expiration_estimate_date"),
            raw=data,
        )

    @property
    def amount_display(self) -> str:
        return format(self.pay_amount, "f") if self.pay_amount is not None else ""

    @property
    def observed_status(self) -> Optional[PaymentStatus]:
        return NOWPAYMENTS_STATUS_MAP.get(self.status)

    def qr_code_url(self) -> Optional[str]:
        if not self.pay_address:
            return None
        return qr_code_url(_qr_content(self.pay_address, self.amount_display, self.pay_currency))


class NowPaymentsClient:
    """
    Hosted crypto processor client.

    The processor watches the chain itself and reports back through the IPN
    webhook; ``get_payment_status`` is the poll used when an IPN is late.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.nowpayments.io/v1",
        *,
        ipn_callback_url: Optional[str] = None,
        timeout: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
        currencies_cache: Optional[TTLCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.ipn_callback_url = ipn_callback_url
        self.timeout = timeout
        self.breaker = breaker if breaker is not None else CircuitBreaker(PROCESSOR)
        self.currencies_cache = currencies_cache if currencies_cache is not None else TTLCache(10 * 60)
        self._transport = transport

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None, **overrides) -> "NowPaymentsClient":
        s = s or default_settings
        kwargs = dict(
            api_key=s.NOWPAYMENTS_API_KEY,
            base_url=s.NOWPAYMENTS_BASE_URL,
            ipn_callback_url=s.NOWPAYMENTS_IPN_CALLBACK_URL,
            timeout=s.GATEWAY_TIMEOUT_SECONDS,
            breaker=CircuitBreaker(
                PROCESSOR,
                failure_threshold=s.CIRCUIT_FAILURE_THRESHOLD,
                recovery_timeout=s.CIRCUIT_COOLDOWN_SECONDS,
            ),
            currencies_cache=TTLCache(s.NOWPAYMENTS_CURRENCIES_CACHE_TTL_SECONDS),
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayUnavailableError(
                "The crypto processor took too long to respond. Please try again.", details={"raw": str(e)}
            ) from e
        except httpx.TransportError as e:
            raise GatewayUnavailableError(
                "Network error reaching the crypto processor. Please try again.", details={"raw": str(e)}
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        message = (body.get("message") or body.get("error")) if isinstance(body, dict) else None

        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayUnavailableError(
                "The crypto processor is temporarily unavailable. Please try again shortly.",
                details={"status": response.status_code, "raw": message},
            )
        if response.status_code >= 400:
            logger.warning(f"NOWPayments {method} {path} refused ({response.status_code}): {message}")
            raise GatewayError(
                "Crypto payment could not be created. Please try another currency or contact support.",
                raw_message=message or f"NOWPayments API error: {response.status_code}",
                http_status=response.status_code,
            )
        if not isinstance(body, dict):
            raise GatewayError("Crypto processor returned an unexpected response", http_status=response.status_code)
        return body

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if not self.configured:
            raise PaymentValidationError("Crypto processor payments are not available right now")
        return await self.breaker.call(self._request, method, path, **kwargs)

    # --------------------------------------------------------------
    # Operations
    # --------------------------------------------------------------
    async def get_currencies(self) -> List[str]:
        key = make_key("currencies")
        cached = self.currencies_cache.get(key)
        if cached is not None:
            return cached
        body = await self._call("GET", "/currencies")
        currencies = [str(c).lower() for c in body.get("currencies") or []]
        self.currencies_cache.set(key, currencies)
        return currencies

    async def payment_currencies(self) -> Dict[str, Any]:
        """Popular coins first, stablecoins next; the static list when the processor is down."""
        try:
            codes = await self.get_currencies()
        except GatewayUnavailableError as e:
            logger.warning(f"⚠️ NOWPayments currencies unavailable ({e.message}); serving fallback list")
            return {"currencies": list(FALLBACK_CURRENCIES), "fallback": True}
        listed = [
            describe_currency(code)
            for code in codes
            if code in POPULAR or "usdt" in code or "usdc" in code
        ]
        listed.sort(key=lambda c: (not c["isPopular"], not c["isStablecoin"], c["symbol"]))
        return {"currencies": listed, "totalAvailable": len(codes), "fallback": False}

    async def is_currency_supported(self, currency: str) -> bool:
        return (currency or "").lower() in await self.get_currencies()

    async def get_minimum_amount(self, currency_from: str, currency_to: str = "usd") -> Decimal:
        body = await self._call(
            "GET", "/min-amount", params={"currency_from": currency_from.lower(), "currency_to": currency_to.lower()}
        )
        return _decimal(body.get("min_amount")) or Decimal("0")

    async def get_estimate(self, amount: Decimal, currency_from: str, currency_to: str) -> Decimal:
        body = await self._call(
            "GET",
            "/estimate",
            params={"amount": str(amount), "currency_from": currency_from.lower(), "currency_to": currency_to.lower()},
        )
        estimated = _decimal(body.get("estimated_amount"))
        if estimated is None:
            raise GatewayError("Crypto processor returned no estimate", raw_message=str(body))
        return estimated

    async def create_payment(
        self,
        price_amount: Decimal,
        pay_currency: str,
        order_id: str,
        *,
        price_currency: str = "usd",
        order_description: Optional[str] = None,
    ) -> ProcessorPayment:
        pay_currency = pay_currency.lower()
        if not await self.is_currency_supported(pay_currency):
            raise PaymentValidationError(
                f"Cryptocurrency {pay_currency.upper()} is not supported", details={"pay_currency": pay_currency}
            )
        minimum = await self.get_minimum_amount(pay_currency, price_currency)
        estimate = await self.get_estimate(Decimal(price_amount), price_currency, pay_currency)
        if minimum and estimate < minimum:
            raise PaymentValidationError(
                f"Amount is below the {pay_currency.upper()} minimum of {minimum}",
                details={"minimum": str(minimum), "estimate": str(estimate)},
            )

        payload = {
            "price_amount": float(price_amount),
            "price_currency": price_currency.lower(),
            "pay_currency": pay_currency,
            "order_id": order_id,
            "order_description": order_description or f"Payment for ${price_amount}",
            "purchase_id": order_id,
        }
        if self.ipn_callback_url:
            payload["ipn_callback_url"] = self.ipn_callback_url

        body = await self._call("POST", "/payment", json=payload)
        payment = ProcessorPayment.from_api(body)
        if not payment.payment_id or not payment.pay_address:
            logger.error(f"NOWPayments answered {order_id} without a payment id or address: {body}")
            raise GatewayError(
                "Crypto processor returned an incomplete response. Please try again.", raw_message=str(body)
            )
        logger.info(
            f"NOWPayments payment {payment.payment_id} for {order_id}: "
            f"{payment.amount_display} {payment.pay_currency} (${price_amount})"
        )
        return payment

    async def get_payment_status(self, payment_id: str) -> ProcessorPayment:
        body = await self._call("GET", f"/payment/{payment_id}")
        return ProcessorPayment.from_api(body)
