# services/paystack.py
import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from servicepay.core.config import Settings, settings as default_settings
from servicepay.core.errors import GatewayError, GatewayUnavailableError
from servicepay.services.circuit_breaker import CircuitBreaker
from servicepay.services.ttl_cache import TTLCache, make_key

logger = logging.getLogger("servicepay.gateway")

CHANNELS = ["card", "bank", "ussd", "mobile_money", "bank_transfer", "qr"]

# Known gateway/network messages -> what the payer or operator should read
_HUMANIZED = [
    ("invalid key", "Payment service configuration error. Please contact support."),
    ("network error", "Network error. Please check your connection and try again."),
    ("timed out", "The payment service took too long to respond. Please try again."),
    ("rate limit", "Too many payment requests. Please wait a moment and try again."),
    ("invalid email", "Please provide a valid email address."),
    ("invalid amount", "The payment amount is invalid."),
    ("duplicate transaction reference", "This payment was already started. Please refresh the page."),
]
_DEFAULT_MESSAGE = "Payment could not be processed. Please try again or contact support."


def humanize_error(message: Optional[str]) -> str:
    text = (message or "").lower()
    for needle, friendly in _HUMANIZED:
        if needle in text:
            return friendly
    return _DEFAULT_MESSAGE


def to_subunits(amount: Decimal) -> int:
    """Gateway amounts are integers in the currency's minor unit (kobo, cents)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def validate_webhook_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """HMAC-SHA512 over the raw body. No secret means no payload is trusted."""
    if not secret or not signature:
        return False
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    computed = hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()
    return hmac.compare_digest(computed, signature)


@dataclass
class InitializeResult:
    authorization_url: str
    access_code: Optional[str]
    reference: str
    charged_amount: Decimal
    charged_currency: str
    exchange_rate: Decimal


@dataclass
class VerifyResult:
    reference: str
    status: str
    amount: Decimal
    currency: str
    gateway_response: Optional[str] = None
    paid_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExchangeRate:
    rate: Decimal
    source: str
    cached: bool = False


class PaystackGateway:
    """
    Hosted-checkout gateway client.

    Holds its own circuit breaker and caches; build one per process and
    hand it to request handlers (see core.dependencies).
    """

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        verify_max_retries: int = 3,
        charge_currency: str = "USD",
        callback_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        exchange_rate_url: str = "https://api.exchangerate-api.com/v4/latest",
        fallback_rates: Optional[Dict[str, Decimal]] = None,
        breaker: Optional[CircuitBreaker] = None,
        transactions_cache: Optional[TTLCache] = None,
        fx_cache: Optional[TTLCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.backoff_seconds = backoff_seconds
        self.verify_max_retries = max(0, verify_max_retries)
        self.charge_currency = charge_currency.upper()
        self.callback_url = callback_url
        self.webhook_secret = webhook_secret
        self.exchange_rate_url = exchange_rate_url.rstrip("/")
        self.fallback_rates = fallback_rates or {}
        self.breaker = breaker if breaker is not None else CircuitBreaker("paystack")
        self.transactions_cache = transactions_cache if transactions_cache is not None else TTLCache(5 * 60)
        self.fx_cache = fx_cache if fx_cache is not None else TTLCache(60 * 60)
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None, **overrides) -> "PaystackGateway":
        s = s or default_settings
        kwargs = dict(
            secret_key=s.PAYSTACK_SECRET_KEY,
            base_url=s.PAYSTACK_BASE_URL,
            timeout=s.GATEWAY_TIMEOUT_SECONDS,
            max_retries=s.GATEWAY_MAX_RETRIES,
            backoff_seconds=s.GATEWAY_BACKOFF_SECONDS,
            verify_max_retries=s.GATEWAY_VERIFY_MAX_RETRIES,
            charge_currency=s.PAYSTACK_CHARGE_CURRENCY,
            callback_url=s.PAYSTACK_CALLBACK_URL,
            webhook_secret=s.webhook_secret,
            exchange_rate_url=s.EXCHANGE_RATE_API_URL,
            fallback_rates={"USD_NGN": s.EXCHANGE_RATE_FALLBACK_USD_TO_NGN},
            breaker=CircuitBreaker(
                "paystack",
                failure_threshold=s.CIRCUIT_FAILURE_THRESHOLD,
                recovery_timeout=s.CIRCUIT_COOLDOWN_SECONDS,
            ),
            transactions_cache=TTLCache(s.TRANSACTIONS_CACHE_TTL_SECONDS),
            fx_cache=TTLCache(s.FX_CACHE_TTL_SECONDS),
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    # --------------------------------------------------------------
    # HTTP plumbing
    # --------------------------------------------------------------
    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """One attempt. Transient trouble raises GatewayUnavailableError, refusals GatewayError."""
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayUnavailableError(humanize_error("timed out"), details={"raw": str(e)}) from e
        except httpx.TransportError as e:
            raise GatewayUnavailableError(humanize_error("Network Error"), details={"raw": str(e)}) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("message")

        if response.status_code == 429:
            raise GatewayUnavailableError(humanize_error("rate limit"), details={"status": 429})
        if response.status_code >= 500:
            raise GatewayUnavailableError(
                humanize_error(message),
                details={"status": response.status_code, "raw": message},
            )
        if response.status_code >= 400 or not body.get("status"):
            raise GatewayError(
                humanize_error(message),
                raw_message=message,
                http_status=response.status_code,
            )
        return body

    async def _with_retries(
        self,
        operation: Callable[[], Awaitable[Dict[str, Any]]],
        retries: int,
        delay_for: Callable[[int], float],
        label: str,
    ) -> Dict[str, Any]:
        """First attempt plus up to ``retries`` more, sleeping delay_for(n) after failure n."""
        attempts = retries + 1
        last_error: Optional[GatewayUnavailableError] = None
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except GatewayUnavailableError as e:
                last_error = e
                if attempt == attempts:
                    break
                delay = delay_for(attempt)
                logger.warning(
                    f"{label} attempt {attempt}/{attempts} failed ({e.message}); retrying in {delay}s"
                )
                await self._sleep(delay)

        logger.error(f"{label} failed after {attempts} attempts: {last_error.message}")
        raise GatewayUnavailableError(
            last_error.message,
            details={**last_error.details, "attempts": attempts},
        ) from last_error

    def _exponential(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))

    def _linear(self, attempt: int) -> float:
        return self.backoff_seconds * attempt

    # --------------------------------------------------------------
    # Operations
    # --------------------------------------------------------------
    async def initialize_transaction(
        self,
        email: str,
        amount: Decimal,
        reference: str,
        currency: str = "USD",
        metadata: Optional[Dict[str, Any]] = None,
        callback_url: Optional[str] = None,
    ) -> InitializeResult:
        """
        Start a hosted checkout. Safe to retry: initialize never moves money,
        and the reference doubles as the gateway-side idempotency key.
        """
        currency = currency.upper()
        amount = Decimal(amount)
        rate = Decimal("1")
        source = "none"
        if currency != self.charge_currency:
            fx = await self.get_exchange_rate(currency, self.charge_currency, use_cache=False)
            rate, source = fx.rate, fx.source
        charged = (amount * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

        payload = {
            "email": email,
            "amount": to_subunits(charged),
            "currency": self.charge_currency,
            "reference": reference,
            "callback_url": callback_url or self.callback_url,
            "channels": CHANNELS,
            "metadata": {
                **(metadata or {}),
                "idempotency_key": reference,
                "original_amount": str(amount),
                "original_currency": currency,
                "exchange_rate": str(rate),
                "exchange_source": source,
            },
        }
        logger.info(f"Initializing transaction {reference}: {amount} {currency} -> {charged} {self.charge_currency}")

        body = await self.breaker.call(
            self._with_retries,
            lambda: self._request("POST", "/transaction/initialize", json=payload),
            self.max_retries,
            self._exponential,
            f"initialize {reference}",
        )
        data = body.get("data") or {}
        if not data.get("authorization_url"):
            logger.error(f"Initialize {reference} answered without a checkout URL: {body}")
            raise GatewayError(
                "Payment service returned an incomplete response. Please try again.",
                raw_message=body.get("message"),
                http_status=200,
            )
        return InitializeResult(
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code"),
            reference=data.get("reference") or reference,
            charged_amount=charged,
            charged_currency=self.charge_currency,
            exchange_rate=rate,
        )

    async def verify_transaction(self, reference: str) -> VerifyResult:
        body = await self.breaker.call(
            self._with_retries,
            lambda: self._request("GET", f"/transaction/verify/{reference}"),
            self.verify_max_retries,
            self._linear,
            f"verify {reference}",
        )
        data = body.get("data") or {}
        return VerifyResult(
            reference=data.get("reference") or reference,
            status=data.get("status", "unknown"),
            amount=Decimal(data.get("amount") or 0) / 100,
            currency=data.get("currency", self.charge_currency),
            gateway_response=data.get("gateway_response"),
            paid_at=data.get("paid_at"),
            metadata=data.get("metadata") or {},
        )

    async def list_transactions(
        self,
        per_page: int = 50,
        page: int = 1,
        status: Optional[str] = None,
        customer: Optional[str] = None,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = {"perPage": per_page, "page": page}
        for key, value in (("status", status), ("customer", customer), ("from", from_date), ("to", to_date)):
            if value:
                params[key] = value

        key = make_key("transactions", **params)
        cached = self.transactions_cache.get(key)
        if cached is not None:
            return {**cached, "cached": True}

        body = await self.breaker.call(
            self._with_retries,
            lambda: self._request("GET", "/transaction", params=params),
            self.verify_max_retries,
            self._linear,
            "list transactions",
        )
        result = {"data": body.get("data") or [], "meta": body.get("meta") or {}}
        self.transactions_cache.set(key, result)
        return {**result, "cached": False}

    async def get_exchange_rate(
        self, from_currency: str = "USD", to_currency: str = "NGN", use_cache: bool = True
    ) -> ExchangeRate:
        from_currency, to_currency = from_currency.upper(), to_currency.upper()
        if from_currency == to_currency:
            return ExchangeRate(rate=Decimal("1"), source="identity")

        key = make_key("fx", from_currency, to_currency)
        if use_cache:
            cached = self.fx_cache.get(key)
            if cached is not None:
                return ExchangeRate(rate=cached.rate, source=cached.source, cached=True)

        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                response = await client.get(f"{self.exchange_rate_url}/{from_currency}")
                response.raise_for_status()
                rate = Decimal(str(response.json()["rates"][to_currency]))
        except (httpx.HTTPError, KeyError, ValueError, TypeError) as e:
            fallback = self.fallback_rates.get(f"{from_currency}_{to_currency}")
            if fallback is None:
                raise GatewayUnavailableError(
                    "Currency conversion is temporarily unavailable. Please try again shortly.",
                    details={"pair": f"{from_currency}/{to_currency}"},
                ) from e
            logger.warning(f"Exchange rate API failed ({e}); using fallback {from_currency}/{to_currency}={fallback}")
            return ExchangeRate(rate=Decimal(fallback), source="fallback")

        result = ExchangeRate(rate=rate, source="exchangerate-api")
        self.fx_cache.set(key, result)
        logger.info(f"Exchange rate 1 {from_currency} = {rate} {to_currency}")
        return result

    def validate_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return validate_webhook_signature(payload, signature, self.webhook_secret)

    @staticmethod
    def supported_channels() -> List[str]:
        return list(CHANNELS)
