# services/crypto.py
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from servicepay.core.config import Settings, settings as default_settings
from servicepay.core.database import utcnow
from servicepay.core.errors import GatewayUnavailableError, PaymentValidationError
from servicepay.services.ttl_cache import TTLCache

logger = logging.getLogger("servicepay.crypto")

QR_CODE_BASE = "https://api.qrserver.com/v1/create-qr-code/"

_HEX64 = re.compile(r"^[a-fA-F0-9]{64}$")
_EVM_HASH = re.compile(r"^0x[a-fA-F0-9]{64}$")
_EVM_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")


@dataclass(frozen=True)
class CryptoNetwork:
    id: str
    name: str
    symbol: str
    network: str
    decimals: int
    min_usd: Decimal
    max_usd: Decimal
    confirmations: int
    average_fee_usd: Decimal
    is_stablecoin: bool
    explorer_url: str
    address_pattern: "re.Pattern"
    hash_pattern: "re.Pattern"
    uri_scheme: Optional[str] = None

    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.decimals)


NETWORKS: Dict[str, CryptoNetwork] = {
    n.id: n
    for n in [
        CryptoNetwork(
            id="usdt-trc20", name="USDT (TRC20)", symbol="USDT", network="TRC20", decimals=6,
            min_usd=Decimal("1"), max_usd=Decimal("50000"), confirmations=19,
            average_fee_usd=Decimal("1"), is_stablecoin=True,
            explorer_url="https://tronscan.org/#/transaction/",
            address_pattern=re.compile(r"^T[A-Za-z1-9]{33}$"), hash_pattern=_HEX64,
        ),
        CryptoNetwork(
            id="usdt-erc20", name="USDT (ERC20)", symbol="USDT", network="ERC20", decimals=6,
            min_usd=Decimal("10"), max_usd=Decimal("50000"), confirmations=12,
            average_fee_usd=Decimal("15"), is_stablecoin=True,
            explorer_url="https://etherscan.io/tx/",
            address_pattern=_EVM_ADDRESS, hash_pattern=_EVM_HASH, uri_scheme="ethereum",
        ),
        CryptoNetwork(
            id="usdc-erc20", name="USDC (ERC20)", symbol="USDC", network="ERC20", decimals=6,
            min_usd=Decimal("10"), max_usd=Decimal("50000"), confirmations=12,
            average_fee_usd=Decimal("15"), is_stablecoin=True,
            explorer_url="https://etherscan.io/tx/",
            address_pattern=_EVM_ADDRESS, hash_pattern=_EVM_HASH, uri_scheme="ethereum",
        ),
        CryptoNetwork(
            id="btc", name="Bitcoin", symbol="BTC", network="Bitcoin", decimals=8,
            min_usd=Decimal("10"), max_usd=Decimal("100000"), confirmations=3,
            average_fee_usd=Decimal("5"), is_stablecoin=False,
            explorer_url="https://blockstream.info/tx/",
            address_pattern=re.compile(r"^[13][a-km-zA-HJ-NP-Z1-9]{25,34}$|^bc1[a-z0-9]{39,59}$"),
            hash_pattern=_HEX64, uri_scheme="bitcoin",
        ),
        CryptoNetwork(
            id="eth", name="Ethereum", symbol="ETH", network="Ethereum", decimals=18,
            min_usd=Decimal("5"), max_usd=Decimal("100000"), confirmations=12,
            average_fee_usd=Decimal("10"), is_stablecoin=False,
            explorer_url="https://etherscan.io/tx/",
            address_pattern=_EVM_ADDRESS, hash_pattern=_EVM_HASH, uri_scheme="ethereum",
        ),
    ]
}

COINGECKO_IDS = {"BTC": "bitcoin", "ETH": "ethereum", "USDT": "tether", "USDC": "usd-coin"}

_NETWORK_HINTS = {
    "TRC20": "Use TRC20 network (Tron) for lower fees",
    "ERC20": "Use ERC20 network (Ethereum) - higher fees but more widely supported",
    "Bitcoin": "Use Bitcoin mainnet only",
}


def get_network(network_id: str) -> CryptoNetwork:
    network = NETWORKS.get((network_id or "").lower())
    if network is None:
        raise PaymentValidationError(
            f"Unsupported crypto network: {network_id}",
            details={"supported": sorted(NETWORKS)},
        )
    return network


@dataclass
class CryptoPrice:
    symbol: str
    price: Decimal
    change_24h: Decimal = Decimal("0")
    source: str = "coingecko"


@dataclass
class CryptoPaymentDetails:
    network_id: str
    symbol: str
    network: str
    address: str
    amount_crypto: Decimal
    usd_amount: Decimal
    exchange_rate: Decimal
    rate_source: str
    qr_code_url: str
    payment_uri: str
    reference: str
    expires_at: datetime
    instructions: List[str] = field(default_factory=list)
    network_fee_usd: Decimal = Decimal("0")

    @property
    def amount_display(self) -> str:
        return format(self.amount_crypto, "f")

    def to_dict(self) -> dict:
        return {
            "networkId": self.network_id,
            "symbol": self.symbol,
            "network": self.network,
            "address": self.address,
            "amountCrypto": self.amount_display,
            "usdAmount": str(self.usd_amount),
            "exchangeRate": str(self.exchange_rate),
            "qrCodeUrl": self.qr_code_url,
            "paymentUri": self.payment_uri,
            "reference": self.reference,
            "expiresAt": self.expires_at.isoformat(),
            "instructions": self.instructions,
            "fees": {
                "networkFeeUsd": str(self.network_fee_usd),
                "estimatedTotal": str(self.usd_amount + self.network_fee_usd),
            },
        }


def payment_uri(network: CryptoNetwork, address: str, amount: str, reference: str) -> str:
    if network.uri_scheme == "bitcoin":
        return f"bitcoin:{address}?{urlencode({'amount': amount, 'message': reference})}"
    if network.uri_scheme == "ethereum":
        return f"ethereum:{address}?{urlencode({'value': amount, 'gas': 21000})}"
    return address


def qr_code_url(content: str) -> str:
    params = {
        "size": "300x300",
        "data": content,
        "format": "png",
        "bgcolor": "ffffff",
        "color": "000000",
        "margin": "10",
    }
    return f"{QR_CODE_BASE}?{urlencode(params)}"


def validate_transaction_hash(network_id: str, tx_hash: str) -> bool:
    """Format check only. A well-formed hash proves nothing about settlement."""
    network = NETWORKS.get((network_id or "").lower())
    if network is None or not tx_hash:
        return False
    return bool(network.hash_pattern.match(tx_hash.strip()))


def explorer_url(network_id: str, tx_hash: str) -> Optional[str]:
    network = NETWORKS.get((network_id or "").lower())
    return f"{network.explorer_url}{tx_hash}" if network else None


class CryptoPaymentService:
    def __init__(
        self,
        addresses: Dict[str, Optional[str]],
        price_api_url: str = "https://api.coingecko.com/api/v3/simple/price",
        *,
        price_cache: Optional[TTLCache] = None,
        payment_expiry_hours: int = 24,
        support_email: str = "support@example.com",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.addresses = {k: v for k, v in addresses.items() if v}
        self.price_api_url = price_api_url
        self.price_cache = price_cache if price_cache is not None else TTLCache(2 * 60, clock=time.monotonic)
        self.payment_expiry_hours = payment_expiry_hours
        self.support_email = support_email
        self._transport = transport
        self._now = now
        self.price_requests = 0
        self._validate_addresses()

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None, **overrides) -> "CryptoPaymentService":
        s = s or default_settings
        kwargs = dict(
            addresses=s.crypto_addresses,
            price_api_url=s.CRYPTO_PRICE_API_URL,
            price_cache=TTLCache(s.CRYPTO_PRICE_CACHE_TTL_SECONDS),
            payment_expiry_hours=s.PAYMENT_EXPIRY_HOURS,
            support_email=s.SUPPORT_EMAIL,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def _validate_addresses(self) -> None:
        for network_id, address in self.addresses.items():
            network = NETWORKS.get(network_id)
            if network and not network.address_pattern.match(address):
                logger.warning(f"⚠️ Receiving address for {network_id} looks invalid: {address}")
        missing = sorted(set(NETWORKS) - set(self.addresses))
        if missing:
            logger.info(f"Crypto networks without a receiving address: {', '.join(missing)}")

    def supported_networks(self) -> List[dict]:
        return [
            {
                "id": n.id,
                "name": n.name,
                "symbol": n.symbol,
                "network": n.network,
                "minUsd": str(n.min_usd),
                "maxUsd": str(n.max_usd),
                "isStablecoin": n.is_stablecoin,
                "available": n.id in self.addresses,
            }
            for n in NETWORKS.values()
        ]

    async def get_crypto_price(self, symbol: str) -> CryptoPrice:
        symbol = symbol.upper()
        cached = self.price_cache.get(symbol)
        if cached is not None:
            return cached

        coin_id = COINGECKO_IDS.get(symbol, symbol.lower())
        try:
            self.price_requests += 1
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.get(
                    self.price_api_url,
                    params={"ids": coin_id, "vs_currencies": "usd", "include_24hr_change": "true"},
                )
                response.raise_for_status()
                data = response.json()[coin_id]
            price = CryptoPrice(
                symbol=symbol,
                price=Decimal(str(data["usd"])),
                change_24h=Decimal(str(data.get("usd_24h_change") or 0)),
            )
        except (httpx.HTTPError, KeyError, ValueError, TypeError) as e:
            logger.warning(f"⚠️ Failed to fetch {symbol} price: {e}")
            if "USD" in symbol:
                return CryptoPrice(symbol=symbol, price=Decimal("1.00"), source="fallback")
            raise GatewayUnavailableError(
                f"Unable to fetch the current {symbol} price. Please try again shortly.",
                details={"symbol": symbol},
            ) from e

        if price.price <= 0:
            raise GatewayUnavailableError(f"Price source returned an invalid {symbol} price")
        self.price_cache.set(symbol, price)
        return price

    def _instructions(self, network: CryptoNetwork, amount: str, reference: str) -> List[str]:
        steps = [
            f"Send exactly {amount} {network.symbol} to the address above",
            f"Network: {network.network}",
            f"Reference: {reference}",
            f"Wait for {network.confirmations} confirmations",
            f"Estimated network fee: ~${network.average_fee_usd}",
            "Submit your transaction hash on the payment page",
            f"Questions? Contact {self.support_email}",
        ]
        hint = _NETWORK_HINTS.get(network.network)
        if hint:
            steps.insert(2, hint)
        return steps

    async def generate_payment_details(
        self, network_id: str, usd_amount: Decimal, reference: str
    ) -> CryptoPaymentDetails:
        network = get_network(network_id)
        address = self.addresses.get(network.id)
        if not address:
            raise PaymentValidationError(f"{network.name} payments are not available right now")

        usd_amount = Decimal(usd_amount)
        if usd_amount < network.min_usd or usd_amount > network.max_usd:
            raise PaymentValidationError(
                f"Amount must be between ${network.min_usd} and ${network.max_usd} for {network.name}",
                details={"network": network.id, "usd_amount": str(usd_amount)},
            )

        if network.is_stablecoin:
            # Pegged 1:1; never hits the price source
            price = CryptoPrice(symbol=network.symbol, price=Decimal("1.00"), source="stablecoin")
        else:
            price = await self.get_crypto_price(network.symbol)

        amount_crypto = (usd_amount / price.price).quantize(network.quantum(), rounding=ROUND_HALF_UP)
        amount_text = format(amount_crypto, "f")
        uri = payment_uri(network, address, amount_text, reference)

        details = CryptoPaymentDetails(
            network_id=network.id,
            symbol=network.symbol,
            network=network.network,
            address=address,
            amount_crypto=amount_crypto,
            usd_amount=usd_amount,
            exchange_rate=price.price,
            rate_source=price.source,
            qr_code_url=qr_code_url(uri),
            payment_uri=uri,
            reference=reference,
            expires_at=self._now() + timedelta(hours=self.payment_expiry_hours),
            instructions=self._instructions(network, amount_text, reference),
            network_fee_usd=network.average_fee_usd,
        )
        logger.info(
            f"Crypto details for {reference}: {amount_text} {network.symbol} on {network.network} "
            f"(${usd_amount} @ {price.price}, {price.source})"
        )
        return details
