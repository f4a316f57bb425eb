"""
Payment rails.

Every payment method is one rail implementing the same two capabilities:
create an intent for a freshly reserved Payment, and report the status an
external observer holds for it. Adding a rail means adding a class here and
registering it in ``build_rails``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from servicepay.core.config import Settings, settings as default_settings
from servicepay.core.errors import PaymentValidationError
from servicepay.models.payment_model import Payment, PaymentMethod, PaymentStatus
from servicepay.services.crypto import CryptoPaymentService
from servicepay.services.nowpayments import PROCESSOR, NowPaymentsClient, network_name
from servicepay.services.paystack import PaystackGateway

logger = logging.getLogger("servicepay.rails")

# Gateway verify statuses -> lifecycle statuses
GATEWAY_STATUS_MAP = {
    "success": PaymentStatus.SUCCESS,
    "failed": PaymentStatus.FAILED,
    "reversed": PaymentStatus.FAILED,
    "abandoned": PaymentStatus.CANCELLED,
    "ongoing": PaymentStatus.PROCESSING,
    "pending": PaymentStatus.PROCESSING,
    "processing": PaymentStatus.PROCESSING,
}


def is_processor_payment(payment: Payment) -> bool:
    """Crypto payment whose deposit address was issued by the hosted processor."""
    intent = (payment.extra or {}).get("intent") or {}
    crypto = intent.get("crypto") or {}
    return crypto.get("processor") == PROCESSOR and bool(payment.gateway_reference)


@dataclass
class IntentRequest:
    request_id: int
    reference: str
    amount: Decimal
    currency: str
    email: str
    customer_name: str
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentIntent:
    method: PaymentMethod
    checkout_url: Optional[str] = None
    access_code: Optional[str] = None
    gateway_reference: Optional[str] = None
    charged_amount: Optional[Decimal] = None
    charged_currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    crypto_address: Optional[str] = None
    crypto_amount: Optional[str] = None
    crypto_network: Optional[str] = None
    crypto_symbol: Optional[str] = None
    expires_at: Optional[datetime] = None
    message: Optional[str] = None
    instructions: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def apply_to(self, payment: Payment) -> None:
        """Copy the rail-specific fields onto the reserved Payment row."""
        for attr in (
            "checkout_url",
            "access_code",
            "gateway_reference",
            "charged_amount",
            "charged_currency",
            "exchange_rate",
            "crypto_address",
            "crypto_amount",
            "crypto_network",
            "crypto_symbol",
        ):
            value = getattr(self, attr)
            if value is not None:
                setattr(payment, attr, value)
        if self.expires_at is not None:
            payment.expires_at = self.expires_at


class PaymentRail(ABC):
    method: PaymentMethod

    @abstractmethod
    async def create_intent(self, request: IntentRequest) -> PaymentIntent:
        ...

    async def report_status(self, payment: Payment) -> Optional[PaymentStatus]:
        """Status held by an external observer, or None when the rail has none."""
        return None


class CardGatewayRail(PaymentRail):
    method = PaymentMethod.CARD_GATEWAY

    def __init__(self, gateway: PaystackGateway):
        self.gateway = gateway

    async def create_intent(self, request: IntentRequest) -> PaymentIntent:
        result = await self.gateway.initialize_transaction(
            email=request.email,
            amount=request.amount,
            currency=request.currency,
            reference=request.reference,
            metadata={
                **request.metadata,
                "request_id": request.request_id,
                "client_name": request.customer_name,
                "service_title": request.description,
            },
        )
        return PaymentIntent(
            method=self.method,
            checkout_url=result.authorization_url,
            access_code=result.access_code,
            gateway_reference=result.reference,
            charged_amount=result.charged_amount,
            charged_currency=result.charged_currency,
            exchange_rate=result.exchange_rate,
        )

    async def report_status(self, payment: Payment) -> Optional[PaymentStatus]:
        result = await self.gateway.verify_transaction(payment.gateway_reference or payment.reference)
        status = GATEWAY_STATUS_MAP.get(result.status)
        if status == PaymentStatus.SUCCESS and payment.charged_amount is not None:
            if result.amount < Decimal(payment.charged_amount):
                logger.warning(
                    f"Gateway reports {result.amount} for {payment.reference}, expected {payment.charged_amount}"
                )
                return PaymentStatus.PROCESSING
        return status


class CryptoRail(PaymentRail):
    """
    Direct-to-wallet transfers to our own addresses, or, when the client asks
    for ``processor: nowpayments``, a deposit address issued by the hosted
    processor, which then reports settlement itself.
    """

    method = PaymentMethod.CRYPTO

    def __init__(self, crypto: CryptoPaymentService, processor: Optional[NowPaymentsClient] = None):
        self.crypto = crypto
        self.processor = processor

    async def create_intent(self, request: IntentRequest) -> PaymentIntent:
        if request.metadata.get("processor") == PROCESSOR:
            return await self._processor_intent(request)
        network_id = request.metadata.get("network") or request.metadata.get("networkId")
        if not network_id:
            raise PaymentValidationError("A crypto network must be selected")
        details = await self.crypto.generate_payment_details(network_id, request.amount, request.reference)
        return PaymentIntent(
            method=self.method,
            crypto_address=details.address,
            crypto_amount=details.amount_display,
            crypto_network=details.network_id,
            crypto_symbol=details.symbol,
            exchange_rate=details.exchange_rate,
            expires_at=details.expires_at,
            instructions=details.instructions,
            extra=details.to_dict(),
        )

    async def _processor_intent(self, request: IntentRequest) -> PaymentIntent:
        if self.processor is None or not self.processor.configured:
            raise PaymentValidationError("Crypto processor payments are not available right now")
        pay_currency = request.metadata.get("payCurrency") or request.metadata.get("pay_currency")
        if not pay_currency:
            raise PaymentValidationError("A cryptocurrency must be selected")

        # order_id is our reference so the IPN finds the payment by it
        result = await self.processor.create_payment(
            request.amount,
            pay_currency,
            request.reference,
            order_description=f"Payment for ${request.amount} - {request.reference}",
        )
        network = network_name(result.pay_currency)
        instructions = [
            f"Send exactly {result.amount_display} {result.pay_currency} to the address above",
            f"Network: {network}",
            f"Reference: {request.reference}",
            "Payment will be detected automatically",
            "No need to submit a transaction hash",
            "Confirmation usually takes 5-30 minutes",
        ]
        return PaymentIntent(
            method=self.method,
            gateway_reference=result.payment_id,
            crypto_address=result.pay_address,
            crypto_amount=result.amount_display,
            crypto_network=result.pay_currency.lower(),
            crypto_symbol=result.pay_currency,
            instructions=instructions,
            extra={
                "processor": PROCESSOR,
                "processorPaymentId": result.payment_id,
                "symbol": result.pay_currency,
                "network": network,
                "address": result.pay_address,
                "amountCrypto": result.amount_display,
                "usdAmount": str(request.amount),
                "qrCodeUrl": result.qr_code_url(),
                "reference": request.reference,
                "processorExpiresAt": result.expiration_estimate_date,
                "instructions": instructions,
            },
        )

    async def report_status(self, payment: Payment) -> Optional[PaymentStatus]:
        if self.processor is not None and is_processor_payment(payment):
            result = await self.processor.get_payment_status(payment.gateway_reference)
            logger.info(f"NOWPayments reports {result.status} for {payment.reference}")
            return result.observed_status
        # A submitted hash only means "awaiting verification"
        if payment.crypto_transaction_hash:
            return PaymentStatus.PROCESSING
        return None


class BankTransferRail(PaymentRail):
    method = PaymentMethod.BANK_TRANSFER

    def __init__(self, bank_name: str, account_name: str, account_number: str, support_email: str):
        self.bank_name = bank_name
        self.account_name = account_name
        self.account_number = account_number
        self.support_email = support_email

    async def create_intent(self, request: IntentRequest) -> PaymentIntent:
        if not self.account_number:
            raise PaymentValidationError("Bank transfer is not available right now")
        instructions = [
            f"Bank: {self.bank_name}",
            f"Account name: {self.account_name}",
            f"Account number: {self.account_number}",
            f"Amount: {request.amount} {request.currency}",
            f"Use {request.reference} as the transfer description",
            f"Send proof of payment to {self.support_email}",
            "Payment will be verified within 24 hours",
        ]
        return PaymentIntent(
            method=self.method,
            message="Transfer the exact amount using the reference shown. We will confirm once it arrives.",
            instructions=instructions,
        )


class ManualRail(PaymentRail):
    method = PaymentMethod.MANUAL

    def __init__(self, support_email: str):
        self.support_email = support_email

    async def create_intent(self, request: IntentRequest) -> PaymentIntent:
        return PaymentIntent(
            method=self.method,
            message=(
                f"Our team will contact you with payment arrangements. "
                f"Quote reference {request.reference} or write to {self.support_email}."
            ),
        )


def build_rails(
    gateway: PaystackGateway,
    crypto: CryptoPaymentService,
    s: Optional[Settings] = None,
    processor: Optional[NowPaymentsClient] = None,
) -> Dict[PaymentMethod, PaymentRail]:
    s = s or default_settings
    rails: List[PaymentRail] = [
        CardGatewayRail(gateway),
        CryptoRail(crypto, processor),
        BankTransferRail(s.BANK_NAME, s.BANK_ACCOUNT_NAME, s.BANK_ACCOUNT_NUMBER, s.SUPPORT_EMAIL),
        ManualRail(s.SUPPORT_EMAIL),
    ]
    return {rail.method: rail for rail in rails}
