"""
Process-wide collaborators, built once and handed to request handlers.

Tests swap any of them through ``app.dependency_overrides``.
"""

from functools import lru_cache
from typing import Dict

from fastapi import Depends

from servicepay.core.config import PaymentPolicy, settings
from servicepay.core.database import SessionLocal
from servicepay.models.payment_model import PaymentMethod
from servicepay.services.crypto import CryptoPaymentService
from servicepay.services.lifecycle import PaymentLifecycleStore
from servicepay.services.nowpayments import NowPaymentsClient
from servicepay.services.payment_service import PaymentService
from servicepay.services.paystack import PaystackGateway
from servicepay.services.rails import PaymentRail, build_rails
from servicepay.services.reconciliation import ReconciliationService
from servicepay.services.references import ReferenceGenerator
from servicepay.services.webhook_service import WebhookService


@lru_cache
def get_policy() -> PaymentPolicy:
    return PaymentPolicy.from_settings(settings)


@lru_cache
def get_gateway() -> PaystackGateway:
    return PaystackGateway.from_settings(settings)


@lru_cache
def get_crypto_service() -> CryptoPaymentService:
    return CryptoPaymentService.from_settings(settings)


@lru_cache
def get_nowpayments_client() -> NowPaymentsClient:
    return NowPaymentsClient.from_settings(settings)


@lru_cache
def get_reference_generator() -> ReferenceGenerator:
    return ReferenceGenerator()


@lru_cache
def get_lifecycle_store() -> PaymentLifecycleStore:
    return PaymentLifecycleStore(SessionLocal)


def get_rails(
    gateway: PaystackGateway = Depends(get_gateway),
    crypto: CryptoPaymentService = Depends(get_crypto_service),
    processor: NowPaymentsClient = Depends(get_nowpayments_client),
) -> Dict[PaymentMethod, PaymentRail]:
    return build_rails(gateway, crypto, settings, processor)


def get_payment_service(
    store: PaymentLifecycleStore = Depends(get_lifecycle_store),
    rails: Dict[PaymentMethod, PaymentRail] = Depends(get_rails),
    references: ReferenceGenerator = Depends(get_reference_generator),
    policy: PaymentPolicy = Depends(get_policy),
) -> PaymentService:
    return PaymentService(store, rails, references, policy, auto_confirm=settings.GATEWAY_AUTO_CONFIRM)


def get_reconciliation_service(
    store: PaymentLifecycleStore = Depends(get_lifecycle_store),
    references: ReferenceGenerator = Depends(get_reference_generator),
    policy: PaymentPolicy = Depends(get_policy),
) -> ReconciliationService:
    return ReconciliationService(store, references, policy, frontend_url=settings.FRONTEND_URL)


def get_webhook_service(
    store: PaymentLifecycleStore = Depends(get_lifecycle_store),
) -> WebhookService:
    return WebhookService(
        store,
        paystack_secret=settings.webhook_secret,
        nowpayments_secret=settings.NOWPAYMENTS_IPN_SECRET,
        require_secret=settings.WEBHOOK_REQUIRE_SECRET,
        auto_confirm=settings.GATEWAY_AUTO_CONFIRM,
    )
