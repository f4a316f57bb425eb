# routers/payment_router.py
import logging

from fastapi import APIRouter, Depends, Query, status

from servicepay.core.dependencies import (
    get_crypto_service,
    get_gateway,
    get_nowpayments_client,
    get_payment_service,
    get_reconciliation_service,
)
from servicepay.models.payment_model import (
    CreatePaymentRequest,
    CryptoHashSubmission,
    PaymentOut,
    VerifyPaymentRequest,
)
from servicepay.services.crypto import CryptoPaymentService, explorer_url
from servicepay.services.nowpayments import NowPaymentsClient
from servicepay.services.payment_service import PaymentService
from servicepay.services.paystack import PaystackGateway
from servicepay.services.reconciliation import ReconciliationService

router = APIRouter(tags=["Payments"])
logger = logging.getLogger("servicepay.payments")


# ========================================
# CLIENT CHECKOUT
# ========================================
@router.get("/payments/quote/{request_id}")
async def get_payment_quote(request_id: int, service: PaymentService = Depends(get_payment_service)):
    """Split and full-payment options for a request, or the remaining balance."""
    return await service.get_quote(request_id)


@router.post("/payments/create", status_code=status.HTTP_201_CREATED)
async def create_payment(body: CreatePaymentRequest, service: PaymentService = Depends(get_payment_service)):
    return await service.create_payment(body)


@router.post("/payments/verify")
async def verify_payment(body: VerifyPaymentRequest, service: PaymentService = Depends(get_payment_service)):
    return await service.verify_payment(body.reference)


@router.post("/payments/{payment_id}/crypto-transaction")
async def submit_crypto_transaction(
    payment_id: int,
    body: CryptoHashSubmission,
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    payment = await reconciliation.submit_crypto_hash(payment_id, body.transaction_hash)
    return {
        "success": True,
        "message": "Transaction submitted. We'll confirm it once it's verified on-chain.",
        "payment": PaymentOut.model_validate(payment).model_dump(mode="json"),
        "explorerUrl": explorer_url(payment.crypto_network, payment.crypto_transaction_hash),
    }


# ========================================
# REFERENCE DATA
# ========================================
@router.get("/payments/crypto/networks")
async def list_crypto_networks(crypto: CryptoPaymentService = Depends(get_crypto_service)):
    return {"networks": crypto.supported_networks()}


@router.get("/payments/crypto/currencies")
async def list_processor_currencies(processor: NowPaymentsClient = Depends(get_nowpayments_client)):
    """Coins the hosted processor accepts; a short static list while it is unreachable."""
    if not processor.configured:
        return {"available": False, "currencies": []}
    listing = await processor.payment_currencies()
    return {"available": True, "count": len(listing["currencies"]), **listing}


@router.get("/exchange-rate")
async def exchange_rate(
    from_currency: str = Query("USD", alias="from"),
    to_currency: str = Query("NGN", alias="to"),
    gateway: PaystackGateway = Depends(get_gateway),
):
    rate = await gateway.get_exchange_rate(from_currency, to_currency)
    return {
        "from": from_currency.upper(),
        "to": to_currency.upper(),
        "rate": str(rate.rate),
        "source": rate.source,
        "cached": rate.cached,
    }
