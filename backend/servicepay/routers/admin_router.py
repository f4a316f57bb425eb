# routers/admin_router.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from servicepay.core.auth import require_admin, require_admin_or_cron
from servicepay.core.config import PaymentPolicy
from servicepay.core.dependencies import (
    get_gateway,
    get_lifecycle_store,
    get_policy,
    get_reconciliation_service,
)
from servicepay.models.audit_model import AuditEntryOut
from servicepay.models.payment_model import (
    ApproveRequest,
    DeclineRequest,
    ManualPaymentRequest,
    PaymentOut,
    PaymentStatus,
    VerifyCryptoRequest,
)
from servicepay.models.request_model import PaymentLinkOut, PricingUpdate, ServiceRequestOut
from servicepay.services.lifecycle import PaymentLifecycleStore
from servicepay.services.paystack import PaystackGateway
from servicepay.services.reconciliation import ReconciliationService
from servicepay.services.stats import payment_stats
from servicepay.tasks.payment_cleanup import sweep

router = APIRouter(tags=["Admin"])
logger = logging.getLogger("servicepay.admin")


def _payment(payment) -> dict:
    return PaymentOut.model_validate(payment).model_dump(mode="json")


# ========================================
# CLEANUP + REPORTING (static paths first)
# ========================================
@router.post("/payments/cleanup")
async def run_cleanup(
    actor: str = Depends(require_admin_or_cron),
    store: PaymentLifecycleStore = Depends(get_lifecycle_store),
    policy: PaymentPolicy = Depends(get_policy),
):
    logger.info(f"Cleanup triggered by {actor}")
    result = await sweep(store, policy)
    return {"success": True, **result}


@router.get("/payments/cleanup")
async def preview_cleanup(
    actor: str = Depends(require_admin_or_cron),
    store: PaymentLifecycleStore = Depends(get_lifecycle_store),
    policy: PaymentPolicy = Depends(get_policy),
):
    """Dry run: what the next sweep would touch."""
    result = await sweep(store, policy, dry_run=True)
    return {"success": True, **result}


@router.get("/payments/stats")
async def get_payment_stats(
    actor: str = Depends(require_admin),
    store: PaymentLifecycleStore = Depends(get_lifecycle_store),
):
    return {"success": True, "stats": await payment_stats(store.session_factory)}


@router.get("/payments/gateway-transactions")
async def list_gateway_transactions(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    status: Optional[str] = None,
    customer: Optional[str] = None,
    actor: str = Depends(require_admin),
    gateway: PaystackGateway = Depends(get_gateway),
):
    result = await gateway.list_transactions(per_page=per_page, page=page, status=status, customer=customer)
    return {"success": True, **result}


@router.post("/payments/manual")
async def record_manual_payment(
    body: ManualPaymentRequest,
    actor: str = Depends(require_admin),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    payment, request = await reconciliation.record_manual_payment(body, actor)
    return {
        "success": True,
        "message": "Payment recorded and confirmed",
        "payment": _payment(payment),
        "request": ServiceRequestOut.model_validate(request).model_dump(mode="json"),
    }


@router.get("/payments")
async def list_payments(
    status: Optional[PaymentStatus] = None,
    request_id: Optional[int] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: str = Depends(require_admin),
    store: PaymentLifecycleStore = Depends(get_lifecycle_store),
):
    payments, total = await store.list_payments(status=status, request_id=request_id, limit=limit, offset=offset)
    return {"success": True, "total": total, "payments": [_payment(p) for p in payments]}


# ========================================
# SINGLE PAYMENT ACTIONS
# ========================================
@router.get("/payments/{payment_id}")
async def get_payment(
    payment_id: int,
    actor: str = Depends(require_admin),
    store: PaymentLifecycleStore = Depends(get_lifecycle_store),
):
    payment = await store.get(payment_id)
    return {"success": True, "payment": _payment(payment)}


@router.get("/payments/{payment_id}/audit")
async def get_payment_audit(
    payment_id: int,
    actor: str = Depends(require_admin),
    store: PaymentLifecycleStore = Depends(get_lifecycle_store),
):
    entries = await store.audit_trail(payment_id)
    return {
        "success": True,
        "entries": [AuditEntryOut.model_validate(e).model_dump(mode="json") for e in entries],
    }


@router.post("/payments/{payment_id}/approve")
async def approve_payment(
    payment_id: int,
    body: Optional[ApproveRequest] = None,
    actor: str = Depends(require_admin),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    observed = body.observed_reference if body else None
    payment = await reconciliation.approve(payment_id, actor, observed_reference=observed)
    return {"success": True, "message": "Payment approved", "payment": _payment(payment)}


@router.post("/payments/{payment_id}/decline")
async def decline_payment(
    payment_id: int,
    body: DeclineRequest,
    actor: str = Depends(require_admin),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    payment = await reconciliation.decline(payment_id, actor, body.reason)
    return {"success": True, "message": "Payment declined", "payment": _payment(payment)}


@router.delete("/payments/{payment_id}")
async def decline_or_delete_payment(
    payment_id: int,
    reason: Optional[str] = Query(None),
    actor: str = Depends(require_admin),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    With a ``reason`` the payment is declined (kept, annotated). Without one
    it is hard-deleted, which only failed/cancelled/declined payments allow.
    """
    if reason:
        payment = await reconciliation.decline(payment_id, actor, reason)
        return {"success": True, "message": "Payment declined", "payment": _payment(payment)}
    await reconciliation.delete(payment_id, actor)
    return {"success": True, "message": "Payment deleted", "paymentId": payment_id}


@router.post("/payments/{payment_id}/cancel")
async def cancel_payment(
    payment_id: int,
    body: Optional[DeclineRequest] = None,
    actor: str = Depends(require_admin),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    payment = await reconciliation.cancel(payment_id, actor, body.reason if body else None)
    return {"success": True, "message": "Payment cancelled", "payment": _payment(payment)}


@router.post("/payments/{payment_id}/verify-crypto")
async def verify_crypto_payment(
    payment_id: int,
    body: Optional[VerifyCryptoRequest] = None,
    actor: str = Depends(require_admin),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    body = body or VerifyCryptoRequest()
    payment = await reconciliation.verify_crypto_transaction(
        payment_id, actor, confirmations=body.confirmations, notes=body.notes
    )
    return {"success": True, "message": "Crypto payment verified", "payment": _payment(payment)}


# ========================================
# SERVICE REQUEST PRICING + LINKS
# ========================================
@router.patch("/service-requests/{request_id}/pricing")
async def update_pricing(
    request_id: int,
    body: PricingUpdate,
    actor: str = Depends(require_admin),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    request = await reconciliation.set_pricing(request_id, body, actor)
    return {"success": True, "request": ServiceRequestOut.model_validate(request).model_dump(mode="json")}


@router.post("/service-requests/{request_id}/payment-link", response_model=PaymentLinkOut)
async def issue_payment_link(
    request_id: int,
    actor: str = Depends(require_admin),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    return await reconciliation.issue_payment_link(request_id, actor)


@router.delete("/service-requests/{request_id}/payment-link")
async def deactivate_payment_link(
    request_id: int,
    actor: str = Depends(require_admin),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    request = await reconciliation.deactivate_payment_link(request_id, actor)
    return {"success": True, "request": ServiceRequestOut.model_validate(request).model_dump(mode="json")}
