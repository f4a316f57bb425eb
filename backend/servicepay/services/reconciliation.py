# services/reconciliation.py
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import select

from servicepay.core.config import PaymentPolicy
from servicepay.core.database import utcnow
from servicepay.core.errors import NotFoundError, PaymentValidationError
from servicepay.models.payment_model import (
    APPROVABLE_STATUSES,
    OPEN_STATUSES,
    ManualPaymentRequest,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
)
from servicepay.models.request_model import PartialPaymentStatus, PricingUpdate, ServiceRequest
from servicepay.services.crypto import explorer_url, get_network, validate_transaction_hash
from servicepay.services.lifecycle import MANUAL_PREFIX, PaymentLifecycleStore
from servicepay.services.quote import to_money, validate_discount
from servicepay.services.references import ReferenceGenerator

logger = logging.getLogger("servicepay.admin")


class ReconciliationService:
    """
    Operator actions over the payment lifecycle.

    None of these are silently idempotent: repeating an approve, decline or
    delete on a payment that already moved raises InvalidTransitionError.
    """

    def __init__(
        self,
        store: PaymentLifecycleStore,
        references: ReferenceGenerator,
        policy: PaymentPolicy,
        *,
        frontend_url: str = "",
        now: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.references = references
        self.policy = policy
        self.frontend_url = frontend_url.rstrip("/")
        self._now = now

    # --------------------------------------------------------------
    # Payment actions
    # --------------------------------------------------------------
    async def approve(self, payment_id: int, actor: str, observed_reference: Optional[str] = None) -> Payment:
        payment = await self.store.get(payment_id)
        if observed_reference and observed_reference not in (payment.reference, payment.gateway_reference):
            raise PaymentValidationError(
                "The observed reference does not match this payment",
                details={"observed": observed_reference, "expected": payment.gateway_reference or payment.reference},
            )
        now = self._now()
        return await self.store.transition(
            payment_id,
            PaymentStatus.CONFIRMED,
            actor=actor,
            action="payment_approved",
            expected_from=APPROVABLE_STATUSES,
            changes={
                "admin_notes": (
                    f"Approved by {actor} on {now.isoformat()}. "
                    f"Previous status: {payment.payment_status.value}"
                )
            },
            details={"observed_reference": observed_reference, "amount": str(payment.amount)},
        )

    async def decline(self, payment_id: int, actor: str, reason: Optional[str]) -> Payment:
        reason = (reason or "").strip()
        if not reason:
            raise PaymentValidationError("A reason is required to decline a payment")
        return await self.store.transition(
            payment_id,
            PaymentStatus.DECLINED,
            actor=actor,
            action="payment_declined",
            changes={"error_message": reason, "admin_notes": f"Declined by {actor}: {reason}"},
            details={"reason": reason},
        )

    async def cancel(self, payment_id: int, actor: str, reason: Optional[str] = None) -> Payment:
        reason = (reason or "").strip() or "Cancelled by admin"
        return await self.store.transition(
            payment_id,
            PaymentStatus.CANCELLED,
            actor=actor,
            action="payment_cancelled",
            expected_from=OPEN_STATUSES,
            changes={"error_message": reason, "admin_notes": f"Cancelled by {actor}: {reason}"},
            details={"reason": reason},
        )

    async def delete(self, payment_id: int, actor: str) -> None:
        await self.store.delete(payment_id, actor=actor)

    async def record_manual_payment(self, body: ManualPaymentRequest, actor: str) -> Tuple[Payment, ServiceRequest]:
        """Record an offline transfer and confirm it in the same transaction."""
        reference = (body.reference or "").strip()
        if not reference:
            raise PaymentValidationError("A payment reference is required")
        amount = to_money(body.amount)
        if amount <= 0:
            raise PaymentValidationError("Payment amount must be greater than zero")

        async with self.store.unit_of_work() as session:
            request = await session.get(ServiceRequest, body.request_id)
            if request is None:
                raise NotFoundError(f"Service request {body.request_id} not found")
            if request.estimated_cost is None or Decimal(request.estimated_cost) <= 0:
                raise PaymentValidationError("Set a price on the request before recording payments")
            if request.partial_payment_status == PartialPaymentStatus.FULLY_PAID:
                raise PaymentValidationError("This request is already fully paid")

            cost = to_money(request.estimated_cost)
            balance = to_money(request.balance_due) if request.balance_due is not None else cost
            if body.payment_type != PaymentType.FULL and amount > balance:
                raise PaymentValidationError(
                    f"Payment amount (${amount}) exceeds balance due (${balance})",
                    details={"balance_due": str(balance)},
                )

            duplicate = await session.scalar(
                select(Payment.id).where(
                    Payment.request_id == request.id,
                    Payment.gateway_reference == reference,
                )
            )
            if duplicate is not None:
                raise PaymentValidationError(
                    "A payment with this reference already exists for this request",
                    details={"payment_id": duplicate},
                )

            discount = Decimal("0.00")
            if body.payment_type == PaymentType.FULL and amount < balance:
                allowed = to_money(cost * Decimal(request.admin_discount_percent) / Decimal(100))
                discount = min(balance - amount, allowed)

            sequence = await self.store.next_sequence(session, request.id)
            payment = await self.store.create(
                session,
                actor=actor,
                request_id=request.id,
                reference=self.references.generate(MANUAL_PREFIX),
                gateway_reference=reference,
                amount=amount,
                discount_amount=discount,
                currency="USD",
                payment_method=body.payment_method,
                payment_type=body.payment_type,
                payment_sequence=sequence,
                admin_notes=body.notes,
                extra={
                    "manualEntry": True,
                    "adminVerified": True,
                    "paymentDate": body.payment_date.isoformat(),
                    "reference": reference,
                    "bankName": body.bank_name,
                },
            )
            payment = await self.store.transition(
                payment.id,
                PaymentStatus.CONFIRMED,
                actor=actor,
                action="manual_payment_recorded",
                expected_from=[PaymentStatus.PENDING],
                details={"reference": reference, "amount": str(amount), "discount": str(discount)},
                session=session,
            )
            await session.refresh(request)
            return payment, request

    # --------------------------------------------------------------
    # Crypto
    # --------------------------------------------------------------
    async def submit_crypto_hash(self, payment_id: int, tx_hash: str, actor: str = "client") -> Payment:
        """Client reports an on-chain hash; the payment now awaits operator verification."""
        tx_hash = (tx_hash or "").strip()
        payment = await self.store.get(payment_id)
        if payment.payment_method != PaymentMethod.CRYPTO:
            raise PaymentValidationError("Transaction hashes only apply to crypto payments")
        network = get_network(payment.crypto_network)
        if not validate_transaction_hash(network.id, tx_hash):
            raise PaymentValidationError(
                f"That does not look like a {network.network} transaction hash",
                details={"network": network.id},
            )
        existing = await self.store.get_by_crypto_hash(tx_hash)
        if existing is not None and existing.id != payment_id:
            raise PaymentValidationError("This transaction hash was already submitted for another payment")

        return await self.store.transition(
            payment_id,
            PaymentStatus.PROCESSING,
            actor=actor,
            action="crypto_hash_submitted",
            expected_from=[PaymentStatus.PENDING],
            changes={"crypto_transaction_hash": tx_hash, "crypto_confirmations": 0},
            details={"tx_hash": tx_hash, "explorer_url": explorer_url(network.id, tx_hash)},
        )

    async def verify_crypto_transaction(
        self,
        payment_id: int,
        actor: str,
        confirmations: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Payment:
        """
        Operator confirmation after checking the block explorer. The hash
        format check is the only automated guard; settlement is the
        operator's call.
        """
        payment = await self.store.get(payment_id)
        if payment.payment_method != PaymentMethod.CRYPTO:
            raise PaymentValidationError("Only crypto payments can be verified on-chain")
        if not payment.crypto_transaction_hash:
            raise PaymentValidationError("No transaction hash has been submitted for this payment")

        url = explorer_url(payment.crypto_network, payment.crypto_transaction_hash)
        changes: Dict[str, Any] = {
            "admin_notes": notes or f"Verified on-chain by {actor}: {url}",
        }
        if confirmations is not None:
            changes["crypto_confirmations"] = confirmations
        return await self.store.transition(
            payment_id,
            PaymentStatus.CONFIRMED,
            actor=actor,
            action="crypto_verified",
            expected_from=[PaymentStatus.PROCESSING],
            changes=changes,
            details={"tx_hash": payment.crypto_transaction_hash, "explorer_url": url},
        )

    # --------------------------------------------------------------
    # Request pricing and links
    # --------------------------------------------------------------
    async def set_pricing(self, request_id: int, body: PricingUpdate, actor: str) -> ServiceRequest:
        async with self.store.unit_of_work() as session:
            request = await session.get(ServiceRequest, request_id)
            if request is None:
                raise NotFoundError(f"Service request {request_id} not found")

            changes: Dict[str, str] = {}
            if body.estimated_cost is not None:
                cost = to_money(body.estimated_cost)
                if cost <= 0:
                    raise PaymentValidationError("Estimated cost must be greater than zero")
                if cost < to_money(request.total_paid) + to_money(request.total_discount):
                    raise PaymentValidationError(
                        "Estimated cost cannot drop below what has already been paid",
                        details={"total_paid": str(request.total_paid)},
                    )
                request.estimated_cost = cost
                changes["estimated_cost"] = str(cost)
            if body.admin_discount_percent is not None:
                percent = validate_discount(body.admin_discount_percent, self.policy)
                request.admin_discount_percent = percent
                changes["admin_discount_percent"] = str(percent)

            await session.flush()
            await self.store.recompute_request(session, request.id)
            self.store.audit(
                session, "pricing_updated", actor, request.id, details=changes, resource_type="service_request"
            )
            logger.info(f"Request {request_id} pricing updated by {actor}: {changes}")
            return request

    def payment_link_url(self, request_id: int) -> str:
        return f"{self.frontend_url}/payment/{request_id}"

    async def issue_payment_link(self, request_id: int, actor: str) -> Dict[str, Any]:
        async with self.store.unit_of_work() as session:
            request = await session.get(ServiceRequest, request_id)
            if request is None:
                raise NotFoundError(f"Service request {request_id} not found")
            expires_at = self._now() + timedelta(hours=self.policy.link_expiry_hours)
            request.payment_link_expiry = expires_at
            request.payment_link_active = True
            request.updated_at = self._now()
            self.store.audit(
                session,
                "payment_link_issued",
                actor,
                request.id,
                details={"expires_at": expires_at.isoformat()},
                resource_type="service_request",
            )
        logger.info(f"Payment link for request {request_id} issued by {actor}, expires {expires_at}")
        return {"request_id": request_id, "url": self.payment_link_url(request_id), "expires_at": expires_at}

    async def deactivate_payment_link(self, request_id: int, actor: str) -> ServiceRequest:
        async with self.store.unit_of_work() as session:
            request = await session.get(ServiceRequest, request_id)
            if request is None:
                raise NotFoundError(f"Service request {request_id} not found")
            request.payment_link_active = False
            request.updated_at = self._now()
            self.store.audit(
                session, "payment_link_deactivated", actor, request.id, resource_type="service_request"
            )
            logger.info(f"Payment link for request {request_id} deactivated by {actor}")
            return request
