# services/payment_service.py
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from servicepay.core.config import PaymentPolicy
from servicepay.core.database import utcnow
from servicepay.core.errors import (
    NotFoundError,
    PaymentError,
    PaymentLinkUnusableError,
    PaymentValidationError,
)
from servicepay.models.payment_model import (
    CreatePaymentRequest,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
)
from servicepay.models.request_model import PartialPaymentStatus, RequestStatus, ServiceRequest
from servicepay.services.lifecycle import MANUAL_PREFIX, PaymentLifecycleStore
from servicepay.services.quote import CENT, calculate_quote, to_money
from servicepay.services.rails import IntentRequest, PaymentIntent, PaymentRail
from servicepay.services.references import ReferenceGenerator

logger = logging.getLogger("servicepay.payments")

REFERENCE_PREFIX = {
    PaymentMethod.CARD_GATEWAY: "pay",
    PaymentMethod.CRYPTO: "crypto",
    PaymentMethod.BANK_TRANSFER: "bank",
    PaymentMethod.MANUAL: MANUAL_PREFIX,
}

# A leg with one of these is paid or about to be confirmed
SETTLED_STATUSES = [PaymentStatus.CONFIRMED, PaymentStatus.COMPLETED, PaymentStatus.SUCCESS]

FIRST_LEG_REQUEST_STATUSES = {RequestStatus.APPROVED}
BALANCE_LEG_REQUEST_STATUSES = {RequestStatus.APPROVED, RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED}


def payment_response(payment: Payment, replayed: bool = False) -> Dict[str, Any]:
    """Client-facing shape of a created intent; one of checkoutUrl, crypto fields or message."""
    intent = (payment.extra or {}).get("intent", {})
    body: Dict[str, Any] = {
        "success": True,
        "paymentId": payment.id,
        "reference": payment.reference,
        "status": payment.payment_status.value,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "paymentType": payment.payment_type.value,
        "paymentSequence": payment.payment_sequence,
        "paymentMethod": payment.payment_method.value,
    }
    if payment.checkout_url:
        body["checkoutUrl"] = payment.checkout_url
    if payment.crypto_address:
        body["cryptoAddress"] = payment.crypto_address
        body["cryptoAmount"] = payment.crypto_amount
        body["cryptoNetwork"] = payment.crypto_network
        body["cryptoSymbol"] = payment.crypto_symbol
        if intent.get("crypto"):
            body["crypto"] = intent["crypto"]
    if intent.get("message"):
        body["message"] = intent["message"]
    if intent.get("instructions"):
        body["instructions"] = intent["instructions"]
    if payment.expires_at:
        body["expiresAt"] = payment.expires_at.isoformat()
    if replayed:
        body["replayed"] = True
    return body


class PaymentService:
    """Client-facing payment operations: quote, create intent, verify."""

    def __init__(
        self,
        store: PaymentLifecycleStore,
        rails: Dict[PaymentMethod, PaymentRail],
        references: ReferenceGenerator,
        policy: PaymentPolicy,
        *,
        auto_confirm: bool = False,
        now: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.rails = rails
        self.references = references
        self.policy = policy
        self.auto_confirm = auto_confirm
        self._now = now

    async def _load_request(self, session, request_id: int) -> ServiceRequest:
        result = await session.execute(
            select(ServiceRequest)
            .options(selectinload(ServiceRequest.client))
            .where(ServiceRequest.id == request_id)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError(f"Service request {request_id} not found")
        return request

    async def _next_sequence(self, session, request: ServiceRequest) -> int:
        if request.partial_payment_status != PartialPaymentStatus.FIRST_PAID:
            return 1
        # Offline installments may already hold the later legs
        confirmed = await self.store.next_sequence(session, request.id, statuses=[PaymentStatus.CONFIRMED])
        return max(2, confirmed)

    def _expected_charge(self, request: ServiceRequest, payment_type: PaymentType, sequence: int):
        """(payment_type, amount, discount) the server will charge for the next leg."""
        if sequence >= 2:
            balance = to_money(request.balance_due or 0)
            if balance <= 0:
                raise PaymentLinkUnusableError("This request has already been paid in full")
            return PaymentType.SPLIT, balance, Decimal("0.00")
        quote = calculate_quote(
            request.estimated_cost,
            payment_type,
            discount_percent=request.admin_discount_percent,
            policy=self.policy,
        )
        return quote.payment_type, quote.amount, quote.discount_amount

    def _check_payable(self, request: ServiceRequest, sequence: int) -> None:
        if request.partial_payment_status == PartialPaymentStatus.FULLY_PAID:
            raise PaymentLinkUnusableError("This request has already been paid in full")
        allowed = FIRST_LEG_REQUEST_STATUSES if sequence == 1 else BALANCE_LEG_REQUEST_STATUSES
        if request.status not in allowed:
            raise PaymentLinkUnusableError(
                f"This request is {request.status.value} and cannot accept payments",
                details={"request_status": request.status.value},
            )
        if request.estimated_cost is None or Decimal(request.estimated_cost) <= 0:
            raise PaymentLinkUnusableError("This request has not been priced yet")
        if not request.link_is_usable(self._now()):
            raise PaymentLinkUnusableError(
                "This payment link has expired. Please request a new one.",
                details={"expired_at": request.payment_link_expiry.isoformat() if request.payment_link_expiry else None},
            )

    # --------------------------------------------------------------
    # Quote
    # --------------------------------------------------------------
    async def get_quote(self, request_id: int) -> Dict[str, Any]:
        async with self.store.unit_of_work() as session:
            request = await self._load_request(session, request_id)
            sequence = await self._next_sequence(session, request)
            body: Dict[str, Any] = {
                "requestId": request.id,
                "title": request.title,
                "status": request.status.value,
                "estimatedCost": str(request.estimated_cost) if request.estimated_cost is not None else None,
                "discountPercent": str(request.admin_discount_percent),
                "partialPaymentStatus": request.partial_payment_status.value,
                "totalPaid": str(request.total_paid),
                "balanceDue": str(request.balance_due) if request.balance_due is not None else None,
                "nextSequence": sequence,
                "linkActive": request.link_is_usable(self._now()),
                "linkExpiresAt": request.payment_link_expiry.isoformat() if request.payment_link_expiry else None,
            }
            try:
                self._check_payable(request, sequence)
                body["payable"] = True
            except PaymentLinkUnusableError as e:
                body["payable"] = False
                body["reason"] = e.message
                return body

            if sequence >= 2:
                _, amount, _ = self._expected_charge(request, PaymentType.SPLIT, 2)
                body["balance"] = {"amount": str(amount), "paymentType": PaymentType.SPLIT.value}
            else:
                for payment_type in PaymentType:
                    body[payment_type.value] = calculate_quote(
                        request.estimated_cost,
                        payment_type,
                        discount_percent=request.admin_discount_percent,
                        policy=self.policy,
                    ).to_dict()
            return body

    # --------------------------------------------------------------
    # Create
    # --------------------------------------------------------------
    async def create_payment(self, body: CreatePaymentRequest) -> Dict[str, Any]:
        if body.idempotency_key:
            existing = await self.store.get_by_idempotency_key(body.idempotency_key)
            if existing is not None:
                logger.info(f"Replaying payment {existing.id} for idempotency key {body.idempotency_key}")
                return payment_response(existing, replayed=True)

        rail = self.rails.get(body.payment_method)
        if rail is None:
            raise PaymentValidationError(f"Unsupported payment method: {body.payment_method}")

        try:
            async with self.store.unit_of_work() as session:
                request = await self._load_request(session, body.request_id)
                sequence = await self._next_sequence(session, request)
                self._check_payable(request, sequence)

                settled = await session.scalar(
                    select(Payment.id).where(
                        Payment.request_id == request.id,
                        Payment.payment_sequence == sequence,
                        Payment.payment_status.in_(SETTLED_STATUSES),
                    )
                )
                if settled is not None:
                    raise PaymentLinkUnusableError(
                        "A payment for this installment has already been received",
                        details={"payment_id": settled, "payment_sequence": sequence},
                    )

                payment_type, amount, discount = self._expected_charge(request, body.payment_type, sequence)
                submitted = to_money(body.amount)
                if abs(submitted - amount) > CENT:
                    raise PaymentValidationError(
                        "Payment amount does not match the quote. Please refresh the page.",
                        details={"expected": str(amount), "submitted": str(submitted)},
                    )

                reference = self.references.generate(REFERENCE_PREFIX[body.payment_method])
                network = body.metadata.get("network") or body.metadata.get("networkId")
                payment = await self.store.create(
                    session,
                    actor="client",
                    request_id=request.id,
                    reference=reference,
                    idempotency_key=body.idempotency_key,
                    amount=amount,
                    discount_amount=discount,
                    currency="USD",
                    payment_method=body.payment_method,
                    payment_type=payment_type,
                    payment_sequence=sequence,
                    crypto_network=network if body.payment_method == PaymentMethod.CRYPTO else None,
                    expires_at=self._now() + timedelta(hours=self.policy.payment_expiry_hours),
                    extra={"client": body.metadata},
                )
                intent_request = IntentRequest(
                    request_id=request.id,
                    reference=reference,
                    amount=amount,
                    currency="USD",
                    email=request.client.email,
                    customer_name=request.client.name,
                    description=request.title,
                    metadata={**body.metadata, "payment_id": payment.id, "payment_sequence": sequence},
                )
                payment_id = payment.id
        except IntegrityError:
            if body.idempotency_key:
                existing = await self.store.get_by_idempotency_key(body.idempotency_key)
                if existing is not None:
                    return payment_response(existing, replayed=True)
            raise

        try:
            intent = await rail.create_intent(intent_request)
        except PaymentError as e:
            await self._fail_intent(payment_id, e.message, e.code)
            raise
        except Exception as e:
            logger.error(f"Unexpected error creating intent for payment {payment_id}: {e}", exc_info=True)
            await self._fail_intent(payment_id, "Payment could not be started", type(e).__name__)
            raise

        payment = await self._attach_intent(payment_id, intent)
        logger.info(
            f"Payment {payment.id} ({payment.reference}) intent ready on {body.payment_method.value}: "
            f"${payment.amount} leg {payment.payment_sequence}"
        )
        return payment_response(payment)

    async def _fail_intent(self, payment_id: int, message: str, error: str) -> None:
        # Free the key so the client can retry the same logical payment
        await self.store.transition(
            payment_id,
            PaymentStatus.FAILED,
            actor="system",
            action="intent_failed",
            changes={"error_message": message, "idempotency_key": None},
            details={"error": error},
        )

    async def _attach_intent(self, payment_id: int, intent: PaymentIntent) -> Payment:
        async with self.store.unit_of_work() as session:
            payment = await session.get(Payment, payment_id)
            intent.apply_to(payment)
            extra = dict(payment.extra or {})
            extra["intent"] = {
                "message": intent.message,
                "instructions": intent.instructions,
                "crypto": intent.extra or None,
            }
            payment.extra = extra
            payment.updated_at = self._now()
            self.store.audit(
                session,
                "intent_created",
                "system",
                payment.id,
                details={"method": intent.method.value, "gateway_reference": intent.gateway_reference},
            )
            await session.flush()
            return payment

    # --------------------------------------------------------------
    # Verify
    # --------------------------------------------------------------
    async def verify_payment(self, reference: str) -> Dict[str, Any]:
        """Ask the rail's observer for the latest status and apply it."""
        payment = await self.store.get_by_reference(reference)
        if payment is None:
            raise NotFoundError(f"No payment with reference {reference}")

        rail = self.rails[payment.payment_method]
        observed: Optional[PaymentStatus] = await rail.report_status(payment)
        applied = False
        if observed is not None:
            if self.auto_confirm and observed in (PaymentStatus.SUCCESS, PaymentStatus.COMPLETED):
                observed = PaymentStatus.CONFIRMED
            payment, applied = await self.store.apply_observed_status(
                payment.id,
                observed,
                actor=payment.payment_method.value,
                action="payment_verified",
                details={"reference": reference},
            )

        return {
            "success": True,
            "paymentId": payment.id,
            "reference": payment.reference,
            "status": payment.payment_status.value,
            "updated": applied,
        }
