"""
Payment lifecycle store.

Every status change goes through ``transition``: a conditional UPDATE guarded
by the set of statuses the target may be reached from, so two concurrent
producers (admin approval, gateway webhook, sweeper) cannot both win. A move
into ``confirmed`` recomputes the owning request's aggregates and writes the
audit row inside the same transaction.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from servicepay.core.database import utcnow
from servicepay.core.errors import InvalidTransitionError, NotFoundError
from servicepay.models.audit_model import AdminAuditLog
from servicepay.models.payment_model import DELETABLE_STATUSES, Payment, PaymentMethod, PaymentStatus
from servicepay.models.request_model import PartialPaymentStatus, RequestStatus, ServiceRequest
from servicepay.services.quote import to_money

logger = logging.getLogger("servicepay.lifecycle")

# Reference prefix of operator-recorded payments
MANUAL_PREFIX = "manual"

S = PaymentStatus
ALLOWED_TRANSITIONS: Dict[PaymentStatus, frozenset] = {
    S.PENDING: frozenset({S.PROCESSING, S.SUCCESS, S.COMPLETED, S.FAILED, S.CANCELLED, S.DECLINED, S.CONFIRMED}),
    S.PROCESSING: frozenset({S.SUCCESS, S.COMPLETED, S.FAILED, S.CANCELLED, S.DECLINED, S.CONFIRMED}),
    S.SUCCESS: frozenset({S.CONFIRMED, S.DECLINED}),
    S.COMPLETED: frozenset({S.CONFIRMED, S.DECLINED}),
    S.CONFIRMED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
    S.DECLINED: frozenset(),
}


def sources_for(target: PaymentStatus) -> frozenset:
    return frozenset(source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets)


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def partial_status_for(paid: Decimal, discount: Decimal, cost: Optional[Decimal]) -> PartialPaymentStatus:
    if cost is not None and cost > 0 and paid + discount >= cost:
        return PartialPaymentStatus.FULLY_PAID
    if paid > 0:
        return PartialPaymentStatus.FIRST_PAID
    return PartialPaymentStatus.NONE


class PaymentLifecycleStore:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        now: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self._now = now

    @asynccontextmanager
    async def unit_of_work(self, session: Optional[AsyncSession] = None) -> AsyncIterator[AsyncSession]:
        """Join the caller's transaction, or open and commit a new one."""
        if session is not None:
            yield session
            return
        async with self.session_factory() as new_session:
            async with new_session.begin():
                yield new_session

    # --------------------------------------------------------------
    # Reads
    # --------------------------------------------------------------
    async def get(self, payment_id: int, session: Optional[AsyncSession] = None) -> Payment:
        async with self.unit_of_work(session) as s:
            payment = await s.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")
            return payment

    async def get_by_reference(self, reference: str, session: Optional[AsyncSession] = None) -> Optional[Payment]:
        async with self.unit_of_work(session) as s:
            payment = await s.scalar(select(Payment).where(Payment.reference == reference))
            if payment is not None:
                return payment
            # Manual entries keep operator-typed text in gateway_reference
            result = await s.execute(
                select(Payment)
                .where(
                    Payment.gateway_reference == reference,
                    Payment.payment_method != PaymentMethod.MANUAL,
                    Payment.reference.not_like(f"{MANUAL_PREFIX}\\_%", escape="\\"),
                )
                .order_by(Payment.id.desc())
            )
            return result.scalars().first()

    async def get_by_idempotency_key(self, key: str, session: Optional[AsyncSession] = None) -> Optional[Payment]:
        async with self.unit_of_work(session) as s:
            result = await s.execute(select(Payment).where(Payment.idempotency_key == key))
            return result.scalar_one_or_none()

    async def get_by_crypto_hash(self, tx_hash: str, session: Optional[AsyncSession] = None) -> Optional[Payment]:
        async with self.unit_of_work(session) as s:
            result = await s.execute(select(Payment).where(Payment.crypto_transaction_hash == tx_hash))
            return result.scalar_one_or_none()

    async def list_payments(
        self,
        status: Optional[PaymentStatus] = None,
        request_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[list, int]:
        query = select(Payment)
        count = select(func.count(Payment.id))
        if status is not None:
            query = query.where(Payment.payment_status == status)
            count = count.where(Payment.payment_status == status)
        if request_id is not None:
            query = query.where(Payment.request_id == request_id)
            count = count.where(Payment.request_id == request_id)
        async with self.unit_of_work() as s:
            total = await s.scalar(count)
            rows = await s.execute(query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).offset(offset))
            return list(rows.scalars()), total or 0

    async def next_sequence(
        self, session: AsyncSession, request_id: int, statuses: Optional[Iterable[PaymentStatus]] = None
    ) -> int:
        """One past the highest leg number among the request's payments (optionally by status)."""
        query = select(func.max(Payment.payment_sequence)).where(Payment.request_id == request_id)
        if statuses is not None:
            query = query.where(Payment.payment_status.in_(list(statuses)))
        highest = await session.scalar(query)
        return (highest or 0) + 1

    async def audit_trail(self, resource_id: int, resource_type: str = "payment") -> list:
        async with self.unit_of_work() as s:
            rows = await s.execute(
                select(AdminAuditLog)
                .where(AdminAuditLog.resource_type == resource_type, AdminAuditLog.resource_id == resource_id)
                .order_by(AdminAuditLog.id)
            )
            return list(rows.scalars())

    # --------------------------------------------------------------
    # Writes
    # --------------------------------------------------------------
    def audit(
        self,
        session: AsyncSession,
        action: str,
        actor: str,
        resource_id: int,
        from_status: Optional[PaymentStatus] = None,
        to_status: Optional[PaymentStatus] = None,
        details: Optional[Dict[str, Any]] = None,
        resource_type: str = "payment",
    ) -> None:
        session.add(
            AdminAuditLog(
                action=action,
                actor=actor,
                resource_type=resource_type,
                resource_id=resource_id,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value if to_status else None,
                details=details,
                created_at=self._now(),
            )
        )

    async def create(self, session: AsyncSession, actor: str, **fields) -> Payment:
        now = self._now()
        fields.setdefault("payment_status", PaymentStatus.PENDING)
        payment = Payment(created_at=now, updated_at=now, **fields)
        session.add(payment)
        await session.flush()
        self.audit(
            session,
            "payment_created",
            actor,
            payment.id,
            to_status=payment.payment_status,
            details={"reference": payment.reference, "amount": str(payment.amount)},
        )
        logger.info(f"Payment {payment.id} created ({payment.reference}, ${payment.amount}) by {actor}")
        return payment

    async def transition(
        self,
        payment_id: int,
        target: PaymentStatus,
        *,
        actor: str,
        action: str,
        expected_from: Optional[Iterable[PaymentStatus]] = None,
        changes: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        session: Optional[AsyncSession] = None,
    ) -> Payment:
        """
        Atomically move one payment to ``target``.

        Raises NotFoundError for an unknown id and InvalidTransitionError when
        the current status does not permit the move (including a repeat of a
        move that already happened).
        """
        allowed = sources_for(target)
        if expected_from is not None:
            allowed = allowed & frozenset(expected_from)

        async with self.unit_of_work(session) as s:
            now = self._now()
            values: Dict[str, Any] = {"payment_status": target, "updated_at": now}
            values.update(changes or {})

            request_id = None
            if target == PaymentStatus.CONFIRMED:
                values.setdefault("confirmed_at", now)
                values.setdefault("confirmed_by", actor)
                request_id = await s.scalar(select(Payment.request_id).where(Payment.id == payment_id))
                if request_id is not None:
                    # Serialize confirmations per request before touching the payment row
                    await s.execute(
                        select(ServiceRequest.id).where(ServiceRequest.id == request_id).with_for_update()
                    )

            previous = await s.scalar(select(Payment.payment_status).where(Payment.id == payment_id))
            try:
                result = await s.execute(
                    update(Payment)
                    .where(Payment.id == payment_id, Payment.payment_status.in_(list(allowed)))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError as e:
                raise InvalidTransitionError(
                    "This payment leg already has a confirmed payment",
                    current_status=previous.value if previous else None,
                    target_status=target.value,
                ) from e

            if result.rowcount == 0:
                current = await s.scalar(select(Payment.payment_status).where(Payment.id == payment_id))
                if current is None:
                    raise NotFoundError(f"Payment {payment_id} not found")
                raise InvalidTransitionError(
                    f"Payment {payment_id} is {current.value} and cannot move to {target.value}",
                    current_status=current.value,
                    target_status=target.value,
                )

            payment = (
                await s.execute(
                    select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
                )
            ).scalar_one()

            if target == PaymentStatus.CONFIRMED:
                await self._ensure_single_confirmed_leg(s, payment)
                await self.recompute_request(s, payment.request_id, enforce_ceiling=True)

            self.audit(s, action, actor, payment.id, from_status=previous, to_status=target, details=details)
            logger.info(f"Payment {payment.id}: {previous.value} -> {target.value} by {actor} ({action})")
            return payment

    async def delete(self, payment_id: int, *, actor: str, session: Optional[AsyncSession] = None) -> None:
        """Hard delete; only failed, cancelled or declined payments qualify."""
        async with self.unit_of_work(session) as s:
            current = await s.scalar(select(Payment.payment_status).where(Payment.id == payment_id))
            result = await s.execute(
                delete(Payment)
                .where(Payment.id == payment_id, Payment.payment_status.in_(list(DELETABLE_STATUSES)))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                if current is None:
                    raise NotFoundError(f"Payment {payment_id} not found")
                raise InvalidTransitionError(
                    f"Payment {payment_id} is {current.value}; only failed, cancelled or declined payments can be deleted",
                    current_status=current.value,
                    target_status="deleted",
                )
            self.audit(s, "payment_deleted", actor, payment_id, from_status=current)
            logger.info(f"Payment {payment_id} ({current.value}) deleted by {actor}")

    # --------------------------------------------------------------
    # Aggregates
    # --------------------------------------------------------------
    async def _ensure_single_confirmed_leg(self, session: AsyncSession, payment: Payment) -> None:
        others = await session.scalar(
            select(func.count(Payment.id)).where(
                Payment.request_id == payment.request_id,
                Payment.payment_sequence == payment.payment_sequence,
                Payment.payment_status == PaymentStatus.CONFIRMED,
                Payment.id != payment.id,
            )
        )
        if others:
            raise InvalidTransitionError(
                f"Leg {payment.payment_sequence} of request {payment.request_id} is already confirmed",
                current_status=PaymentStatus.CONFIRMED.value,
                target_status=PaymentStatus.CONFIRMED.value,
            )

    async def recompute_request(
        self, session: AsyncSession, request_id: int, enforce_ceiling: bool = False
    ) -> ServiceRequest:
        """Rebuild paid total, balance and partial status from confirmed payments."""
        request = (
            await session.execute(
                select(ServiceRequest)
                .where(ServiceRequest.id == request_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if request is None:
            raise NotFoundError(f"Service request {request_id} not found")

        row = (
            await session.execute(
                select(
                    func.coalesce(func.sum(Payment.amount), 0),
                    func.coalesce(func.sum(Payment.discount_amount), 0),
                ).where(Payment.request_id == request_id, Payment.payment_status == PaymentStatus.CONFIRMED)
            )
        ).one()
        paid, discount = to_money(row[0]), to_money(row[1])
        cost = to_money(request.estimated_cost) if request.estimated_cost is not None else None

        if enforce_ceiling and cost is not None and paid + discount > cost:
            raise InvalidTransitionError(
                f"Confirming would bring request {request_id} to ${paid} (+${discount} discount), above its ${cost} cost",
                current_status=request.partial_payment_status.value,
                target_status=PaymentStatus.CONFIRMED.value,
            )

        new_status = partial_status_for(paid, discount, cost)
        if new_status.rank < request.partial_payment_status.rank:
            logger.warning(
                f"Request {request_id} partial status would regress "
                f"{request.partial_payment_status.value} -> {new_status.value}; keeping current"
            )
            new_status = request.partial_payment_status

        now = self._now()
        request.total_paid = paid
        request.total_discount = discount
        request.balance_due = max(cost - paid - discount, Decimal("0.00")) if cost is not None else None
        request.partial_payment_status = new_status
        if paid > 0 and request.status == RequestStatus.APPROVED:
            request.status = RequestStatus.IN_PROGRESS
        if new_status == PartialPaymentStatus.FULLY_PAID and request.payment_confirmed_at is None:
            request.payment_confirmed_at = now
        request.updated_at = now
        await session.flush()
        logger.info(
            f"Request {request_id}: paid ${paid}, discount ${discount}, "
            f"balance {request.balance_due}, status {new_status.value}"
        )
        return request

    async def apply_observed_status(
        self,
        payment_id: int,
        observed: PaymentStatus,
        *,
        actor: str,
        action: str,
        changes: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Payment, bool]:
        """
        Apply a status reported by an external observer (gateway webhook,
        verify call, crypto processor IPN).

        Redelivery is expected, so a report the payment has already reached
        or moved past is a no-op returning ``(payment, False)``. A lost race
        against another producer is treated the same way.
        """
        payment = await self.get(payment_id)
        current = payment.payment_status
        if current == observed or not can_transition(current, observed):
            logger.info(
                f"Ignoring {observed.value} for payment {payment_id} ({action}); already {current.value}"
            )
            return payment, False
        try:
            payment = await self.transition(
                payment_id,
                observed,
                actor=actor,
                action=action,
                expected_from=[current],
                changes=changes,
                details=details,
            )
        except InvalidTransitionError:
            latest = await self.get(payment_id)
            if latest.payment_status == current:
                raise
            logger.info(f"Payment {payment_id} moved to {latest.payment_status.value} concurrently; {action} skipped")
            return latest, False
        return payment, True
