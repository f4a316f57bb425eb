"""
Payment cleanup sweeper - cancels abandoned payments, deactivates expired
payment links and purges old dead payments.

Every step acts only on rows matching a time-based predicate, so running it
twice in a row is a no-op the second time.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import and_, not_, select, update

from servicepay.core.config import PaymentPolicy, settings
from servicepay.core.database import utcnow
from servicepay.core.errors import InvalidTransitionError, NotFoundError
from servicepay.models.payment_model import DELETABLE_STATUSES, OPEN_STATUSES, Payment, PaymentMethod, PaymentStatus
from servicepay.models.request_model import ServiceRequest
from servicepay.services.lifecycle import PaymentLifecycleStore

logger = logging.getLogger("servicepay.cleanup")

SWEEPER = "sweeper"


async def expire_stale_payments(
    store: PaymentLifecycleStore, policy: PaymentPolicy, now: datetime, dry_run: bool = False
) -> int:
    """Pending/processing payments older than the expiry window become cancelled."""
    cutoff = now - timedelta(hours=policy.payment_expiry_hours)
    async with store.unit_of_work() as session:
        rows = (
            await session.execute(
                select(Payment.id, Payment.payment_status).where(
                    Payment.payment_status.in_(list(OPEN_STATUSES)),
                    Payment.created_at < cutoff,
                    # A submitted crypto hash is waiting on an operator, not abandoned
                    not_(
                        and_(
                            Payment.payment_method == PaymentMethod.CRYPTO,
                            Payment.crypto_transaction_hash.is_not(None),
                        )
                    ),
                )
            )
        ).all()

    if dry_run:
        return len(rows)

    expired = 0
    for payment_id, status in rows:
        try:
            await store.transition(
                payment_id,
                PaymentStatus.CANCELLED,
                actor=SWEEPER,
                action="payment_expired",
                expected_from=[status],
                changes={"error_message": "expired"},
                details={"cutoff": cutoff.isoformat()},
            )
            expired += 1
        except (InvalidTransitionError, NotFoundError):
            # Moved by a webhook or an admin since we looked
            logger.info(f"Payment {payment_id} changed during sweep; skipped")
    return expired


async def expire_payment_links(
    store: PaymentLifecycleStore, now: datetime, dry_run: bool = False
) -> int:
    predicate = and_(
        ServiceRequest.payment_link_active.is_(True),
        ServiceRequest.payment_link_expiry.is_not(None),
        ServiceRequest.payment_link_expiry < now,
    )
    async with store.unit_of_work() as session:
        ids = list((await session.execute(select(ServiceRequest.id).where(predicate))).scalars())
        if dry_run or not ids:
            return len(ids)
        result = await session.execute(
            update(ServiceRequest)
            .where(ServiceRequest.id.in_(ids), predicate)
            .values(payment_link_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        for request_id in ids:
            store.audit(session, "payment_link_expired", SWEEPER, request_id, resource_type="service_request")
        return result.rowcount


async def purge_old_payments(
    store: PaymentLifecycleStore, policy: PaymentPolicy, now: datetime, dry_run: bool = False
) -> int:
    if not policy.purge_after_days:
        return 0
    cutoff = now - timedelta(days=policy.purge_after_days)
    async with store.unit_of_work() as session:
        ids = list(
            (
                await session.execute(
                    select(Payment.id).where(
                        Payment.payment_status.in_(list(DELETABLE_STATUSES)),
                        Payment.updated_at < cutoff,
                    )
                )
            ).scalars()
        )
    if dry_run:
        return len(ids)

    purged = 0
    for payment_id in ids:
        try:
            await store.delete(payment_id, actor=SWEEPER)
            purged += 1
        except (InvalidTransitionError, NotFoundError):
            logger.info(f"Payment {payment_id} no longer purgeable; skipped")
    return purged


async def sweep(
    store: PaymentLifecycleStore,
    policy: PaymentPolicy,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> Dict[str, object]:
    now = now or utcnow()
    logger.info(f"🧹 Payment sweep starting (dry_run={dry_run}) at {now.isoformat()}")

    counts = {
        "expired_payments": await expire_stale_payments(store, policy, now, dry_run),
        "expired_links": await expire_payment_links(store, now, dry_run),
        "purged_payments": await purge_old_payments(store, policy, now, dry_run),
    }
    logger.info(
        f"✅ Sweep done: {counts['expired_payments']} payments expired, "
        f"{counts['expired_links']} links deactivated, {counts['purged_payments']} purged"
    )
    return {**counts, "dry_run": dry_run, "ran_at": now.isoformat()}


async def cleanup_loop(store: PaymentLifecycleStore, policy: PaymentPolicy, interval_minutes: Optional[int] = None):
    """In-process schedule for single-instance deployments (started on app startup)."""
    interval = (interval_minutes or settings.CLEANUP_INTERVAL_MINUTES) * 60
    while True:
        try:
            await sweep(store, policy)
        except Exception as e:
            logger.error(f"Payment sweep failed: {e}", exc_info=True)
        await asyncio.sleep(interval)


async def stop_cleanup_loop(task: Optional["asyncio.Task"]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info("Payment cleanup loop stopped")
