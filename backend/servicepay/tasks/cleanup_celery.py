import asyncio
import logging

from celery import shared_task

from servicepay.core.config import PaymentPolicy, settings
from servicepay.core.database import SessionLocal, engine
from servicepay.services.lifecycle import PaymentLifecycleStore
from servicepay.tasks.payment_cleanup import sweep

logger = logging.getLogger("servicepay.cleanup")


async def _run_sweep(dry_run: bool) -> dict:
    try:
        store = PaymentLifecycleStore(SessionLocal)
        return await sweep(store, PaymentPolicy.from_settings(settings), dry_run=dry_run)
    finally:
        # Each asyncio.run gets a fresh loop; pooled connections must not outlive it
        await engine.dispose()


@shared_task(
    bind=True,
    max_retries=3,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_jitter=True,
)
def sweep_payments_task(self, dry_run: bool = False):
    """
    Wrapper to run the async sweeper in a sync Celery worker.
    """
    try:
        return asyncio.run(_run_sweep(dry_run))
    except Exception as exc:
        logger.error(f"Payment sweep task failed: {exc}")
        raise exc
