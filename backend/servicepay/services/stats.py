# services/stats.py
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from servicepay.core.database import utcnow
from servicepay.models.payment_model import Payment, PaymentMethod, PaymentStatus
from servicepay.services.quote import to_money

AWAITING = {PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.SUCCESS, PaymentStatus.COMPLETED}
FAILED = {PaymentStatus.FAILED, PaymentStatus.DECLINED}


async def payment_stats(session_factory: async_sessionmaker, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Dashboard numbers. Revenue counts confirmed payments only."""
    now = now or utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    async with session_factory() as session:
        rows = (
            await session.execute(
                select(
                    Payment.payment_status,
                    Payment.payment_method,
                    func.count(Payment.id),
                    func.coalesce(func.sum(Payment.amount), 0),
                ).group_by(Payment.payment_status, Payment.payment_method)
            )
        ).all()
        today_row = (
            await session.execute(
                select(func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0)).where(
                    Payment.payment_status == PaymentStatus.CONFIRMED,
                    Payment.confirmed_at >= today,
                )
            )
        ).one()

    by_status: Dict[str, int] = defaultdict(int)
    by_method: Dict[str, int] = {m.value: 0 for m in PaymentMethod}
    revenue = pending_amount = Decimal("0.00")
    total = confirmed = failed = cancelled = 0

    for status, method, count, amount in rows:
        amount = to_money(amount)
        total += count
        by_status[status.value] += count
        by_method[method.value] += count
        if status == PaymentStatus.CONFIRMED:
            confirmed += count
            revenue += amount
        elif status in AWAITING:
            pending_amount += amount
        elif status in FAILED:
            failed += count
        elif status == PaymentStatus.CANCELLED:
            cancelled += count

    return {
        "totalPayments": total,
        "confirmedPayments": confirmed,
        "failedPayments": failed,
        "cancelledPayments": cancelled,
        "totalRevenue": str(revenue),
        "pendingAmount": str(pending_amount),
        "todayPayments": today_row[0],
        "todayRevenue": str(to_money(today_row[1])),
        "conversionRate": round(confirmed / total * 100, 2) if total else 0.0,
        "avgPaymentAmount": str(to_money(revenue / confirmed)) if confirmed else "0.00",
        "byStatus": dict(by_status),
        "paymentMethods": by_method,
    }
