import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from servicepay.core.config import PaymentPolicy
from servicepay.core.database import init_models
from servicepay.models.payment_model import PaymentMethod, PaymentStatus, PaymentType
from servicepay.models.request_model import Client, RequestStatus, ServiceRequest
from servicepay.services.lifecycle import PaymentLifecycleStore

NOW = datetime(2026, 3, 2, 12, 0, 0)


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, start=NOW):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return PaymentPolicy()


@pytest.fixture
def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    asyncio.run(init_models(engine))
    yield async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def store(session_factory, clock):
    return PaymentLifecycleStore(session_factory, now=clock)


@pytest.fixture
def make_request(session_factory):
    def _make(
        cost="1000.00",
        status=RequestStatus.APPROVED,
        discount="10",
        link_expiry=NOW + timedelta(hours=1),
        link_active=True,
        email="ada@example.com",
    ):
        async def _seed():
            async with session_factory() as session:
                client = Client(name="Ada Obi", email=email, created_at=NOW)
                request = ServiceRequest(
                    client=client,
                    title="Website redesign",
                    status=status,
                    estimated_cost=Decimal(cost) if cost is not None else None,
                    admin_discount_percent=Decimal(discount),
                    payment_link_expiry=link_expiry,
                    payment_link_active=link_active,
                    balance_due=Decimal(cost) if cost is not None else None,
                    created_at=NOW,
                    updated_at=NOW,
                )
                session.add(request)
                await session.commit()
                return request.id

        return asyncio.run(_seed())

    return _make


@pytest.fixture
def make_payment(store):
    def _make(
        request_id,
        amount="500.00",
        status=PaymentStatus.PENDING,
        method=PaymentMethod.CARD_GATEWAY,
        payment_type=PaymentType.SPLIT,
        sequence=1,
        reference=None,
        discount="0.00",
        **fields,
    ):
        async def _create():
            async with store.unit_of_work() as session:
                payment = await store.create(
                    session,
                    actor="test",
                    request_id=request_id,
                    reference=reference or f"pay_{uuid4().hex[:16]}",
                    amount=Decimal(amount),
                    discount_amount=Decimal(discount),
                    currency="USD",
                    payment_method=method,
                    payment_type=payment_type,
                    payment_sequence=sequence,
                    payment_status=status,
                    **fields,
                )
                return payment.id

        return asyncio.run(_create())

    return _make


@pytest.fixture
def load_request(session_factory):
    def _load(request_id):
        async def _get():
            async with session_factory() as session:
                return await session.get(ServiceRequest, request_id)

        return asyncio.run(_get())

    return _load
