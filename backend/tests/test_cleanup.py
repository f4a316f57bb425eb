import asyncio

from servicepay.core.config import PaymentPolicy
from servicepay.models.payment_model import PaymentMethod, PaymentStatus
from servicepay.tasks.payment_cleanup import cleanup_loop, stop_cleanup_loop, sweep


def run_sweep(store, policy, clock, dry_run=False):
    return asyncio.run(sweep(store, policy, now=clock(), dry_run=dry_run))


def status_of(store, payment_id):
    return asyncio.run(store.get(payment_id)).payment_status


def test_abandoned_payment_is_cancelled_once(store, policy, clock, make_request, make_payment):
    payment_id = make_payment(make_request())
    clock.advance(hours=26)

    first = run_sweep(store, policy, clock)
    second = run_sweep(store, policy, clock)

    payment = asyncio.run(store.get(payment_id))
    assert payment.payment_status == PaymentStatus.CANCELLED
    assert payment.error_message == "expired"
    assert first["expired_payments"] == 1
    assert second["expired_payments"] == 0
    actions = [e.action for e in asyncio.run(store.audit_trail(payment_id))]
    assert actions == ["payment_created", "payment_expired"]


def test_recent_and_settled_payments_are_left_alone(store, policy, clock, make_request, make_payment):
    request_id = make_request()
    paid = make_payment(request_id, status=PaymentStatus.SUCCESS)
    awaiting_operator = make_payment(
        request_id,
        sequence=2,
        status=PaymentStatus.PROCESSING,
        method=PaymentMethod.CRYPTO,
        crypto_network="usdt-trc20",
        crypto_transaction_hash="ab" * 32,
    )
    clock.advance(hours=26)
    fresh = make_payment(request_id)
    clock.advance(hours=23)

    result = run_sweep(store, policy, clock)

    assert result["expired_payments"] == 0
    assert status_of(store, paid) == PaymentStatus.SUCCESS
    assert status_of(store, awaiting_operator) == PaymentStatus.PROCESSING
    assert status_of(store, fresh) == PaymentStatus.PENDING


def test_expired_payment_link_is_deactivated(store, policy, clock, make_request, load_request):
    request_id = make_request()
    clock.advance(hours=2)

    first = run_sweep(store, policy, clock)
    second = run_sweep(store, policy, clock)

    assert first["expired_links"] == 1
    assert second["expired_links"] == 0
    assert load_request(request_id).payment_link_active is False
    trail = asyncio.run(store.audit_trail(request_id, resource_type="service_request"))
    assert [e.action for e in trail] == ["payment_link_expired"]


def test_old_dead_payments_are_purged(store, policy, clock, make_request, make_payment):
    request_id = make_request()
    failed = make_payment(request_id, status=PaymentStatus.FAILED)
    confirmed = make_payment(request_id, status=PaymentStatus.CONFIRMED)
    clock.advance(days=8)

    result = run_sweep(store, policy, clock)

    assert result["purged_payments"] == 1
    assert asyncio.run(store.list_payments(request_id=request_id))[1] == 1
    assert status_of(store, confirmed) == PaymentStatus.CONFIRMED
    actions = [e.action for e in asyncio.run(store.audit_trail(failed))]
    assert actions[-1] == "payment_deleted"


def test_dead_payments_within_retention_are_kept(store, policy, clock, make_request, make_payment):
    failed = make_payment(make_request(), status=PaymentStatus.FAILED)
    clock.advance(days=6)

    assert run_sweep(store, policy, clock)["purged_payments"] == 0
    assert status_of(store, failed) == PaymentStatus.FAILED


def test_dry_run_reports_without_changing(store, policy, clock, make_request, make_payment, load_request):
    request_id = make_request()
    pending = make_payment(request_id)
    make_payment(request_id, status=PaymentStatus.DECLINED)
    clock.advance(days=8)

    result = run_sweep(store, policy, clock, dry_run=True)

    assert result["dry_run"] is True
    assert (result["expired_payments"], result["expired_links"], result["purged_payments"]) == (1, 1, 1)
    assert status_of(store, pending) == PaymentStatus.PENDING
    assert load_request(request_id).payment_link_active is True


def test_in_process_loop_sweeps_and_stops_on_cancel(store, make_request, make_payment):
    policy = PaymentPolicy(purge_after_days=None)
    payment_id = make_payment(make_request())

    async def run_loop():
        task = asyncio.create_task(cleanup_loop(store, policy, interval_minutes=1))
        for _ in range(200):
            await asyncio.sleep(0.01)
            if (await store.get(payment_id)).payment_status == PaymentStatus.CANCELLED:
                break
        await stop_cleanup_loop(task)
        return task

    task = asyncio.run(run_loop())

    assert task.cancelled()
    assert status_of(store, payment_id) == PaymentStatus.CANCELLED
