from datetime import timedelta

import pytest

from schoolvendor.config import settings
from schoolvendor.db import init_db
from schoolvendor.db.repository import load_transaction, save_transaction
from schoolvendor.models.common import utcnow
from schoolvendor.models.transactions import InitiatePaymentRequest, TransactionStatus
from schoolvendor.services import payment_service, scheduler


@pytest.mark.asyncio
async def test_expiry_sweep_uses_its_own_session(db, session_factory, make_product, make_order, customer, monkeypatch):
    book = await make_product()
    order = await make_order([(book, 1)])
    result = await payment_service.initiate_payment(
        db, InitiatePaymentRequest(order_id=order.order_id, payment_method="hubtel"), customer
    )
    transaction = await load_transaction(db, result["transaction"]["transaction_id"])
    transaction.expires_at = utcnow() - timedelta(minutes=5)
    await save_transaction(db, transaction)

    monkeypatch.setattr(init_db, "AsyncSessionLocal", session_factory)

    assert await scheduler.run_expiry_sweep() == 1
    async with session_factory() as fresh:
        assert (await load_transaction(fresh, transaction.transaction_id)).status == TransactionStatus.EXPIRED


@pytest.mark.asyncio
async def test_expiry_sweep_logs_and_survives_errors(session_factory, monkeypatch):
    async def broken(db):
        raise RuntimeError("boom")

    monkeypatch.setattr(init_db, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(payment_service, "expire_stale_transactions", broken)

    assert await scheduler.run_expiry_sweep() == 0


def test_expiry_job_is_registered_on_the_interval():
    job_id = scheduler.scheduler.add_interval_job(
        "expiry_registration_check", scheduler.run_expiry_sweep, settings.expiry_sweep_interval_minutes
    )

    job = scheduler.scheduler.get_job(job_id)
    assert job is not None
    assert job.trigger.interval == timedelta(minutes=settings.expiry_sweep_interval_minutes)
