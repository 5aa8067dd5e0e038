from datetime import timedelta

import pytest

from conftest import razorpay_channel
from yqpay.core.errors import InvalidRequest, TheaterNotFound, TransactionNotFound
from yqpay.database.payment_models import TXN_FAILED, TXN_PENDING, TXN_SUCCESS
from yqpay.gateways.base import STATUS_CAPTURED, STATUS_FAILED, STATUS_PENDING, PaymentView
from yqpay.services import order_store, reconciler

TEN_MINUTES = timedelta(minutes=10)


async def test_sync_pending_rescues_dropped_checkout(db, theater, make_order, make_txn, fake_gateway, notifier, stock):
    order = make_order(theater)
    txn = make_txn(theater, order, age=TEN_MINUTES)

    summary = await reconciler.sync_pending(db, theater.id)

    assert summary == {"total": 1, "synced": 1, "failed": 0, "alreadyUpToDate": 0, "errors": []}
    assert fake_gateway.called("fetch_status")[0][1:] == (None, "g1")
    db.refresh(txn)
    assert txn.status == TXN_SUCCESS
    assert txn.gateway_payment_id == "p1"
    assert txn.gateway_signature is None
    stored = order_store.find_order(db, order.id).data
    assert stored["status"] == "confirmed"
    assert stored["payment"]["razorpaySignature"] == "sync"
    assert notifier.notify_paid.await_args.kwargs["source"] == "sync"


async def test_sync_pending_leaves_in_flight_checkouts_alone(db, theater, make_order, make_txn, fake_gateway, notifier, stock):
    make_txn(theater, make_order(theater))
    summary = await reconciler.sync_pending(db, theater.id)
    assert summary["total"] == 0
    assert fake_gateway.called("fetch_status") == []


async def test_sync_pending_counts_outcomes(db, theater, make_order, make_txn, fake_gateway, notifier, stock):
    order = make_order(theater)
    make_txn(theater, order, gateway_order_id="g1", age=TEN_MINUTES)
    fake_gateway.view = PaymentView(status=STATUS_PENDING, order_id="g1")

    summary = await reconciler.sync_pending(db, theater.id, min_age_seconds=0)

    assert summary["alreadyUpToDate"] == 1
    assert summary["synced"] == 0


async def test_sync_marks_gateway_failures(db, theater, make_order, make_txn, fake_gateway, notifier, stock):
    order = make_order(theater)
    txn = make_txn(theater, order, age=TEN_MINUTES)
    fake_gateway.view = PaymentView(status=STATUS_FAILED, order_id="g1", payment_id="p1")

    result = await reconciler.sync_transaction(db, txn)

    assert result["outcome"] == reconciler.OUTCOME_FAILED
    db.refresh(txn)
    assert txn.status == TXN_FAILED
    assert txn.error["code"] == "PAYMENT_FAILED"


async def test_sync_rejects_amount_mismatch(db, theater, make_order, make_txn, fake_gateway, notifier, stock):
    order = make_order(theater)
    txn = make_txn(theater, order, age=TEN_MINUTES)
    fake_gateway.view = PaymentView(status=STATUS_CAPTURED, amount=100, order_id="g1", payment_id="p1")

    result = await reconciler.sync_transaction(db, txn)

    assert result["outcome"] == reconciler.OUTCOME_FAILED
    db.refresh(txn)
    assert txn.error["code"] == "AMOUNT_MISMATCH"
    assert order_store.find_order(db, order.id).data["status"] == "pending"


async def test_sync_on_success_is_noop(db, theater, make_order, make_txn, fake_gateway, notifier, stock):
    txn = make_txn(theater, make_order(theater), status=TXN_SUCCESS)
    before = txn.updated_at

    result = await reconciler.sync_one(db, {"transactionId": txn.id})

    assert result["outcome"] == reconciler.OUTCOME_UP_TO_DATE
    assert fake_gateway.calls == []
    db.refresh(txn)
    assert txn.updated_at == before
    notifier.notify_paid.assert_not_awaited()


async def test_sync_one_uses_payment_id_hint(db, theater, make_order, make_txn, fake_gateway, notifier, stock):
    order = make_order(theater)
    make_txn(theater, order)

    result = await reconciler.sync_one(db, {"orderId": order.id, "razorpayPaymentId": "p1"})

    assert result["outcome"] == reconciler.OUTCOME_SYNCED
    assert fake_gateway.called("fetch_status")[0][1] == "p1"


async def test_sync_one_requires_an_identifier(db):
    with pytest.raises(InvalidRequest):
        await reconciler.sync_one(db, {})
    with pytest.raises(TransactionNotFound):
        await reconciler.sync_one(db, {"orderId": "missing"})


async def test_sync_pending_unknown_theater(db):
    with pytest.raises(TheaterNotFound):
        await reconciler.sync_pending(db, "no-such-theater")
    with pytest.raises(InvalidRequest):
        await reconciler.sync_pending(db, "")


async def test_sync_pending_skips_unsupported_providers(db, make_theater, make_order, make_txn, fake_gateway, notifier, stock):
    theater = make_theater(kiosk={
        "provider": "phonepe",
        "phonepe": {"enabled": True, "merchantId": "M1", "saltKey": "salt"},
    })
    make_txn(theater, make_order(theater), provider="phonepe", age=TEN_MINUTES)

    summary = await reconciler.sync_pending(db, theater.id)
    assert summary["total"] == 0


async def test_sync_pending_reports_per_transaction_errors(db, theater, make_order, make_txn, fake_gateway, notifier, stock):
    from yqpay.core.errors import GatewayError

    txn = make_txn(theater, make_order(theater), age=TEN_MINUTES)
    fake_gateway.fetch_error = GatewayError("Razorpay did not respond within 15s")

    summary = await reconciler.sync_pending(db, theater.id)

    assert summary["total"] == 1
    assert summary["errors"] == [{"transactionId": txn.id, "error": "Razorpay did not respond within 15s"}]
    db.refresh(txn)
    assert txn.status == TXN_PENDING


async def test_sync_all_theaters(db, theater, make_theater, make_order, make_txn, fake_gateway, notifier, stock):
    make_theater()  # nothing configured, never swept
    make_txn(theater, make_order(theater), age=TEN_MINUTES)

    totals = await reconciler.sync_all_theaters(db)

    assert totals["theaters"] == 1
    assert totals["synced"] == 1
