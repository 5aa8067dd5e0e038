from datetime import datetime, timedelta

import pytest

from yqpay.database.payment_models import TXN_FAILED, TXN_PENDING, TXN_REFUNDED, TXN_SUCCESS
from yqpay.services import transaction_store


@pytest.fixture
def txn(db, theater, make_order, make_txn):
    return make_txn(theater, make_order(theater))


def test_create_and_lookups(db, theater, make_order):
    order = make_order(theater)
    txn = transaction_store.create_transaction(
        db, theater_id=theater.id, order_id=order.id, provider="razorpay", channel="kiosk",
        gateway_order_id="g9", amount=125.0, method="upi",
    )
    assert txn.status == TXN_PENDING
    assert transaction_store.get_transaction(db, txn.id).id == txn.id
    assert transaction_store.find_by_gateway_order_id(db, "g9").id == txn.id
    assert transaction_store.find_latest_for_order(db, order.id).id == txn.id
    assert transaction_store.find_by_gateway_refs(db, "g9", None).id == txn.id
    assert transaction_store.find_by_gateway_refs(db, None, None) is None


def test_mark_success_transitions_once(db, txn):
    assert transaction_store.mark_success(db, txn.id, payment_id="p1", signature="sig") is True
    assert transaction_store.mark_success(db, txn.id, payment_id="p2") is False
    db.refresh(txn)
    assert txn.status == TXN_SUCCESS
    assert txn.gateway_payment_id == "p1"
    assert txn.completed_at is not None


def test_success_clears_earlier_error(db, txn):
    transaction_store.mark_failed(db, txn.id, "PAYMENT_FAILED", "declined")
    assert transaction_store.mark_success(db, txn.id, payment_id="p1") is True
    db.refresh(txn)
    assert txn.error is None


def test_failed_never_overrides_success(db, txn):
    transaction_store.mark_success(db, txn.id, payment_id="p1")
    assert transaction_store.mark_failed(db, txn.id, "X", "late failure") is False
    db.refresh(txn)
    assert txn.status == TXN_SUCCESS


def test_refunded_is_never_overwritten(db, theater, make_order, make_txn):
    txn = make_txn(theater, make_order(theater), status=TXN_REFUNDED)
    assert transaction_store.mark_success(db, txn.id, payment_id="p1") is False
    assert transaction_store.mark_failed(db, txn.id, "X", "y") is False


def test_failed_keeps_unverified_payment_id_out_of_gateway_fields(db, txn):
    transaction_store.mark_failed(db, txn.id, "SIGNATURE_VERIFICATION_FAILED", "bad", payment_id="p_forged", ip_address="1.2.3.4")
    db.refresh(txn)
    assert txn.status == TXN_FAILED
    assert txn.gateway_payment_id is None
    assert txn.error["paymentId"] == "p_forged"
    assert txn.verification_ip == "1.2.3.4"


def test_attach_payment_id_never_overwrites(db, txn):
    assert transaction_store.attach_payment_id(db, txn.id, "p1") is True
    assert transaction_store.attach_payment_id(db, txn.id, "p2") is False
    db.refresh(txn)
    assert txn.gateway_payment_id == "p1"


def test_record_stale_verification_appends(db, txn):
    transaction_store.record_stale_verification(db, txn, "1.2.3.4", "verify")
    db.refresh(txn)
    transaction_store.record_stale_verification(db, txn, None, "webhook")
    db.refresh(txn)
    events = txn.meta["staleVerifications"]
    assert [e["source"] for e in events] == ["verify", "webhook"]


def test_list_open_transactions_filters(db, theater, make_order, make_txn):
    order = make_order(theater)
    old = make_txn(theater, order, gateway_order_id="g_old", age=timedelta(minutes=10))
    make_txn(theater, order, gateway_order_id="g_new")
    make_txn(theater, order, gateway_order_id="g_done", status=TXN_SUCCESS, age=timedelta(minutes=10))
    make_txn(theater, order, gateway_order_id=None, age=timedelta(minutes=10))

    cutoff = datetime.utcnow() - timedelta(minutes=2)
    rows = transaction_store.list_open_transactions(db, theater.id, created_before=cutoff)
    assert [r.id for r in rows] == [old.id]


def test_paginate_transactions(db, theater, make_order, make_txn):
    order = make_order(theater)
    for i in range(5):
        make_txn(theater, order, gateway_order_id=f"g{i}")
    make_txn(theater, order, gateway_order_id="gx", status=TXN_FAILED)

    rows, total = transaction_store.paginate_transactions(db, theater.id, status=TXN_PENDING, page=2, limit=2)
    assert total == 5
    assert len(rows) == 2
