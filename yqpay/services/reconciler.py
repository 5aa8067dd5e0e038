"""
Gateway polling that closes gaps left by dropped clients and lost webhooks.

Scheduling is external (cron, the ``yqpay-sync-pending`` command or the
sync endpoints); each call here is a single synchronous sweep.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from yqpay.core import config
from yqpay.core.errors import InvalidRequest, PaymentError, TransactionNotFound
from yqpay.core.redis import get_optional_redis
from yqpay.database.models import Theater
from yqpay.database.payment_models import TXN_FAILED, TXN_REFUNDED, TXN_SUCCESS, PaymentTransaction
from yqpay.database.schemas import SyncSummary
from yqpay.gateways import get_adapter
from yqpay.gateways.base import STATUS_CAPTURED, STATUS_FAILED
from yqpay.services import transaction_store
from yqpay.services.channel_resolver import CHANNELS, resolve_gateway
from yqpay.services.payment_lock import payment_lock
from yqpay.services.payment_service import (
    SENTINEL_SYNC,
    check_payment_view,
    check_staleness,
    complete_payment,
    gateway_for_transaction,
    get_theater,
)

logger = logging.getLogger(__name__)

OUTCOME_SYNCED = "synced"
OUTCOME_FAILED = "failed"
OUTCOME_UP_TO_DATE = "alreadyUpToDate"


def _result(txn: PaymentTransaction, outcome: str, message: str, gateway_status: Optional[str] = None) -> Dict[str, Any]:
    return {
        "success": True,
        "outcome": outcome,
        "message": message,
        "transactionId": txn.id,
        "orderId": txn.order_id,
        "status": txn.status,
        "gatewayStatus": gateway_status,
    }


def locate_for_sync(db: Session, selector: Dict[str, Any]) -> PaymentTransaction:
    if not any(selector.get(k) for k in ("orderId", "razorpayPaymentId", "razorpayOrderId", "transactionId")):
        raise InvalidRequest("Provide orderId, razorpayPaymentId or razorpayOrderId")
    txn = (
        transaction_store.get_transaction(db, selector.get("transactionId"))
        or transaction_store.find_by_gateway_payment_id(db, selector.get("razorpayPaymentId"))
        or transaction_store.find_by_gateway_order_id(db, selector.get("razorpayOrderId"))
        or transaction_store.find_latest_for_order(db, selector.get("orderId"))
    )
    if txn is None:
        raise TransactionNotFound()
    return txn


async def sync_transaction(db: Session, txn: PaymentTransaction, payment_id_hint: Optional[str] = None) -> Dict[str, Any]:
    if txn.status in (TXN_SUCCESS, TXN_REFUNDED):
        return _result(txn, OUTCOME_UP_TO_DATE, "Transaction already up to date")

    theater = get_theater(db, txn.theater_id)
    resolved = gateway_for_transaction(theater, txn)
    adapter = get_adapter(resolved.provider, resolved.credentials)

    redis = await get_optional_redis()
    async with payment_lock(redis, txn.id):
        db.refresh(txn)
        if txn.status in (TXN_SUCCESS, TXN_REFUNDED):
            return _result(txn, OUTCOME_UP_TO_DATE, "Transaction already up to date")

        view = await adapter.fetch_status(
            payment_id=txn.gateway_payment_id or payment_id_hint,
            gateway_order_id=txn.gateway_order_id,
        )

        if view.status == STATUS_CAPTURED:
            problem = check_payment_view(txn, view, txn.gateway_order_id)
            if problem is not None:
                if txn.status != TXN_FAILED:
                    transaction_store.mark_failed(db, txn.id, problem.code, problem.message)
                    db.refresh(txn)
                logger.error("Sync of txn %s rejected gateway payment: %s", txn.id, problem.message)
                return _result(txn, OUTCOME_FAILED, problem.message, view.status)

            check_staleness(db, txn, None, "sync", enforce_policy=False)
            await complete_payment(
                db, txn,
                payment_id=view.payment_id,
                gateway_order_id=txn.gateway_order_id,
                signature=SENTINEL_SYNC,
                source="sync",
            )
            db.refresh(txn)
            logger.info("Sync converged txn %s (order %s) to success", txn.id, txn.order_id)
            return _result(txn, OUTCOME_SYNCED, "Payment synced", view.status)

        if view.status == STATUS_FAILED and txn.status != TXN_FAILED:
            transaction_store.mark_failed(db, txn.id, "PAYMENT_FAILED", "Payment failed at gateway")
            db.refresh(txn)
            logger.info("Sync marked txn %s failed", txn.id)
            return _result(txn, OUTCOME_FAILED, "Payment marked as failed", view.status)

    return _result(txn, OUTCOME_UP_TO_DATE, "Transaction already up to date", view.status)


async def sync_one(db: Session, selector: Dict[str, Any]) -> Dict[str, Any]:
    txn = locate_for_sync(db, selector)
    return await sync_transaction(db, txn, payment_id_hint=selector.get("razorpayPaymentId"))


async def sync_pending(
    db: Session,
    theater_id: str,
    limit: Optional[int] = None,
    min_age_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    if not theater_id:
        raise InvalidRequest("Theater ID is required")
    get_theater(db, theater_id)
    limit = limit or config.RECONCILER_BATCH_LIMIT
    min_age = config.RECONCILER_MIN_AGE_SECONDS if min_age_seconds is None else min_age_seconds
    created_before = datetime.utcnow() - timedelta(seconds=min_age)

    summary = SyncSummary()
    for txn in transaction_store.list_open_transactions(db, theater_id, limit, created_before):
        try:
            resolved = gateway_for_transaction(get_theater(db, txn.theater_id), txn)
        except PaymentError as e:
            logger.debug("Skipping txn %s: %s", txn.id, e.message)
            continue
        if resolved.provider in ("phonepe", "paytm"):
            continue

        summary.total += 1
        try:
            result = await sync_transaction(db, txn)
        except PaymentError as e:
            summary.errors.append({"transactionId": txn.id, "error": e.message})
            continue
        except Exception as e:
            logger.exception("Sync of txn %s failed", txn.id)
            summary.errors.append({"transactionId": txn.id, "error": str(e)})
            continue

        if result["outcome"] == OUTCOME_SYNCED:
            summary.synced += 1
        elif result["outcome"] == OUTCOME_FAILED:
            summary.failed += 1
        else:
            summary.alreadyUpToDate += 1

    logger.info(
        "Sync for theater %s: total=%d synced=%d failed=%d upToDate=%d errors=%d",
        theater_id, summary.total, summary.synced, summary.failed, summary.alreadyUpToDate, len(summary.errors),
    )
    return summary.model_dump()


def _has_configured_gateway(theater: Theater) -> bool:
    return any(resolve_gateway(theater, channel).is_active for channel in CHANNELS)


async def sync_all_theaters(db: Session, min_age_seconds: Optional[int] = None) -> Dict[str, Any]:
    totals = SyncSummary()
    swept = 0
    for theater in db.query(Theater).order_by(Theater.created_at.asc()).all():
        if not _has_configured_gateway(theater):
            continue
        swept += 1
        result = await sync_pending(db, theater.id, min_age_seconds=min_age_seconds)
        totals.total += result["total"]
        totals.synced += result["synced"]
        totals.failed += result["failed"]
        totals.alreadyUpToDate += result["alreadyUpToDate"]
        totals.errors.extend({"theaterId": theater.id, **e} for e in result["errors"])
    data = totals.model_dump()
    data["theaters"] = swept
    return data
