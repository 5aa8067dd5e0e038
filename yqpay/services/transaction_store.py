import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from yqpay.core.errors import StoreError
from yqpay.database.payment_models import (
    OPEN_STATUSES,
    SETTLED_STATUSES,
    TXN_FAILED,
    TXN_PENDING,
    TXN_SUCCESS,
    PaymentTransaction,
)

logger = logging.getLogger(__name__)


def create_transaction(
    db: Session,
    *,
    theater_id: str,
    order_id: str,
    provider: str,
    channel: str,
    gateway_order_id: Optional[str],
    amount: Any,
    currency: str = "INR",
    method: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    status: str = TXN_PENDING,
) -> PaymentTransaction:
    txn = PaymentTransaction(
        theater_id=str(theater_id),
        order_id=str(order_id),
        method=method,
        gateway_provider=provider,
        gateway_channel=channel,
        gateway_order_id=gateway_order_id,
        amount_value=amount,
        amount_currency=currency or "INR",
        status=status,
        meta=metadata or {},
    )
    try:
        db.add(txn)
        db.commit()
        db.refresh(txn)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError(f"Failed to save payment transaction: {e}")
    return txn


# ==========================
# Lookups
# ==========================
def get_transaction(db: Session, transaction_id: Optional[str]) -> Optional[PaymentTransaction]:
    if not transaction_id:
        return None
    return db.query(PaymentTransaction).filter(PaymentTransaction.id == str(transaction_id)).first()


def find_by_gateway_order_id(db: Session, gateway_order_id: Optional[str]) -> Optional[PaymentTransaction]:
    if not gateway_order_id:
        return None
    return (
        db.query(PaymentTransaction)
        .filter(PaymentTransaction.gateway_order_id == gateway_order_id)
        .order_by(PaymentTransaction.created_at.desc())
        .first()
    )


def find_by_gateway_payment_id(db: Session, payment_id: Optional[str]) -> Optional[PaymentTransaction]:
    if not payment_id:
        return None
    return (
        db.query(PaymentTransaction)
        .filter(PaymentTransaction.gateway_payment_id == payment_id)
        .order_by(PaymentTransaction.created_at.desc())
        .first()
    )


def find_latest_for_order(db: Session, order_id: Optional[str]) -> Optional[PaymentTransaction]:
    if not order_id:
        return None
    return (
        db.query(PaymentTransaction)
        .filter(PaymentTransaction.order_id == str(order_id))
        .order_by(PaymentTransaction.created_at.desc())
        .first()
    )


def find_by_gateway_refs(
    db: Session, gateway_order_id: Optional[str], payment_id: Optional[str]
) -> Optional[PaymentTransaction]:
    clauses = []
    if gateway_order_id:
        clauses.append(PaymentTransaction.gateway_order_id == gateway_order_id)
    if payment_id:
        clauses.append(PaymentTransaction.gateway_payment_id == payment_id)
    if not clauses:
        return None
    return (
        db.query(PaymentTransaction)
        .filter(or_(*clauses))
        .order_by(PaymentTransaction.created_at.desc())
        .first()
    )


def list_open_transactions(
    db: Session,
    theater_id: Optional[str] = None,
    limit: int = 100,
    created_before: Optional[datetime] = None,
) -> List[PaymentTransaction]:
    query = db.query(PaymentTransaction).filter(
        PaymentTransaction.status.in_(OPEN_STATUSES),
        PaymentTransaction.gateway_order_id.isnot(None),
        PaymentTransaction.gateway_order_id != "",
    )
    if theater_id:
        query = query.filter(PaymentTransaction.theater_id == str(theater_id))
    if created_before is not None:
        query = query.filter(PaymentTransaction.created_at <= created_before)
    return query.order_by(PaymentTransaction.created_at.asc()).limit(limit).all()


def paginate_transactions(
    db: Session,
    theater_id: str,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[PaymentTransaction], int]:
    query = db.query(PaymentTransaction).filter(PaymentTransaction.theater_id == str(theater_id))
    if status:
        query = query.filter(PaymentTransaction.status == status)
    if start_date:
        query = query.filter(PaymentTransaction.created_at >= start_date)
    if end_date:
        query = query.filter(PaymentTransaction.created_at <= end_date)
    total = query.count()
    rows = (
        query.order_by(PaymentTransaction.created_at.desc())
        .offset((max(page, 1) - 1) * limit)
        .limit(limit)
        .all()
    )
    return rows, total


# ==========================
# Guarded transitions
# ==========================
def _guarded_update(db: Session, transaction_id: str, where, values: Dict[str, Any]) -> bool:
    values = dict(values)
    values["updated_at"] = datetime.utcnow()
    try:
        result = db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_id, *where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError(f"Failed to update transaction {transaction_id}: {e}")
    db.expire_all()
    return result.rowcount == 1


def mark_success(
    db: Session,
    transaction_id: str,
    *,
    payment_id: Optional[str] = None,
    signature: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> bool:
    """
    Move to success unless already there (or refunded). Returns True only
    for the call that performed the transition.
    """
    now = datetime.utcnow()
    values: Dict[str, Any] = {
        "status": TXN_SUCCESS,
        "completed_at": now,
        "verified_at": now,
        "error": None,
    }
    if payment_id:
        values["gateway_payment_id"] = payment_id
    if signature:
        values["gateway_signature"] = signature
    if ip_address:
        values["verification_ip"] = ip_address
    return _guarded_update(
        db,
        transaction_id,
        [PaymentTransaction.status.notin_(SETTLED_STATUSES)],
        values,
    )


def mark_failed(
    db: Session,
    transaction_id: str,
    code: str,
    message: str,
    *,
    ip_address: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> bool:
    """Record a failure; never overrides success or refunded."""
    now = datetime.utcnow()
    values: Dict[str, Any] = {
        "status": TXN_FAILED,
        "failed_at": now,
        "error": {"code": code, "message": message, "timestamp": now.isoformat()},
    }
    if ip_address:
        values["verification_ip"] = ip_address
    if payment_id:
        # unverified input: kept for audit only, never used for lookups
        values["error"]["paymentId"] = payment_id
    return _guarded_update(
        db,
        transaction_id,
        [PaymentTransaction.status.notin_(SETTLED_STATUSES)],
        values,
    )


def attach_payment_id(db: Session, transaction_id: str, payment_id: str) -> bool:
    """Gateway ids may be filled in on any status, they are never overwritten."""
    return _guarded_update(
        db,
        transaction_id,
        [or_(PaymentTransaction.gateway_payment_id.is_(None), PaymentTransaction.gateway_payment_id == "")],
        {"gateway_payment_id": payment_id},
    )


def record_stale_verification(db: Session, txn: PaymentTransaction, ip_address: Optional[str], source: str) -> None:
    meta = dict(txn.meta or {})
    events = list(meta.get("staleVerifications") or [])
    events.append({"at": datetime.utcnow().isoformat(), "ip": ip_address, "source": source})
    meta["staleVerifications"] = events
    try:
        db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == txn.id)
            .values(meta=meta)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Could not record stale verification on %s: %s", txn.id, e)
    db.expire_all()
