"""
Payment orchestration: gateway order creation, callback verification and the
success path shared by verification, webhooks and the reconciler.

The transaction row is authoritative. Once it is ``success`` nothing here
moves it back; order mirroring, stock recording and fan-out are retried by
whichever path arrives next.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from yqpay.core import config
from yqpay.core.errors import (
    AmountMismatch,
    GatewayError,
    GatewayNotConfigured,
    InvalidRequest,
    OrderMismatch,
    OrderNotFound,
    StalePayment,
    StoreError,
    TheaterNotFound,
    TransactionNotFound,
    VerificationFailed,
)
from yqpay.core.logging_config import mask, security_logger
from yqpay.core.redis import get_optional_redis
from yqpay.database.models import Theater
from yqpay.database.payment_models import TXN_SUCCESS, PaymentTransaction
from yqpay.database.schemas import TransactionView
from yqpay.gateways import get_adapter
from yqpay.gateways.base import PaymentView, to_minor_units
from yqpay.services import order_store, transaction_store
from yqpay.services.channel_resolver import (
    ResolvedGateway,
    channel_for_order,
    fallback_public_config,
    public_config,
    resolve_gateway,
    validate_channel,
)
from yqpay.services.external import ExternalServiceError, stock_service
from yqpay.services.fulfillment import notifier
from yqpay.services.payment_lock import payment_lock

logger = logging.getLogger(__name__)

# a stock claim older than this is considered abandoned by a crashed worker
STOCK_CLAIM_STALE_SECONDS = 300
AMOUNT_TOLERANCE_MINOR_UNITS = 1

SENTINEL_WEBHOOK = "webhook"
SENTINEL_SYNC = "sync"


# ==========================
# Lookups
# ==========================
def get_theater(db: Session, theater_id: Optional[str]) -> Theater:
    theater = db.query(Theater).filter(Theater.id == str(theater_id)).first() if theater_id else None
    if theater is None:
        raise TheaterNotFound()
    return theater


def gateway_for_transaction(theater: Theater, txn: PaymentTransaction) -> ResolvedGateway:
    """Re-resolve the channel's gateway, pinned to the provider the transaction was created with."""
    resolved = resolve_gateway(theater, txn.gateway_channel)
    if resolved.provider == txn.gateway_provider:
        return resolved
    record = resolved.config.record(txn.gateway_provider) if resolved.config is not None else None
    if record is not None and record.has_credentials():
        logger.warning(
            "Theater %s %s gateway is now %s; verifying transaction %s against %s",
            theater.id, txn.gateway_channel, resolved.provider, txn.id, txn.gateway_provider,
        )
        return ResolvedGateway(txn.gateway_provider, txn.gateway_channel, record, resolved.config)
    raise GatewayNotConfigured(f"{txn.gateway_provider} is no longer configured for {txn.gateway_channel} orders")


# ==========================
# Public config
# ==========================
def get_payment_config(db: Session, theater_id: str, channel: str) -> Dict[str, Any]:
    validate_channel(channel)
    theater = get_theater(db, theater_id)
    try:
        return public_config(theater, channel)
    except Exception as e:
        logger.warning("Returning default payment config for theater %s/%s: %s", theater_id, channel, e)
        return fallback_public_config(channel)


# ==========================
# CreatePaymentOrder
# ==========================
async def create_payment_order(db: Session, order_id: Optional[str], payment_method: Optional[str] = None) -> Dict[str, Any]:
    if not order_id:
        raise InvalidRequest("Order ID is required")

    record = order_store.find_order(db, order_id)
    if record is None:
        raise OrderNotFound()
    theater = get_theater(db, record.theater_id)

    channel = channel_for_order(record.data)
    resolved = resolve_gateway(theater, channel)
    if not resolved.is_active:
        raise GatewayNotConfigured(f"Payment gateway not configured for {channel} orders")

    if payment_method:
        try:
            record.data = order_store.set_fields(db, record, {"payment.method": payment_method}) or record.data
        except StoreError as e:
            logger.warning("Could not record payment method on order %s: %s", order_id, e)

    pricing = record.data.get("pricing") or {}
    total = pricing.get("total") or 0
    currency = pricing.get("currency") or "INR"
    if float(total) <= 0:
        raise InvalidRequest("Order total must be greater than zero")

    customer = record.data.get("customerInfo") or {}
    adapter = get_adapter(resolved.provider, resolved.credentials)
    gateway_order = await adapter.create_order(total, currency, {
        "orderId": record.id,
        "orderNumber": record.data.get("orderNumber"),
        "theaterId": theater.id,
        "theaterName": theater.name,
        "channel": channel,
        "customer": customer,
    })

    txn_id = None
    try:
        txn = transaction_store.create_transaction(
            db,
            theater_id=theater.id,
            order_id=record.id,
            provider=resolved.provider,
            channel=channel,
            gateway_order_id=gateway_order.gateway_order_id,
            amount=total,
            currency=currency,
            method=(record.data.get("payment") or {}).get("method") or payment_method or "card",
            metadata={
                "orderNumber": record.data.get("orderNumber"),
                "customerName": customer.get("name"),
                "paymentMethod": payment_method,
            },
        )
        txn_id = txn.id
    except StoreError as e:
        # the gateway order exists; webhook / reconciler locate it by gateway ids
        logger.error("Transaction not persisted for gateway order %s: %s", gateway_order.gateway_order_id, e)

    logger.info(
        "Payment order created: order=%s provider=%s channel=%s gateway_order=%s txn=%s",
        record.id, resolved.provider, channel, gateway_order.gateway_order_id, txn_id,
    )
    response = {
        "gatewayOrderId": gateway_order.gateway_order_id,
        "amount": gateway_order.amount,
        "currency": gateway_order.currency,
        "provider": resolved.provider,
        "channel": channel,
        "orderType": record.data.get("orderType"),
        "transactionId": txn_id,
    }
    response.update(gateway_order.extras)
    return response


# ==========================
# Mirror to order + stock
# ==========================
def _aggregate_items(items) -> "OrderedDict[str, int]":
    quantities: "OrderedDict[str, int]" = OrderedDict()
    for item in items or []:
        product_id = item.get("productId")
        qty = int(item.get("quantity") or 0)
        if not product_id or qty <= 0:
            continue
        key = str(product_id)
        quantities[key] = quantities.get(key, 0) + qty
    return quantities


async def record_order_stock(db: Session, record: order_store.OrderRecord, theater_id: str) -> bool:
    """
    Record stock usage for an order at most once per product.

    A durable claim keeps concurrent mirrors from recording twice; the
    per-product ledger lets a retry after a partial failure send only what
    is missing. Returns True once the order is fully recorded.
    """
    now = datetime.utcnow()

    def claim(order):
        if order.get("stockRecorded"):
            return None
        claimed_at = order_store.as_datetime(order.get("stockClaimedAt"))
        if claimed_at and now - claimed_at < timedelta(seconds=STOCK_CLAIM_STALE_SECONDS):
            return None
        return {"stockClaimedAt": now}

    claimed = order_store.update_order(db, record, claim)
    if claimed is None:
        return bool((order_store.find_order(db, record.id) or record).data.get("stockRecorded"))

    done = set(claimed.get("stockRecordedItems") or [])
    order_date = claimed.get("createdAt") or now
    complete = True
    for product_id, qty in _aggregate_items(claimed.get("items")).items():
        if product_id in done:
            continue
        try:
            await stock_service.record_usage(theater_id, product_id, qty, order_date)
        except ExternalServiceError as e:
            logger.error("Stock usage for order %s product %s failed: %s", record.id, product_id, e)
            complete = False
            break
        done.add(product_id)
        order_store.set_fields(db, record, {"stockRecordedItems": sorted(done)})

    if complete:
        order_store.set_fields(db, record, {"stockRecorded": True, "stockClaimedAt": None})
        logger.info("Stock recorded for order %s", record.id)
    else:
        order_store.set_fields(db, record, {"stockClaimedAt": None})
    return complete


async def update_order_payment_status(
    db: Session,
    txn: PaymentTransaction,
    payment_id: Optional[str],
    gateway_order_id: Optional[str],
    signature: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Reflect a successful transaction onto its order: payment paid, order
    confirmed, stock recorded once. Returns the current order document.
    """
    record = order_store.find_order(db, txn.order_id)
    if record is None:
        logger.error("Payment %s verified but order %s not found; mirror skipped", txn.id, txn.order_id)
        return None

    now = datetime.utcnow().isoformat()

    def mirror(order):
        payment = order.get("payment") or {}
        if (
            order.get("status") == "confirmed"
            and payment.get("status") == "paid"
            and payment.get("transactionId") == txn.id
        ):
            return None
        updates = {
            "payment.status": "paid",
            "payment.paidAt": now,
            "payment.transactionId": txn.id,
            "payment.razorpayPaymentId": payment_id,
            "payment.razorpayOrderId": gateway_order_id,
            "status": "confirmed",
        }
        if not payment:
            updates["payment.method"] = txn.method or "gateway"
        if signature:
            updates["payment.razorpaySignature"] = signature
        return updates

    mirrored = order_store.update_order(db, record, mirror)
    if mirrored is not None:
        logger.info("Order %s confirmed (payment %s)", record.id, mask(payment_id))

    try:
        await record_order_stock(db, record, txn.theater_id)
    except StoreError as e:
        logger.error("Stock bookkeeping for order %s failed: %s", record.id, e)

    current = order_store.find_order(db, record.id)
    return current.data if current else mirrored


async def complete_payment(
    db: Session,
    txn: PaymentTransaction,
    *,
    payment_id: Optional[str],
    gateway_order_id: Optional[str],
    signature: Optional[str],
    ip_address: Optional[str] = None,
    source: str = "verify",
) -> Dict[str, Any]:
    """Success path shared by verify, webhook and sync."""
    stored_signature = None
    if txn.gateway_provider == "razorpay" and signature not in (SENTINEL_WEBHOOK, SENTINEL_SYNC):
        stored_signature = signature
    transitioned = transaction_store.mark_success(
        db, txn.id, payment_id=payment_id, signature=stored_signature, ip_address=ip_address
    )
    db.refresh(txn)
    if not transitioned and txn.status != TXN_SUCCESS:
        raise StoreError(f"Transaction {txn.id} is {txn.status}; cannot mark success")
    if not transitioned and payment_id and not txn.gateway_payment_id:
        transaction_store.attach_payment_id(db, txn.id, payment_id)
        db.refresh(txn)

    order = None
    try:
        order = await update_order_payment_status(
            db, txn, payment_id or txn.gateway_payment_id, gateway_order_id or txn.gateway_order_id, signature
        )
    except Exception:
        logger.exception("Mirroring payment %s onto order %s failed", txn.id, txn.order_id)

    # every completion fans out again, repeats included; stock above stays once-only
    if order is not None and order.get("status") == "confirmed":
        theater = db.query(Theater).filter(Theater.id == txn.theater_id).first()
        try:
            await notifier.notify_paid(theater, order, source=source)
        except Exception:
            logger.exception("Fan-out for order %s (%s) failed", txn.order_id, source)

    return {"transitioned": transitioned, "order": order, "transaction": txn}


# ==========================
# VerifyPayment
# ==========================
def locate_transaction(db: Session, req: Dict[str, Any]) -> PaymentTransaction:
    txn = (
        transaction_store.get_transaction(db, req.get("transactionId"))
        or transaction_store.find_by_gateway_order_id(db, req.get("razorpayOrderId"))
        or transaction_store.find_by_gateway_payment_id(db, req.get("paymentId"))
        or transaction_store.find_latest_for_order(db, req.get("orderId"))
    )
    if txn is None:
        raise TransactionNotFound()
    return txn


def raise_verification_failure(db: Session, txn: PaymentTransaction, exc: VerificationFailed, req: Dict[str, Any], ip: Optional[str]):
    transaction_store.mark_failed(db, txn.id, exc.code, exc.message, ip_address=ip, payment_id=req.get("paymentId"))
    security_logger.critical(
        "ALERT payment verification failed: code=%s txn=%s order=%s gateway_order=%s payment=%s signature=%s ip=%s",
        exc.code, txn.id, txn.order_id, req.get("razorpayOrderId") or txn.gateway_order_id,
        req.get("paymentId"), mask(req.get("signature")), ip or "unknown",
    )
    raise exc


def check_payment_view(txn: PaymentTransaction, view: PaymentView, gateway_order_id: str) -> Optional[VerificationFailed]:
    if view.order_id and gateway_order_id and view.order_id != gateway_order_id:
        return OrderMismatch("Payment belongs to a different gateway order")
    if not view.is_paid:
        return VerificationFailed(f"Payment status is {view.status}")
    if view.amount is not None:
        expected = to_minor_units(txn.amount_value)
        if abs(int(view.amount) - expected) > AMOUNT_TOLERANCE_MINOR_UNITS:
            return AmountMismatch(f"Captured {view.amount} does not match expected {expected}")
    return None


def check_staleness(
    db: Session, txn: PaymentTransaction, ip: Optional[str], source: str, enforce_policy: bool = True
) -> None:
    """Record verifications past the window; gateway-originated paths never enforce the reject policy."""
    created_at = txn.created_at or datetime.utcnow()
    age = datetime.utcnow() - created_at
    if age <= timedelta(minutes=config.PAYMENT_VERIFICATION_WINDOW_MINUTES):
        return
    security_logger.warning(
        "Stale payment verification: txn=%s age=%ss window=%sm ip=%s policy=%s",
        txn.id, int(age.total_seconds()), config.PAYMENT_VERIFICATION_WINDOW_MINUTES, ip or "unknown",
        config.STALE_VERIFICATION_POLICY,
    )
    transaction_store.record_stale_verification(db, txn, ip, source)
    if enforce_policy and config.STALE_VERIFICATION_POLICY == "reject":
        raise StalePayment()


async def verify_payment(db: Session, req: Dict[str, Any], ip_address: Optional[str] = None) -> Dict[str, Any]:
    ip = ip_address or req.get("ipAddress")
    txn = locate_transaction(db, req)

    if req.get("orderId") and str(req["orderId"]) != txn.order_id:
        security_logger.critical(
            "ALERT order mismatch on verify: txn=%s expected_order=%s got=%s ip=%s",
            txn.id, txn.order_id, req.get("orderId"), ip or "unknown",
        )
        raise OrderMismatch()

    redis = await get_optional_redis()
    async with payment_lock(redis, txn.id):
        db.refresh(txn)

        if txn.status == TXN_SUCCESS:
            logger.info("Transaction %s already verified; re-running mirror", txn.id)
            result = await complete_payment(
                db, txn,
                payment_id=txn.gateway_payment_id or req.get("paymentId"),
                gateway_order_id=txn.gateway_order_id,
                signature=txn.gateway_signature,
                source="verify",
            )
            return _verify_response(result)

        check_staleness(db, txn, ip, "verify")

        theater = get_theater(db, txn.theater_id)
        resolved = gateway_for_transaction(theater, txn)
        adapter = get_adapter(resolved.provider, resolved.credentials)

        gateway_order_id = req.get("razorpayOrderId") or txn.gateway_order_id
        if txn.gateway_order_id and gateway_order_id != txn.gateway_order_id:
            security_logger.critical(
                "ALERT gateway order mismatch on verify: txn=%s stored=%s got=%s ip=%s",
                txn.id, txn.gateway_order_id, gateway_order_id, ip or "unknown",
            )
            raise OrderMismatch()

        payment_id = req.get("paymentId")
        signature = req.get("signature")

        if resolved.provider == "razorpay":
            if not (gateway_order_id and payment_id and signature):
                raise InvalidRequest("Missing payment details: orderId, paymentId and signature are required")
            ok = await adapter.verify_callback({"orderId": gateway_order_id, "paymentId": payment_id, "signature": signature})
            if not ok:
                raise_verification_failure(db, txn, VerificationFailed("Payment signature verification failed"), req, ip)
            try:
                view = await adapter.fetch_status(payment_id=payment_id)
            except GatewayError as e:
                # the signature already binds order and payment
                logger.warning("Could not fetch Razorpay payment %s for amount check: %s", payment_id, e)
                view = None
        else:
            if not gateway_order_id:
                raise InvalidRequest("Missing gateway order id")
            ok = await adapter.verify_callback({"orderId": gateway_order_id})
            if not ok:
                raise_verification_failure(db, txn, VerificationFailed("No successful payment found for this order"), req, ip)
            try:
                view = await adapter.fetch_status(payment_id=payment_id, gateway_order_id=gateway_order_id)
                payment_id = payment_id or view.payment_id
            except GatewayError as e:
                logger.warning("Could not fetch %s payment for order %s: %s", resolved.provider, gateway_order_id, e)
                view = None

        if view is not None:
            problem = check_payment_view(txn, view, gateway_order_id)
            if problem is not None:
                raise_verification_failure(db, txn, problem, req, ip)

        logger.info(
            "Payment verified: txn=%s order=%s provider=%s payment=%s ip=%s",
            txn.id, txn.order_id, resolved.provider, mask(payment_id), ip or "unknown",
        )
        result = await complete_payment(
            db, txn,
            payment_id=payment_id or gateway_order_id,
            gateway_order_id=gateway_order_id,
            signature=signature,
            ip_address=ip,
            source="verify",
        )
    return _verify_response(result)


def _verify_response(result: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "success": True,
        "order": result["order"],
        "transaction": TransactionView.from_model(result["transaction"]).model_dump(mode="json"),
    }

