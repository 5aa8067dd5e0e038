"""
Gateway-initiated completion notices.

Webhooks converge on the same success path as interactive verification.
They answer 200 for everything except a bad/missing signature or a payload
without the identifiers we need, so gateways do not retry-storm us.
"""
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from yqpay.core.errors import InvalidRequest, PaymentError, WebhookSignatureInvalid
from yqpay.core.logging_config import mask, security_logger
from yqpay.core.redis import get_optional_redis
from yqpay.database.payment_models import SETTLED_STATUSES, PaymentTransaction
from yqpay.gateways import get_adapter
from yqpay.gateways.base import to_minor_units
from yqpay.gateways.cashfree_gateway import SUCCESS_STATUSES, WEBHOOK_EVENTS
from yqpay.services import transaction_store
from yqpay.services.payment_lock import payment_lock
from yqpay.services.payment_service import (
    AMOUNT_TOLERANCE_MINOR_UNITS,
    SENTINEL_WEBHOOK,
    check_staleness,
    complete_payment,
    gateway_for_transaction,
    get_theater,
)

logger = logging.getLogger(__name__)

RAZORPAY_CAPTURED_EVENT = "payment.captured"


def _ack(message: str, success: bool = True, **extra) -> Dict[str, Any]:
    body = {"success": success, "message": message}
    body.update(extra)
    return body


def _parse(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise InvalidRequest("Invalid webhook payload")
    if not isinstance(payload, dict):
        raise InvalidRequest("Invalid webhook payload")
    return payload


def _check_signature(
    txn: PaymentTransaction,
    resolved,
    secret: Optional[str],
    raw_body: bytes,
    signature: str,
    timestamp: Optional[str] = None,
) -> None:
    if not secret:
        logger.warning(
            "No webhook secret for theater %s (%s); accepting %s webhook for txn %s unverified",
            txn.theater_id, txn.gateway_channel, resolved.provider, txn.id,
        )
        return
    adapter = get_adapter(resolved.provider, resolved.credentials)
    if not adapter.verify_webhook(raw_body, signature, secret, timestamp):
        security_logger.critical(
            "ALERT %s webhook signature invalid: txn=%s gateway_order=%s signature=%s",
            resolved.provider, txn.id, txn.gateway_order_id, mask(signature),
        )
        raise WebhookSignatureInvalid()


async def _converge(
    db: Session,
    txn: PaymentTransaction,
    payment_id: Optional[str],
    gateway_order_id: Optional[str],
    amount_minor: Optional[int],
) -> Dict[str, Any]:
    redis = await get_optional_redis()
    async with payment_lock(redis, txn.id):
        db.refresh(txn)
        if txn.status in SETTLED_STATUSES:
            logger.info("Webhook for txn %s ignored; already %s", txn.id, txn.status)
            return _ack("Webhook acknowledged", status=txn.status)

        if amount_minor is not None:
            expected = to_minor_units(txn.amount_value)
            if abs(amount_minor - expected) > AMOUNT_TOLERANCE_MINOR_UNITS:
                message = f"Captured {amount_minor} does not match expected {expected}"
                transaction_store.mark_failed(db, txn.id, "AMOUNT_MISMATCH", message, payment_id=payment_id)
                security_logger.critical(
                    "ALERT webhook amount mismatch: txn=%s order=%s payment=%s %s",
                    txn.id, txn.order_id, payment_id, message,
                )
                return _ack("Payment amount mismatch", success=False)

        check_staleness(db, txn, None, "webhook", enforce_policy=False)

        await complete_payment(
            db, txn,
            payment_id=payment_id,
            gateway_order_id=gateway_order_id,
            signature=SENTINEL_WEBHOOK,
            source="webhook",
        )
    logger.info("Webhook converged txn %s (order %s) to success", txn.id, txn.order_id)
    return _ack("Payment processed", transactionId=txn.id)


async def handle_razorpay_webhook(db: Session, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    if not signature:
        raise WebhookSignatureInvalid("Missing webhook signature")

    payload = _parse(raw_body)
    event = payload.get("event")
    if event != RAZORPAY_CAPTURED_EVENT:
        logger.info("Razorpay webhook event %s acknowledged without processing", event)
        return _ack(f"Event {event} acknowledged")

    entity = (((payload.get("payload") or {}).get("payment") or {}).get("entity")) or {}
    payment_id = entity.get("id")
    gateway_order_id = entity.get("order_id")
    if not payment_id and not gateway_order_id:
        raise InvalidRequest("Missing payment details")

    try:
        txn = transaction_store.find_by_gateway_refs(db, gateway_order_id, payment_id)
        if txn is None:
            logger.warning("Razorpay webhook for unknown payment %s / order %s", payment_id, gateway_order_id)
            return _ack("Webhook received but transaction not found")

        theater = get_theater(db, txn.theater_id)
        resolved = gateway_for_transaction(theater, txn)
        _check_signature(txn, resolved, resolved.webhook_secret, raw_body, signature)

        amount = entity.get("amount")
        return await _converge(db, txn, payment_id, gateway_order_id or txn.gateway_order_id, int(amount) if amount is not None else None)
    except WebhookSignatureInvalid:
        raise
    except PaymentError as e:
        logger.error("Razorpay webhook processing failed: %s", e.message)
        return _ack(e.message, success=False)
    except Exception as e:
        logger.exception("Razorpay webhook processing failed")
        return _ack(str(e), success=False)


async def handle_cashfree_webhook(
    db: Session, raw_body: bytes, signature: Optional[str], timestamp: Optional[str]
) -> Dict[str, Any]:
    if not signature:
        raise WebhookSignatureInvalid("Missing webhook signature")

    payload = _parse(raw_body)
    event_type = payload.get("type")
    if event_type not in WEBHOOK_EVENTS:
        logger.info("Cashfree webhook type %s acknowledged without processing", event_type)
        return _ack(f"Event {event_type} acknowledged")

    data = payload.get("data") or {}
    order = data.get("order") or data
    payment = data.get("payment") or {}
    gateway_order_id = order.get("order_id") or order.get("cf_order_id")
    if not gateway_order_id:
        raise InvalidRequest("Missing order details")
    payment_id = payment.get("cf_payment_id") or order.get("cf_payment_id")
    payment_id = str(payment_id) if payment_id is not None else None
    payment_status = str(payment.get("payment_status") or order.get("payment_status") or "").upper()

    try:
        if payment_status and payment_status not in SUCCESS_STATUSES:
            logger.info("Cashfree webhook for %s with status %s acknowledged", gateway_order_id, payment_status)
            return _ack(f"Payment status {payment_status} acknowledged")

        txn = transaction_store.find_by_gateway_refs(db, str(gateway_order_id), payment_id)
        if txn is None:
            logger.warning("Cashfree webhook for unknown order %s", gateway_order_id)
            return _ack("Webhook received but transaction not found")

        theater = get_theater(db, txn.theater_id)
        resolved = gateway_for_transaction(theater, txn)
        secret = resolved.webhook_secret or (getattr(resolved.credentials, "secretKey", None) or "").strip() or None
        _check_signature(txn, resolved, secret, raw_body, signature, timestamp)

        amount = payment.get("payment_amount")
        if amount is None:
            amount = order.get("order_amount")
        amount_minor = to_minor_units(amount) if amount is not None else None
        return await _converge(db, txn, payment_id, str(gateway_order_id), amount_minor)
    except WebhookSignatureInvalid:
        raise
    except PaymentError as e:
        logger.error("Cashfree webhook processing failed: %s", e.message)
        return _ack(e.message, success=False)
    except Exception as e:
        logger.exception("Cashfree webhook processing failed")
        return _ack(str(e), success=False)
