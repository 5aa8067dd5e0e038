# yqpay/routers/payment_routes.py
"""
Payment routes: public gateway config, order creation, verification,
reconciliation triggers and gateway webhooks.

PaymentError subclasses propagate to the handler in yqpay.main; only the
verify endpoint shapes its own failure bodies.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from yqpay.core.errors import PaymentError, StoreError, TransactionNotFound
from yqpay.core.redis import health_check_redis
from yqpay.database.database import get_db
from yqpay.database.schemas import (
    CreatePaymentOrderRequest,
    CreatePaymentOrderResponse,
    SyncStatusRequest,
    TransactionView,
    VerifyPaymentRequest,
)
from yqpay.services import payment_service, reconciler, transaction_store, webhook_service
from yqpay.services.channel_resolver import fallback_public_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

VERIFY_FAILED_MESSAGE = "Payment verification failed"


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


@router.get("/config/{theater_id}/{channel}")
def get_payment_config(theater_id: str, channel: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        return payment_service.get_payment_config(db, theater_id, channel)
    except PaymentError:
        raise
    except Exception as e:
        logger.error("Payment config lookup for theater %s failed: %s", theater_id, e)
        return fallback_public_config(channel)


@router.post(
    "/create-order",
    response_model=CreatePaymentOrderResponse,
    response_model_exclude_none=True,
)
async def create_order(payload: CreatePaymentOrderRequest, db: Session = Depends(get_db)):
    return await payment_service.create_payment_order(db, payload.orderId, payload.paymentMethod)


@router.post("/verify")
async def verify_payment(payload: VerifyPaymentRequest, request: Request, db: Session = Depends(get_db)):
    ip = client_ip(request) or payload.ipAddress
    try:
        return await payment_service.verify_payment(db, payload.model_dump(), ip_address=ip)
    except TransactionNotFound as e:
        return JSONResponse(status_code=e.http_status, content=e.to_dict())
    except StoreError as e:
        logger.error("Verified payment could not be stored (order %s): %s", payload.orderId, e.message)
        return JSONResponse(status_code=e.http_status, content=e.to_dict())
    except PaymentError as e:
        logger.warning("Verification failed for order %s: %s (%s)", payload.orderId, e.code, e.message)
        return JSONResponse(status_code=400, content={"success": False, "message": VERIFY_FAILED_MESSAGE})
    except Exception:
        logger.exception("Unexpected error verifying order %s", payload.orderId)
        return JSONResponse(status_code=400, content={"success": False, "message": VERIFY_FAILED_MESSAGE})


@router.post("/sync-status")
async def sync_status(payload: SyncStatusRequest, db: Session = Depends(get_db)):
    return await reconciler.sync_one(db, payload.model_dump())


@router.post("/sync-all-pending/{theater_id}")
async def sync_all_pending(theater_id: str, db: Session = Depends(get_db)):
    summary = await reconciler.sync_pending(db, theater_id)
    return {"success": True, **summary}


@router.post("/webhook/razorpay")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    raw_body = await request.body()
    return await webhook_service.handle_razorpay_webhook(db, raw_body, x_razorpay_signature)


@router.post("/webhook/cashfree")
@router.post("/cashfree/webhook", include_in_schema=False)
async def cashfree_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    x_webhook_timestamp: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    raw_body = await request.body()
    return await webhook_service.handle_cashfree_webhook(db, raw_body, x_webhook_signature, x_webhook_timestamp)


@router.get("/transactions/{theater_id}")
def list_transactions(
    theater_id: str,
    status: Optional[str] = None,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    rows, total = transaction_store.paginate_transactions(
        db, theater_id, status=status, start_date=startDate, end_date=endDate, page=page, limit=limit
    )
    return {
        "success": True,
        "data": [TransactionView.from_model(t).model_dump(mode="json") for t in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@router.get("/health")
async def payment_health() -> Dict[str, Any]:
    lock_backend = await health_check_redis()
    return {
        "status": "healthy" if lock_backend["status"] in ("ok", "disabled") else "degraded",
        "lockBackend": lock_backend,
    }
