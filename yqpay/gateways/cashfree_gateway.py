import base64
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from yqpay.core.config import BACKEND_URL, FRONTEND_URL, GATEWAY_TIMEOUT_SECONDS
from yqpay.core.errors import GatewayError
from yqpay.database.schemas import CashfreeConfig
from yqpay.gateways.base import (
    STATUS_CAPTURED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_REFUNDED,
    GatewayOrder,
    PaymentGateway,
    PaymentView,
    to_minor_units,
)

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.cashfree.com/pg"
PRODUCTION_BASE_URL = "https://api.cashfree.com/pg"
PAYMENT_METHODS = "cc,dc,upi,netbanking,wallet"

SUCCESS_STATUSES = ("SUCCESS", "CAPTURED", "COMPLETED")
FAILED_STATUSES = ("FAILED", "CANCELLED", "USER_DROPPED", "VOID")

WEBHOOK_EVENTS = ("ORDER.PAYMENT.SUCCESS", "PAYMENT_SUCCESS")


def _normalize(payment_status: Optional[str]) -> str:
    s = str(payment_status or "").upper()
    if s in SUCCESS_STATUSES:
        return STATUS_CAPTURED
    if s in FAILED_STATUSES:
        return STATUS_FAILED
    if s == "REFUNDED":
        return STATUS_REFUNDED
    return STATUS_PENDING


def compute_webhook_signature(raw_body: bytes, timestamp: str, secret: str) -> str:
    message = (timestamp or "").encode() + raw_body
    digest = hmac.new(secret.encode(), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class CashfreeGateway(PaymentGateway):
    provider = "cashfree"

    def __init__(self, config: CashfreeConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.app_id = (config.appId or "").strip()
        self.secret_key = (config.secretKey or "").strip()
        self.api_version = config.apiVersion or "2022-09-01"
        self.base_url = SANDBOX_BASE_URL if config.testMode else PRODUCTION_BASE_URL
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "x-client-id": self.app_id,
            "x-client-secret": self.secret_key,
            "x-api-version": self.api_version,
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}/{self.api_version}{path}"
        try:
            async with httpx.AsyncClient(timeout=GATEWAY_TIMEOUT_SECONDS, transport=self._transport) as client:
                resp = await client.request(method, url, json=json, headers=self._headers())
        except httpx.TimeoutException:
            raise GatewayError(f"Cashfree did not respond within {GATEWAY_TIMEOUT_SECONDS:g}s")
        except httpx.HTTPError as e:
            raise GatewayError(f"Cashfree request failed: {e}")

        if resp.status_code >= 400:
            try:
                body = resp.json()
                message = body.get("message") or (body.get("error") or {}).get("message")
            except ValueError:
                message = None
            raise GatewayError(f"Cashfree request failed: {message or resp.reason_phrase or resp.status_code}")
        return resp.json()

    async def create_order(self, amount: Any, currency: str, references: Dict[str, Any]) -> GatewayOrder:
        order_id = f"order_{references.get('orderId')}_{int(time.time() * 1000)}"
        customer = references.get("customer") or {}
        payload = {
            "order_id": order_id,
            "order_amount": float(amount or 0),
            "order_currency": currency or "INR",
            "order_note": f"Order {references.get('orderNumber') or ''} from {references.get('theaterName') or ''}".strip(),
            "customer_details": {
                "customer_id": str(customer.get("id") or "guest"),
                "customer_name": customer.get("name") or "Guest Customer",
                "customer_email": customer.get("email") or "",
                "customer_phone": customer.get("phone") or "",
            },
            "order_meta": {
                "return_url": f"{FRONTEND_URL}/payment/callback?order_id={{order_id}}",
                "notify_url": f"{BACKEND_URL}/api/payments/webhook/cashfree",
                "payment_methods": PAYMENT_METHODS,
            },
        }
        data = await self._request("POST", "/orders", json=payload)
        session_id = data.get("payment_session_id")
        gateway_order_id = data.get("order_id") or order_id

        logger.info("Cashfree order %s created for order %s", gateway_order_id, references.get("orderId"))
        return GatewayOrder(
            gateway_order_id=gateway_order_id,
            amount=payload["order_amount"],
            currency=payload["order_currency"],
            extras={
                "appId": self.app_id,
                "paymentSessionId": session_id,
                "paymentUrl": f"{self.base_url}/payments/{session_id}" if session_id else None,
            },
        )

    async def _payments(self, gateway_order_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/orders/{gateway_order_id}/payments")
        return data if isinstance(data, list) else []

    async def verify_callback(self, params: Dict[str, Any]) -> bool:
        gateway_order_id = params.get("orderId")
        if not gateway_order_id:
            return False
        payments = await self._payments(gateway_order_id)
        return any(str(p.get("payment_status") or "").upper() in SUCCESS_STATUSES for p in payments)

    async def fetch_status(self, payment_id: Optional[str] = None, gateway_order_id: Optional[str] = None) -> PaymentView:
        if not gateway_order_id:
            raise GatewayError("Cashfree status lookup needs the gateway order id")
        payments = await self._payments(gateway_order_id)
        if not payments:
            return PaymentView(status=STATUS_PENDING, order_id=gateway_order_id)

        chosen = next((p for p in payments if str(p.get("cf_payment_id")) == str(payment_id)), None) if payment_id else None
        if chosen is None:
            chosen = next(
                (p for p in payments if str(p.get("payment_status") or "").upper() in SUCCESS_STATUSES),
                payments[0],
            )
        return PaymentView(
            status=_normalize(chosen.get("payment_status")),
            amount=to_minor_units(chosen.get("payment_amount")) if chosen.get("payment_amount") is not None else None,
            order_id=chosen.get("order_id") or gateway_order_id,
            payment_id=str(chosen["cf_payment_id"]) if chosen.get("cf_payment_id") is not None else None,
            raw=chosen,
        )

    def verify_webhook(self, raw_body: bytes, signature: str, secret: str, timestamp: Optional[str] = None) -> bool:
        if not signature or not secret:
            return False
        expected = compute_webhook_signature(raw_body, timestamp or "", secret)
        return hmac.compare_digest(expected, signature)

    def public_credentials(self) -> Dict[str, Any]:
        return {"appId": self.app_id}
