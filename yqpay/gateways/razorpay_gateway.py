import asyncio
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import razorpay
from razorpay.errors import BadRequestError, SignatureVerificationError

from yqpay.core.config import GATEWAY_TIMEOUT_SECONDS
from yqpay.core.errors import GatewayError
from yqpay.database.schemas import RazorpayConfig
from yqpay.gateways.base import (
    STATUS_AUTHORIZED,
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

# Razorpay rejects receipts longer than this
RECEIPT_MAX_LENGTH = 40

_STATUS_MAP = {
    "created": STATUS_PENDING,
    "authorized": STATUS_AUTHORIZED,
    "captured": STATUS_CAPTURED,
    "refunded": STATUS_REFUNDED,
    "failed": STATUS_FAILED,
}


def compute_signature(message: str, secret: str) -> str:
    return hmac.new((secret or "").encode(), message.encode(), hashlib.sha256).hexdigest()


def build_receipt(order_id: str) -> str:
    return f"order_{order_id}"[:RECEIPT_MAX_LENGTH]


class RazorpayGateway(PaymentGateway):
    provider = "razorpay"

    def __init__(self, config: RazorpayConfig, client: Optional[Any] = None):
        self.config = config
        self.key_id = (config.keyId or "").strip()
        self.key_secret = (config.keySecret or "").strip()
        self.client = client or razorpay.Client(auth=(self.key_id, self.key_secret))

    async def _call(self, fn, *args):
        """Run a blocking SDK call off the event loop with a hard deadline."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=GATEWAY_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            raise GatewayError(f"Razorpay did not respond within {GATEWAY_TIMEOUT_SECONDS:g}s")
        except BadRequestError as e:
            raise GatewayError(f"Razorpay rejected the request: {e}")
        except GatewayError:
            raise
        except Exception as e:
            raise GatewayError(f"Razorpay request failed: {e}")

    async def create_order(self, amount: Any, currency: str, references: Dict[str, Any]) -> GatewayOrder:
        amount_paise = to_minor_units(amount)
        receipt = build_receipt(references.get("orderId", ""))
        payload = {
            "amount": amount_paise,
            "currency": currency or "INR",
            "receipt": receipt,
            "notes": {
                "orderId": str(references.get("orderId") or ""),
                "orderNumber": str(references.get("orderNumber") or ""),
                "theaterId": str(references.get("theaterId") or ""),
                "theaterName": str(references.get("theaterName") or ""),
                "channel": str(references.get("channel") or ""),
            },
        }
        created = await self._call(self.client.order.create, payload)
        gateway_order_id = (created or {}).get("id")
        if not gateway_order_id:
            raise GatewayError("Razorpay did not return an order id")

        logger.info("Razorpay order %s created for order %s (%s paise)", gateway_order_id, references.get("orderId"), amount_paise)
        return GatewayOrder(
            gateway_order_id=gateway_order_id,
            amount=created.get("amount", amount_paise),
            currency=created.get("currency", payload["currency"]),
            extras={"keyId": self.key_id, "receipt": receipt},
        )

    async def verify_callback(self, params: Dict[str, Any]) -> bool:
        order_id = params.get("orderId")
        payment_id = params.get("paymentId")
        signature = params.get("signature")
        if not (order_id and payment_id and signature):
            return False

        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature,
            })
            return True
        except SignatureVerificationError:
            return False
        except Exception as e:
            logger.warning("Razorpay SDK signature check unavailable, using manual HMAC: %s", e)

        expected = compute_signature(f"{order_id}|{payment_id}", self.key_secret)
        return hmac.compare_digest(expected, str(signature))

    def _view(self, payment: Dict[str, Any]) -> PaymentView:
        return PaymentView(
            status=_STATUS_MAP.get(str(payment.get("status") or "").lower(), STATUS_PENDING),
            amount=payment.get("amount"),
            order_id=payment.get("order_id"),
            payment_id=payment.get("id"),
            raw=payment,
        )

    async def fetch_status(self, payment_id: Optional[str] = None, gateway_order_id: Optional[str] = None) -> PaymentView:
        if payment_id:
            payment = await self._call(self.client.payment.fetch, payment_id)
            return self._view(payment or {})

        if not gateway_order_id:
            raise GatewayError("Razorpay status lookup needs a payment id or order id")

        result = await self._call(self.client.order.payments, gateway_order_id)
        items = (result or {}).get("items") or []
        if not items:
            return PaymentView(status=STATUS_PENDING, order_id=gateway_order_id)
        captured = next((p for p in items if p.get("status") == "captured"), None)
        return self._view(captured or items[0])

    def verify_webhook(self, raw_body: bytes, signature: str, secret: str, timestamp: Optional[str] = None) -> bool:
        if not signature or not secret:
            return False
        expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)

    def public_credentials(self) -> Dict[str, Any]:
        return {"keyId": self.key_id}
