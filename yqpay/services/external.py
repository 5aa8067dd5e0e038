"""
HTTP clients for the collaborators the payment pipeline depends on:
stock ledger, theater settings (printer selection) and FCM push.

Each one is disabled when its URL / key is empty.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from yqpay.core.config import (
    EXTERNAL_SERVICE_TIMEOUT_SECONDS,
    FIREBASE_SERVER_KEY,
    SETTINGS_SERVICE_URL,
    STOCK_SERVICE_URL,
)

logger = logging.getLogger(__name__)

FCM_ENDPOINT = "https://fcm.googleapis.com/fcm/send"


class ExternalServiceError(Exception):
    pass


class _HttpService:
    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or "").rstrip("/")
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(timeout=EXTERNAL_SERVICE_TIMEOUT_SECONDS, transport=self._transport) as client:
            resp = await client.request(method, url, **kwargs)
        resp.raise_for_status()
        return resp


class StockService(_HttpService):
    def __init__(self, base_url: str = STOCK_SERVICE_URL, transport=None):
        super().__init__(base_url, transport)

    async def record_usage(self, theater_id: str, product_id: str, quantity: int, order_date: Any) -> None:
        if not self.enabled:
            logger.debug("Stock service disabled; not recording %s x%s", product_id, quantity)
            return
        if isinstance(order_date, datetime):
            order_date = order_date.isoformat()
        try:
            await self._request(
                "POST",
                f"{self.base_url}/theaters/{theater_id}/stock/usage",
                json={"productId": product_id, "quantity": quantity, "orderDate": order_date},
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Stock usage for {product_id} failed: {e}")


class SettingsService(_HttpService):
    def __init__(self, base_url: str = SETTINGS_SERVICE_URL, transport=None):
        super().__init__(base_url, transport)

    async def get_printer_config(self, theater_id: str, order_type: str) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        try:
            resp = await self._request("GET", f"{self.base_url}/theaters/{theater_id}/settings")
            settings = resp.json() or {}
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Could not fetch printer config for theater %s: %s", theater_id, e)
            return None
        key = "onlineOrderPrinterConfig" if order_type == "online" else "posPrinterConfig"
        return settings.get(key) or None


def build_pos_order_payload(order: Dict[str, Any], event: str) -> Dict[str, Any]:
    pricing = order.get("pricing") or {}
    customer = order.get("customerInfo") or {}
    payment = order.get("payment") or {}
    created_at = order.get("createdAt") or datetime.utcnow()
    return {
        "type": "pos_order",
        "event": event or "created",
        "orderId": str(order.get("_id")),
        "orderNumber": order.get("orderNumber"),
        "status": order.get("status"),
        "source": order.get("source"),
        "orderType": order.get("orderType"),
        "total": pricing.get("total") or 0,
        "subtotal": pricing.get("subtotal") or 0,
        "taxAmount": pricing.get("taxAmount") or 0,
        "paymentMethod": payment.get("method") or "cash",
        "paymentStatus": payment.get("status") or "pending",
        "customerName": customer.get("name") or "Customer",
        "qrName": order.get("qrName"),
        "seat": order.get("seat"),
        "createdAt": created_at.isoformat() if isinstance(created_at, datetime) else created_at,
    }


class PushService:
    def __init__(self, server_key: str = FIREBASE_SERVER_KEY, transport=None, endpoint: str = FCM_ENDPOINT):
        self.server_key = server_key
        self.endpoint = endpoint
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.server_key)

    async def send_pos_order_notification(self, theater_id: str, order: Dict[str, Any], event: str = "created") -> bool:
        if not self.enabled:
            logger.debug("FIREBASE_SERVER_KEY not set; POS push disabled")
            return False
        data = build_pos_order_payload(order, event)
        body = {
            "to": f"/topics/pos_{theater_id}",
            "data": data,
            "notification": {
                "title": f"New POS Order {data['orderNumber'] or ''}".strip(),
                "body": f"Amount: ₹{data['total']} • {str(data['paymentMethod']).upper()}",
            },
            "priority": "high",
            "time_to_live": 3600,
            "collapse_key": f"pos_order_{theater_id}",
        }
        try:
            async with httpx.AsyncClient(timeout=EXTERNAL_SERVICE_TIMEOUT_SECONDS, transport=self._transport) as client:
                resp = await client.post(self.endpoint, json=body, headers={"Authorization": f"key={self.server_key}"})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to send POS push for order %s: %s", data["orderId"], e)
            return False
        logger.info("POS push sent to pos_%s for order %s (%s)", theater_id, data["orderId"], event)
        return True


stock_service = StockService()
settings_service = SettingsService()
push_service = PushService()
