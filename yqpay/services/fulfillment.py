"""
Post-payment fan-out: push, POS stream event, receipt print.

Nothing in here may fail a payment. Every step logs and carries on.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from yqpay.services.channel_resolver import channel_for_order
from yqpay.services.external import PushService, SettingsService, push_service, settings_service
from yqpay.services.pos_bus import PosEventBus, pos_bus
from yqpay.services.print_dispatcher import PrintDispatcher, build_print_job, print_dispatcher

logger = logging.getLogger(__name__)

ONLINE_PRINT_SOURCES = {"qr_code", "qr_order", "online", "web", "app", "customer"}


def determine_order_type(order: Dict[str, Any]) -> str:
    """'online' picks the mobile-order printer, everything else the POS printer."""
    if not order:
        return "pos"
    source = str(order.get("source") or "").lower()
    if source in ONLINE_PRINT_SOURCES:
        return "online"
    if source in ("pos", "kiosk", "staff", "counter", "offline-pos"):
        return "pos"
    if str(order.get("orderType") or "").lower() == "qr_order":
        return "online"
    return "pos"


def build_bill_data(order: Dict[str, Any]) -> Dict[str, Any]:
    pricing = order.get("pricing") or {}
    customer = order.get("customerInfo") or {}
    number = order.get("orderNumber") or str(order.get("_id"))
    created_at = order.get("createdAt") or datetime.utcnow()
    total = pricing.get("total") or 0
    return {
        "billNumber": number,
        "orderNumber": number,
        "date": created_at.isoformat() if isinstance(created_at, datetime) else created_at,
        "customerName": customer.get("name") or "Customer",
        "customerInfo": customer or None,
        "paymentMethod": (order.get("payment") or {}).get("method") or "cash",
        "items": order.get("items") or [],
        "subtotal": pricing.get("subtotal") or 0,
        "tax": pricing.get("taxAmount") or pricing.get("tax") or 0,
        "discount": pricing.get("discountAmount") or pricing.get("discount") or 0,
        "grandTotal": total,
        "total": total,
        "pricing": pricing,
    }


def theater_info(theater) -> Optional[Dict[str, Any]]:
    if theater is None:
        return None
    return {
        "name": theater.name,
        "address": theater.address,
        "phone": theater.phone,
        "email": theater.email,
        "gstNumber": theater.gst_number,
    }


class FulfillmentNotifier:
    def __init__(
        self,
        bus: PosEventBus = pos_bus,
        printer: PrintDispatcher = print_dispatcher,
        push: PushService = push_service,
        settings: SettingsService = settings_service,
    ):
        self.bus = bus
        self.printer = printer
        self.push = push
        self.settings = settings

    async def notify_paid(self, theater, order: Dict[str, Any], source: str = "verify") -> Dict[str, Any]:
        theater_id = str(order.get("theaterId") or getattr(theater, "id", ""))
        order_id = str(order.get("_id"))
        result = {"pushed": False, "broadcast": 0, "print": None}

        if channel_for_order(order) == "online":
            try:
                result["pushed"] = await self.push.send_pos_order_notification(theater_id, order, "paid")
            except Exception:
                logger.exception("Push for order %s failed", order_id)

        try:
            result["broadcast"] = await self.bus.broadcast(
                theater_id, {"type": "pos_order", "event": "paid", "orderId": order_id}
            )
        except Exception:
            logger.exception("POS broadcast for order %s failed", order_id)

        try:
            order_type = determine_order_type(order)
            printer_config = await self.settings.get_printer_config(theater_id, order_type)
            printer_name = (printer_config or {}).get("printerName")
            job = build_print_job(build_bill_data(order), printer_name, theater_info(theater))
            job["orderId"] = order_id
            result["print"] = await self.printer.enqueue(theater_id, job)
        except Exception:
            logger.exception("Print job for order %s failed", order_id)

        logger.info(
            "Fan-out for order %s (%s): push=%s broadcast=%s print=%s",
            order_id, source, result["pushed"], result["broadcast"], result["print"],
        )
        return result


notifier = FulfillmentNotifier()
