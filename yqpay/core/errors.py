"""
Payment pipeline error taxonomy.

Every failure the core can report is a ``PaymentError`` subclass carrying a
stable ``code`` and the HTTP status it maps to. Routers never sniff message
text; the exception handler in ``yqpay.main`` maps these centrally.
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    code = "PAYMENT_ERROR"
    http_status = 500

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, "code": self.code}


class InvalidRequest(PaymentError):
    """Invalid request"""
    code = "INVALID_REQUEST"
    http_status = 400


class InvalidChannel(InvalidRequest):
    """Invalid channel. Must be "kiosk" or "online\""""
    code = "INVALID_CHANNEL"


class OrderNotFound(PaymentError):
    """Order not found"""
    code = "ORDER_NOT_FOUND"
    http_status = 404


class TheaterNotFound(PaymentError):
    """Theater not found"""
    code = "THEATER_NOT_FOUND"
    http_status = 404


class TransactionNotFound(PaymentError):
    """Transaction not found"""
    code = "TRANSACTION_NOT_FOUND"
    http_status = 404


class GatewayNotConfigured(PaymentError):
    """Payment gateway not configured"""
    code = "GATEWAY_NOT_CONFIGURED"
    http_status = 400


class UnsupportedProvider(GatewayNotConfigured):
    """Payment provider not supported"""
    code = "UNSUPPORTED_PROVIDER"


class GatewayError(PaymentError):
    """Payment gateway request failed"""
    code = "GATEWAY_ERROR"
    http_status = 502

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["type"] = "gateway_error"
        return data


class VerificationFailed(PaymentError):
    """Payment verification failed"""
    code = "SIGNATURE_VERIFICATION_FAILED"
    http_status = 400


class AmountMismatch(VerificationFailed):
    """Payment amount does not match order amount"""
    code = "AMOUNT_MISMATCH"


class OrderMismatch(VerificationFailed):
    """Order ID does not match the transaction"""
    code = "ORDER_MISMATCH"


class StalePayment(VerificationFailed):
    """Payment verification window expired"""
    code = "STALE_PAYMENT"


class StoreError(PaymentError):
    """Payment store could not be updated"""
    code = "STORE_ERROR"
    http_status = 500


class WebhookSignatureInvalid(InvalidRequest):
    """Invalid webhook signature"""
    code = "WEBHOOK_SIGNATURE_INVALID"
