from yqpay.core.errors import GatewayNotConfigured
from yqpay.gateways.base import GatewayOrder, PaymentGateway, PaymentView
from yqpay.gateways.cashfree_gateway import CashfreeGateway
from yqpay.gateways.razorpay_gateway import RazorpayGateway
from yqpay.gateways.unsupported import UnsupportedGateway


def get_adapter(provider: str, credentials) -> PaymentGateway:
    """Build the adapter for a resolved provider and its credential record."""
    if credentials is None:
        raise GatewayNotConfigured(f"No credentials configured for {provider}")
    if provider == "razorpay":
        return RazorpayGateway(credentials)
    if provider == "cashfree":
        return CashfreeGateway(credentials)
    if provider in ("phonepe", "paytm"):
        return UnsupportedGateway(provider, credentials)
    raise GatewayNotConfigured()


__all__ = ["get_adapter", "GatewayOrder", "PaymentGateway", "PaymentView"]
