from typing import Any, Dict, Optional

from yqpay.core.errors import UnsupportedProvider
from yqpay.gateways.base import GatewayOrder, PaymentGateway, PaymentView


class UnsupportedGateway(PaymentGateway):
    """PhonePe / Paytm: configurable on a theater but not wired to a gateway yet."""

    def __init__(self, provider: str, config: Any = None):
        self.provider = provider
        self.config = config

    def _fail(self):
        raise UnsupportedProvider(f"{self.provider} payments are not supported yet")

    async def create_order(self, amount: Any, currency: str, references: Dict[str, Any]) -> GatewayOrder:
        self._fail()

    async def verify_callback(self, params: Dict[str, Any]) -> bool:
        self._fail()

    async def fetch_status(self, payment_id: Optional[str] = None, gateway_order_id: Optional[str] = None) -> PaymentView:
        self._fail()

    def verify_webhook(self, raw_body: bytes, signature: str, secret: str, timestamp: Optional[str] = None) -> bool:
        self._fail()

    def public_credentials(self) -> Dict[str, Any]:
        return {"merchantId": getattr(self.config, "merchantId", None)}
