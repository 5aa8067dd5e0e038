"""
Common interface for payment gateway adapters.

Adapters only talk to their gateway and check signatures. They never touch
the stores; every state change happens in the payment orchestrator.
"""
import abc
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# normalized PaymentView.status values
STATUS_PENDING = "pending"
STATUS_AUTHORIZED = "authorized"
STATUS_CAPTURED = "captured"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"


def to_minor_units(amount_major: Any) -> int:
    """Rupees (or any 2-decimal currency) to paise, rounding half up the way the gateways do."""
    return int(round(float(amount_major or 0) * 100))


@dataclass
class GatewayOrder:
    gateway_order_id: str
    amount: Any  # what the checkout widget expects (paise for Razorpay, rupees for Cashfree)
    currency: str
    extras: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentView:
    status: str
    amount: Optional[int] = None  # smallest currency unit
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.status in (STATUS_CAPTURED, STATUS_AUTHORIZED)


class PaymentGateway(abc.ABC):
    provider = ""

    @abc.abstractmethod
    async def create_order(self, amount: Any, currency: str, references: Dict[str, Any]) -> GatewayOrder:
        """Create the gateway-side order. `amount` is in major units."""

    @abc.abstractmethod
    async def verify_callback(self, params: Dict[str, Any]) -> bool:
        """Check what the checkout widget handed back to the client."""

    @abc.abstractmethod
    async def fetch_status(self, payment_id: Optional[str] = None, gateway_order_id: Optional[str] = None) -> PaymentView:
        ...

    @abc.abstractmethod
    def verify_webhook(self, raw_body: bytes, signature: str, secret: str, timestamp: Optional[str] = None) -> bool:
        ...

    def public_credentials(self) -> Dict[str, Any]:
        return {}
