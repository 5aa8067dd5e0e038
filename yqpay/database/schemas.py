# yqpay/database/schemas.py
# =========================================================
# Payment pipeline schemas (Pydantic v2)
# =========================================================
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class ConfigModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="allow")


# =========================================================
# Gateway configuration (stored on the theater, per channel)
# =========================================================
ProviderName = Literal["razorpay", "cashfree", "phonepe", "paytm", "none"]
ChannelName = Literal["kiosk", "online"]


class AcceptedMethods(ConfigModel):
    cash: Optional[bool] = None
    card: Optional[bool] = None
    upi: Optional[bool] = None
    netbanking: Optional[bool] = None
    wallet: Optional[bool] = None


class ProviderConfig(ConfigModel):
    enabled: bool = False
    testMode: bool = False
    webhookSecret: Optional[str] = None
    acceptedMethods: Optional[AcceptedMethods] = None

    # name of the public identifier and the required credential fields
    public_field: ClassVar[str] = ""
    required_fields: ClassVar[Tuple[str, ...]] = ()

    def has_credentials(self) -> bool:
        return all(str(getattr(self, f, "") or "").strip() for f in self.required_fields)

    def is_usable(self) -> bool:
        return bool(self.enabled) and self.has_credentials()

    def public_fields(self) -> Dict[str, Any]:
        return {self.public_field: getattr(self, self.public_field), "testMode": bool(self.testMode)}


class RazorpayConfig(ProviderConfig):
    provider: Literal["razorpay"] = "razorpay"
    keyId: Optional[str] = None
    keySecret: Optional[str] = None

    public_field: ClassVar[str] = "keyId"
    required_fields: ClassVar[Tuple[str, ...]] = ("keyId", "keySecret")


class CashfreeConfig(ProviderConfig):
    provider: Literal["cashfree"] = "cashfree"
    appId: Optional[str] = None
    secretKey: Optional[str] = None
    apiVersion: str = "2022-09-01"

    public_field: ClassVar[str] = "appId"
    required_fields: ClassVar[Tuple[str, ...]] = ("appId", "secretKey")


class PhonePeConfig(ProviderConfig):
    provider: Literal["phonepe"] = "phonepe"
    merchantId: Optional[str] = None
    saltKey: Optional[str] = None
    saltIndex: Optional[str] = None

    public_field: ClassVar[str] = "merchantId"
    required_fields: ClassVar[Tuple[str, ...]] = ("merchantId", "saltKey")


class PaytmConfig(ProviderConfig):
    provider: Literal["paytm"] = "paytm"
    merchantId: Optional[str] = None
    merchantKey: Optional[str] = None

    public_field: ClassVar[str] = "merchantId"
    required_fields: ClassVar[Tuple[str, ...]] = ("merchantId", "merchantKey")


ProviderCredentials = Union[RazorpayConfig, CashfreeConfig, PhonePeConfig, PaytmConfig]


class ChannelGatewayConfig(ConfigModel):
    provider: ProviderName = "none"
    enabled: Optional[bool] = None  # absent on legacy documents; only an explicit False disables
    acceptedMethods: Optional[AcceptedMethods] = None
    razorpay: Optional[RazorpayConfig] = None
    cashfree: Optional[CashfreeConfig] = None
    phonepe: Optional[PhonePeConfig] = None
    paytm: Optional[PaytmConfig] = None

    def record(self, provider: str) -> Optional[ProviderCredentials]:
        if provider not in ("razorpay", "cashfree", "phonepe", "paytm"):
            return None
        return getattr(self, provider)


class TheaterPaymentGateway(ConfigModel):
    kiosk: Optional[ChannelGatewayConfig] = None
    online: Optional[ChannelGatewayConfig] = None

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> "TheaterPaymentGateway":
        return cls.model_validate(raw or {})

    def for_channel(self, channel: str) -> Optional[ChannelGatewayConfig]:
        return self.kiosk if channel == "kiosk" else self.online


# =========================================================
# Request bodies
# =========================================================
class CreatePaymentOrderRequest(BaseModel):
    orderId: Optional[str] = None
    paymentMethod: Optional[str] = None


class VerifyPaymentRequest(ConfigModel):
    orderId: Optional[str] = None
    transactionId: Optional[str] = None
    razorpayOrderId: Optional[str] = None  # gateway order id (Cashfree reuses this field)
    paymentId: Optional[str] = None
    signature: Optional[str] = None
    ipAddress: Optional[str] = None


class SyncStatusRequest(BaseModel):
    orderId: Optional[str] = None
    razorpayPaymentId: Optional[str] = None
    razorpayOrderId: Optional[str] = None
    transactionId: Optional[str] = None


# =========================================================
# Responses
# =========================================================
class PublicGatewayConfig(BaseModel):
    provider: ProviderName
    isEnabled: bool
    acceptedMethods: Dict[str, bool]
    channel: ChannelName

    # <provider>: {publicFields}
    model_config = ConfigDict(extra="allow")


class CreatePaymentOrderResponse(BaseModel):
    gatewayOrderId: str
    amount: Union[int, float]
    currency: str
    provider: str
    channel: ChannelName
    orderType: Optional[str] = None
    transactionId: Optional[str] = None
    keyId: Optional[str] = None
    appId: Optional[str] = None
    receipt: Optional[str] = None
    paymentSessionId: Optional[str] = None
    paymentUrl: Optional[str] = None


class TransactionGateway(BaseModel):
    provider: str
    channel: str
    orderId: Optional[str] = None
    paymentId: Optional[str] = None
    signature: Optional[str] = None


class TransactionAmount(BaseModel):
    value: float
    currency: str


class TransactionView(BaseModel):
    id: str
    theaterId: str
    orderId: str
    method: Optional[str] = None
    gateway: TransactionGateway
    amount: TransactionAmount
    status: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    verifiedAt: Optional[datetime] = None
    verificationIp: Optional[str] = None

    @classmethod
    def from_model(cls, txn) -> "TransactionView":
        signature = txn.gateway_signature
        return cls(
            id=txn.id,
            theaterId=txn.theater_id,
            orderId=txn.order_id,
            method=txn.method,
            gateway=TransactionGateway(
                provider=txn.gateway_provider,
                channel=txn.gateway_channel,
                orderId=txn.gateway_order_id,
                paymentId=txn.gateway_payment_id,
                # never echo the full signature back
                signature=(signature[:8] + "...") if signature and len(signature) > 8 else signature,
            ),
            amount=TransactionAmount(value=float(txn.amount_value), currency=txn.amount_currency),
            status=txn.status,
            metadata=txn.meta or {},
            error=txn.error,
            createdAt=txn.created_at,
            updatedAt=txn.updated_at,
            completedAt=txn.completed_at,
            verifiedAt=txn.verified_at,
            verificationIp=txn.verification_ip,
        )


class SyncSummary(BaseModel):
    total: int = 0
    synced: int = 0
    failed: int = 0
    alreadyUpToDate: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
