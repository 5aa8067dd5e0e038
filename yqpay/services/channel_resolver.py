"""
Channel classification and gateway selection for a theater.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError

from yqpay.core.errors import InvalidChannel
from yqpay.database.schemas import ChannelGatewayConfig, ProviderCredentials, TheaterPaymentGateway

logger = logging.getLogger(__name__)

CHANNELS = ("kiosk", "online")
KIOSK_SOURCES = {"kiosk", "pos", "counter", "offline-pos", "offline_pos", "staff"}
ONLINE_SOURCES = {"online", "web", "qr", "qr_order", "qr_code", "customer", "app"}

# scan order when the configured provider is missing or unusable
AUTO_DETECT_ORDER = ("razorpay", "phonepe", "paytm", "cashfree")

METHOD_KEYS = ("cash", "card", "upi", "netbanking", "wallet")

# capability defaults, cash is decided per channel
PROVIDER_METHOD_DEFAULTS = {
    "razorpay": {"card": True, "upi": True, "netbanking": False, "wallet": False},
    "phonepe": {"card": False, "upi": True, "netbanking": False, "wallet": False},
    "paytm": {"card": True, "upi": True, "netbanking": True, "wallet": True},
    "cashfree": {"card": True, "upi": True, "netbanking": True, "wallet": True},
}

# instruments where a stored choice overrides the capability default
PROVIDER_OPTIONAL_METHODS = {
    "razorpay": ("netbanking", "wallet"),
    "phonepe": ("card",),
}


def determine_channel(source: Optional[str]) -> str:
    value = (source or "").strip().lower()
    if value in KIOSK_SOURCES:
        return "kiosk"
    if value in ONLINE_SOURCES:
        return "online"
    return "kiosk"


def channel_for_order(order: Dict[str, Any]) -> str:
    return determine_channel(order.get("source") or order.get("orderType") or "counter")


def validate_channel(channel: str) -> str:
    if channel not in CHANNELS:
        raise InvalidChannel()
    return channel


@dataclass
class ResolvedGateway:
    provider: str
    channel: str
    credentials: Optional[ProviderCredentials] = None
    config: Optional[ChannelGatewayConfig] = None

    @property
    def is_active(self) -> bool:
        return self.provider != "none" and self.credentials is not None

    @property
    def webhook_secret(self) -> Optional[str]:
        if self.credentials is None:
            return None
        return (self.credentials.webhookSecret or "").strip() or None


def load_channel_config(theater, channel: str) -> Optional[ChannelGatewayConfig]:
    """Parse the theater's stored gateway JSON for one channel."""
    try:
        gateway = TheaterPaymentGateway.from_raw(getattr(theater, "payment_gateway", None))
    except ValidationError as e:
        logger.error("Invalid payment gateway config on theater %s: %s", getattr(theater, "id", "?"), e)
        return None
    return gateway.for_channel(channel)


def resolve_provider(config: Optional[ChannelGatewayConfig], channel: str) -> ResolvedGateway:
    if config is None or config.enabled is False:
        return ResolvedGateway(provider="none", channel=channel, config=config)

    if config.provider != "none":
        record = config.record(config.provider)
        if record is not None and record.is_usable():
            return ResolvedGateway(provider=config.provider, channel=channel, credentials=record, config=config)
        logger.warning("Configured provider %s for %s is disabled or missing credentials", config.provider, channel)

    usable = [p for p in AUTO_DETECT_ORDER if (config.record(p) is not None and config.record(p).is_usable())]
    if not usable:
        return ResolvedGateway(provider="none", channel=channel, config=config)
    if len(usable) > 1:
        logger.warning("Several providers usable for %s (%s); picking %s", channel, ", ".join(usable), usable[0])
    return ResolvedGateway(provider=usable[0], channel=channel, credentials=config.record(usable[0]), config=config)


def resolve_gateway(theater, channel: str) -> ResolvedGateway:
    return resolve_provider(load_channel_config(theater, channel), channel)


def accepted_methods(resolved: ResolvedGateway) -> Dict[str, bool]:
    channel = resolved.channel
    config = resolved.config
    stored = None
    if config is not None:
        stored = config.acceptedMethods or (resolved.credentials.acceptedMethods if resolved.credentials else None)
    stored_map = stored.model_dump(exclude_none=True) if stored is not None else {}

    if not resolved.is_active:
        if stored_map:
            return {k: bool(stored_map.get(k, k == "cash" and channel == "kiosk")) for k in METHOD_KEYS}
        return default_accepted_methods(channel)

    if not stored_map or ("card" not in stored_map and "upi" not in stored_map):
        methods = dict(PROVIDER_METHOD_DEFAULTS.get(resolved.provider, {}))
        for key in PROVIDER_OPTIONAL_METHODS.get(resolved.provider, ()):
            if key in stored_map:
                methods[key] = bool(stored_map[key])
        methods["cash"] = channel == "kiosk"
        return {k: bool(methods.get(k, False)) for k in METHOD_KEYS}

    return {
        k: bool(stored_map[k]) if k in stored_map else (channel == "kiosk" if k == "cash" else False)
        for k in METHOD_KEYS
    }


def default_accepted_methods(channel: str) -> Dict[str, bool]:
    return {k: (k == "cash" and channel == "kiosk") for k in METHOD_KEYS}


def public_config(theater, channel: str) -> Dict[str, Any]:
    """What a checkout client may see: provider, methods and public keys only."""
    resolved = resolve_gateway(theater, channel)
    data: Dict[str, Any] = {
        "provider": resolved.provider,
        "isEnabled": resolved.is_active,
        "acceptedMethods": accepted_methods(resolved),
        "channel": channel,
    }
    if resolved.is_active:
        data[resolved.provider] = resolved.credentials.public_fields()
    return data


def fallback_public_config(channel: str) -> Dict[str, Any]:
    return {
        "provider": "none",
        "isEnabled": False,
        "acceptedMethods": {"cash": True, "card": False, "upi": False, "netbanking": False, "wallet": False},
        "channel": channel if channel in CHANNELS else "kiosk",
    }
