import logging

from yqpay.core.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Verification failures, webhook signature failures and stale verifications.
security_logger = logging.getLogger("yqpay.security")


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Install a single stream handler on the root logger (idempotent)."""
    root = logging.getLogger()
    if not any(getattr(h, "_yqpay", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._yqpay = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))


def mask(value, keep: int = 8) -> str:
    """Truncate identifiers/signatures before they reach a log line."""
    if not value:
        return "MISSING"
    value = str(value)
    return value if len(value) <= keep else value[:keep] + "..."
