"""
Shared fixtures for the payment pipeline tests.

SQLite in memory (one shared connection), Redis disabled, gateway adapters
replaced by FakeGateway, external collaborators replaced by mocks.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ.setdefault("SECRET_KEY", "test-secret")

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from yqpay.database import models, payment_models  # noqa: F401
from yqpay.database.database import Base
from yqpay.database.models import Theater
from yqpay.database.payment_models import TXN_PENDING, PaymentTransaction
from yqpay.gateways.base import STATUS_CAPTURED, GatewayOrder, PaymentGateway, PaymentView
from yqpay.gateways.razorpay_gateway import compute_signature
from yqpay.services import order_store, payment_service, reconciler

RZP_KEY_ID = "rzp_test_A"
RZP_SECRET = "S"
RZP_WEBHOOK_SECRET = "whsec_rzp"
CF_APP_ID = "cf_app"
CF_SECRET = "cf_secret"


def razorpay_channel(webhook_secret: Optional[str] = RZP_WEBHOOK_SECRET, **extra) -> Dict[str, Any]:
    cfg = {
        "provider": "razorpay",
        "enabled": True,
        "razorpay": {
            "enabled": True,
            "keyId": RZP_KEY_ID,
            "keySecret": RZP_SECRET,
            "testMode": True,
        },
    }
    if webhook_secret:
        cfg["razorpay"]["webhookSecret"] = webhook_secret
    cfg.update(extra)
    return cfg


def cashfree_channel(webhook_secret: Optional[str] = None) -> Dict[str, Any]:
    cfg = {
        "provider": "cashfree",
        "cashfree": {"enabled": True, "appId": CF_APP_ID, "secretKey": CF_SECRET, "testMode": True},
    }
    if webhook_secret:
        cfg["cashfree"]["webhookSecret"] = webhook_secret
    return cfg


def razorpay_signature(gateway_order_id: str, payment_id: str, secret: str = RZP_SECRET) -> str:
    return compute_signature(f"{gateway_order_id}|{payment_id}", secret)


class FakeGateway(PaymentGateway):
    """Scriptable adapter; records every call."""

    def __init__(self, provider: str = "razorpay"):
        self.provider = provider
        self.calls: List[tuple] = []
        self.order_counter = 0
        self.callback_ok = True
        self.view = PaymentView(status=STATUS_CAPTURED, amount=12500, order_id="g1", payment_id="p1")
        self.fetch_error: Optional[Exception] = None

    async def create_order(self, amount, currency, references):
        self.calls.append(("create_order", amount, currency, references))
        self.order_counter += 1
        extras = {"keyId": RZP_KEY_ID, "receipt": f"order_{references['orderId']}"}
        if self.provider == "cashfree":
            extras = {"appId": CF_APP_ID, "paymentSessionId": "session_1", "paymentUrl": "https://x/payments/session_1"}
        return GatewayOrder(f"g{self.order_counter}", int(round(float(amount) * 100)), currency, extras)

    async def verify_callback(self, params):
        self.calls.append(("verify_callback", params))
        return self.callback_ok

    async def fetch_status(self, payment_id=None, gateway_order_id=None):
        self.calls.append(("fetch_status", payment_id, gateway_order_id))
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.view

    def verify_webhook(self, raw_body, signature, secret, timestamp=None):
        return True

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_gateway(monkeypatch):
    gateway = FakeGateway()

    def _get_adapter(provider, credentials):
        gateway.provider = provider
        return gateway

    monkeypatch.setattr(payment_service, "get_adapter", _get_adapter)
    monkeypatch.setattr(reconciler, "get_adapter", _get_adapter)
    return gateway


@pytest.fixture
def notifier(monkeypatch):
    mock = MagicMock()
    mock.notify_paid = AsyncMock(return_value={"pushed": False, "broadcast": 1, "print": {"success": True}})
    monkeypatch.setattr(payment_service, "notifier", mock)
    return mock


@pytest.fixture
def stock(monkeypatch):
    mock = MagicMock()
    mock.record_usage = AsyncMock(return_value=None)
    monkeypatch.setattr(payment_service, "stock_service", mock)
    return mock


@pytest.fixture
def make_theater(db):
    def _make(kiosk=None, online=None, name="Galaxy Cinemas", **fields) -> Theater:
        gateway = {}
        if kiosk is not None:
            gateway["kiosk"] = kiosk
        if online is not None:
            gateway["online"] = online
        theater = Theater(name=name, payment_gateway=gateway or None, address="1 Main St", **fields)
        db.add(theater)
        db.commit()
        db.refresh(theater)
        return theater
    return _make


@pytest.fixture
def theater(make_theater):
    return make_theater(kiosk=razorpay_channel(), online=razorpay_channel())


@pytest.fixture
def make_order(db):
    def _make(theater, layout=order_store.LAYOUT_STANDALONE, total=125.0, source="pos", items=None, **fields):
        data = {
            "orderNumber": fields.pop("orderNumber", "ORD-1001"),
            "source": source,
            "status": "pending",
            "items": items if items is not None else [
                {"productId": "popcorn", "name": "Popcorn", "quantity": 2, "price": 50.0},
                {"productId": "cola", "name": "Cola", "quantity": 1, "price": 25.0},
            ],
            "pricing": {"subtotal": total, "total": total, "currency": "INR"},
            "customerInfo": {"name": "Asha", "phone": "9999999999"},
        }
        data.update(fields)
        return order_store.add_order(db, theater.id, data, layout=layout)
    return _make


@pytest.fixture
def make_txn(db):
    def _make(
        theater,
        order,
        provider="razorpay",
        channel="kiosk",
        gateway_order_id="g1",
        amount=125.0,
        status=TXN_PENDING,
        age: Optional[timedelta] = None,
        **fields,
    ) -> PaymentTransaction:
        txn = PaymentTransaction(
            theater_id=theater.id,
            order_id=order.id,
            gateway_provider=provider,
            gateway_channel=channel,
            gateway_order_id=gateway_order_id,
            amount_value=amount,
            amount_currency="INR",
            status=status,
            meta={},
            method="card",
            **fields,
        )
        if age is not None:
            txn.created_at = datetime.utcnow() - age
        db.add(txn)
        db.commit()
        db.refresh(txn)
        return txn
    return _make

