import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from razorpay.errors import BadRequestError, SignatureVerificationError

from conftest import CF_APP_ID, CF_SECRET, RZP_KEY_ID, RZP_SECRET, razorpay_signature
from yqpay.core.errors import GatewayError, GatewayNotConfigured, UnsupportedProvider
from yqpay.database.schemas import CashfreeConfig, PhonePeConfig, RazorpayConfig
from yqpay.gateways import get_adapter
from yqpay.gateways.base import STATUS_CAPTURED, STATUS_FAILED, STATUS_PENDING, to_minor_units
from yqpay.gateways.cashfree_gateway import SANDBOX_BASE_URL, CashfreeGateway, compute_webhook_signature
from yqpay.gateways.razorpay_gateway import RazorpayGateway, build_receipt, compute_signature
from yqpay.gateways.unsupported import UnsupportedGateway


def rzp_config():
    return RazorpayConfig(enabled=True, keyId=RZP_KEY_ID, keySecret=RZP_SECRET)


def fake_client(**sections):
    client = SimpleNamespace(
        order=MagicMock(),
        payment=MagicMock(),
        utility=MagicMock(),
    )
    for name, value in sections.items():
        setattr(client, name, value)
    return client


def test_to_minor_units():
    assert to_minor_units(125) == 12500
    assert to_minor_units("99.99") == 9999
    assert to_minor_units(None) == 0


def test_receipt_is_trimmed_to_gateway_limit():
    receipt = build_receipt("x" * 64)
    assert len(receipt) == 40
    assert receipt.startswith("order_")


def test_get_adapter_dispatch():
    assert isinstance(get_adapter("razorpay", rzp_config()), RazorpayGateway)
    assert isinstance(get_adapter("cashfree", CashfreeConfig(appId="a", secretKey="b")), CashfreeGateway)
    assert isinstance(get_adapter("phonepe", PhonePeConfig(merchantId="m", saltKey="s")), UnsupportedGateway)
    with pytest.raises(GatewayNotConfigured):
        get_adapter("razorpay", None)
    with pytest.raises(GatewayNotConfigured):
        get_adapter("stripe", rzp_config())


async def test_unsupported_gateway_raises():
    gateway = UnsupportedGateway("paytm")
    with pytest.raises(UnsupportedProvider):
        await gateway.create_order(10, "INR", {})
    with pytest.raises(UnsupportedProvider):
        await gateway.fetch_status(gateway_order_id="x")


# ==========================
# Razorpay
# ==========================
async def test_razorpay_create_order_sends_paise_and_notes():
    client = fake_client()
    client.order.create.return_value = {"id": "order_g1", "amount": 12500, "currency": "INR"}
    gateway = RazorpayGateway(rzp_config(), client=client)

    order = await gateway.create_order(125.0, "INR", {"orderId": "o1", "theaterId": "t1", "channel": "kiosk"})

    payload = client.order.create.call_args.args[0]
    assert payload["amount"] == 12500
    assert payload["receipt"] == "order_o1"
    assert payload["notes"]["theaterId"] == "t1"
    assert order.gateway_order_id == "order_g1"
    assert order.amount == 12500
    assert order.extras == {"keyId": RZP_KEY_ID, "receipt": "order_o1"}


async def test_razorpay_create_order_maps_sdk_errors():
    client = fake_client()
    client.order.create.side_effect = BadRequestError("amount invalid")
    gateway = RazorpayGateway(rzp_config(), client=client)
    with pytest.raises(GatewayError):
        await gateway.create_order(1, "INR", {"orderId": "o1"})


async def test_razorpay_verify_callback_uses_sdk_result():
    client = fake_client()
    client.utility.verify_payment_signature.side_effect = SignatureVerificationError("bad")
    gateway = RazorpayGateway(rzp_config(), client=client)
    assert await gateway.verify_callback({"orderId": "g1", "paymentId": "p1", "signature": "nope"}) is False

    client.utility.verify_payment_signature.side_effect = None
    assert await gateway.verify_callback({"orderId": "g1", "paymentId": "p1", "signature": "anything"}) is True


async def test_razorpay_verify_callback_manual_hmac_fallback():
    client = fake_client()
    client.utility.verify_payment_signature.side_effect = RuntimeError("sdk broken")
    gateway = RazorpayGateway(rzp_config(), client=client)

    good = razorpay_signature("g1", "p1")
    assert await gateway.verify_callback({"orderId": "g1", "paymentId": "p1", "signature": good}) is True
    assert await gateway.verify_callback({"orderId": "g1", "paymentId": "p2", "signature": good}) is False


async def test_razorpay_verify_callback_requires_all_fields():
    gateway = RazorpayGateway(rzp_config(), client=fake_client())
    assert await gateway.verify_callback({"orderId": "g1", "paymentId": "p1"}) is False


async def test_razorpay_fetch_status_by_payment_id():
    client = fake_client()
    client.payment.fetch.return_value = {"id": "p1", "status": "captured", "amount": 12500, "order_id": "g1"}
    view = await RazorpayGateway(rzp_config(), client=client).fetch_status(payment_id="p1")
    assert view.status == STATUS_CAPTURED
    assert view.amount == 12500
    assert view.order_id == "g1"
    assert view.is_paid


async def test_razorpay_fetch_status_by_order_picks_captured_payment():
    client = fake_client()
    client.order.payments.return_value = {"items": [
        {"id": "p0", "status": "failed", "amount": 12500, "order_id": "g1"},
        {"id": "p1", "status": "captured", "amount": 12500, "order_id": "g1"},
    ]}
    view = await RazorpayGateway(rzp_config(), client=client).fetch_status(gateway_order_id="g1")
    assert view.payment_id == "p1"
    assert view.status == STATUS_CAPTURED


async def test_razorpay_fetch_status_order_without_payments_is_pending():
    client = fake_client()
    client.order.payments.return_value = {"items": []}
    view = await RazorpayGateway(rzp_config(), client=client).fetch_status(gateway_order_id="g1")
    assert view.status == STATUS_PENDING
    assert not view.is_paid


def test_razorpay_webhook_signature():
    gateway = RazorpayGateway(rzp_config(), client=fake_client())
    body = b'{"event":"payment.captured"}'
    signature = compute_signature(body.decode(), "whsec")
    assert gateway.verify_webhook(body, signature, "whsec") is True
    assert gateway.verify_webhook(body + b" ", signature, "whsec") is False
    assert gateway.verify_webhook(body, "", "whsec") is False


# ==========================
# Cashfree
# ==========================
def cf_gateway(handler):
    config = CashfreeConfig(enabled=True, appId=CF_APP_ID, secretKey=CF_SECRET, testMode=True)
    return CashfreeGateway(config, transport=httpx.MockTransport(handler))


async def test_cashfree_create_order():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"order_id": seen["body"]["order_id"], "payment_session_id": "sess_1"})

    order = await cf_gateway(handler).create_order(125.0, "INR", {
        "orderId": "o2", "orderNumber": "ORD-2", "theaterName": "Galaxy",
        "customer": {"name": "Ravi", "phone": "9000000000"},
    })

    assert seen["url"] == f"{SANDBOX_BASE_URL}/2022-09-01/orders"
    assert seen["headers"]["x-client-id"] == CF_APP_ID
    assert seen["headers"]["x-client-secret"] == CF_SECRET
    assert seen["body"]["order_amount"] == 125.0
    assert seen["body"]["customer_details"]["customer_name"] == "Ravi"
    assert seen["body"]["order_meta"]["notify_url"].endswith("/api/payments/webhook/cashfree")
    assert order.gateway_order_id.startswith("order_o2_")
    assert order.extras["paymentSessionId"] == "sess_1"
    assert order.extras["paymentUrl"] == f"{SANDBOX_BASE_URL}/payments/sess_1"
    assert order.extras["appId"] == CF_APP_ID


async def test_cashfree_error_response_becomes_gateway_error():
    def handler(request):
        return httpx.Response(401, json={"message": "authentication Failed"})

    with pytest.raises(GatewayError) as exc:
        await cf_gateway(handler).create_order(10, "INR", {"orderId": "o"})
    assert "authentication Failed" in exc.value.message


async def test_cashfree_verify_and_fetch_status():
    def handler(request):
        assert request.url.path.endswith("/orders/cf1/payments")
        return httpx.Response(200, json=[
            {"cf_payment_id": 11, "payment_status": "FAILED", "payment_amount": 125.0, "order_id": "cf1"},
            {"cf_payment_id": 12, "payment_status": "SUCCESS", "payment_amount": 125.0, "order_id": "cf1"},
        ])

    gateway = cf_gateway(handler)
    assert await gateway.verify_callback({"orderId": "cf1"}) is True

    view = await gateway.fetch_status(gateway_order_id="cf1")
    assert view.status == STATUS_CAPTURED
    assert view.amount == 12500
    assert view.payment_id == "12"

    failed = await gateway.fetch_status(payment_id="11", gateway_order_id="cf1")
    assert failed.status == STATUS_FAILED


async def test_cashfree_verify_without_success_payment():
    gateway = cf_gateway(lambda request: httpx.Response(200, json=[]))
    assert await gateway.verify_callback({"orderId": "cf1"}) is False
    view = await gateway.fetch_status(gateway_order_id="cf1")
    assert view.status == STATUS_PENDING


def test_cashfree_webhook_signature_covers_timestamp_and_body():
    gateway = cf_gateway(lambda request: httpx.Response(200))
    body = b'{"type":"PAYMENT_SUCCESS"}'
    signature = compute_webhook_signature(body, "1700000000", "whsec")
    assert gateway.verify_webhook(body, signature, "whsec", "1700000000") is True
    assert gateway.verify_webhook(body, signature, "whsec", "1700000001") is False
