import base64
import json

import httpx
import pytest

from conftest import KEY_ID, KEY_SECRET, WEBHOOK_SECRET, sign_payment, sign_webhook
from creativewriter.core.exceptions import PaymentGatewayError
from creativewriter.services.payment_gateway import (
    PaymentGatewayClient,
    from_minor_units,
    round_half_up,
    to_minor_units,
)


def _client(handler) -> PaymentGatewayClient:
    return PaymentGatewayClient(
        key_id=KEY_ID,
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        base_url="https://gateway.test/v1",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.parametrize(
    "amount, minor",
    [(800, 80000), (299, 29900), ("2999.5", 299950), (0.015, 2)],
)
def test_to_minor_units(amount, minor):
    assert to_minor_units(amount) == minor


def test_round_half_up_and_back():
    assert str(round_half_up(239.5)) == "240"
    assert str(round_half_up(239.49)) == "239"
    assert from_minor_units(80000) == 800.0


async def test_create_order_posts_minor_units_with_basic_auth(gateway, fake_gateway):
    order = await gateway.create_order(800, "INR", receipt="sub_u1_1", notes={"userId": "u1", "promoCode": None})

    assert order["id"] == "order_1"
    assert order["amount"] == 80000

    request = fake_gateway.requests[0]
    assert request.url.path == "/v1/orders"
    expected = base64.b64encode(f"{KEY_ID}:{KEY_SECRET}".encode()).decode()
    assert request.headers["Authorization"] == f"Basic {expected}"

    body = json.loads(request.content)
    assert body == {"amount": 80000, "currency": "INR", "receipt": "sub_u1_1", "notes": {"userId": "u1"}}


async def test_create_order_error_raises_gateway_error(gateway, fake_gateway):
    fake_gateway.fail_create = True

    with pytest.raises(PaymentGatewayError) as exc:
        await gateway.create_order(800, "INR", receipt="sub_u1_1")
    assert exc.value.status_code == 502
    assert exc.value.message == "Gateway exploded"


async def test_create_order_is_not_retried_on_transport_error():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(PaymentGatewayError):
            await client.create_order(800, "INR", receipt="sub_u1_1")
    assert len(calls) == 1


async def test_fetch_payment_retries_transport_errors():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json={"id": "pay_1", "amount": 29900, "currency": "INR"})

    async with _client(handler) as client:
        payment = await client.fetch_payment("pay_1")

    assert payment["amount"] == 29900
    assert len(calls) == 2


async def test_fetch_order_returns_notes(gateway, fake_gateway):
    await gateway.create_order(299, "INR", receipt="sub_u1_1", notes={"userId": "u1", "planId": "p1"})

    order = await gateway.fetch_order("order_1")

    assert order["notes"] == {"userId": "u1", "planId": "p1"}
    assert fake_gateway.requests[-1].method == "GET"
    assert fake_gateway.requests[-1].url.path == "/v1/orders/order_1"


async def test_fetch_order_not_found(gateway):
    with pytest.raises(PaymentGatewayError) as exc:
        await gateway.fetch_order("order_missing")
    assert exc.value.details == {"status_code": 404}


async def test_fetch_payment_not_found(gateway):
    with pytest.raises(PaymentGatewayError) as exc:
        await gateway.fetch_payment("pay_missing")
    assert exc.value.details == {"status_code": 404}


class TestSignatures:
    async def test_payment_signature_valid(self, gateway):
        assert gateway.verify_payment_signature("order_1", "pay_1", sign_payment("order_1", "pay_1"))

    @pytest.mark.parametrize(
        "signature",
        [
            sign_payment("order_1", "pay_2"),
            sign_payment("order_1", "pay_1", secret="wrong-secret"),
            "deadbeef",
            "ünïcode",
            "",
            None,
        ],
    )
    async def test_payment_signature_invalid(self, gateway, signature):
        assert not gateway.verify_payment_signature("order_1", "pay_1", signature)

    async def test_webhook_signature(self, gateway):
        body = b'{"event":"payment.captured"}'
        assert gateway.verify_webhook_signature(body, sign_webhook(body))
        assert not gateway.verify_webhook_signature(body + b" ", sign_webhook(body))
        assert not gateway.verify_webhook_signature(body, None)
