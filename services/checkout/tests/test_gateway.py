import json
from decimal import Decimal

import httpx
import pytest

from app.errors import GatewayError
from app.gateway import IDEMPOTENCY_HEADER, to_minor_units

from conftest import make_gateway


async def test_create_intent_posts_order_with_idempotency_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_9", "amount": body["amount"], "currency": "INR"})

    gateway = make_gateway(handler)
    intent = await gateway.create_intent(50000, "INR", receipt="ord-1", idempotency_key="ord-1:intent:1")

    assert intent.gateway_order_id == "order_9"
    assert intent.amount == 50000
    request = seen[0]
    assert request.url.path == "/v1/orders"
    assert request.headers[IDEMPOTENCY_HEADER] == "ord-1:intent:1"
    assert request.headers["Authorization"].startswith("Basic ")
    assert json.loads(request.content) == {
        "amount": 50000,
        "currency": "INR",
        "receipt": "ord-1",
        "payment_capture": 1,
    }


@pytest.mark.parametrize("amount", [0, -1, 10.5, True])
async def test_create_intent_rejects_non_positive_or_non_integer_amounts(amount):
    def handler(request):
        raise AssertionError("gateway must not be called")

    with pytest.raises(ValueError):
        await make_gateway(handler).create_intent(amount, "INR", "ord-1", "ord-1:intent:1")


async def test_timeout_is_a_gateway_error_and_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayError, match="timeout"):
        await make_gateway(handler).create_intent(100, "INR", "ord-1", "ord-1:intent:1")
    assert len(calls) == 1


async def test_error_status_is_a_gateway_error():
    def handler(request):
        return httpx.Response(400, json={"error": {"code": "BAD_REQUEST_ERROR"}})

    with pytest.raises(GatewayError) as exc:
        await make_gateway(handler).refund("pay_1", 100, "INR", "ord-1:refund:1")

    assert exc.value.status_code == 400
    assert exc.value.body == {"error": {"code": "BAD_REQUEST_ERROR"}}


async def test_refund_posts_to_payment():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "rfnd_1", "amount": 12050})

    result = await make_gateway(handler).refund("pay_1", 12050, "INR", "ord-1:refund:2")

    assert result["id"] == "rfnd_1"
    assert seen[0].url.path == "/v1/payments/pay_1/refund"
    assert seen[0].headers[IDEMPOTENCY_HEADER] == "ord-1:refund:2"
    assert json.loads(seen[0].content)["amount"] == 12050


@pytest.mark.parametrize(
    "amount, expected",
    [(Decimal("500"), 50000), (Decimal("120.50"), 12050), (Decimal("0.005"), 1)],
)
def test_to_minor_units(amount, expected):
    assert to_minor_units(amount) == expected


@pytest.mark.parametrize("reply", [{}, {"error": "weird"}, {"id": 5}, [], "order_9"])
async def test_success_reply_without_an_id_is_a_gateway_error(reply):
    def handler(request):
        return httpx.Response(200, json=reply)

    gateway = make_gateway(handler)
    with pytest.raises(GatewayError):
        await gateway.create_intent(100, "INR", "ord-1", "ord-1:intent:1")
    with pytest.raises(GatewayError):
        await gateway.refund("pay_1", 100, "INR", "ord-1:refund:1")


async def test_malformed_intent_amount_is_a_gateway_error():
    def handler(request):
        return httpx.Response(200, json={"id": "order_9", "amount": "lots"})

    with pytest.raises(GatewayError, match="malformed"):
        await make_gateway(handler).create_intent(100, "INR", "ord-1", "ord-1:intent:1")
