from decimal import Decimal

import httpx
import pytest

from haulhub.errors import GatewayError
from haulhub.payments.gateway import HttpGateway, LocalGateway


def _gateway(handler, retries=3):
    return HttpGateway(
        base_url="https://pay.example.test/v3",
        shop_id="shop",
        secret="secret",
        max_retries=retries,
        backoff_s=0,
        transport=httpx.MockTransport(handler),
    )


def test_local_gateway_is_deterministic():
    gw = LocalGateway()
    first = gw.create_checkout(Decimal("100"), idempotency_key="deposit:1")
    second = gw.create_checkout(Decimal("100"), idempotency_key="deposit:1")
    assert first.external_id == second.external_id
    assert first.payment_url.endswith(first.external_id)


def test_retries_server_errors_then_succeeds():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"id": "pay_1", "status": "succeeded"})

    result = _gateway(handler).charge(Decimal("3000.00"), "tok", idempotency_key="order:1:charge")
    assert result.external_id == "pay_1"
    assert len(calls) == 3
    assert {r.headers["Idempotence-Key"] for r in calls} == {"order:1:charge"}


def test_transport_errors_exhaust_retries():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayError):
        _gateway(handler, retries=2).payout(Decimal("100"), idempotency_key="withdrawal:1")


def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(402, json={"code": "insufficient_funds"})

    with pytest.raises(GatewayError) as exc:
        _gateway(handler).charge(Decimal("10"), "tok", idempotency_key="order:2:charge")
    assert exc.value.details == {"status": 402}
    assert len(calls) == 1


def test_checkout_returns_confirmation_url():
    def handler(request):
        return httpx.Response(200, json={
            "id": "pay_2",
            "status": "pending",
            "confirmation": {"confirmation_url": "https://pay.example.test/checkout/pay_2"},
        })

    result = _gateway(handler).create_checkout(Decimal("100"), idempotency_key="deposit:2")
    assert result.status == "pending"
    assert result.payment_url == "https://pay.example.test/checkout/pay_2"


@pytest.mark.parametrize("response", [
    httpx.Response(200, text="<html>maintenance</html>"),
    httpx.Response(200, json={"status": "succeeded"}),
    httpx.Response(200, json=["pay_3"]),
])
def test_malformed_success_body_is_a_gateway_error(response):
    calls = []

    def handler(request):
        calls.append(request)
        return response

    with pytest.raises(GatewayError):
        _gateway(handler).charge(Decimal("10"), "tok", idempotency_key="order:3:charge")
    assert len(calls) == 1
