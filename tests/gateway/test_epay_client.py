"""Tests for EpayClient against a mocked HTTP transport."""
from decimal import Decimal

import httpx
import pybreaker
import pytest

from cardshop.services.errors import GatewayError
from cardshop.services.gateway.client import EpayClient, format_money
from cardshop.services.gateway.signing import verify_sign


def _client(config, handler, breaker=None) -> EpayClient:
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return EpayClient(config, http_client=http, breaker=breaker or pybreaker.CircuitBreaker(fail_max=5))


class TestPaymentRequest:
    def test_signed_form_fields(self, config):
        client = EpayClient(config, http_client=httpx.Client(), breaker=pybreaker.CircuitBreaker())

        request = client.build_payment_request("ORD1_retry5", "Card", Decimal("9.5"), order_id="ORD1")

        assert request.url == config.pay_url
        assert request.params["pid"] == "1001"
        assert request.params["money"] == "9.50"
        assert request.params["return_url"] == "https://shop.example/callback/ORD1"
        assert request.params["sign_type"] == "MD5"
        assert verify_sign(request.params, config.merchant_key)

    def test_format_money(self):
        assert format_money("3") == "3.00"
        assert format_money(Decimal("12.345")) == "12.34"


class TestQueryOrder:
    def test_paid(self, config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.url.params)
            return httpx.Response(200, json={"code": 1, "status": 1, "trade_no": "T-1", "money": "10.00"})

        status = _client(config, handler).query_order("ORD1")

        assert status.is_paid and not status.is_unpaid
        assert status.trade_no == "T-1"
        assert status.money == Decimal("10.00")
        assert seen["act"] == "order" and seen["out_trade_no"] == "ORD1"

    def test_refunded_or_unpaid(self, config):
        status = _client(config, lambda r: httpx.Response(200, json={"code": 1, "status": "0"})).query_order("ORD1")
        assert status.is_unpaid

    def test_unknown_trade(self, config):
        status = _client(config, lambda r: httpx.Response(200, json={"code": -1, "msg": "not found"})).query_order("X")
        assert not status.success
        assert status.message == "not found"
        assert not status.is_paid and not status.is_unpaid

    def test_http_error_becomes_gateway_error(self, config):
        with pytest.raises(GatewayError):
            _client(config, lambda r: httpx.Response(502)).query_order("ORD1")

    def test_non_json_reply(self, config):
        with pytest.raises(GatewayError):
            _client(config, lambda r: httpx.Response(200, text="<html>")).query_order("ORD1")

    def test_breaker_opens_after_failures(self, config):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused")

        client = _client(config, handler, breaker=pybreaker.CircuitBreaker(fail_max=2, reset_timeout=60))
        for _ in range(3):
            with pytest.raises(GatewayError):
                client.query_order("ORD1")
        assert len(calls) == 2


class TestRefund:
    def test_success_json(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            body = request.content.decode()
            assert "trade_no=T-1" in body and "money=10.00" in body
            return httpx.Response(200, json={"code": 1, "msg": "success"})

        processed, message = _client(config, handler).refund("T-1", "ORD1", "10")
        assert processed is True
        assert "success" in message

    def test_plain_text_reply(self, config):
        processed, _ = _client(config, lambda r: httpx.Response(200, text="refund SUCCESS")).refund("T-1", "ORD1", 1)
        assert processed is True

    def test_rejected(self, config):
        processed, message = _client(config, lambda r: httpx.Response(200, json={"code": -1, "msg": "no"})).refund(
            "T-1", "ORD1", 1
        )
        assert processed is False
        assert len(message) <= 500
