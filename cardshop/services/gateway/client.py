"""
Payment gateway client (epay-compatible API) using httpx sync client.
Sync on purpose: called from request handlers and Celery workers alike.
All calls go through a shared circuit breaker so a dead gateway does not
stall checkout (reservation theft checks call query_order inline).
"""
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx
import pybreaker
import redis

from cardshop.core.config import Settings, get_settings
from cardshop.services.circuit_breaker import get_circuit_breaker
from cardshop.services.errors import GatewayError
from cardshop.services.gateway.signing import build_sign
from cardshop.services.results import PaymentRequest
from cardshop.utils.metrics import gateway_requests_total, gateway_request_duration_seconds

logger = logging.getLogger(__name__)

# Trade status codes returned by the order query endpoint.
GATEWAY_STATUS_PAID = 1
GATEWAY_STATUS_UNPAID = 0  # for an order known to be paid, 0 means refunded
GATEWAY_BREAKER = "payment_gateway"


@dataclass
class GatewayOrderStatus:
    success: bool
    status: int | None = None
    trade_no: str | None = None
    money: Decimal | None = None
    message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.success and self.status == GATEWAY_STATUS_PAID

    @property
    def is_unpaid(self) -> bool:
        return self.success and self.status == GATEWAY_STATUS_UNPAID


def format_money(amount: Decimal | float | str) -> str:
    return f"{Decimal(str(amount)).quantize(Decimal('0.01'))}"


class EpayClient:
    def __init__(
        self,
        config: Settings | None = None,
        http_client: httpx.Client | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
    ) -> None:
        self.config = config or get_settings()
        self._client = http_client
        self.breaker = breaker or get_circuit_breaker(GATEWAY_BREAKER)

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=self.config.gateway_timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Outgoing payment requests
    # ------------------------------------------------------------------

    def build_payment_request(self, out_trade_no: str, name: str, money, order_id: str | None = None) -> PaymentRequest:
        """Signed form fields the buyer's browser submits to the gateway."""
        base_url = self.config.public_base_url.rstrip("/")
        params = {
            "pid": self.config.merchant_id,
            "type": self.config.gateway_pay_type,
            "out_trade_no": out_trade_no,
            "notify_url": f"{base_url}/api/notify",
            "return_url": f"{base_url}/callback/{order_id or out_trade_no}",
            "name": name,
            "money": format_money(money),
            "sign_type": "MD5",
        }
        params["sign"] = build_sign(params, self.config.merchant_key)
        return PaymentRequest(url=self.config.pay_url, params=params)

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------

    def _record_request(self, method: str, status: str, duration: float) -> None:
        gateway_requests_total.labels(method=method, status=status).inc()
        gateway_request_duration_seconds.labels(method=method).observe(duration)

    def _call(self, method: str, func, *args, **kwargs) -> httpx.Response:
        def request() -> httpx.Response:
            resp = func(*args, **kwargs)
            resp.raise_for_status()
            return resp

        start = time.time()
        try:
            resp = self.breaker.call(request)
        except pybreaker.CircuitBreakerError as e:
            self._record_request(method, "breaker_open", time.time() - start)
            raise GatewayError(f"gateway circuit open: {e}") from e
        except httpx.HTTPError as e:
            self._record_request(method, "error", time.time() - start)
            raise GatewayError(f"gateway {method} failed: {e}") from e
        except redis.RedisError as e:
            # Breaker state unreadable: the call outcome is unknown to every caller.
            self._record_request(method, "breaker_unavailable", time.time() - start)
            raise GatewayError(f"gateway breaker state unavailable: {e}") from e
        self._record_request(method, "success", time.time() - start)
        return resp

    def query_order(self, out_trade_no: str) -> GatewayOrderStatus:
        """Synchronous status query by our out_trade_no (order id or retry id)."""
        resp = self._call(
            "query_order",
            self.client.get,
            self.config.gateway_api_url,
            params={
                "act": "order",
                "pid": self.config.merchant_id,
                "key": self.config.merchant_key,
                "out_trade_no": out_trade_no,
            },
        )
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayError("gateway returned non-JSON order status") from e

        if data.get("code") not in (1, "1"):
            return GatewayOrderStatus(success=False, message=str(data.get("msg") or "query failed"), raw=data)

        money = data.get("money")
        try:
            status = int(data.get("status"))
        except (TypeError, ValueError):
            status = None
        return GatewayOrderStatus(
            success=True,
            status=status,
            trade_no=data.get("trade_no"),
            money=Decimal(str(money)) if money not in (None, "") else None,
            raw=data,
        )

    def refund(self, trade_no: str, out_trade_no: str, money) -> tuple[bool, str]:
        """Ask the gateway to refund. Returns (processed, gateway message)."""
        resp = self._call(
            "refund",
            self.client.post,
            self.config.gateway_api_url,
            data={
                "pid": self.config.merchant_id,
                "key": self.config.merchant_key,
                "trade_no": trade_no,
                "out_trade_no": out_trade_no,
                "money": format_money(money),
            },
        )
        text = resp.text
        try:
            data = resp.json()
            processed = data.get("code") in (1, "1") or data.get("status") == "success" or data.get("msg") == "success"
        except ValueError:
            processed = "success" in text.lower()
        logger.info("gateway_refund", extra={"trade_no": trade_no, "order_id": out_trade_no, "status": processed})
        return processed, text[:500]
