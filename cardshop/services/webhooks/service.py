"""
Payment notification handling (gateway push or forwarded pull).

The gateway only understands a plain-text "success"/"fail" token. Anything
that retrying cannot fix (unknown order, already processed, internal error
after the signature and amount checks passed) is answered "success" so the
gateway stops retrying; bad signatures and amount mismatches are "fail".
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

import redis
from sqlalchemy.orm import Session as DBSession

from cardshop.core.config import Settings, get_settings
from cardshop.models.order import FULFILLABLE_STATUSES, Order, strip_retry_suffix
from cardshop.services.errors import AmountMismatchError
from cardshop.services.fulfillment.service import FulfillmentService
from cardshop.services.gateway.signing import verify_sign
from cardshop.services.idempotency import IdempotencyStore
from cardshop.utils.metrics import webhook_requests_total

logger = logging.getLogger(__name__)

TRADE_SUCCESS = "TRADE_SUCCESS"


@dataclass
class NotifyResult:
    ok: bool
    token: str
    status_code: int = 200


SUCCESS = NotifyResult(ok=True, token="success")
FAIL = NotifyResult(ok=False, token="fail", status_code=400)


class WebhookService:
    def __init__(
        self,
        db: DBSession,
        config: Settings | None = None,
        idempotency: IdempotencyStore | None = None,
        fulfillment: FulfillmentService | None = None,
    ):
        self.db = db
        self.config = config or get_settings()
        self._idempotency = idempotency
        self.fulfillment = fulfillment or FulfillmentService(db, config=self.config)

    @property
    def idempotency(self) -> IdempotencyStore:
        if self._idempotency is None:
            self._idempotency = IdempotencyStore(config=self.config)
        return self._idempotency

    def _acquire(self, key: str) -> bool:
        try:
            return self.idempotency.check_and_set(key)
        except redis.RedisError:
            # Dedupe is an optimisation; the fulfillment claim is the real gate.
            logger.warning("webhook_idempotency_unavailable", extra={"reason": key})
            return True

    def _release(self, key: str) -> None:
        try:
            self.idempotency.release(key)
        except redis.RedisError:
            logger.warning("webhook_idempotency_release_failed", extra={"reason": key})

    def process_notify(self, params: Mapping[str, Any]) -> NotifyResult:
        params = {k: v for k, v in params.items()}
        out_trade_no = str(params.get("out_trade_no") or "")
        trade_no = params.get("trade_no") or None
        trade_status = params.get("trade_status")
        logger.info(
            "notify_received",
            extra={"order_id": out_trade_no, "status": trade_status, "paid_amount": params.get("money")},
        )

        if not verify_sign(params, self.config.merchant_key):
            webhook_requests_total.labels(result="bad_signature").inc()
            logger.warning("notify_signature_invalid", extra={"order_id": out_trade_no})
            return FAIL

        if trade_status != TRADE_SUCCESS or not out_trade_no:
            webhook_requests_total.labels(result="ignored").inc()
            return SUCCESS

        order_id = strip_retry_suffix(out_trade_no)
        order = self.db.get(Order, order_id)
        if order is None:
            webhook_requests_total.labels(result="ignored").inc()
            logger.warning("notify_order_not_found", extra={"order_id": order_id, "trade_no": trade_no})
            return SUCCESS

        try:
            paid_amount = Decimal(str(params.get("money")))
            if not paid_amount.is_finite():
                raise InvalidOperation
        except InvalidOperation:
            webhook_requests_total.labels(result="amount_mismatch").inc()
            logger.error("notify_amount_invalid", extra={"order_id": order_id, "paid_amount": params.get("money")})
            return FAIL

        try:
            self.fulfillment.verify_amount(order, paid_amount)
        except AmountMismatchError:
            webhook_requests_total.labels(result="amount_mismatch").inc()
            return FAIL

        if order.status not in FULFILLABLE_STATUSES:
            webhook_requests_total.labels(result="already_processed").inc()
            return SUCCESS

        dedupe_key = f"notify:{trade_no or out_trade_no}"
        if not self._acquire(dedupe_key):
            webhook_requests_total.labels(result="duplicate").inc()
            logger.info("notify_duplicate", extra={"order_id": order_id, "trade_no": trade_no})
            return SUCCESS

        try:
            result = self.fulfillment.fulfill(order_id, paid_amount, trade_no)
        except AmountMismatchError:
            self._release(dedupe_key)
            webhook_requests_total.labels(result="amount_mismatch").inc()
            return FAIL
        except Exception:
            self._release(dedupe_key)
            self.db.rollback()
            webhook_requests_total.labels(result="error").inc()
            logger.exception("notify_fulfillment_failed", extra={"order_id": order_id, "trade_no": trade_no})
            return SUCCESS

        webhook_requests_total.labels(result="success").inc()
        logger.info(
            "notify_processed",
            extra={"order_id": order_id, "trade_no": trade_no, "status": result.order_status},
        )
        return SUCCESS
