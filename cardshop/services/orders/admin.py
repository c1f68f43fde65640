"""
Admin order operations. Every one of them goes through the same transitions
and compensations as the automated paths (fulfillment, cancel, refund) and
leaves an audit log entry.
"""
import logging
import time

from sqlalchemy import delete, update
from sqlalchemy.orm import Session as DBSession

from cardshop.core.config import Settings
from cardshop.models.card import Card
from cardshop.models.order import (
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PAID,
    ORDER_PENDING,
    ORDER_REFUNDED,
    POINTS_RETURNED_STATUSES,
    Order,
)
from cardshop.models.product import Product
from cardshop.services.audit.service import AuditService
from cardshop.services.errors import AmountMismatchError, GatewayError, OrderNotFoundError
from cardshop.services.gateway.client import GATEWAY_STATUS_PAID, GATEWAY_STATUS_UNPAID
from cardshop.services.orders.service import OrderService
from cardshop.services.results import ActionResult
from cardshop.services.side_effects import SideEffectDispatcher

logger = logging.getLogger(__name__)

ADMIN_CANCELLABLE = (ORDER_PENDING, ORDER_PAID)
REFUNDABLE = (ORDER_PENDING, ORDER_PAID, ORDER_DELIVERED, ORDER_CANCELLED)


class AdminOrderService(OrderService):
    def __init__(
        self,
        db: DBSession,
        gateway=None,
        config: Settings | None = None,
        side_effects: SideEffectDispatcher | None = None,
        actor: str | None = None,
    ):
        super().__init__(db, gateway=gateway, config=config, side_effects=side_effects)
        self.actor = actor
        self.audit = AuditService(db)

    def _audit(self, action: str, order_id: str, payload: dict | None = None) -> None:
        try:
            self.audit.record(self.actor, action, order_id, payload)
        except Exception:
            self.db.rollback()
            logger.exception("audit_log_write_failed", extra={"order_id": order_id, "reason": action})

    def _get(self, order_id: str) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    # ------------------------------------------------------------------
    # Payment / delivery
    # ------------------------------------------------------------------

    def mark_paid(self, order_id: str) -> ActionResult:
        """Manual payment confirmation: runs the regular fulfillment for the stored amount."""
        order = self._get(order_id)
        trade_no = order.trade_no or f"MANUAL_{int(time.time() * 1000)}"
        try:
            result = self.fulfillment.fulfill(order_id, order.amount, trade_no)
        except AmountMismatchError as e:
            return ActionResult(success=False, error=e.code)
        self._audit("mark_paid", order_id, {"result": result.status, "status": result.order_status})
        return ActionResult(
            success=True,
            message=result.status,
            data={"status": result.order_status, "card_ids": result.card_ids},
        )

    def mark_delivered(self, order_id: str) -> ActionResult:
        """paid -> delivered for orders whose cards were handed out by hand."""
        order = self._get(order_id)
        if not order.card_keys:
            return ActionResult(success=False, error="order.missingCards")
        previous = self.transition(order_id, (ORDER_PAID,), ORDER_DELIVERED, delivered_at=self._now())
        if previous is None:
            return ActionResult(success=False, error="order.invalidStatus")
        self._audit("mark_delivered", order_id)
        self.side_effects.refresh_product_stats(order.product_id)
        self.side_effects.notify_user_delivered(order_id)
        return ActionResult(success=True, data={"status": ORDER_DELIVERED})

    def redeliver(self, order_id: str) -> ActionResult:
        """Retry delivery of an order parked in paid (e.g. after a stock top-up)."""
        result = self.fulfillment.retry_paid(order_id, force=True)
        self._audit("redeliver", order_id, {"status": result.order_status})
        return ActionResult(
            success=result.order_status == ORDER_DELIVERED,
            error=None if result.order_status == ORDER_DELIVERED else "order.outOfStock",
            data={"status": result.order_status, "card_ids": result.card_ids},
        )

    # ------------------------------------------------------------------
    # Cancel / delete
    # ------------------------------------------------------------------

    def cancel(self, order_id: str) -> ActionResult:
        order = self._get(order_id)
        if not self._cancel(order, ADMIN_CANCELLABLE, "admin_cancel"):
            return ActionResult(success=False, error="order.cannotCancel")
        self._audit("cancel", order_id)
        return ActionResult(success=True, data={"status": ORDER_CANCELLED})

    def _delete_one(self, order_id: str) -> str | None:
        """release cards -> delete row (single winner) -> credit points back. Returns product id."""
        order = self.db.get(Order, order_id)
        if order is None:
            return None
        status, user_id, points_used, product_id = order.status, order.user_id, order.points_used, order.product_id
        self.db.expunge(order)

        self._compensate_reservation(order_id, "admin_delete")
        deleted = self.db.execute(
            delete(Order)
            .where(Order.order_id == order_id, Order.status == status)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        if not deleted:
            return None
        if points_used and status not in POINTS_RETURNED_STATUSES:
            self._compensate_points(order_id, user_id, points_used, "admin_delete")
        logger.info("order_deleted", extra={"order_id": order_id, "status": status})
        return product_id

    def delete(self, order_id: str) -> ActionResult:
        product_id = self._delete_one(order_id)
        if product_id is None:
            return ActionResult(success=False, error="order.notFound")
        self._audit("delete", order_id)
        self.side_effects.refresh_product_stats(product_id)
        return ActionResult(success=True)

    def delete_many(self, order_ids: list[str]) -> ActionResult:
        ids = list(dict.fromkeys(str(oid).strip() for oid in order_ids or [] if str(oid).strip()))
        touched: set[str] = set()
        deleted = 0
        for order_id in ids:
            product_id = self._delete_one(order_id)
            if product_id is None:
                continue
            deleted += 1
            touched.add(product_id)
            self._audit("delete", order_id, {"bulk": True})
        for product_id in touched:
            self.side_effects.refresh_product_stats(product_id)
        return ActionResult(success=True, data={"deleted": deleted})

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def _reclaim_cards(self, order: Order) -> int:
        if not self.config.refund_reclaim_cards:
            return 0
        product = self.db.get(Product, order.product_id)
        if product is None or product.is_shared:
            return 0
        if order.card_id_list:
            return self.reservations.reclaim(order.card_id_list)

        keys = list(dict.fromkeys(order.card_key_list))
        if not keys:
            return 0
        reclaimed = self.db.execute(
            update(Card)
            .where(Card.product_id == order.product_id, Card.card_key.in_(keys))
            .values(is_used=False, used_at=None, reserved_order_id=None, reserved_at=None)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        return reclaimed

    def mark_refunded(self, order_id: str) -> ActionResult:
        """-> refunded; returns points and (unless disabled or shared) the delivered cards."""
        order = self._get(order_id)
        self._compensate_reservation(order_id, "refund")
        previous = self.transition(order_id, REFUNDABLE, ORDER_REFUNDED)
        if previous is None:
            return ActionResult(success=False, error="order.invalidStatus")

        if order.points_used and previous not in POINTS_RETURNED_STATUSES:
            self._compensate_points(order_id, order.user_id, order.points_used, "refund")

        reclaimed = 0
        try:
            reclaimed = self._reclaim_cards(order)
        except Exception:
            self.db.rollback()
            logger.exception("refund_card_reclaim_failed", extra={"order_id": order_id})

        logger.info("order_refunded", extra={"order_id": order_id, "status": previous, "count": reclaimed})
        self._audit("mark_refunded", order_id, {"previous_status": previous, "reclaimed_cards": reclaimed})
        self.side_effects.refresh_product_stats(order.product_id)
        return ActionResult(success=True, data={"status": ORDER_REFUNDED, "reclaimed": reclaimed})

    def verify_refund_status(self, order_id: str) -> ActionResult:
        """Ask the gateway whether a paid order was refunded there; record it if so."""
        order = self._get(order_id)
        try:
            status = self.gateway.query_order(order.current_payment_id or order_id)
        except GatewayError as e:
            return ActionResult(success=False, error=e.code, message=str(e))
        if not status.success:
            return ActionResult(success=False, error="payment.queryFailed", message=status.message)

        if status.status == GATEWAY_STATUS_UNPAID:
            if order.status == ORDER_REFUNDED:
                return ActionResult(success=True, message="Refunded (Verified)", data={"status": status.status})
            result = self.mark_refunded(order_id)
            if not result.success:
                return result
            return ActionResult(success=True, message="Refunded (Verified)", data={"status": status.status})
        if status.status == GATEWAY_STATUS_PAID:
            return ActionResult(success=True, message="Paid (Not Refunded)", data={"status": status.status})
        return ActionResult(success=True, message=f"Status: {status.status}", data={"status": status.status})

    def proxy_refund(self, order_id: str) -> ActionResult:
        """Refund through the gateway API, then mark the order refunded when the gateway accepts."""
        order = self._get(order_id)
        if not order.trade_no:
            return ActionResult(success=False, error="order.missingTradeNo")
        try:
            processed, message = self.gateway.refund(
                order.trade_no, order.current_payment_id or order_id, order.amount
            )
        except GatewayError as e:
            logger.warning("proxy_refund_failed", extra={"order_id": order_id, "error": str(e)})
            return ActionResult(success=False, error=e.code, message=str(e))

        self._audit("proxy_refund", order_id, {"processed": processed})
        if processed:
            result = self.mark_refunded(order_id)
            if not result.success:
                return ActionResult(success=False, error=result.error, message=message)
        return ActionResult(success=True, message=message, data={"processed": processed})
