"""
FulfillmentService: turns a confirmed payment into delivered cards.

Idempotency: the order is claimed with one conditional UPDATE
(pending|cancelled -> paid). Only the caller that wins the claim delivers;
duplicates (webhook + status poll, gateway retries) get already_processed.
Card consumption is conditional on is_used = false, so even a double
execution cannot consume a card twice.

"paid" doubles as the checkpoint: an order stays there when stock is short
and is picked up again by retry_paid (beat task or admin redeliver).
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session as DBSession

from cardshop.core.config import Settings, get_settings
from cardshop.models.order import (
    FULFILLABLE_STATUSES,
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PAID,
    Order,
)
from cardshop.models.product import PAYMENT_PRODUCT_ID, Product, is_payment_order
from cardshop.services.compensations.service import CompensationService
from cardshop.services.errors import AmountMismatchError, OrderNotFoundError
from cardshop.services.reservations.service import ReservationService
from cardshop.services.results import FulfillmentResult, ReservedCard
from cardshop.services.side_effects import SideEffectDispatcher
from cardshop.utils.metrics import fulfillments_total

logger = logging.getLogger(__name__)

CLAIM_ATTEMPTS = 2


class FulfillmentService:
    def __init__(
        self,
        db: DBSession,
        config: Settings | None = None,
        side_effects: SideEffectDispatcher | None = None,
        reservations: ReservationService | None = None,
    ):
        self.db = db
        self.config = config or get_settings()
        self.side_effects = side_effects or SideEffectDispatcher()
        self.reservations = reservations or ReservationService(db, config=self.config, side_effects=self.side_effects)
        self.compensations = CompensationService(db, reservations=self.reservations)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def verify_amount(self, order: Order, paid_amount) -> None:
        expected = Decimal(str(order.amount))
        paid = Decimal(str(paid_amount))
        if abs(paid - expected) > Decimal(str(self.config.amount_epsilon)):
            fulfillments_total.labels(outcome="amount_mismatch").inc()
            logger.error(
                "payment_amount_mismatch",
                extra={"order_id": order.order_id, "amount": str(expected), "paid_amount": str(paid)},
            )
            raise AmountMismatchError(order.order_id, expected, paid)

    def fulfill(self, order_id: str, confirmed_amount, trade_no: str | None) -> FulfillmentResult:
        """
        Called once payment is confirmed externally (webhook, status poll, admin).
        Raises AmountMismatchError (nothing changes) or OrderNotFoundError.
        """
        order = self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        self.verify_amount(order, confirmed_amount)

        previous_status = self._claim(order_id, trade_no)
        if previous_status is None:
            fulfillments_total.labels(outcome="already_processed").inc()
            self.db.refresh(order)
            return FulfillmentResult(success=True, status="already_processed", order_status=order.status)

        self.db.refresh(order)
        logger.info(
            "payment_confirmed",
            extra={"order_id": order_id, "trade_no": trade_no, "status": previous_status},
        )

        if previous_status == ORDER_CANCELLED and order.points_used:
            # Cancellation already returned the points; the payment covered the rest only.
            self.compensations.redebit_points(order_id, order.user_id, order.points_used, "paid_after_cancel")

        if is_payment_order(order.product_id):
            fulfillments_total.labels(outcome="payment").inc()
            self.side_effects.after_fulfillment(order_id, None, delivered=False)
            return FulfillmentResult(success=True, status="processed", order_status=ORDER_PAID)

        return self._deliver(order)

    def retry_paid(self, order_id: str, force: bool = False) -> FulfillmentResult:
        """Re-run delivery for an order parked in paid. Leased via a conditional paid_at bump."""
        now = self._now()
        conditions = [Order.order_id == order_id, Order.status == ORDER_PAID]
        if not force:
            grace_cutoff = now - timedelta(seconds=self.config.paid_retry_grace_seconds)
            conditions.append(Order.paid_at < grace_cutoff)
        leased = self.db.execute(
            update(Order).where(*conditions).values(paid_at=now).execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()

        order = self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        self.db.refresh(order)
        if not leased or is_payment_order(order.product_id):
            return FulfillmentResult(success=True, status="already_processed", order_status=order.status)
        return self._deliver(order)

    def retry_stuck_paid_orders(self, limit: int = 100) -> int:
        """Beat sweep: re-fulfill orders left in paid past the grace period. Returns delivered count."""
        cutoff = self._now() - timedelta(seconds=self.config.paid_retry_grace_seconds)
        order_ids = self.db.execute(
            select(Order.order_id)
            .where(
                Order.status == ORDER_PAID,
                Order.paid_at < cutoff,
                Order.product_id != PAYMENT_PRODUCT_ID,
            )
            .order_by(Order.paid_at)
            .limit(limit)
        ).scalars().all()

        delivered = 0
        for order_id in order_ids:
            try:
                result = self.retry_paid(order_id)
            except Exception:
                self.db.rollback()
                logger.exception("retry_paid_failed", extra={"order_id": order_id})
                continue
            if result.order_status == ORDER_DELIVERED:
                delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _claim(self, order_id: str, trade_no: str | None) -> str | None:
        """pending|cancelled -> paid in one UPDATE. Returns the status we moved away from, or None."""
        for _ in range(CLAIM_ATTEMPTS):
            current = self.db.execute(
                select(Order.status).where(Order.order_id == order_id)
            ).scalar_one_or_none()
            if current not in FULFILLABLE_STATUSES:
                return None
            values = {"status": ORDER_PAID, "paid_at": self._now()}
            if trade_no:
                values["trade_no"] = trade_no
            claimed = self.db.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount
            self.db.commit()
            if claimed:
                return current
        return None

    def _deliver(self, order: Order) -> FulfillmentResult:
        product = self.db.get(Product, order.product_id)
        if product is None:
            logger.error("fulfill_product_missing", extra={"order_id": order.order_id, "product_id": order.product_id})
            return self._park(order, [])

        quantity = order.quantity or 1
        if product.is_shared:
            card = self.reservations.pick_shared_card(product.id)
            if card is None:
                return self._park(order, [])
            return self._complete(order, [card] * quantity)

        cards = [ReservedCard(id=cid, card_key=key) for cid, key in zip(order.card_id_list, order.card_key_list)]
        recorded = {card.id for card in cards}
        # Cards consumed by an earlier attempt that never reached delivered.
        cards += [card for card in self.reservations.consumed_by(order.order_id) if card.id not in recorded]
        cards = cards[:quantity]
        if len(cards) < quantity:
            cards += self.reservations.consume_reserved(order.order_id, quantity - len(cards))
        while len(cards) < quantity:
            card = self.reservations.consume_free(product.id, order.order_id)
            if card is None:
                break
            cards.append(card)

        if len(cards) < quantity:
            return self._park(order, cards)
        return self._complete(order, cards)

    def _card_values(self, cards: list[ReservedCard]) -> dict:
        unique_ids: list[int] = []
        for card in cards:
            if card.id not in unique_ids:
                unique_ids.append(card.id)
        return {
            "card_keys": "\n".join(card.card_key for card in cards) or None,
            "card_ids": ",".join(str(cid) for cid in unique_ids) or None,
        }

    def _complete(self, order: Order, cards: list[ReservedCard]) -> FulfillmentResult:
        now = self._now()
        self.db.execute(
            update(Order)
            .where(Order.order_id == order.order_id, Order.status == ORDER_PAID)
            .values(status=ORDER_DELIVERED, delivered_at=now, **self._card_values(cards))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        fulfillments_total.labels(outcome="delivered").inc()
        logger.info("order_delivered", extra={"order_id": order.order_id, "quantity": len(cards)})
        self.side_effects.after_fulfillment(order.order_id, order.product_id, delivered=True)
        return FulfillmentResult(
            success=True,
            status="processed",
            order_status=ORDER_DELIVERED,
            card_ids=[card.id for card in cards],
        )

    def _park(self, order: Order, cards: list[ReservedCard]) -> FulfillmentResult:
        """Payment captured but not enough stock: keep what we got, stay in paid."""
        if cards:
            self.db.execute(
                update(Order)
                .where(Order.order_id == order.order_id, Order.status == ORDER_PAID)
                .values(**self._card_values(cards))
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        fulfillments_total.labels(outcome="paid_no_stock").inc()
        logger.warning(
            "order_paid_no_stock",
            extra={"order_id": order.order_id, "product_id": order.product_id, "quantity": len(cards)},
        )
        self.side_effects.after_fulfillment(order.order_id, order.product_id, delivered=False)
        return FulfillmentResult(
            success=True,
            status="processed",
            order_status=ORDER_PAID,
            card_ids=[card.id for card in cards],
        )
