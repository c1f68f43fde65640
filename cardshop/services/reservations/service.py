"""
ReservationService: claims Card rows for orders without multi-statement transactions.

Every state change is one conditional UPDATE ... RETURNING, committed on its own:
- claim:   free card -> reserved by order (first free card by insertion order)
- steal:   stale reservation -> reserved by order, only if the row is unchanged
           and the original owner is confirmed unpaid by the gateway
- consume: unused card -> used (never the other way round, except admin reclaim on refund)
- release: reserved-by-order -> free
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session as DBSession

from cardshop.core.config import Settings, get_settings
from cardshop.models.card import Card
from cardshop.models.order import (
    FULFILLABLE_STATUSES,
    ORDER_PAID,
    ORDER_PENDING,
    Order,
)
from cardshop.models.product import INFINITE_STOCK, Product
from cardshop.services.errors import GatewayError, StockLockedError
from cardshop.services.results import ReservedCard
from cardshop.utils.metrics import reservations_total

logger = logging.getLogger(__name__)


class ReservationService:
    def __init__(self, db: DBSession, gateway=None, config: Settings | None = None, side_effects=None):
        self.db = db
        self.config = config or get_settings()
        self._gateway = gateway
        self._side_effects = side_effects

    @property
    def gateway(self):
        if self._gateway is None:
            from cardshop.services.gateway.client import EpayClient

            self._gateway = EpayClient(self.config)
        return self._gateway

    @property
    def side_effects(self):
        if self._side_effects is None:
            from cardshop.services.side_effects import SideEffectDispatcher

            self._side_effects = SideEffectDispatcher()
        return self._side_effects

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def stale_cutoff(self, now: datetime | None = None) -> datetime:
        """Reservations made before this instant are stale."""
        return (now or self._now()) - timedelta(seconds=self.config.reservation_ttl_seconds)

    @staticmethod
    def _not_expired(now: datetime):
        return or_(Card.expires_at.is_(None), Card.expires_at > now)

    def _execute_update(self, stmt) -> list:
        rows = self.db.execute(stmt.execution_options(synchronize_session=False)).all()
        self.db.commit()
        return rows

    # ------------------------------------------------------------------
    # Stock queries
    # ------------------------------------------------------------------

    def available_stock(self, product: Product) -> int:
        now = self._now()
        if product.is_shared:
            has_card = self.db.execute(
                select(Card.id)
                .where(Card.product_id == product.id, Card.is_used.is_(False), self._not_expired(now))
                .limit(1)
            ).first()
            return INFINITE_STOCK if has_card else 0

        return self.db.execute(
            select(func.count(Card.id)).where(
                Card.product_id == product.id,
                Card.is_used.is_(False),
                self._not_expired(now),
                or_(Card.reserved_at.is_(None), Card.reserved_at < self.stale_cutoff(now)),
            )
        ).scalar_one()

    def held_by(self, order_id: str) -> list[ReservedCard]:
        rows = self.db.execute(
            select(Card.id, Card.card_key)
            .where(Card.reserved_order_id == order_id, Card.is_used.is_(False))
            .order_by(Card.id)
        ).all()
        return [ReservedCard(id=row.id, card_key=row.card_key) for row in rows]

    def consumed_by(self, order_id: str) -> list[ReservedCard]:
        """Cards already marked used for the order, e.g. by a delivery that failed before completing."""
        rows = self.db.execute(
            select(Card.id, Card.card_key)
            .where(Card.reserved_order_id == order_id, Card.is_used.is_(True))
            .order_by(Card.id)
        ).all()
        return [ReservedCard(id=row.id, card_key=row.card_key) for row in rows]

    # ------------------------------------------------------------------
    # Reserve
    # ------------------------------------------------------------------

    def reserve(self, product: Product, order_id: str, quantity: int) -> list[ReservedCard]:
        """
        Reserve `quantity` cards of `product` for `order_id`.

        Re-entrant: cards already held by this order are reused, only the rest is claimed.
        Shared products are not reserved at all: one unused card is returned `quantity` times.
        Raises StockLockedError when a unit cannot be claimed within the attempt budget;
        units claimed before that stay reserved to the order.
        """
        if product.is_shared:
            card = self.pick_shared_card(product.id)
            if card is None:
                reservations_total.labels(outcome="locked").inc()
                raise StockLockedError(f"no unused card for shared product {product.id}")
            return [card] * quantity

        reserved = self.held_by(order_id)[:quantity]
        while len(reserved) < quantity:
            card = self._reserve_one(product.id, order_id)
            if card is None:
                reservations_total.labels(outcome="locked").inc()
                logger.warning(
                    "stock_locked",
                    extra={"product_id": product.id, "order_id": order_id, "quantity": quantity},
                )
                raise StockLockedError(f"could not reserve {quantity} cards of {product.id}")
            reserved.append(card)
        return reserved

    def _reserve_one(self, product_id: str, order_id: str) -> ReservedCard | None:
        for _ in range(self.config.reservation_max_attempts):
            card = self.claim_free_card(product_id, order_id)
            if card is not None:
                reservations_total.labels(outcome="claimed").inc()
                return card

            now = self._now()
            cutoff = self.stale_cutoff(now)
            stale = self.find_stale_reservation(product_id, cutoff, now)
            if stale is None:
                return None

            owner_paid, trade_no = self._owner_paid(stale.reserved_order_id)
            if owner_paid is None:
                # Unreachable gateway or a payment that does not cover the order: leave the card alone.
                continue
            if owner_paid:
                self._promote_owner(stale.id, stale.reserved_order_id, trade_no)
                reservations_total.labels(outcome="promoted_owner").inc()
                continue

            stolen = self.steal_reservation(stale.id, stale.reserved_order_id, order_id, cutoff)
            if stolen is not None:
                reservations_total.labels(outcome="stolen").inc()
                logger.info(
                    "reservation_stolen",
                    extra={"card_id": stolen.id, "order_id": order_id, "previous_order_id": stale.reserved_order_id},
                )
                return stolen
        return None

    def claim_free_card(self, product_id: str, order_id: str) -> ReservedCard | None:
        """Single atomic UPDATE of the first free card; None if nothing is free."""
        now = self._now()
        candidate = (
            select(Card.id)
            .where(
                Card.product_id == product_id,
                Card.is_used.is_(False),
                Card.reserved_at.is_(None),
                self._not_expired(now),
            )
            .order_by(Card.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        rows = self._execute_update(
            update(Card)
            .where(Card.id == candidate, Card.is_used.is_(False), Card.reserved_at.is_(None))
            .values(reserved_order_id=order_id, reserved_at=now)
            .returning(Card.id, Card.card_key)
        )
        if not rows:
            return None
        return ReservedCard(id=rows[0].id, card_key=rows[0].card_key)

    def find_stale_reservation(self, product_id: str, cutoff: datetime, now: datetime | None = None):
        now = now or self._now()
        return self.db.execute(
            select(Card.id, Card.card_key, Card.reserved_order_id, Card.reserved_at)
            .where(
                Card.product_id == product_id,
                Card.is_used.is_(False),
                Card.reserved_at < cutoff,
                self._not_expired(now),
            )
            .order_by(Card.reserved_at, Card.id)
            .limit(1)
        ).first()

    def steal_reservation(
        self, card_id: int, previous_order_id: str | None, order_id: str, cutoff: datetime
    ) -> ReservedCard | None:
        """Compare-and-set: reassign only if the row still holds the stale reservation we read."""
        owner_clause = (
            Card.reserved_order_id == previous_order_id
            if previous_order_id
            else Card.reserved_order_id.is_(None)
        )
        rows = self._execute_update(
            update(Card)
            .where(
                Card.id == card_id,
                Card.is_used.is_(False),
                Card.reserved_at < cutoff,
                owner_clause,
            )
            .values(reserved_order_id=order_id, reserved_at=self._now())
            .returning(Card.id, Card.card_key)
        )
        if not rows:
            return None
        return ReservedCard(id=rows[0].id, card_key=rows[0].card_key)

    def _owner_paid(self, owner_order_id: str | None) -> tuple[bool | None, str | None]:
        """
        (paid, trade_no) for the stale holder. paid is None when the answer is unknown:
        gateway unreachable, or a paid trade whose amount does not cover the order.
        """
        if not owner_order_id:
            return False, None
        owner = self.db.get(Order, owner_order_id)
        payment_id = (owner.current_payment_id if owner else None) or owner_order_id
        try:
            status = self.gateway.query_order(payment_id)
        except GatewayError:
            logger.warning("reservation_owner_check_failed", extra={"order_id": owner_order_id})
            return None, None
        if not status.success:
            # Gateway does not know the trade: nothing was paid for it.
            return False, None
        if not status.is_paid:
            return False, None
        if owner is not None and status.money is not None:
            expected = Decimal(str(owner.amount))
            if abs(status.money - expected) > Decimal(str(self.config.amount_epsilon)):
                logger.error(
                    "reservation_owner_amount_mismatch",
                    extra={"order_id": owner_order_id, "amount": str(expected), "paid_amount": str(status.money)},
                )
                return None, None
        return True, status.trade_no

    def _promote_owner(self, card_id: int, owner_order_id: str, trade_no: str | None = None) -> None:
        """The stale holder actually paid: keep its card and move the order to paid."""
        now = self._now()
        self._execute_update(
            update(Card)
            .where(Card.id == card_id, Card.reserved_order_id == owner_order_id, Card.is_used.is_(False))
            .values(reserved_at=now)
            .returning(Card.id)
        )
        values = {"status": ORDER_PAID, "paid_at": now}
        if trade_no:
            values["trade_no"] = trade_no
        promoted = self.db.execute(
            update(Order)
            .where(Order.order_id == owner_order_id, Order.status.in_(FULFILLABLE_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        logger.warning(
            "reservation_owner_paid",
            extra={"card_id": card_id, "order_id": owner_order_id, "status": "promoted" if promoted else "unchanged"},
        )
        if promoted:
            self.side_effects.schedule_redelivery(owner_order_id)

    # ------------------------------------------------------------------
    # Shared products
    # ------------------------------------------------------------------

    def pick_shared_card(self, product_id: str) -> ReservedCard | None:
        row = self.db.execute(
            select(Card.id, Card.card_key)
            .where(Card.product_id == product_id, Card.is_used.is_(False), self._not_expired(self._now()))
            .order_by(func.random())
            .limit(1)
        ).first()
        if row is None:
            return None
        return ReservedCard(id=row.id, card_key=row.card_key)

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume_reserved(self, order_id: str, limit: int) -> list[ReservedCard]:
        """Mark cards held by the order as used. Each row flips at most once and keeps pointing at the order."""
        consumed: list[ReservedCard] = []
        for held in self.held_by(order_id)[:limit]:
            rows = self._execute_update(
                update(Card)
                .where(Card.id == held.id, Card.is_used.is_(False), Card.reserved_order_id == order_id)
                .values(is_used=True, used_at=self._now(), reserved_at=None)
                .returning(Card.id, Card.card_key)
            )
            if rows:
                consumed.append(ReservedCard(id=rows[0].id, card_key=rows[0].card_key))
        return consumed

    def consume_free(self, product_id: str, order_id: str | None = None) -> ReservedCard | None:
        """Atomically take one unreserved, unused, unexpired card and mark it used for `order_id`."""
        now = self._now()
        candidate = (
            select(Card.id)
            .where(
                Card.product_id == product_id,
                Card.is_used.is_(False),
                Card.reserved_at.is_(None),
                self._not_expired(now),
            )
            .order_by(Card.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        rows = self._execute_update(
            update(Card)
            .where(Card.id == candidate, Card.is_used.is_(False), Card.reserved_at.is_(None))
            .values(is_used=True, used_at=now, reserved_order_id=order_id)
            .returning(Card.id, Card.card_key)
        )
        if not rows:
            return None
        return ReservedCard(id=rows[0].id, card_key=rows[0].card_key)

    def consume_card(self, card_id: int) -> bool:
        rows = self._execute_update(
            update(Card)
            .where(Card.id == card_id, Card.is_used.is_(False))
            .values(is_used=True, used_at=self._now(), reserved_order_id=None, reserved_at=None)
            .returning(Card.id)
        )
        return bool(rows)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(self, order_id: str) -> int:
        """Free every unused card reserved by the order."""
        released = self.db.execute(
            update(Card)
            .where(Card.reserved_order_id == order_id, Card.is_used.is_(False))
            .values(reserved_order_id=None, reserved_at=None)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        if released:
            logger.info("reservation_released", extra={"order_id": order_id, "quantity": released})
        return released

    def release_stale(self, cutoff: datetime | None = None) -> int:
        """Release stale reservations whose order is gone or no longer waiting for cards."""
        cutoff = cutoff or self.stale_cutoff()
        live_orders = select(Order.order_id).where(Order.status.in_((ORDER_PENDING, ORDER_PAID)))
        released = self.db.execute(
            update(Card)
            .where(
                Card.is_used.is_(False),
                Card.reserved_at < cutoff,
                or_(Card.reserved_order_id.is_(None), Card.reserved_order_id.not_in(live_orders)),
            )
            .values(reserved_order_id=None, reserved_at=None)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        return released

    def reclaim(self, card_ids: list[int]) -> int:
        """Refund path: put delivered cards back into stock."""
        if not card_ids:
            return 0
        reclaimed = self.db.execute(
            update(Card)
            .where(Card.id.in_(card_ids))
            .values(is_used=False, used_at=None, reserved_order_id=None, reserved_at=None)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        return reclaimed
