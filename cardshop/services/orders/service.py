"""
OrderService: checkout, payment retries, status reconciliation and cancellation.

Checkout is a saga of single-statement steps:
    reserve cards -> debit points -> (zero price: consume cards) -> insert order
A failing step triggers the compensations of the steps before it
(release cards, credit points, reclaim consumed cards) instead of a rollback.
"""
import logging
import math
import secrets
import time
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session as DBSession

from cardshop.core.config import Settings, get_settings
from cardshop.models.order import (
    COMPLETED_STATUSES,
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PAID,
    ORDER_PENDING,
    POINTS_RETURNED_STATUSES,
    POINTS_TRADE_NO,
    RETRY_SUFFIX,
    Order,
)
from cardshop.models.product import PAYMENT_PRODUCT_ID, PAYMENT_PRODUCT_NAME, Product
from cardshop.models.user import User
from cardshop.services.compensations.service import CompensationService
from cardshop.services.errors import (
    AmountMismatchError,
    GatewayError,
    InsufficientPointsError,
    StockLockedError,
)
from cardshop.services.fulfillment.service import FulfillmentService
from cardshop.services.points.service import PointsService
from cardshop.services.reservations.service import ReservationService
from cardshop.services.results import (
    ActionResult,
    Buyer,
    CheckoutResult,
    ReservedCard,
    StatusCheckResult,
)
from cardshop.services.side_effects import SideEffectDispatcher
from cardshop.utils.metrics import checkout_rejected_total, orders_created_total

logger = logging.getLogger(__name__)

TRANSITION_ATTEMPTS = 3


def generate_order_id() -> str:
    return f"ORD{int(time.time() * 1000)}{secrets.token_hex(3).upper()}"


def normalize_amount(value) -> Decimal | None:
    """Parse a user-supplied amount; None unless it is a positive number (rounded to cents)."""
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


class OrderService:
    def __init__(
        self,
        db: DBSession,
        gateway=None,
        config: Settings | None = None,
        side_effects: SideEffectDispatcher | None = None,
    ):
        self.db = db
        self.config = config or get_settings()
        self._gateway = gateway
        self.side_effects = side_effects or SideEffectDispatcher()
        self.reservations = ReservationService(
            db, gateway=gateway, config=self.config, side_effects=self.side_effects
        )
        self.points = PointsService(db)
        self.compensations = CompensationService(db, reservations=self.reservations)
        self.fulfillment = FulfillmentService(
            db, config=self.config, side_effects=self.side_effects, reservations=self.reservations
        )

    @property
    def gateway(self):
        if self._gateway is None:
            from cardshop.services.gateway.client import EpayClient

            self._gateway = EpayClient(self.config)
            self.reservations._gateway = self._gateway
        return self._gateway

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _reject(self, error: str) -> CheckoutResult:
        checkout_rejected_total.labels(reason=error).inc()
        return CheckoutResult(success=False, error=error)

    def order_url(self, order_id: str) -> str:
        return f"{self.config.public_base_url.rstrip('/')}/order/{order_id}"

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_order(
        self,
        product_id: str,
        quantity: int,
        buyer: Buyer | None = None,
        use_points: bool = False,
        email: str | None = None,
    ) -> CheckoutResult:
        buyer = buyer or Buyer()
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            return self._reject("buy.invalidQuantity")

        product = self.db.get(Product, product_id)
        if product is None or not product.is_active:
            return self._reject("buy.productNotFound")

        purchase_limit = product.effective_purchase_limit
        if quantity > (purchase_limit or self.config.max_order_quantity):
            return self._reject("buy.limitExceeded" if purchase_limit else "buy.quantityTooLarge")

        user = self.db.get(User, buyer.user_id) if buyer.user_id else None
        if user is not None and user.is_blocked:
            return self._reject("buy.userBlocked")

        try:
            self.cancel_expired_orders(product_id=product_id)
        except Exception:
            self.db.rollback()
            logger.exception("expired_orders_sweep_failed", extra={"product_id": product_id})

        # Tentative points discount: 1 point = 1 currency unit. Nothing is debited yet.
        total = Decimal(str(product.price)) * quantity
        points_to_use = 0
        final_amount = total
        if use_points and user is not None and (user.points or 0) > 0:
            points_to_use = min(user.points, math.ceil(total))
            final_amount = max(Decimal("0"), total - points_to_use)
        is_zero_price = final_amount <= 0
        resolved_email = email or (user.email if user is not None else None) or buyer.email

        if self.reservations.available_stock(product) < quantity:
            return self._reject("buy.outOfStock")

        if purchase_limit:
            already = self._purchased_quantity(product_id, buyer.user_id, email or buyer.email)
            if already + quantity > purchase_limit:
                return self._reject("buy.limitExceeded")

        order_id = generate_order_id()
        try:
            cards = self.reservations.reserve(product, order_id, quantity)
        except StockLockedError as e:
            self._compensate_reservation(order_id, "stock_locked")
            return self._reject(e.code)

        if points_to_use:
            try:
                self.points.debit(buyer.user_id, points_to_use)
            except InsufficientPointsError as e:
                self._compensate_reservation(order_id, "insufficient_points")
                return self._reject(e.code)

        order = Order(
            order_id=order_id,
            product_id=product.id,
            product_name=product.name,
            amount=final_amount,
            email=resolved_email,
            user_id=buyer.user_id,
            username=buyer.username or (user.username if user is not None else None),
            quantity=quantity,
            points_used=points_to_use,
            created_at=self._now(),
        )

        if is_zero_price:
            return self._create_zero_price_order(order, product, cards, buyer)

        order.status = ORDER_PENDING
        order.current_payment_id = order_id
        try:
            self.db.add(order)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("order_insert_failed", extra={"order_id": order_id})
            self._compensate_points(order_id, buyer.user_id, points_to_use, "order_insert_failed")
            self._compensate_reservation(order_id, "order_insert_failed")
            raise

        orders_created_total.labels(kind="pending").inc()
        logger.info(
            "order_created",
            extra={"order_id": order_id, "product_id": product.id, "quantity": quantity, "amount": str(final_amount)},
        )
        self.side_effects.refresh_product_stats(product.id)
        payment = self.gateway.build_payment_request(order_id, product.name, final_amount, order_id=order_id)
        return CheckoutResult(success=True, order_id=order_id, payment=payment)

    def _create_zero_price_order(
        self, order: Order, product: Product, cards: list[ReservedCard], buyer: Buyer
    ) -> CheckoutResult:
        order_id = order.order_id
        consumed = self._consume_for_zero_price(order_id, product, cards)

        order.status = ORDER_DELIVERED
        order.card_keys = "\n".join(card.card_key for card in cards)
        order.card_ids = ",".join(str(cid) for cid in dict.fromkeys(card.id for card in cards))
        order.trade_no = POINTS_TRADE_NO
        order.paid_at = self._now()
        order.delivered_at = order.paid_at
        try:
            self.db.add(order)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("order_insert_failed", extra={"order_id": order_id})
            self._compensate_points(order_id, buyer.user_id, order.points_used, "order_insert_failed")
            self._compensate_consumed_cards(order_id, consumed)
            self._compensate_reservation(order_id, "order_insert_failed")
            raise

        orders_created_total.labels(kind="zero_price").inc()
        logger.info("order_redeemed", extra={"order_id": order_id, "product_id": product.id, "quantity": order.quantity})
        self.side_effects.after_fulfillment(order_id, product.id, delivered=True)
        return CheckoutResult(
            success=True, order_id=order_id, is_zero_price=True, order_url=self.order_url(order_id)
        )

    def _consume_for_zero_price(self, order_id: str, product: Product, cards: list[ReservedCard]) -> list[int]:
        """Zero-price orders take their cards right away. Shared cards only under the policy flag."""
        if product.is_shared:
            if self.config.shared_zero_price_consumes_card and cards:
                card_id = cards[0].id
                return [card_id] if self.reservations.consume_card(card_id) else []
            return []
        return [card.id for card in self.reservations.consume_reserved(order_id, len(cards))]

    def _purchased_quantity(self, product_id: str, user_id: str | None, email: str | None) -> int:
        owner_conditions = []
        if user_id:
            owner_conditions.append(Order.user_id == user_id)
        if email:
            owner_conditions.append(Order.email == email)
        if not owner_conditions:
            return 0
        total = self.db.execute(
            select(func.coalesce(func.sum(Order.quantity), 0)).where(
                Order.product_id == product_id,
                or_(*owner_conditions),
                Order.status.in_(COMPLETED_STATUSES),
            )
        ).scalar_one()
        return int(total)

    # ------------------------------------------------------------------
    # Compensations
    # ------------------------------------------------------------------

    def _compensate_points(self, order_id: str, user_id: str | None, amount: int, reason: str) -> None:
        if amount:
            self.compensations.refund_points(order_id, user_id, amount, reason)

    def _compensate_reservation(self, order_id: str, reason: str) -> None:
        self.compensations.release_cards(order_id, reason)

    def _compensate_consumed_cards(self, order_id: str, card_ids: list[int]) -> None:
        if not card_ids:
            return
        try:
            self.reservations.reclaim(card_ids)
        except Exception:
            self.db.rollback()
            logger.exception("compensation_card_reclaim_failed", extra={"order_id": order_id})

    # ------------------------------------------------------------------
    # Flat payments
    # ------------------------------------------------------------------

    def resolve_payee(self, payee: str | None) -> str | None:
        admins = self.config.admin_usernames_list
        candidate = (payee or "").strip().lower()
        matched = next((name for name in admins if name.lower() == candidate), None) if candidate else None
        resolved = matched or (admins[0] if admins else None)
        return resolved[:80] if resolved else None

    def create_payment_order(self, amount, buyer: Buyer | None = None, payee: str | None = None) -> CheckoutResult:
        """A payment with no inventory behind it (pay-by-link / QR)."""
        buyer = buyer or Buyer()
        normalized = normalize_amount(amount)
        if normalized is None:
            return self._reject("payment.invalidAmount")

        order_id = generate_order_id()
        self.db.add(
            Order(
                order_id=order_id,
                product_id=PAYMENT_PRODUCT_ID,
                product_name=PAYMENT_PRODUCT_NAME,
                amount=normalized,
                email=buyer.email,
                user_id=buyer.user_id,
                username=buyer.username,
                payee=self.resolve_payee(payee),
                status=ORDER_PENDING,
                quantity=1,
                current_payment_id=order_id,
                created_at=self._now(),
            )
        )
        self.db.commit()
        orders_created_total.labels(kind="payment").inc()
        payment = self.gateway.build_payment_request(order_id, PAYMENT_PRODUCT_NAME, normalized, order_id=order_id)
        return CheckoutResult(success=True, order_id=order_id, payment=payment)

    def get_retry_payment_params(self, order_id: str, user_id: str | None) -> CheckoutResult:
        """New gateway attempt for a still-pending order under a fresh out_trade_no."""
        if not user_id:
            return CheckoutResult(success=False, error="common.error")
        order = self.db.get(Order, order_id)
        if order is None or order.user_id != user_id:
            return CheckoutResult(success=False, error="order.notFound")
        if order.status != ORDER_PENDING:
            return CheckoutResult(success=False, error="order.notPending")

        payment_id = f"{order_id}{RETRY_SUFFIX}{int(time.time() * 1000)}"
        self.db.execute(
            update(Order)
            .where(Order.order_id == order_id, Order.status == ORDER_PENDING)
            .values(current_payment_id=payment_id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        payment = self.gateway.build_payment_request(
            payment_id, order.product_name or PAYMENT_PRODUCT_NAME, order.amount, order_id=order_id
        )
        return CheckoutResult(success=True, order_id=order_id, payment=payment)

    # ------------------------------------------------------------------
    # Pull-based reconciliation
    # ------------------------------------------------------------------

    def check_order_status(
        self, order_id: str, user_id: str | None, pending_cookie: str | None = None
    ) -> StatusCheckResult:
        """Ask the gateway directly when no webhook arrived yet. Owner or cookie holder only."""
        order = self.db.get(Order, order_id)
        if order is None:
            return StatusCheckResult(success=False, error="order.notFound")
        if order.status in (ORDER_PAID, ORDER_DELIVERED):
            return StatusCheckResult(success=True, status=order.status)

        has_cookie = pending_cookie == order_id
        if order.user_id:
            if order.user_id != user_id and not has_cookie:
                return StatusCheckResult(success=False, error="common.unauthorized")
        elif not has_cookie:
            return StatusCheckResult(success=False, error="common.unauthorized")

        try:
            gateway_status = self.gateway.query_order(order.current_payment_id or order_id)
        except GatewayError as e:
            logger.warning("status_check_gateway_failed", extra={"order_id": order_id, "error": str(e)})
            return StatusCheckResult(success=False, error=e.code)

        if not gateway_status.is_paid:
            return StatusCheckResult(success=False, status=order.status)

        trade_no = gateway_status.trade_no or f"MANUAL_CHECK_{int(time.time() * 1000)}"
        paid_amount = gateway_status.money if gateway_status.money is not None else order.amount
        try:
            result = self.fulfillment.fulfill(order_id, paid_amount, trade_no)
        except AmountMismatchError as e:
            return StatusCheckResult(success=False, error=e.code)
        return StatusCheckResult(success=True, status=result.order_status)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def transition(self, order_id: str, from_statuses: tuple[str, ...], to_status: str, **values) -> str | None:
        """
        Move an order to `to_status` if it is currently in one of `from_statuses`.
        Returns the status it left, or None if another caller changed it first / not allowed.
        Exactly one concurrent caller wins a given transition.
        """
        for _ in range(TRANSITION_ATTEMPTS):
            current = self.db.execute(
                select(Order.status).where(Order.order_id == order_id)
            ).scalar_one_or_none()
            if current is None or current not in from_statuses:
                return None
            moved = self.db.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.status == current)
                .values(status=to_status, **values)
                .execution_options(synchronize_session=False)
            ).rowcount
            self.db.commit()
            if moved:
                return current
        return None

    def _cancel(self, order: Order, from_statuses: tuple[str, ...], reason: str) -> bool:
        """release cards -> cancel (single winner) -> credit points back."""
        order_id = order.order_id
        user_id, points_used, product_id = order.user_id, order.points_used, order.product_id

        self._compensate_reservation(order_id, reason)
        previous = self.transition(order_id, from_statuses, ORDER_CANCELLED)
        if previous is None:
            return False
        if points_used and previous not in POINTS_RETURNED_STATUSES:
            self._compensate_points(order_id, user_id, points_used, reason)
        logger.info("order_cancelled", extra={"order_id": order_id, "reason": reason, "status": previous})
        self.side_effects.refresh_product_stats(product_id)
        return True

    def cancel_order(self, order_id: str, user_id: str | None) -> ActionResult:
        """Owner cancel, only while pending."""
        order = self.db.get(Order, order_id)
        if order is None:
            return ActionResult(success=False, error="order.notFound")
        if not user_id or order.user_id != user_id:
            return ActionResult(success=False, error="common.error")
        if order.status != ORDER_PENDING:
            return ActionResult(success=False, error="order.cannotCancel")
        if not self._cancel(order, (ORDER_PENDING,), "user_cancel"):
            return ActionResult(success=False, error="order.cannotCancel")
        return ActionResult(success=True)

    def cancel_expired_orders(self, product_id: str | None = None, user_id: str | None = None, limit: int = 200) -> int:
        """Cancel pending orders older than the reservation TTL and return their stock."""
        cutoff = self._now() - timedelta(seconds=self.config.reservation_ttl_seconds)
        query = select(Order).where(Order.status == ORDER_PENDING, Order.created_at < cutoff)
        if product_id:
            query = query.where(Order.product_id == product_id)
        if user_id:
            query = query.where(Order.user_id == user_id)
        expired = self.db.execute(query.order_by(Order.created_at).limit(limit)).scalars().all()

        cancelled = 0
        for order in expired:
            if self._cancel(order, (ORDER_PENDING,), "expired"):
                cancelled += 1
        if cancelled:
            logger.info("expired_orders_cancelled", extra={"count": cancelled, "product_id": product_id})
        return cancelled
