"""Tests for AdminOrderService: manual transitions reuse the automated compensations."""
import pytest

from cardshop.models.card import Card
from cardshop.models.order import (
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PAID,
    ORDER_PENDING,
    ORDER_REFUNDED,
    Order,
)
from cardshop.models.user import User
from cardshop.services.audit.service import AuditService
from cardshop.services.errors import OrderNotFoundError
from cardshop.services.orders.admin import AdminOrderService


@pytest.fixture
def admin(db, gateway, config, side_effects):
    return AdminOrderService(db, gateway=gateway, config=config, side_effects=side_effects, actor="alice")


def _order(db, order_id="ORD1") -> Order:
    db.expire_all()
    return db.get(Order, order_id)


def _points(db, user_id="U1") -> int:
    db.expire_all()
    return db.get(User, user_id).points


def _deliver(db, order_id="ORD1", card_ids=(1,)):
    """Mark cards consumed by an order, as fulfillment would."""
    keys = []
    for card_id in card_ids:
        card = db.get(Card, card_id)
        card.is_used = True
        keys.append(card.card_key)
    order = db.get(Order, order_id)
    order.status = ORDER_DELIVERED
    order.card_ids = ",".join(str(c) for c in card_ids)
    order.card_keys = "\n".join(keys)
    db.commit()


class TestMarkPaid:
    def test_mark_paid_runs_fulfillment(self, db, admin, make_product, make_order, reserve_card):
        make_product(cards=2)
        make_order("ORD1")
        reserve_card(1, "ORD1")

        result = admin.mark_paid("ORD1")

        assert result.success
        assert result.data["status"] == ORDER_DELIVERED
        order = _order(db)
        assert order.status == ORDER_DELIVERED
        assert order.trade_no.startswith("MANUAL_")
        [audit] = AuditService(db).history("ORD1")
        assert (audit.actor, audit.action, audit.order_status) == ("alice", "mark_paid", ORDER_DELIVERED)

    def test_mark_paid_twice_is_noop(self, admin, make_product, make_order):
        make_product(cards=2)
        make_order("ORD1")
        admin.mark_paid("ORD1")
        assert admin.mark_paid("ORD1").message == "already_processed"

    def test_unknown_order(self, admin):
        with pytest.raises(OrderNotFoundError):
            admin.mark_paid("NOPE")


class TestMarkDelivered:
    def test_requires_cards(self, admin, make_order):
        make_order("ORD1", status=ORDER_PAID)
        assert admin.mark_delivered("ORD1").error == "order.missingCards"

    def test_paid_with_cards(self, db, admin, side_effects, make_order):
        make_order("ORD1", status=ORDER_PAID, card_keys="HANDED-OUT")
        assert admin.mark_delivered("ORD1").success
        assert _order(db).status == ORDER_DELIVERED
        side_effects.notify_user_delivered.assert_called_once_with("ORD1")

    def test_only_from_paid(self, admin, make_order):
        make_order("ORD1", status=ORDER_REFUNDED, card_keys="X")
        assert admin.mark_delivered("ORD1").error == "order.invalidStatus"


class TestCancelAndDelete:
    def test_cancel_paid_order_releases_and_refunds(self, db, admin, make_product, make_user, make_order, reserve_card, cards_of):
        make_product(cards=1)
        make_user("U1", points=0)
        make_order("ORD1", status=ORDER_PAID, user_id="U1", points_used=3)
        reserve_card(1, "ORD1")

        assert admin.cancel("ORD1").success
        assert admin.cancel("ORD1").error == "order.cannotCancel"

        assert _order(db).status == ORDER_CANCELLED
        assert cards_of()[0].reserved_order_id is None
        assert _points(db) == 3

    def test_delivered_orders_cannot_be_cancelled(self, admin, make_order):
        make_order("ORD1", status=ORDER_DELIVERED)
        assert admin.cancel("ORD1").error == "order.cannotCancel"

    def test_delete_pending_order(self, db, admin, make_product, make_user, make_order, reserve_card, cards_of):
        make_product(cards=1)
        make_user("U1", points=0)
        make_order("ORD1", user_id="U1", points_used=5)
        reserve_card(1, "ORD1")

        assert admin.delete("ORD1").success

        db.expire_all()
        assert db.get(Order, "ORD1") is None
        assert cards_of()[0].reserved_order_id is None
        assert _points(db) == 5
        assert admin.delete("ORD1").error == "order.notFound"

        [audit] = AuditService(db).history("ORD1")
        assert (audit.action, audit.order_status) == ("delete", None)

    def test_delete_cancelled_order_does_not_refund_twice(self, db, admin, make_user, make_order):
        make_user("U1", points=0)
        make_order("ORD1", status=ORDER_CANCELLED, user_id="U1", points_used=5)
        assert admin.delete("ORD1").success
        assert _points(db) == 0

    def test_delete_many(self, db, admin, side_effects, make_order):
        make_order("ORD1")
        make_order("ORD2", product_id="P2")

        result = admin.delete_many(["ORD1", " ORD2 ", "ORD1", "", "NOPE"])

        assert result.data == {"deleted": 2}
        assert db.query(Order).count() == 0
        refreshed = {call.args[0] for call in side_effects.refresh_product_stats.call_args_list}
        assert refreshed == {"P1", "P2"}


class TestRefunds:
    def test_mark_refunded_reclaims_cards_and_points(self, db, admin, make_product, make_user, make_order, cards_of):
        make_product(cards=3)
        make_user("U1", points=0)
        make_order("ORD1", user_id="U1", points_used=2, quantity=2)
        _deliver(db, "ORD1", card_ids=(1, 2))

        result = admin.mark_refunded("ORD1")

        assert result.success and result.data["reclaimed"] == 2
        assert _order(db).status == ORDER_REFUNDED
        assert not any(c.is_used for c in cards_of())
        assert _points(db) == 2
        assert admin.mark_refunded("ORD1").error == "order.invalidStatus"
        assert _points(db) == 2

    def test_reclaim_by_keys_when_ids_missing(self, db, admin, make_product, make_order, cards_of):
        make_product(cards=2)
        make_order("ORD1")
        _deliver(db, "ORD1", card_ids=(2,))
        order = db.get(Order, "ORD1")
        order.card_ids = None
        db.commit()

        admin.mark_refunded("ORD1")
        assert [c.is_used for c in cards_of()] == [False, False]

    def test_no_reclaim_for_shared_or_when_disabled(self, db, admin, config, make_product, make_order, cards_of):
        make_product("S1", cards=1, is_shared=True)
        make_product("P1", cards=1)
        make_order("SHARED", product_id="S1")
        make_order("ORD1")
        _deliver(db, "ORD1", card_ids=(2,))
        db.get(Card, 1).is_used = True
        db.get(Order, "SHARED").card_ids = "1"
        db.commit()

        admin.mark_refunded("SHARED")
        assert cards_of("S1")[0].is_used is True

        config.refund_reclaim_cards = False
        admin.mark_refunded("ORD1")
        assert cards_of("P1")[0].is_used is True

    def test_refund_of_cancelled_order_keeps_points(self, db, admin, make_user, make_order):
        make_user("U1", points=7)
        make_order("ORD1", status=ORDER_CANCELLED, user_id="U1", points_used=7)
        assert admin.mark_refunded("ORD1").success
        assert _points(db) == 7

    def test_proxy_refund(self, db, admin, gateway, make_product, make_order):
        make_product(cards=1)
        make_order("ORD1", status=ORDER_DELIVERED, trade_no="T-1", current_payment_id="ORD1_retry9")

        result = admin.proxy_refund("ORD1")

        assert result.success and result.data["processed"] is True
        assert gateway.refunds[0][:2] == ("T-1", "ORD1_retry9")
        assert _order(db).status == ORDER_REFUNDED

    def test_proxy_refund_not_processed_leaves_order(self, db, admin, gateway, make_order):
        make_order("ORD1", status=ORDER_DELIVERED, trade_no="T-1")
        gateway.refund_result = (False, '{"code":-1,"msg":"insufficient balance"}')

        result = admin.proxy_refund("ORD1")

        assert result.success and result.data["processed"] is False
        assert "insufficient" in result.message
        assert _order(db).status == ORDER_DELIVERED

    def test_proxy_refund_requires_trade_no(self, admin, make_order):
        make_order("ORD1", status=ORDER_DELIVERED)
        assert admin.proxy_refund("ORD1").error == "order.missingTradeNo"

    def test_proxy_refund_gateway_down(self, admin, gateway, make_order):
        make_order("ORD1", status=ORDER_DELIVERED, trade_no="T-1")
        gateway.unreachable = True
        assert admin.proxy_refund("ORD1").error == "payment.gatewayError"

    def test_verify_refund_status(self, db, admin, gateway, make_product, make_order):
        make_product(cards=0)
        make_order("ORD1", status=ORDER_DELIVERED)
        make_order("ORD2", status=ORDER_DELIVERED)
        gateway.set_unpaid("ORD1")
        gateway.set_paid("ORD2")

        assert admin.verify_refund_status("ORD1").message == "Refunded (Verified)"
        assert _order(db, "ORD1").status == ORDER_REFUNDED
        assert admin.verify_refund_status("ORD2").message == "Paid (Not Refunded)"
        assert _order(db, "ORD2").status == ORDER_DELIVERED


class TestRedeliver:
    def test_redeliver_after_top_up(self, db, admin, make_product, make_order):
        make_product(cards=0)
        make_order("ORD1", status=ORDER_PAID)

        assert admin.redeliver("ORD1").error == "order.outOfStock"

        db.add(Card(product_id="P1", card_key="TOPUP"))
        db.commit()
        result = admin.redeliver("ORD1")

        assert result.success
        assert _order(db).card_key_list == ["TOPUP"]
        assert _order(db).status == ORDER_DELIVERED

    def test_redeliver_ignores_non_paid_orders(self, admin, make_order):
        make_order("ORD1", status=ORDER_PENDING)
        assert admin.redeliver("ORD1").data["status"] == ORDER_PENDING
