"""Tests for ReservationService: claims, stale theft, owner promotion, shared bypass."""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from cardshop.models.card import Card
from cardshop.models.order import ORDER_PAID, ORDER_PENDING, Order
from cardshop.models.product import INFINITE_STOCK
from cardshop.services.errors import StockLockedError
from cardshop.services.reservations.service import ReservationService


@pytest.fixture
def svc(db, gateway, config, side_effects):
    return ReservationService(db, gateway=gateway, config=config, side_effects=side_effects)


class TestClaim:
    def test_n_cards_grant_n_reservations_then_locked(self, svc, make_product, cards_of):
        product = make_product(cards=3)

        for i in range(3):
            cards = svc.reserve(product, f"ORD{i}", 1)
            assert len(cards) == 1

        with pytest.raises(StockLockedError):
            svc.reserve(product, "ORD-LATE", 1)

        holders = [c.reserved_order_id for c in cards_of()]
        assert holders == ["ORD0", "ORD1", "ORD2"]

    def test_claims_in_insertion_order(self, svc, make_product):
        product = make_product(cards=3)
        cards = svc.reserve(product, "ORD1", 2)
        assert [c.card_key for c in cards] == ["P1-KEY-1", "P1-KEY-2"]

    def test_reserve_is_reentrant(self, svc, make_product, cards_of):
        product = make_product(cards=3)
        first = svc.reserve(product, "ORD1", 1)
        again = svc.reserve(product, "ORD1", 2)

        assert again[0].id == first[0].id
        assert len(again) == 2
        assert sum(1 for c in cards_of() if c.reserved_order_id == "ORD1") == 2

    def test_partial_claims_stay_with_order_on_failure(self, svc, make_product, cards_of):
        product = make_product(cards=2)
        with pytest.raises(StockLockedError):
            svc.reserve(product, "ORD1", 3)
        assert all(c.reserved_order_id == "ORD1" for c in cards_of())

    def test_used_and_expired_cards_are_never_claimed(self, db, svc, make_product):
        product = make_product(cards=3)
        cards = db.query(Card).order_by(Card.id).all()
        cards[0].is_used = True
        cards[1].expires_at = datetime.now(timezone.utc) - timedelta(days=1)
        db.commit()

        claimed = svc.reserve(product, "ORD1", 1)
        assert claimed[0].card_key == "P1-KEY-3"
        with pytest.raises(StockLockedError):
            svc.reserve(product, "ORD2", 1)


class TestStaleReservations:
    def test_stale_card_stolen_when_owner_unpaid(self, svc, gateway, make_product, make_order, reserve_card, cards_of):
        product = make_product(cards=1)
        make_order("OLD", age_seconds=600)
        reserve_card(1, "OLD", age_seconds=600)
        gateway.set_unpaid("OLD")

        cards = svc.reserve(product, "NEW", 1)

        assert cards[0].id == 1
        assert cards_of()[0].reserved_order_id == "NEW"
        assert gateway.queries == ["OLD"]

    def test_owner_unknown_to_gateway_counts_as_unpaid(self, svc, gateway, make_product, reserve_card, cards_of):
        product = make_product(cards=1)
        reserve_card(1, "GHOST", age_seconds=600)

        svc.reserve(product, "NEW", 1)
        assert cards_of()[0].reserved_order_id == "NEW"

    def test_paid_owner_is_promoted_and_keeps_card(
        self, db, svc, gateway, side_effects, make_product, make_order, reserve_card, cards_of
    ):
        product = make_product(cards=1)
        make_order("OLD", age_seconds=600)
        reserve_card(1, "OLD", age_seconds=600)
        gateway.set_paid("OLD", money="10.00", trade_no="T-OLD")

        with pytest.raises(StockLockedError):
            svc.reserve(product, "NEW", 1)

        db.expire_all()
        owner = db.get(Order, "OLD")
        assert (owner.status, owner.trade_no) == (ORDER_PAID, "T-OLD")
        assert cards_of()[0].reserved_order_id == "OLD"
        side_effects.schedule_redelivery.assert_called_once_with("OLD")

    def test_paid_owner_checked_by_current_payment_id(
        self, svc, gateway, make_product, make_order, reserve_card
    ):
        product = make_product(cards=1)
        make_order("OLD", age_seconds=600, current_payment_id="OLD_retry123")
        reserve_card(1, "OLD", age_seconds=600)
        gateway.set_paid("OLD_retry123", money="10.00")

        with pytest.raises(StockLockedError):
            svc.reserve(product, "NEW", 1)
        assert "OLD_retry123" in gateway.queries

    def test_underpaid_owner_is_neither_promoted_nor_robbed(
        self, db, svc, gateway, side_effects, make_product, make_order, reserve_card, cards_of
    ):
        product = make_product(cards=1)
        make_order("OLD", age_seconds=600)
        reserve_card(1, "OLD", age_seconds=600)
        gateway.set_paid("OLD", money="0.01")

        with pytest.raises(StockLockedError):
            svc.reserve(product, "NEW", 1)

        db.expire_all()
        assert db.get(Order, "OLD").status == ORDER_PENDING
        assert cards_of()[0].reserved_order_id == "OLD"
        side_effects.schedule_redelivery.assert_not_called()

    def test_gateway_down_never_steals(self, svc, gateway, make_product, make_order, reserve_card, cards_of):
        product = make_product(cards=1)
        make_order("OLD", age_seconds=600)
        reserve_card(1, "OLD", age_seconds=600)
        gateway.unreachable = True

        with pytest.raises(StockLockedError):
            svc.reserve(product, "NEW", 1)
        assert cards_of()[0].reserved_order_id == "OLD"

    def test_fresh_reservation_is_not_stolen(self, svc, gateway, make_product, reserve_card):
        product = make_product(cards=1)
        reserve_card(1, "OTHER", age_seconds=10)

        with pytest.raises(StockLockedError):
            svc.reserve(product, "NEW", 1)
        assert gateway.queries == []

    def test_steal_is_compare_and_set(self, svc, make_product, reserve_card, cards_of):
        make_product(cards=1)
        reserve_card(1, "OLD", age_seconds=600)
        cutoff = svc.stale_cutoff()

        # Someone else took it between our read and our write.
        assert svc.steal_reservation(1, "OLD", "THIEF", cutoff) is not None
        assert svc.steal_reservation(1, "OLD", "NEW", cutoff) is None
        assert cards_of()[0].reserved_order_id == "THIEF"

    def test_concurrent_steal_has_one_winner(
        self, db, svc, gateway, config, side_effects, make_product, reserve_card, cards_of
    ):
        product = make_product(cards=1)
        reserve_card(1, "OLD", age_seconds=600)
        rival = ReservationService(db, gateway=gateway, config=config, side_effects=side_effects)
        real_steal = svc.steal_reservation

        def steal_after_rival(card_id, previous_order_id, order_id, cutoff):
            # The rival read the same stale row and writes first.
            assert rival.reserve(product, "RIVAL", 1)
            return real_steal(card_id, previous_order_id, order_id, cutoff)

        with patch.object(svc, "steal_reservation", side_effect=steal_after_rival):
            with pytest.raises(StockLockedError):
                svc.reserve(product, "NEW", 1)

        assert cards_of()[0].reserved_order_id == "RIVAL"


class TestSharedProducts:
    def test_shared_reserve_returns_same_card_without_mutation(self, svc, make_product, cards_of):
        product = make_product(cards=1, is_shared=True)
        cards = svc.reserve(product, "ORD1", 5)

        assert len(cards) == 5
        assert len({c.id for c in cards}) == 1
        assert cards_of()[0].reserved_order_id is None

    def test_shared_without_cards_is_locked(self, svc, make_product):
        product = make_product(cards=0, is_shared=True)
        with pytest.raises(StockLockedError):
            svc.reserve(product, "ORD1", 1)

    def test_shared_stock_is_unbounded(self, svc, make_product):
        assert svc.available_stock(make_product(cards=1, is_shared=True)) == INFINITE_STOCK


class TestConsumeAndRelease:
    def test_consume_reserved_marks_used_once(self, svc, make_product, cards_of):
        product = make_product(cards=2)
        svc.reserve(product, "ORD1", 2)

        consumed = svc.consume_reserved("ORD1", 2)
        assert len(consumed) == 2
        assert svc.consume_reserved("ORD1", 2) == []
        assert all(c.is_used for c in cards_of())

    def test_used_card_is_never_reserved_again(self, svc, make_product):
        product = make_product(cards=1)
        svc.reserve(product, "ORD1", 1)
        svc.consume_reserved("ORD1", 1)
        with pytest.raises(StockLockedError):
            svc.reserve(product, "ORD2", 1)

    def test_consumed_cards_stay_linked_to_order(self, svc, make_product, cards_of):
        product = make_product(cards=3)
        svc.reserve(product, "ORD1", 1)
        svc.consume_reserved("ORD1", 1)
        svc.consume_free("P1", "ORD1")

        assert [c.id for c in svc.consumed_by("ORD1")] == [1, 2]
        assert svc.held_by("ORD1") == []
        assert [c.reserved_order_id for c in cards_of()] == ["ORD1", "ORD1", None]

    def test_release_frees_only_unused_cards_of_order(self, svc, make_product, cards_of):
        product = make_product(cards=3)
        svc.reserve(product, "ORD1", 2)
        svc.reserve(product, "ORD2", 1)

        assert svc.release("ORD1") == 2
        states = cards_of()
        assert [c.reserved_order_id for c in states] == [None, None, "ORD2"]
        assert svc.available_stock(product) == 2

    def test_release_stale_skips_live_orders(self, svc, make_product, make_order, reserve_card, cards_of):
        make_product(cards=3)
        make_order("PENDING", status=ORDER_PENDING, age_seconds=600)
        reserve_card(1, "PENDING", age_seconds=600)
        reserve_card(2, "GONE", age_seconds=600)
        reserve_card(3, "FRESH", age_seconds=5)

        assert svc.release_stale() == 1
        assert [c.reserved_order_id for c in cards_of()] == ["PENDING", None, "FRESH"]

    def test_reclaim_returns_cards_to_stock(self, svc, make_product, cards_of):
        product = make_product(cards=2)
        svc.reserve(product, "ORD1", 2)
        ids = [c.id for c in svc.consume_reserved("ORD1", 2)]

        assert svc.reclaim(ids) == 2
        assert not any(c.is_used for c in cards_of())
