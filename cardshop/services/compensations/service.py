"""
Compensating actions for multi-step order mutations.

The store gives no multi-statement transactions, so a later failing step is
undone by an explicit compensating step. Compensations are best-effort: a
failure is logged, written to compensation_log for manual review and never
raised, so the outer operation can still report its own outcome.
"""
import logging

from sqlalchemy.orm import Session as DBSession

from cardshop.models.compensation import CompensationLog
from cardshop.services.points.service import PointsService
from cardshop.services.reservations.service import ReservationService
from cardshop.utils.metrics import compensations_total

logger = logging.getLogger(__name__)


class CompensationService:
    def __init__(self, db: DBSession, reservations: ReservationService | None = None):
        self.db = db
        self.points = PointsService(db)
        self.reservations = reservations or ReservationService(db)

    def _record(
        self,
        order_id: str,
        user_id: str | None,
        reason: str,
        comp_type: str,
        amount: int,
        status: str = "issued",
        error: str | None = None,
    ) -> None:
        compensations_total.labels(comp_type=comp_type, status=status).inc()
        try:
            self.db.add(
                CompensationLog(
                    order_id=order_id,
                    user_id=user_id,
                    reason=reason,
                    comp_type=comp_type,
                    amount=amount,
                    status=status,
                    error=error,
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("compensation_log_write_failed", extra={"order_id": order_id, "reason": reason})

    def refund_points(self, order_id: str, user_id: str | None, amount: int, reason: str) -> bool:
        """Credit back points taken for an order. Returns True if the credit went through."""
        if not user_id or not amount or amount <= 0:
            return False
        try:
            self.points.credit(user_id, amount)
        except Exception as e:
            self.db.rollback()
            logger.exception(
                "compensation_points_refund_failed",
                extra={"order_id": order_id, "user_id": user_id, "amount": amount, "reason": reason},
            )
            self._record(order_id, user_id, reason, "points_credit", amount, status="failed", error=str(e))
            return False
        self._record(order_id, user_id, reason, "points_credit", amount)
        return True

    def release_cards(self, order_id: str, reason: str) -> int:
        """Drop the order's card reservations. Returns number of cards released."""
        try:
            released = self.reservations.release(order_id)
        except Exception as e:
            self.db.rollback()
            logger.exception("compensation_card_release_failed", extra={"order_id": order_id, "reason": reason})
            self._record(order_id, None, reason, "card_release", 0, status="failed", error=str(e))
            return 0
        if released:
            self._record(order_id, None, reason, "card_release", released)
        return released

    def redebit_points(self, order_id: str, user_id: str | None, amount: int, reason: str) -> bool:
        """Take points again for a cancelled order that got paid after all."""
        if not user_id or not amount or amount <= 0:
            return True
        try:
            self.points.debit(user_id, amount)
        except Exception as e:
            self.db.rollback()
            logger.warning(
                "compensation_points_redebit_failed",
                extra={"order_id": order_id, "user_id": user_id, "amount": amount, "error": str(e)},
            )
            self._record(order_id, user_id, reason, "points_debit", amount, status="failed", error=str(e))
            return False
        self._record(order_id, user_id, reason, "points_debit", amount)
        return True
