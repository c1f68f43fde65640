import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session as DBSession

from cardshop.models.user import User
from cardshop.services.errors import InsufficientPointsError

logger = logging.getLogger(__name__)


class PointsService:
    """Points balance on User. Every change is one conditional UPDATE, committed on its own."""

    def __init__(self, db: DBSession):
        self.db = db

    def get_balance(self, user_id: str) -> int:
        balance = self.db.execute(select(User.points).where(User.id == user_id)).scalar_one_or_none()
        return balance or 0

    def debit(self, user_id: str, amount: int) -> int:
        """Atomically deduct points. Raises InsufficientPointsError if balance < amount."""
        if amount <= 0:
            return self.get_balance(user_id)
        new_balance = self.db.execute(
            update(User)
            .where(User.id == user_id, User.points >= amount)
            .values(points=User.points - amount)
            .returning(User.points)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if new_balance is None:
            self.db.rollback()
            logger.info("points_debit_rejected", extra={"user_id": user_id, "amount": amount})
            raise InsufficientPointsError(f"user {user_id} has less than {amount} points")
        self.db.commit()
        logger.info("points_debited", extra={"user_id": user_id, "amount": amount})
        return new_balance

    def credit(self, user_id: str, amount: int) -> int:
        """Unconditional increment. Callers guarantee one call per compensating event."""
        if amount <= 0:
            return self.get_balance(user_id)
        new_balance = self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(points=User.points + amount)
            .returning(User.points)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        self.db.commit()
        if new_balance is None:
            logger.warning("points_credit_user_missing", extra={"user_id": user_id, "amount": amount})
            return 0
        logger.info("points_credited", extra={"user_id": user_id, "amount": amount})
        return new_balance
