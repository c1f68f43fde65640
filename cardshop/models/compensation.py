from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, String, Text

from cardshop.db.base import Base


class CompensationLog(Base):
    """Compensating actions (issued or failed) recorded for manual review."""

    __tablename__ = "compensation_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    reason = Column(String, nullable=False)  # insert_failed / points_redebit_failed / ...
    comp_type = Column(String, nullable=False)  # points_credit / card_release / points_debit
    amount = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="issued")  # issued / failed
    error = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
