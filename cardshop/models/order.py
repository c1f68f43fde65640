"""
Order: one checkout attempt for a product.
State machine: pending -> paid -> delivered, pending -> cancelled | refunded.
"paid" is the checkpoint between payment capture and card delivery.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text

from cardshop.db.base import Base

ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

# Statuses from which a confirmed payment may still be fulfilled.
FULFILLABLE_STATUSES = (ORDER_PENDING, ORDER_CANCELLED)
# Statuses that count against a product's purchase limit.
COMPLETED_STATUSES = (ORDER_PAID, ORDER_DELIVERED)
# Points of orders in these statuses were already credited back.
POINTS_RETURNED_STATUSES = (ORDER_CANCELLED, ORDER_REFUNDED)

RETRY_SUFFIX = "_retry"
POINTS_TRADE_NO = "POINTS_REDEMPTION"


def strip_retry_suffix(out_trade_no: str) -> str:
    """ORDER123_retry1736540000 -> ORDER123"""
    if RETRY_SUFFIX in out_trade_no:
        return out_trade_no.split(RETRY_SUFFIX)[0]
    return out_trade_no


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(String, primary_key=True)
    product_id = Column(String, nullable=False, index=True)
    product_name = Column(String, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    email = Column(String, nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    username = Column(String, nullable=True)
    payee = Column(String, nullable=True)  # payment orders only
    status = Column(String, nullable=False, default=ORDER_PENDING, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    points_used = Column(Integer, nullable=False, default=0)
    current_payment_id = Column(String, nullable=True)  # latest out_trade_no sent to the gateway
    trade_no = Column(String, nullable=True)  # gateway-side reference
    card_keys = Column(Text, nullable=True)  # newline-joined
    card_ids = Column(Text, nullable=True)  # comma-joined
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    paid_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def card_id_list(self) -> list[int]:
        ids: list[int] = []
        for raw in (self.card_ids or "").split(","):
            raw = raw.strip()
            if raw.isdigit() and int(raw) not in ids:
                ids.append(int(raw))
        return ids

    @property
    def card_key_list(self) -> list[str]:
        return [k.strip() for k in (self.card_keys or "").split("\n") if k.strip()]
