"""
Card: one unit of inventory (license key / code).
A used card is never reserved again; a reserved card belongs to reserved_order_id
until its reservation goes stale or is released. Used cards keep pointing at the order
that consumed them.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text

from cardshop.db.base import Base


class Card(Base):
    __tablename__ = "cards"
    __table_args__ = (
        Index("ix_cards_product_free", "product_id", "is_used", "reserved_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String, nullable=False, index=True)
    card_key = Column(Text, nullable=False)
    is_used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    reserved_order_id = Column(String, nullable=True, index=True)
    reserved_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
