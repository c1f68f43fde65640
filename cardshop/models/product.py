"""
Product: sellable item backed by Card inventory.
is_shared: cards are copied on delivery instead of consumed (infinite stock).
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String

from cardshop.db.base import Base

# Orders with this product id are flat payments (no inventory behind them).
PAYMENT_PRODUCT_ID = "__payment__"
PAYMENT_PRODUCT_NAME = "Payment"

# Reported stock for shared products that have at least one unused card.
INFINITE_STOCK = 999_999


def is_payment_order(product_id: str | None) -> bool:
    return product_id == PAYMENT_PRODUCT_ID


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    purchase_limit = Column(Integer, nullable=True)  # null / 0 = no limit
    is_shared = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # Aggregates, refreshed best-effort after order state changes
    stock_count = Column(Integer, nullable=False, default=0)
    locked_count = Column(Integer, nullable=False, default=0)
    sold_count = Column(Integer, nullable=False, default=0)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def effective_purchase_limit(self) -> int | None:
        if self.purchase_limit and self.purchase_limit > 0:
            return self.purchase_limit
        return None
