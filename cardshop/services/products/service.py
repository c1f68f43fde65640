import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session as DBSession

from cardshop.core.config import Settings, get_settings
from cardshop.models.card import Card
from cardshop.models.order import COMPLETED_STATUSES, Order
from cardshop.models.product import Product

logger = logging.getLogger(__name__)


class ProductStatsService:
    """Recomputes the denormalised stock / locked / sold counters of a product."""

    def __init__(self, db: DBSession, config: Settings | None = None):
        self.db = db
        self.config = config or get_settings()

    def recalc(self, product_id: str) -> dict | None:
        product = self.db.get(Product, product_id)
        if product is None:
            return None

        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.config.reservation_ttl_seconds)
        not_expired = or_(Card.expires_at.is_(None), Card.expires_at > now)
        unused = (Card.product_id == product_id, Card.is_used.is_(False), not_expired)

        stock = self.db.execute(
            select(func.count(Card.id)).where(
                *unused, or_(Card.reserved_at.is_(None), Card.reserved_at < cutoff)
            )
        ).scalar_one()
        locked = self.db.execute(
            select(func.count(Card.id)).where(*unused, Card.reserved_at >= cutoff)
        ).scalar_one()
        sold = self.db.execute(
            select(func.coalesce(func.sum(Order.quantity), 0)).where(
                Order.product_id == product_id, Order.status.in_(COMPLETED_STATUSES)
            )
        ).scalar_one()

        product.stock_count = stock
        product.locked_count = locked
        product.sold_count = int(sold)
        product.updated_at = now
        self.db.add(product)
        self.db.commit()
        stats = {"stock": stock, "locked": locked, "sold": int(sold)}
        logger.info("product_stats_refreshed", extra={"product_id": product_id, "count": stock})
        return stats
