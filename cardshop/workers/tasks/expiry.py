"""
Celery beat sweeps that return abandoned stock to the pool and pick up
orders stuck in paid. All of them only act on rows matching an age
predicate, so they are safe to run concurrently with live traffic.
"""
import logging

from cardshop.core.celery_app import celery_app
from cardshop.db.session import SessionLocal
from cardshop.services.fulfillment.service import FulfillmentService
from cardshop.services.orders.service import OrderService
from cardshop.services.reservations.service import ReservationService
from cardshop.utils.metrics import expired_orders_cancelled

logger = logging.getLogger(__name__)


@celery_app.task(
    name="cardshop.workers.tasks.expiry.cancel_expired_orders",
    time_limit=120,
    soft_time_limit=110,
)
def cancel_expired_orders() -> dict:
    """Cancel pending orders older than the reservation TTL (cards released, points returned)."""
    db = SessionLocal()
    try:
        cancelled = OrderService(db).cancel_expired_orders()
        expired_orders_cancelled.set(cancelled)
        return {"ok": True, "cancelled": cancelled}
    except Exception:
        logger.exception("cancel_expired_orders_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()


@celery_app.task(
    name="cardshop.workers.tasks.expiry.release_stale_reservations",
    time_limit=60,
    soft_time_limit=55,
)
def release_stale_reservations() -> dict:
    db = SessionLocal()
    try:
        released = ReservationService(db).release_stale()
        if released:
            logger.info("stale_reservations_released", extra={"count": released})
        return {"ok": True, "released": released}
    except Exception:
        logger.exception("release_stale_reservations_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()


@celery_app.task(
    name="cardshop.workers.tasks.expiry.retry_paid_orders",
    time_limit=300,
    soft_time_limit=290,
)
def retry_paid_orders() -> dict:
    """Re-run delivery for orders left in paid past the grace period (e.g. after a stock top-up)."""
    db = SessionLocal()
    try:
        delivered = FulfillmentService(db).retry_stuck_paid_orders()
        if delivered:
            logger.info("paid_orders_redelivered", extra={"count": delivered})
        return {"ok": True, "delivered": delivered}
    except Exception:
        logger.exception("retry_paid_orders_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()
