"""
Best-effort side effects of order state changes, enqueued by
SideEffectDispatcher after the state change has been committed.
Failures are logged and never retried into the order flow.
"""
import logging

from cardshop.core.celery_app import celery_app
from cardshop.db.session import SessionLocal
from cardshop.models.notification import UserNotification
from cardshop.models.order import ORDER_DELIVERED, Order
from cardshop.models.product import is_payment_order
from cardshop.services.fulfillment.service import FulfillmentService
from cardshop.services.products.service import ProductStatsService
from cardshop.services.telegram.client import TelegramClient

logger = logging.getLogger(__name__)


@celery_app.task(name="cardshop.workers.tasks.notifications.refresh_product_stats")
def refresh_product_stats(product_id: str) -> dict:
    db = SessionLocal()
    try:
        stats = ProductStatsService(db).recalc(product_id)
        if stats is None:
            return {"ok": False, "error": "product_not_found"}
        return {"ok": True, **stats}
    except Exception:
        logger.exception("refresh_product_stats_error", extra={"product_id": product_id})
        db.rollback()
        return {"ok": False}
    finally:
        db.close()


@celery_app.task(name="cardshop.workers.tasks.notifications.notify_user_delivered")
def notify_user_delivered(order_id: str) -> dict:
    """In-app notice for the buyer once cards are delivered."""
    db = SessionLocal()
    try:
        order = db.get(Order, order_id)
        if order is None or not order.user_id or order.status != ORDER_DELIVERED:
            return {"ok": True, "skipped": True}
        db.add(
            UserNotification(
                user_id=order.user_id,
                type="order_delivered",
                title="Order delivered",
                body=f"Your order {order.order_id} for {order.product_name or 'Product'} has been delivered.",
                data={
                    "order_id": order.order_id,
                    "product_name": order.product_name or "Product",
                    "href": f"/order/{order.order_id}",
                },
            )
        )
        db.commit()
        return {"ok": True}
    except Exception:
        logger.exception("notify_user_delivered_error", extra={"order_id": order_id})
        db.rollback()
        return {"ok": False}
    finally:
        db.close()


@celery_app.task(name="cardshop.workers.tasks.notifications.notify_admin_payment")
def notify_admin_payment(order_id: str) -> dict:
    db = SessionLocal()
    telegram = TelegramClient()
    try:
        order = db.get(Order, order_id)
        if order is None:
            return {"ok": False, "error": "order_not_found"}
        if not telegram.enabled:
            return {"ok": True, "skipped": True}

        lines = [
            "Payment received" if is_payment_order(order.product_id) else "New order paid",
            f"Order: {order.order_id}",
            f"Product: {order.product_name or order.product_id}",
            f"Amount: {order.amount}",
            f"Status: {order.status}",
        ]
        if order.username:
            lines.append(f"Buyer: {order.username}")
        if order.payee:
            lines.append(f"Payee: {order.payee}")
        telegram.notify_admin("\n".join(lines))
        return {"ok": True}
    except Exception:
        logger.exception("notify_admin_payment_error", extra={"order_id": order_id})
        return {"ok": False}
    finally:
        db.close()
        telegram.close()


@celery_app.task(name="cardshop.workers.tasks.notifications.redeliver_order")
def redeliver_order(order_id: str) -> dict:
    """Delivery for an order promoted to paid after its payment was discovered late."""
    db = SessionLocal()
    try:
        result = FulfillmentService(db).retry_paid(order_id, force=True)
        return {"ok": True, "status": result.order_status}
    except Exception:
        logger.exception("redeliver_order_error", extra={"order_id": order_id})
        db.rollback()
        return {"ok": False}
    finally:
        db.close()
