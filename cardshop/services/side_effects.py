"""
Fire-and-forget side effects of order state changes.

Each call enqueues a Celery task after the state change has been committed.
Enqueue failures (broker down, serialization) are logged and never reach the
caller: a delivered order stays delivered even if nobody gets notified.
"""
import logging

logger = logging.getLogger(__name__)


class SideEffectDispatcher:
    def _enqueue(self, task_name: str, *args) -> None:
        try:
            from cardshop.workers.tasks import notifications

            getattr(notifications, task_name).delay(*args)
        except Exception:
            logger.exception("side_effect_enqueue_failed", extra={"reason": task_name})

    def refresh_product_stats(self, product_id: str | None) -> None:
        if product_id:
            self._enqueue("refresh_product_stats", product_id)

    def notify_user_delivered(self, order_id: str) -> None:
        self._enqueue("notify_user_delivered", order_id)

    def notify_admin_payment(self, order_id: str) -> None:
        self._enqueue("notify_admin_payment", order_id)

    def schedule_redelivery(self, order_id: str) -> None:
        self._enqueue("redeliver_order", order_id)

    def after_fulfillment(self, order_id: str, product_id: str | None, delivered: bool) -> None:
        """Stats refresh + admin notice always; user notice only when cards went out."""
        self.refresh_product_stats(product_id)
        self.notify_admin_payment(order_id)
        if delivered:
            self.notify_user_delivered(order_id)
