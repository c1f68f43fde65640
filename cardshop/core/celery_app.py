"""
Celery application: broker and result backend from settings.
Tasks are in cardshop.workers.tasks (expiry sweeps, post-fulfillment side effects).
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from cardshop.core.config import settings
from cardshop.core.logging import configure_logging

celery_app = Celery(
    "cardshop",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "cardshop.workers.tasks.expiry",
        "cardshop.workers.tasks.notifications",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=300,
    result_expires=86400,
    beat_schedule={
        "cancel-expired-orders": {
            "task": "cardshop.workers.tasks.expiry.cancel_expired_orders",
            "schedule": crontab(minute="*"),
        },
        "release-stale-reservations": {
            "task": "cardshop.workers.tasks.expiry.release_stale_reservations",
            "schedule": crontab(minute="*/5"),
        },
        "retry-paid-orders": {
            "task": "cardshop.workers.tasks.expiry.retry_paid_orders",
            "schedule": crontab(minute="*/10"),
        },
    },
)

celery_app.conf.task_routes = {
    "cardshop.workers.tasks.notifications.*": {"queue": "notifications"},
}


@setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    # Workers log the same JSON lines as the API instead of Celery's own format.
    configure_logging()
