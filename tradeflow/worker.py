"""
Celery application for notification delivery and scheduled sweeps.

Run a worker with ``celery -A tradeflow.worker worker`` and the scheduler
with ``celery -A tradeflow.worker beat``.
"""

from celery import Celery

from tradeflow.core.config import get_settings
from tradeflow.core.logging import configure_logging

configure_logging()
settings = get_settings()

celery_app = Celery(
    "tradeflow",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "tradeflow.services.notifications.tasks",
        "tradeflow.services.orders.tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    result_expires=3600,
    beat_schedule={
        "expire-overdue-quotations": {
            "task": "orders.expire_overdue_quotations",
            "schedule": float(settings.expiry_sweep_interval_seconds),
        },
    },
)

app = celery_app
