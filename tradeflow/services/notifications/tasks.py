"""
Celery tasks for order notification delivery.
"""

import asyncio
from typing import Any

from celery import Task, shared_task

from tradeflow.cache.redis_client import RedisClient
from tradeflow.core.logging import get_logger
from tradeflow.database.connection import close_database_connections, get_session
from tradeflow.database.models.notification import NotificationStatus
from tradeflow.services.notifications.messages import OrderNotification
from tradeflow.services.notifications.service import (
    NotificationDeliveryError,
    NotificationService,
)
from tradeflow.services.notifications.ses import SESClient

logger = get_logger(__name__)


class NotificationTask(Task):
    """Base task retrying retriable delivery failures with backoff."""

    autoretry_for = (NotificationDeliveryError,)
    retry_kwargs = {"max_retries": 5}
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

    def on_failure(self, exc, task_id, args, kwargs, einfo) -> None:
        logger.error(
            "Notification task failed",
            task_id=task_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    def on_retry(self, exc, task_id, args, kwargs, einfo) -> None:
        logger.warning(
            "Notification task retrying",
            task_id=task_id,
            error=str(exc),
            retry_count=self.request.retries,
        )


async def _deliver(notification: OrderNotification, attempt: int) -> NotificationStatus:
    redis_client = RedisClient()
    await redis_client.connect()
    try:
        async with get_session() as session:
            service = NotificationService(session, redis_client, SESClient())
            return await service.deliver(notification, attempt=attempt)
    finally:
        await redis_client.disconnect()
        await close_database_connections()


@shared_task(
    bind=True,
    base=NotificationTask,
    name="notifications.send_order_notification",
    time_limit=120,
    soft_time_limit=90,
)
def send_order_notification_task(self: Task, payload: dict[str, Any]) -> dict[str, Any]:
    """
    Deliver one order notification.

    Args:
        payload: ``OrderNotification`` serialized in JSON mode
    """
    notification = OrderNotification.model_validate(payload)
    status = asyncio.run(_deliver(notification, attempt=self.request.retries + 1))

    return {
        "order_id": str(notification.order_id),
        "event": notification.event.value,
        "status": status.value,
    }
