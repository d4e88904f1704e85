"""
Post-commit notification dispatch.

Order services hand composed notifications to ``OrderNotifier`` only after
their transaction committed. Broker failures are logged and never
propagate: a lost email must not undo a committed transition.
"""

from typing import Optional

from celery.exceptions import CeleryError
from kombu.exceptions import KombuError

from tradeflow.core.logging import get_logger
from tradeflow.services.notifications.messages import OrderNotification
from tradeflow.services.notifications.tasks import send_order_notification_task

logger = get_logger(__name__)


class OrderNotifier:
    def dispatch(self, notification: Optional[OrderNotification]) -> bool:
        """
        Enqueue delivery.

        Returns:
            True if the task was enqueued
        """
        if notification is None:
            return False

        try:
            send_order_notification_task.delay(notification.model_dump(mode="json"))
        except (CeleryError, KombuError, OSError) as e:
            logger.error(
                "Failed to enqueue order notification",
                order_id=str(notification.order_id),
                notification_event=notification.event.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        logger.info(
            "Order notification enqueued",
            order_id=str(notification.order_id),
            notification_event=notification.event.value,
        )
        return True


def get_order_notifier() -> OrderNotifier:
    return OrderNotifier()
