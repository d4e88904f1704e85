"""
Notification delivery.

Delivery is at most once per (order, event): a worker first claims the
pair in Redis with ``SET NX EX`` and only the claimant sends. A failed
send releases the claim so a retry can pick it up again.
"""

import asyncio
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tradeflow.cache.redis_client import CacheKeyManager, RedisClient
from tradeflow.core.config import get_settings
from tradeflow.core.logging import get_logger, log_performance
from tradeflow.database.models.notification import NotificationLog, NotificationStatus
from tradeflow.services.notifications.messages import OrderNotification
from tradeflow.services.notifications.ses import SESClient, SESClientError

logger = get_logger(__name__)


class NotificationDeliveryError(Exception):
    """Retriable delivery failure."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context


class NotificationService:
    def __init__(
        self,
        session: AsyncSession,
        redis_client: RedisClient,
        ses_client: SESClient,
        key_manager: Optional[CacheKeyManager] = None,
    ):
        self.session = session
        self.redis = redis_client
        self.ses = ses_client
        self.keys = key_manager or CacheKeyManager()
        self.claim_ttl = get_settings().notification_dedupe_ttl_seconds

    async def deliver(
        self, notification: OrderNotification, attempt: int = 1
    ) -> NotificationStatus:
        """
        Send a notification unless another worker already claimed it.

        Returns:
            SENT, SKIPPED for an already claimed event, or FAILED when SES
            rejected the message permanently

        Raises:
            NotificationDeliveryError: On a retriable SES failure
        """
        claim_key = self.keys.notification_claim_key(
            str(notification.order_id), notification.event.value
        )
        claimed = await self.redis.set(claim_key, "1", ex=self.claim_ttl, nx=True)
        if not claimed:
            logger.info(
                "Notification already claimed",
                order_id=str(notification.order_id),
                notification_event=notification.event.value,
            )
            return NotificationStatus.SKIPPED

        try:
            with log_performance(logger, "ses_send", notification_event=notification.event.value):
                message_id = await asyncio.to_thread(
                    self.ses.send_email,
                    notification.recipient,
                    notification.subject,
                    notification.body,
                )
        except SESClientError as e:
            await self.redis.delete(claim_key)
            self._log(notification, NotificationStatus.FAILED, attempt, error=str(e))
            # Persist the failed attempt before the retry error unwinds the session.
            await self.session.commit()

            if not e.retriable:
                logger.error(
                    "Notification rejected",
                    order_id=str(notification.order_id),
                    notification_event=notification.event.value,
                    error=str(e),
                )
                return NotificationStatus.FAILED

            raise NotificationDeliveryError(
                "Notification delivery failed",
                order_id=str(notification.order_id),
                event=notification.event.value,
            ) from e

        self._log(notification, NotificationStatus.SENT, attempt, message_id=message_id)
        return NotificationStatus.SENT

    def _log(
        self,
        notification: OrderNotification,
        status: NotificationStatus,
        attempt: int,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> NotificationLog:
        entry = NotificationLog(
            order_id=notification.order_id,
            event=notification.event.value,
            recipient=notification.recipient,
            subject=notification.subject[:255],
            status=status,
            attempts=attempt,
            provider_message_id=message_id,
            error_message=error,
        )
        self.session.add(entry)
        return entry
