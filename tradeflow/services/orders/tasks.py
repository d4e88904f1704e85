"""
Celery tasks for the order lifecycle.
"""

import asyncio
from typing import Any

from celery import shared_task

from tradeflow.core.logging import get_logger
from tradeflow.database.connection import close_database_connections, get_session
from tradeflow.services.notifications.notifier import OrderNotifier
from tradeflow.services.orders.service import OrderService

logger = get_logger(__name__)


async def _sweep() -> dict[str, Any]:
    try:
        async with get_session() as session:
            service = OrderService(session, notifier=OrderNotifier())
            outcome = await service.expire_overdue()
    finally:
        await close_database_connections()

    if not outcome.ok:
        logger.error(
            "Expiry sweep failed",
            error_kind=outcome.error.kind.value,
            error=outcome.error.message,
        )
        return {"expired": 0, "error": outcome.error.message}

    return {
        "expired": outcome.value.expired,
        "order_ids": [str(order_id) for order_id in outcome.value.order_ids],
    }


@shared_task(name="orders.expire_overdue_quotations", ignore_result=False)
def expire_overdue_quotations_task() -> dict[str, Any]:
    """Periodic sweep moving lapsed quotations to EXPIRED."""
    result = asyncio.run(_sweep())
    logger.info("Expiry sweep finished", expired=result["expired"])
    return result
