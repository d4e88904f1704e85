"""
Order data access.

Reads that precede a transition use ``SELECT ... FOR UPDATE`` so the
status is re-read under a row lock inside the transition's transaction.
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tradeflow.core.logging import get_logger
from tradeflow.database.integrity import to_constraint_violation
from tradeflow.database.models.order import Order, OrderEvent
from tradeflow.services.orders.enums import EXPIRABLE_STATUSES, OrderKind, OrderStatus

logger = get_logger(__name__)


class OrderRepository:
    """Repository for orders, their line items and event log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add_order(self, order: Order) -> Order:
        """
        Insert a new order with its line items.

        Raises:
            ConstraintViolationError: If a uniqueness or foreign key
                constraint rejects the insert
        """
        self.session.add(order)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            logger.error(
                "Order insert rejected",
                order_number=order.order_number,
                error=str(e.orig),
            )
            raise to_constraint_violation(
                e, "Order could not be stored", order_number=order.order_number
            ) from e

        await self.session.refresh(order, ["created_at", "updated_at"])
        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order.order_number,
            kind=order.kind.value,
            line_count=len(order.line_items),
        )
        return order

    async def get_by_id(
        self,
        order_id: uuid.UUID,
        seller_id: Optional[uuid.UUID] = None,
        for_update: bool = False,
    ) -> Optional[Order]:
        """
        Fetch an order, optionally scoped to a seller and row-locked.
        """
        conditions = [Order.id == order_id]
        if seller_id is not None:
            conditions.append(Order.seller_id == seller_id)

        stmt = select(Order).where(and_(*conditions))
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)

        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_access_token(
        self, access_token: str, for_update: bool = False
    ) -> Optional[Order]:
        stmt = select(Order).where(Order.access_token == access_token)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)

        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_orders(
        self,
        seller_id: uuid.UUID,
        status: Optional[OrderStatus] = None,
        kind: Optional[OrderKind] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[Order], int]:
        """
        Seller's orders, newest first.

        Returns:
            Tuple of (orders, total_count)
        """
        conditions = [Order.seller_id == seller_id]
        if status is not None:
            conditions.append(Order.status == status)
        if kind is not None:
            conditions.append(Order.kind == kind)

        stmt = (
            select(Order)
            .where(and_(*conditions))
            .order_by(Order.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(Order).where(and_(*conditions))

        orders = (await self.session.execute(stmt)).scalars().all()
        total = (await self.session.execute(count_stmt)).scalar_one()
        return orders, total

    async def list_events(self, order_id: uuid.UUID) -> Sequence[OrderEvent]:
        stmt = (
            select(OrderEvent)
            .where(OrderEvent.order_id == order_id)
            .order_by(OrderEvent.created_at, OrderEvent.id)
        )
        return (await self.session.execute(stmt)).scalars().all()

    async def find_lapsed_for_update(
        self, now: datetime, limit: int = 100
    ) -> Sequence[Order]:
        """
        Lock a batch of quotations whose validity has passed.

        Rows locked by another sweeper are skipped.
        """
        stmt = (
            select(Order)
            .where(
                Order.status.in_(EXPIRABLE_STATUSES),
                Order.valid_until.is_not(None),
                Order.valid_until < now,
            )
            .order_by(Order.valid_until)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalars().all()

    async def delete(self, order: Order) -> None:
        await self.session.delete(order)
        await self.session.flush()
