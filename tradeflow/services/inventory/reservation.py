"""
Inventory reservation against the products table.

Every reservation is a single conditional ``UPDATE ... WHERE stock >= q``
executed in the caller's transaction. The row lock taken by the update
serializes concurrent reservations on the same product, so the sum of
successful reservations can never exceed the stock on hand and stock
never goes negative.
"""

import uuid
from collections import defaultdict
from typing import Iterable, Mapping, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tradeflow.core.errors import (
    GuardViolationError,
    InsufficientInventoryError,
    NotFoundError,
)
from tradeflow.core.logging import get_logger
from tradeflow.database.models.product import Product
from tradeflow.services.orders.pricing import MOQViolation, PricedLine, find_moq_violations

logger = get_logger(__name__)


class InventoryReservationService:
    """Reserve and release product stock inside the current transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def reserve(self, product_id: uuid.UUID, quantity: int) -> int:
        """
        Decrement stock iff ``stock >= quantity``.

        Returns:
            Remaining stock after the reservation

        Raises:
            GuardViolationError: If quantity is below 1
            NotFoundError: If the product does not exist or is inactive
            InsufficientInventoryError: If stock cannot cover the quantity
        """
        if quantity < 1:
            raise GuardViolationError(
                "Reservation quantity must be at least 1",
                product_id=str(product_id),
                quantity=quantity,
            )

        stmt = (
            update(Product)
            .where(
                Product.id == product_id,
                Product.is_active.is_(True),
                Product.stock >= quantity,
            )
            .values(stock=Product.stock - quantity)
            .returning(Product.stock)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        remaining = result.scalar_one_or_none()

        if remaining is None:
            row = (
                await self.session.execute(
                    select(Product.sku, Product.stock, Product.is_active).where(
                        Product.id == product_id
                    )
                )
            ).one_or_none()

            if row is None or not row.is_active:
                raise NotFoundError(
                    "Product not found", product_id=str(product_id)
                )

            logger.info(
                "Reservation rejected",
                product_id=str(product_id),
                requested=quantity,
                available=row.stock,
            )
            raise InsufficientInventoryError(
                f"{row.sku} is out of stock",
                product_id=str(product_id),
                requested=quantity,
                available=row.stock,
            )

        logger.info(
            "Inventory reserved",
            product_id=str(product_id),
            quantity=quantity,
            remaining=remaining,
        )
        return remaining

    async def reserve_lines(
        self, lines: Iterable[tuple[uuid.UUID, int]]
    ) -> dict[uuid.UUID, int]:
        """
        Reserve several products in ascending id order.

        A fixed lock order keeps two multi-line reservations from
        deadlocking each other. On failure the caller must roll back the
        transaction, which undoes any reservation already applied.
        """
        remaining: dict[uuid.UUID, int] = {}
        for product_id, quantity in sorted(
            merge_quantities(lines).items(), key=lambda item: str(item[0])
        ):
            remaining[product_id] = await self.reserve(product_id, quantity)
        return remaining

    async def release(self, product_id: uuid.UUID, quantity: int) -> int:
        """
        Return previously reserved stock.

        Raises:
            NotFoundError: If the product no longer exists
        """
        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
            .returning(Product.stock)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        stock = result.scalar_one_or_none()
        if stock is None:
            raise NotFoundError("Product not found", product_id=str(product_id))

        logger.info(
            "Inventory released",
            product_id=str(product_id),
            quantity=quantity,
            stock=stock,
        )
        return stock

    async def release_lines(self, lines: Iterable[tuple[uuid.UUID, int]]) -> None:
        for product_id, quantity in sorted(
            merge_quantities(lines).items(), key=lambda item: str(item[0])
        ):
            await self.release(product_id, quantity)

    async def load_products(
        self, product_ids: Iterable[uuid.UUID], seller_id: uuid.UUID
    ) -> dict[uuid.UUID, Product]:
        """
        Load the seller's active products by id.

        Raises:
            NotFoundError: If any id is unknown, inactive or owned by
                another seller
        """
        wanted = set(product_ids)
        if not wanted:
            return {}

        result = await self.session.execute(
            select(Product).where(
                Product.id.in_(wanted),
                Product.seller_id == seller_id,
                Product.is_active.is_(True),
            )
        )
        products = {product.id: product for product in result.scalars().all()}

        missing = wanted - products.keys()
        if missing:
            raise NotFoundError(
                "Product not found",
                product_ids=sorted(str(product_id) for product_id in missing),
            )
        return products

    @staticmethod
    def check_moq(
        lines: Sequence[PricedLine], products: Mapping[uuid.UUID, Product]
    ) -> list[MOQViolation]:
        return find_moq_violations(
            lines, {product_id: p.moq for product_id, p in products.items()}
        )


def merge_quantities(lines: Iterable[tuple[uuid.UUID, int]]) -> dict[uuid.UUID, int]:
    totals: dict[uuid.UUID, int] = defaultdict(int)
    for product_id, quantity in lines:
        totals[product_id] += quantity
    return dict(totals)
