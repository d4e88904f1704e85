"""
Pytest configuration and shared test fixtures.

Environment overrides are applied before anything from ``tradeflow`` is
imported: settings are cached on first use and the rate limiter reads them
at import time of ``tradeflow.main``.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("APP_RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("APP_STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("APP_SECRET_KEY", "test-secret-key-that-is-long-enough-for-hs256")

import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from unittest.mock import AsyncMock, Mock
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tradeflow.database.models.order import Order, OrderLineItem
from tradeflow.database.models.product import Product
from tradeflow.services.orders.enums import OrderKind, OrderStatus

SELLER_ID = UUID("6f1c1f4e-8a1b-4c39-9a57-2f8e0c1d2b3a")
PRODUCT_ID = UUID("0b7f3c2e-1d4a-4e6b-8c9d-7a5e3f2b1c0d")


# ============================================================================
# Session Fixtures
# ============================================================================


@pytest.fixture
def mock_session() -> AsyncMock:
    """
    Async session double.

    ``add`` and ``begin_nested`` stay synchronous like on the real session;
    ``begin_nested`` returns a MagicMock usable as an async context manager.
    """
    return AsyncMock(spec=AsyncSession)


# ============================================================================
# Order Fixtures
# ============================================================================


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def seller_id() -> UUID:
    return SELLER_ID


@pytest.fixture
def product_id() -> UUID:
    """Product referenced by the default order line."""
    return PRODUCT_ID


@pytest.fixture
def make_order() -> Callable[..., Order]:
    """
    Factory for transient ``Order`` rows.

    Defaults describe a 2 x $50.00 quotation with a $40.00 deposit that is
    valid for another week. Keyword arguments override any column;
    ``line_items`` replaces the default line.
    """

    def factory(
        status: OrderStatus = OrderStatus.DRAFT,
        kind: OrderKind = OrderKind.QUOTATION,
        line_items: Optional[list[OrderLineItem]] = None,
        **overrides: Any,
    ) -> Order:
        created = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "id": uuid4(),
            "order_number": "QUO-20260101-ABC123",
            "kind": kind,
            "status": status,
            "seller_id": SELLER_ID,
            "buyer_email": "buyer@example.com",
            "buyer_name": "Dana Buyer",
            "currency": "USD",
            "subtotal_cents": 10000,
            "tax_cents": 0,
            "shipping_cents": 0,
            "total_cents": 10000,
            "deposit_cents": 4000,
            "balance_cents": 6000,
            "valid_until": created + timedelta(days=7),
            "access_token": "tok_" + uuid4().hex,
            "created_at": created,
            "updated_at": created,
        }
        if kind == OrderKind.RETAIL:
            values.update(
                order_number="ORD-20260101-ABC123",
                deposit_cents=0,
                balance_cents=10000,
                valid_until=None,
                access_token=None,
            )
        values.update(overrides)

        order = Order(**values)
        if line_items is None:
            line_items = [
                OrderLineItem(
                    position=0,
                    product_id=PRODUCT_ID,
                    sku="SKU-1",
                    name="Widget",
                    quantity=2,
                    unit_price_cents=5000,
                    line_total_cents=10000,
                )
            ]
        order.line_items = line_items
        return order

    return factory


@pytest.fixture
def make_product() -> Callable[..., Mock]:
    """Catalog product double carrying the attributes pricing reads."""

    def factory(
        product_id: UUID = PRODUCT_ID,
        sku: str = "SKU-1",
        name: str = "Widget",
        price_cents: int = 2500,
        currency: str = "USD",
        moq: int = 1,
        stock: int = 10,
    ) -> Mock:
        product = Mock(spec=Product)
        product.id = product_id
        product.sku = sku
        # ``name`` is a Mock constructor argument, so it is set afterwards.
        product.name = name
        product.price_cents = price_cents
        product.currency = currency
        product.moq = moq
        product.stock = stock
        product.is_active = True
        return product

    return factory


# ============================================================================
# Webhook Fixtures
# ============================================================================


@pytest.fixture
def sign_webhook() -> Callable[..., str]:
    """Build a ``Stripe-Signature`` header the way the provider signs payloads."""

    def _sign(
        body: bytes,
        secret: str = os.environ["APP_STRIPE_WEBHOOK_SECRET"],
        timestamp: Optional[int] = None,
    ) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        digest = hmac.new(
            secret.encode("utf-8"), f"{ts}.".encode("utf-8") + body, hashlib.sha256
        ).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign
