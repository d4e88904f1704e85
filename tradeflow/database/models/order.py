"""
Order, line item and order event models.

One ``orders`` table holds both trade quotations and retail checkout orders.
All money columns are integer minor units (cents) and the split invariants
are enforced by check constraints.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tradeflow.database.base import AuditedModel, BaseModel
from tradeflow.services.orders.enums import OrderEventType, OrderKind, OrderStatus


def enum_values(enum_cls) -> list[str]:
    """Persist enum values rather than member names."""
    return [member.value for member in enum_cls]


order_status_enum = SQLEnum(
    OrderStatus,
    name="order_status",
    create_constraint=True,
    values_callable=enum_values,
)


class Order(AuditedModel):
    """
    Quotation or retail order.

    Attributes:
        order_number: Human-readable unique number (QUO-/ORD- prefix)
        kind: quotation or retail
        status: Current lifecycle status
        subtotal_cents / tax_cents / shipping_cents / total_cents: Totals
        deposit_cents / balance_cents: Payment split, summing to total
        valid_until: Quotation expiry instant
        access_token: Secret for the buyer's quotation link
        inventory_reserved_at: Set while stock is held for the order
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Human-readable order number",
    )
    kind: Mapped[OrderKind] = mapped_column(
        SQLEnum(
            OrderKind,
            name="order_kind",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        comment="Quotation or retail order",
    )
    status: Mapped[OrderStatus] = mapped_column(
        order_status_enum,
        nullable=False,
        index=True,
        comment="Current order status",
    )

    # Parties
    seller_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        comment="Selling tenant",
    )
    buyer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
        comment="Registered buyer, if any",
    )
    buyer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    buyer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer_company: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Money, integer minor units
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    ship_to_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shipping_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    deposit_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    deposit_percentage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Terms
    valid_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Quotation offer expiry",
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    terms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    access_token: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
        comment="Secret token for the buyer link",
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(
        String(500), nullable=True
    )

    # Transition timestamps, each written once by its transition
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deposit_paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    balance_requested_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )
    balance_paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    inventory_reserved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )

    line_items: Mapped[list["OrderLineItem"]] = relationship(
        "OrderLineItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderLineItem.position",
    )

    __table_args__ = (
        Index("ix_orders_seller_status", "seller_id", "status"),
        Index("ix_orders_seller_created", "seller_id", "created_at"),
        Index(
            "ix_orders_expirable",
            "valid_until",
            postgresql_where=text("status IN ('sent', 'viewed', 'accepted')"),
        ),
        CheckConstraint(
            "subtotal_cents >= 0 AND tax_cents >= 0 AND shipping_cents >= 0 "
            "AND total_cents >= 0 AND deposit_cents >= 0 AND balance_cents >= 0",
            name="ck_orders_amounts_non_negative",
        ),
        CheckConstraint(
            "total_cents = subtotal_cents + tax_cents + shipping_cents",
            name="ck_orders_total_matches_components",
        ),
        CheckConstraint(
            "deposit_cents + balance_cents = total_cents",
            name="ck_orders_split_matches_total",
        ),
        CheckConstraint(
            "deposit_cents <= total_cents",
            name="ck_orders_deposit_not_above_total",
        ),
        CheckConstraint(
            "deposit_percentage IS NULL OR "
            "(deposit_percentage >= 0 AND deposit_percentage <= 100)",
            name="ck_orders_deposit_percentage_range",
        ),
        CheckConstraint("char_length(currency) = 3", name="ck_orders_currency_code"),
        {"comment": "Quotations and retail orders with payment split"},
    )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    def is_past_valid_until(self, now: datetime) -> bool:
        return self.valid_until is not None and self.valid_until < now

    def is_expired_at(self, now: datetime) -> bool:
        """Lapsed but not yet swept into EXPIRED."""
        return self.status.is_expirable() and self.is_past_valid_until(now)


class OrderLineItem(BaseModel):
    """
    Ordered line of an order.

    ``line_total_cents`` always equals ``quantity * unit_price_cents``.
    """

    __tablename__ = "order_line_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    line_total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="line_items")

    __table_args__ = (
        Index("uq_order_line_items_position", "order_id", "position", unique=True),
        CheckConstraint("quantity >= 1", name="ck_order_line_items_quantity_positive"),
        CheckConstraint(
            "unit_price_cents >= 0",
            name="ck_order_line_items_unit_price_non_negative",
        ),
        CheckConstraint(
            "line_total_cents = quantity * unit_price_cents",
            name="ck_order_line_items_line_total",
        ),
    )


class OrderEvent(BaseModel):
    """
    Append-only lifecycle event of an order.

    Written in the same transaction as the status change it records.
    """

    __tablename__ = "order_events"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[OrderEventType] = mapped_column(
        SQLEnum(
            OrderEventType,
            name="order_event_type",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )
    from_status: Mapped[Optional[OrderStatus]] = mapped_column(
        order_status_enum, nullable=True
    )
    to_status: Mapped[OrderStatus] = mapped_column(order_status_enum, nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )

    __table_args__ = (
        Index("ix_order_events_order_created", "order_id", "created_at"),
    )
