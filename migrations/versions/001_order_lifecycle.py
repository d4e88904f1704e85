"""
Alembic migration: order lifecycle schema.

Creates products, orders with line items and event log, the payment
ledger and notification logs. Money columns are integer minor units and
the deposit/balance split is enforced by check constraints.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

order_kind = postgresql.ENUM("quotation", "retail", name="order_kind", create_type=False)
order_status = postgresql.ENUM(
    "draft",
    "sent",
    "viewed",
    "accepted",
    "deposit_paid",
    "balance_due",
    "fully_paid",
    "completed",
    "expired",
    "pending",
    "processing",
    "shipped",
    "delivered",
    "refunded",
    "cancelled",
    name="order_status",
    create_type=False,
)
order_event_type = postgresql.ENUM(
    "created",
    "updated",
    "sent",
    "viewed",
    "accepted",
    "deposit_paid",
    "balance_requested",
    "balance_paid",
    "completed",
    "expired",
    "paid",
    "shipped",
    "delivered",
    "refunded",
    "cancelled",
    name="order_event_type",
    create_type=False,
)
payment_type = postgresql.ENUM(
    "deposit", "balance", "full", "refund", name="payment_type", create_type=False
)
notification_status = postgresql.ENUM(
    "sent", "failed", "skipped", name="notification_status", create_type=False
)

ENUMS = (order_kind, order_status, order_event_type, payment_type, notification_status)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "products",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("seller_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("sku", sa.String(100), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.String(2000), nullable=True),
        sa.Column("price_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "moq",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
            comment="Minimum order quantity for wholesale lines",
        ),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")
        ),
        *_timestamps(),
        sa.UniqueConstraint("seller_id", "sku", name="uq_products_seller_sku"),
        sa.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        sa.CheckConstraint("price_cents >= 0", name="ck_products_price_non_negative"),
        sa.CheckConstraint("moq >= 1", name="ck_products_moq_positive"),
    )

    op.create_table(
        "orders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("order_number", sa.String(50), nullable=False, unique=True),
        sa.Column("kind", order_kind, nullable=False),
        sa.Column("status", order_status, nullable=False),
        sa.Column("seller_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("buyer_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("buyer_email", sa.String(255), nullable=False),
        sa.Column("buyer_name", sa.String(255), nullable=True),
        sa.Column("buyer_company", sa.String(255), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("ship_to_country", sa.String(2), nullable=True),
        sa.Column("subtotal_cents", sa.BigInteger(), nullable=False),
        sa.Column("tax_cents", sa.BigInteger(), nullable=False),
        sa.Column("shipping_cents", sa.BigInteger(), nullable=False),
        sa.Column("total_cents", sa.BigInteger(), nullable=False),
        sa.Column("deposit_cents", sa.BigInteger(), nullable=False),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False),
        sa.Column("deposit_percentage", sa.Integer(), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("terms", sa.Text(), nullable=True),
        sa.Column("access_token", sa.String(128), nullable=True, unique=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        *[
            sa.Column(name, sa.DateTime(timezone=True), nullable=True)
            for name in (
                "sent_at",
                "viewed_at",
                "accepted_at",
                "deposit_paid_at",
                "balance_requested_at",
                "balance_paid_at",
                "completed_at",
                "expired_at",
                "paid_at",
                "shipped_at",
                "delivered_at",
                "refunded_at",
                "cancelled_at",
                "inventory_reserved_at",
            )
        ],
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.Column("updated_by", sa.String(255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "subtotal_cents >= 0 AND tax_cents >= 0 AND shipping_cents >= 0 "
            "AND total_cents >= 0 AND deposit_cents >= 0 AND balance_cents >= 0",
            name="ck_orders_amounts_non_negative",
        ),
        sa.CheckConstraint(
            "total_cents = subtotal_cents + tax_cents + shipping_cents",
            name="ck_orders_total_matches_components",
        ),
        sa.CheckConstraint(
            "deposit_cents + balance_cents = total_cents",
            name="ck_orders_split_matches_total",
        ),
        sa.CheckConstraint(
            "deposit_cents <= total_cents", name="ck_orders_deposit_not_above_total"
        ),
        sa.CheckConstraint(
            "deposit_percentage IS NULL OR "
            "(deposit_percentage >= 0 AND deposit_percentage <= 100)",
            name="ck_orders_deposit_percentage_range",
        ),
        sa.CheckConstraint("char_length(currency) = 3", name="ck_orders_currency_code"),
    )
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])
    op.create_index("ix_orders_seller_status", "orders", ["seller_id", "status"])
    op.create_index("ix_orders_seller_created", "orders", ["seller_id", "created_at"])
    op.create_index(
        "ix_orders_expirable",
        "orders",
        ["valid_until"],
        postgresql_where=sa.text("status IN ('sent', 'viewed', 'accepted')"),
    )

    op.create_table(
        "order_line_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "order_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column(
            "product_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("products.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("sku", sa.String(100), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.BigInteger(), nullable=False),
        sa.Column("line_total_cents", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("quantity >= 1", name="ck_order_line_items_quantity_positive"),
        sa.CheckConstraint(
            "unit_price_cents >= 0", name="ck_order_line_items_unit_price_non_negative"
        ),
        sa.CheckConstraint(
            "line_total_cents = quantity * unit_price_cents",
            name="ck_order_line_items_line_total",
        ),
    )
    op.create_index(
        "uq_order_line_items_position",
        "order_line_items",
        ["order_id", "position"],
        unique=True,
    )
    op.create_index(
        "ix_order_line_items_product_id", "order_line_items", ["product_id"]
    )

    op.create_table(
        "order_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "order_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", order_event_type, nullable=False),
        sa.Column("from_status", order_status, nullable=True),
        sa.Column("to_status", order_status, nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
    )
    op.create_index(
        "ix_order_events_order_created", "order_events", ["order_id", "created_at"]
    )

    op.create_table(
        "payment_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "order_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("orders.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("payment_type", payment_type, nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("provider_intent_id", sa.String(255), nullable=True),
        sa.Column(
            "response_payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "idempotency_key", name="uq_payment_records_idempotency_key"
        ),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_payment_records_amount_non_negative"
        ),
        sa.CheckConstraint(
            "char_length(currency) = 3", name="ck_payment_records_currency_code"
        ),
    )
    op.create_index("ix_payment_records_order_id", "payment_records", ["order_id"])
    op.create_index(
        "ix_payment_records_provider_intent_id",
        "payment_records",
        ["provider_intent_id"],
    )
    op.create_index(
        "uq_payment_records_order_type",
        "payment_records",
        ["order_id", "payment_type"],
        unique=True,
        postgresql_where=sa.text("payment_type <> 'refund'"),
    )

    op.create_table(
        "notification_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event", sa.String(50), nullable=False),
        sa.Column("recipient", sa.String(255), nullable=False),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("status", notification_status, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("attempts >= 1", name="ck_notification_logs_attempts_positive"),
    )
    op.create_index(
        "ix_notification_logs_order_event", "notification_logs", ["order_id", "event"]
    )


def downgrade() -> None:
    op.drop_table("notification_logs")
    op.drop_table("payment_records")
    op.drop_table("order_events")
    op.drop_table("order_line_items")
    op.drop_table("orders")
    op.drop_table("products")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
