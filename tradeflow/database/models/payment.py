"""
Payment ledger model.

Rows are immutable financial facts. The unique idempotency key is the
storage-level arbiter that prevents a retried request from recording a
second payment.
"""

import uuid
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from tradeflow.database.base import BaseModel
from tradeflow.database.models.order import enum_values

IDEMPOTENCY_KEY_CONSTRAINT = "uq_payment_records_idempotency_key"
ORDER_PAYMENT_TYPE_INDEX = "uq_payment_records_order_type"


class PaymentType(str, Enum):
    DEPOSIT = "deposit"
    BALANCE = "balance"
    FULL = "full"
    REFUND = "refund"


class PaymentRecord(BaseModel):
    """
    Ledger entry tied to exactly one order.

    Deposit, balance and full payments occur at most once per order;
    refunds may repeat.
    """

    __tablename__ = "payment_records"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    payment_type: Mapped[PaymentType] = mapped_column(
        SQLEnum(
            PaymentType,
            name="payment_type",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Provider payment intent or charge id",
    )
    response_payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
        comment="Success response replayed to retried requests",
    )

    __table_args__ = (
        UniqueConstraint("idempotency_key", name=IDEMPOTENCY_KEY_CONSTRAINT),
        Index(
            ORDER_PAYMENT_TYPE_INDEX,
            "order_id",
            "payment_type",
            unique=True,
            postgresql_where=text("payment_type <> 'refund'"),
        ),
        CheckConstraint("amount_cents >= 0", name="ck_payment_records_amount_non_negative"),
        CheckConstraint(
            "char_length(currency) = 3", name="ck_payment_records_currency_code"
        ),
    )
