"""
Notification delivery log.
"""

import enum
import uuid
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from tradeflow.database.base import BaseModel
from tradeflow.database.models.order import enum_values


class NotificationStatus(str, enum.Enum):
    """Delivery outcome of an order notification."""

    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationLog(BaseModel):
    """
    One row per delivery attempt of an order lifecycle email.

    ``event`` holds the order event type that triggered the message.
    """

    __tablename__ = "notification_logs"

    order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    event: Mapped[str] = mapped_column(String(50), nullable=False)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[NotificationStatus] = mapped_column(
        SQLEnum(
            NotificationStatus,
            name="notification_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default=text("1")
    )
    provider_message_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_notification_logs_order_event", "order_id", "event"),
        CheckConstraint("attempts >= 1", name="ck_notification_logs_attempts_positive"),
    )
