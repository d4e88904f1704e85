"""
Payment schemas: manual payment recording, provider intents, ledger
entries and webhook envelopes.
"""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from tradeflow.database.models.payment import PaymentType
from tradeflow.services.orders.enums import OrderStatus

IDEMPOTENCY_KEY_PATTERN = r"^[\x21-\x7e]{8,255}$"


class PaymentRecordRequest(BaseModel):
    """Deposit, balance or full payment confirmed outside the provider."""

    model_config = ConfigDict(extra="forbid")

    amount_cents: StrictInt = Field(..., ge=0)
    idempotency_key: str = Field(..., pattern=IDEMPOTENCY_KEY_PATTERN)
    provider_intent_id: Optional[str] = Field(None, max_length=255)


class RefundRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: StrictInt = Field(..., ge=1)
    idempotency_key: str = Field(..., pattern=IDEMPOTENCY_KEY_PATTERN)
    reason: Optional[str] = Field(None, max_length=500)


class PaymentIntentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_type: Literal["deposit", "balance", "full"]


class PaymentIntentResponse(BaseModel):
    order_id: UUID
    payment_type: PaymentType
    amount_cents: int
    currency: str
    provider_intent_id: str
    client_secret: Optional[str] = None


class PaymentReceipt(BaseModel):
    """Success response of a recorded payment, replayed for retries."""

    payment_id: UUID
    order_id: UUID
    order_number: str
    payment_type: PaymentType
    amount_cents: int
    currency: str
    idempotency_key: str
    provider_intent_id: Optional[str] = None
    order_status: OrderStatus
    recorded_at: datetime


class PaymentRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    payment_type: PaymentType
    amount_cents: int
    currency: str
    idempotency_key: str
    provider_intent_id: Optional[str] = None
    created_at: datetime


class WebhookEventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    object: dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    """Provider event envelope."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    created: Optional[int] = None
    data: WebhookEventData = Field(default_factory=WebhookEventData)


class WebhookAck(BaseModel):
    received: bool = True
    handled: bool
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    detail: Optional[str] = None
