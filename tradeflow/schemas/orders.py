"""
Order and quotation schemas for API request/response validation.

Money is always an integer count of minor units; floats and booleans are
rejected by the strict integer fields.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import (
    UUID4,
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    field_validator,
    model_validator,
)

from tradeflow.core.config import ISO_CURRENCY_CODES
from tradeflow.services.orders.enums import OrderEventType, OrderKind, OrderStatus
from tradeflow.schemas.countries import ISO_COUNTRY_CODES

EMAIL_MAX_LENGTH = 255


def _normalize_email(v: str) -> str:
    local, sep, domain = v.partition("@")
    if not sep or not local or "." not in domain or " " in v:
        raise ValueError("Invalid email format")
    return v.lower()


def _normalize_currency(v: str) -> str:
    code = v.upper()
    if code not in ISO_CURRENCY_CODES:
        raise ValueError(f"Unsupported currency code: {v}")
    return code


def _normalize_country(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    code = v.upper()
    if code not in ISO_COUNTRY_CODES:
        raise ValueError(f"Unknown country code: {v}")
    return code


class LineItemRequest(BaseModel):
    """Single order line."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    product_id: Optional[UUID4] = Field(None, description="Catalog product, if any")
    sku: Optional[str] = Field(None, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    quantity: StrictInt = Field(..., ge=1, le=1_000_000)
    unit_price_cents: StrictInt = Field(..., ge=0)


class QuotationCreateRequest(BaseModel):
    """Seller-authored quotation, also used to replace a draft's terms."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    buyer_email: str = Field(..., min_length=3, max_length=EMAIL_MAX_LENGTH)
    buyer_name: Optional[str] = Field(None, max_length=255)
    buyer_company: Optional[str] = Field(None, max_length=255)
    buyer_id: Optional[UUID4] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    ship_to_country: Optional[str] = Field(None, min_length=2, max_length=2)
    line_items: list[LineItemRequest] = Field(..., min_length=1, max_length=500)
    tax_rate: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        le=100,
        max_digits=7,
        decimal_places=4,
        description="Tax rate as a percentage of the subtotal",
    )
    shipping_cents: StrictInt = Field(default=0, ge=0)
    deposit_percentage: Optional[StrictInt] = Field(None, ge=0, le=100)
    deposit_cents: Optional[StrictInt] = Field(None, ge=0)
    valid_until: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=5000)
    terms: Optional[str] = Field(None, max_length=5000)

    @field_validator("buyer_email")
    @classmethod
    def validate_buyer_email(cls, v: str) -> str:
        return _normalize_email(v)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _normalize_currency(v)

    @field_validator("ship_to_country")
    @classmethod
    def validate_country(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_country(v)

    @field_validator("valid_until")
    @classmethod
    def validate_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("valid_until must include a timezone offset")
        return v

    @model_validator(mode="after")
    def validate_single_deposit_source(self) -> "QuotationCreateRequest":
        if self.deposit_percentage is not None and self.deposit_cents is not None:
            raise ValueError("Provide either deposit_percentage or deposit_cents, not both")
        return self


class RetailOrderCreateRequest(BaseModel):
    """Checkout order; every line references a catalog product."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    seller_id: UUID4
    buyer_email: str = Field(..., min_length=3, max_length=EMAIL_MAX_LENGTH)
    buyer_name: Optional[str] = Field(None, max_length=255)
    buyer_id: Optional[UUID4] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    ship_to_country: Optional[str] = Field(None, min_length=2, max_length=2)
    line_items: list[LineItemRequest] = Field(..., min_length=1, max_length=500)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100, max_digits=7, decimal_places=4)
    shipping_cents: StrictInt = Field(default=0, ge=0)

    @field_validator("buyer_email")
    @classmethod
    def validate_buyer_email(cls, v: str) -> str:
        return _normalize_email(v)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _normalize_currency(v)

    @field_validator("ship_to_country")
    @classmethod
    def validate_country(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_country(v)

    @model_validator(mode="after")
    def validate_catalog_lines(self) -> "RetailOrderCreateRequest":
        if any(item.product_id is None for item in self.line_items):
            raise ValueError("Every retail line item needs a product_id")
        return self


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class LineItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    product_id: Optional[UUID] = None
    sku: Optional[str] = None
    name: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int


class OrderResponse(BaseModel):
    """Snapshot of an order after an operation."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    kind: OrderKind
    status: OrderStatus
    seller_id: UUID
    buyer_id: Optional[UUID] = None
    buyer_email: str
    buyer_name: Optional[str] = None
    buyer_company: Optional[str] = None
    currency: str
    ship_to_country: Optional[str] = None
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    total_cents: int
    deposit_cents: int
    balance_cents: int
    deposit_percentage: Optional[int] = None
    valid_until: Optional[datetime] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    cancellation_reason: Optional[str] = None
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    deposit_paid_at: Optional[datetime] = None
    balance_requested_at: Optional[datetime] = None
    balance_paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_expired: bool = False
    line_items: list[LineItemResponse] = Field(default_factory=list)


class BuyerOrderResponse(BaseModel):
    """Quotation as shown to the buyer through the access link."""

    model_config = ConfigDict(from_attributes=True)

    order_number: str
    status: OrderStatus
    buyer_name: Optional[str] = None
    buyer_company: Optional[str] = None
    currency: str
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    total_cents: int
    deposit_cents: int
    balance_cents: int
    valid_until: Optional[datetime] = None
    terms: Optional[str] = None
    is_expired: bool = False
    line_items: list[LineItemResponse] = Field(default_factory=list)


class OrderEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_type: OrderEventType
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    actor_id: Optional[str] = None
    reason: Optional[str] = None
    details: dict = Field(default_factory=dict)
    created_at: datetime


class OrderListResponse(BaseModel):
    items: list[OrderResponse]
    total: int
    skip: int
    limit: int


class ExpirySweepResult(BaseModel):
    expired: int
    order_ids: list[UUID] = Field(default_factory=list)
