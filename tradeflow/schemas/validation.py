"""
Boundary validation as pure functions.

Each ``validate_*`` function turns an untrusted payload into either a
parsed request model or a list of field errors. Nothing here raises, so
callers branch on ``result.ok``.
"""

from typing import Any, Generic, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError

from tradeflow.schemas.orders import (
    CancelRequest,
    QuotationCreateRequest,
    RetailOrderCreateRequest,
)
from tradeflow.schemas.payments import (
    PaymentIntentRequest,
    PaymentRecordRequest,
    RefundRequest,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


class FieldError(BaseModel):
    field: str
    message: str


class ValidationResult(BaseModel, Generic[ModelT]):
    """Either ``value`` or a non-empty ``errors`` list."""

    value: Optional[ModelT] = None
    errors: list[FieldError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _location(loc: tuple) -> str:
    parts = [str(part) for part in loc]
    return ".".join(parts) if parts else "body"


def _message(error: Mapping[str, Any]) -> str:
    message = error.get("msg", "Invalid value")
    # pydantic prefixes custom ValueError messages
    return message.removeprefix("Value error, ")


def validate_payload(model: Type[ModelT], payload: Any) -> ValidationResult[ModelT]:
    """Parse ``payload`` into ``model``, collecting every field error."""
    if not isinstance(payload, Mapping):
        return ValidationResult[model](
            errors=[FieldError(field="body", message="Request body must be an object")]
        )

    try:
        return ValidationResult[model](value=model.model_validate(dict(payload)))
    except ValidationError as e:
        return ValidationResult[model](
            errors=[
                FieldError(field=_location(err["loc"]), message=_message(err))
                for err in e.errors()
            ]
        )


def validate_quotation_create(payload: Any) -> ValidationResult[QuotationCreateRequest]:
    return validate_payload(QuotationCreateRequest, payload)


def validate_retail_order_create(
    payload: Any,
) -> ValidationResult[RetailOrderCreateRequest]:
    return validate_payload(RetailOrderCreateRequest, payload)


def validate_payment_request(payload: Any) -> ValidationResult[PaymentRecordRequest]:
    return validate_payload(PaymentRecordRequest, payload)


def validate_refund_request(payload: Any) -> ValidationResult[RefundRequest]:
    return validate_payload(RefundRequest, payload)


def validate_payment_intent_request(payload: Any) -> ValidationResult[PaymentIntentRequest]:
    return validate_payload(PaymentIntentRequest, payload)


def validate_cancel_request(payload: Any) -> ValidationResult[CancelRequest]:
    return validate_payload(CancelRequest, payload or {})
