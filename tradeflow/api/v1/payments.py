"""
Payment endpoints: provider intents, manual payment recording and the
provider webhook.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Header, HTTPException, Request, status

from tradeflow.api.deps import (
    CurrentSeller,
    JSONBody,
    OrderServiceDep,
    PaymentServiceDep,
    payment_response,
    require_valid,
    unwrap,
    with_idempotency_key,
)
from tradeflow.core.logging import get_logger
from tradeflow.core.security import WebhookSignatureError
from tradeflow.database.models.payment import PaymentType
from tradeflow.schemas.payments import PaymentIntentResponse, PaymentReceipt, WebhookAck
from tradeflow.schemas.validation import (
    validate_payment_intent_request,
    validate_payment_request,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

RECORDABLE_TYPES = {
    "deposit": PaymentType.DEPOSIT,
    "balance": PaymentType.BALANCE,
    "full": PaymentType.FULL,
}


@router.post(
    "/orders/{order_id}/intents",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment_intent(
    order_id: UUID,
    payload: JSONBody,
    seller: CurrentSeller,
    service: PaymentServiceDep,
) -> PaymentIntentResponse:
    request = require_valid(validate_payment_intent_request(payload))
    return unwrap(
        await service.create_payment_intent(
            order_id, PaymentType(request.payment_type), seller_id=seller.id
        )
    )


@router.post("/orders/{order_id}/{payment_type}", response_model=PaymentReceipt)
async def record_payment(
    order_id: UUID,
    payment_type: str,
    payload: JSONBody,
    seller: CurrentSeller,
    service: OrderServiceDep,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Record a payment confirmed outside the provider, e.g. a bank transfer."""
    recorded_type = RECORDABLE_TYPES.get(payment_type)
    if recorded_type is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown payment type: {payment_type}",
        )

    request = require_valid(
        validate_payment_request(with_idempotency_key(payload, idempotency_key))
    )
    return payment_response(
        await service.record_payment(
            order_id,
            recorded_type,
            request.amount_cents,
            request.idempotency_key,
            provider_intent_id=request.provider_intent_id,
            actor_id=str(seller.id),
            seller_id=seller.id,
        )
    )


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    service: PaymentServiceDep,
    stripe_signature: Annotated[Optional[str], Header(alias="Stripe-Signature")] = None,
) -> WebhookAck:
    """Signed provider events; the signature covers the raw body bytes."""
    raw_body = await request.body()
    try:
        outcome = await service.handle_webhook(raw_body, stripe_signature)
    except WebhookSignatureError as e:
        logger.warning("Webhook rejected", code=e.code)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": str(e)},
        ) from e
    return unwrap(outcome)
