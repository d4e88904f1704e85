"""
Order and quotation endpoints.

Seller endpoints are scoped to the authenticated seller. The buyer link
endpoints authenticate with the quotation's access token instead.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Header, Query, Response, status

from tradeflow.api.deps import (
    CurrentActor,
    CurrentSeller,
    JSONBody,
    OrderServiceDep,
    payment_response,
    require_valid,
    unwrap,
    with_idempotency_key,
)
from tradeflow.core.logging import get_logger
from tradeflow.schemas.orders import (
    BuyerOrderResponse,
    OrderEventResponse,
    OrderListResponse,
    OrderResponse,
)
from tradeflow.schemas.payments import PaymentReceipt, PaymentRecordResponse
from tradeflow.schemas.validation import (
    validate_cancel_request,
    validate_quotation_create,
    validate_refund_request,
    validate_retail_order_create,
)
from tradeflow.services.orders.enums import OrderKind, OrderStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

IdempotencyKeyHeader = Annotated[Optional[str], Header(alias="Idempotency-Key")]


# Buyer link endpoints are declared first so ``/link/...`` never matches
# the ``/{order_id}`` routes.


@router.get("/link/{access_token}", response_model=BuyerOrderResponse)
async def view_quotation_link(
    access_token: str, service: OrderServiceDep
) -> BuyerOrderResponse:
    """Buyer opens the quotation; the first open marks it viewed."""
    return unwrap(await service.view_by_token(access_token))


@router.post("/link/{access_token}/accept", response_model=BuyerOrderResponse)
async def accept_quotation_link(
    access_token: str, service: OrderServiceDep
) -> BuyerOrderResponse:
    return unwrap(await service.accept_by_token(access_token))


@router.post(
    "/quotations",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create draft quotation",
)
async def create_quotation(
    payload: JSONBody, seller: CurrentSeller, service: OrderServiceDep
) -> OrderResponse:
    request = require_valid(validate_quotation_create(payload))
    logger.info(
        "Creating quotation",
        seller_id=str(seller.id),
        line_count=len(request.line_items),
    )
    return unwrap(
        await service.create_quotation(seller.id, request, actor_id=str(seller.id))
    )


@router.post(
    "/retail",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create checkout order",
)
async def create_retail_order(
    payload: JSONBody, actor: CurrentActor, service: OrderServiceDep
) -> OrderResponse:
    request = require_valid(validate_retail_order_create(payload))
    return unwrap(await service.create_retail_order(request, actor_id=str(actor.id)))


@router.get("", response_model=OrderListResponse)
async def list_orders(
    seller: CurrentSeller,
    service: OrderServiceDep,
    status_filter: Annotated[Optional[OrderStatus], Query(alias="status")] = None,
    kind: Optional[OrderKind] = None,
    skip: Annotated[int, Query(ge=0)] = 0,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> OrderListResponse:
    return unwrap(
        await service.list_orders(
            seller.id, status=status_filter, kind=kind, skip=skip, limit=limit
        )
    )


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: UUID, seller: CurrentSeller, service: OrderServiceDep
) -> OrderResponse:
    return unwrap(await service.get_order(order_id, seller.id))


@router.put("/{order_id}", response_model=OrderResponse)
async def update_draft(
    order_id: UUID,
    payload: JSONBody,
    seller: CurrentSeller,
    service: OrderServiceDep,
) -> OrderResponse:
    request = require_valid(validate_quotation_create(payload))
    return unwrap(
        await service.update_draft(order_id, seller.id, request, actor_id=str(seller.id))
    )


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_draft(
    order_id: UUID, seller: CurrentSeller, service: OrderServiceDep
) -> Response:
    unwrap(await service.delete_draft(order_id, seller.id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{order_id}/events", response_model=list[OrderEventResponse])
async def list_order_events(
    order_id: UUID, seller: CurrentSeller, service: OrderServiceDep
) -> list[OrderEventResponse]:
    return unwrap(await service.list_events(order_id, seller.id))


@router.get("/{order_id}/payments", response_model=list[PaymentRecordResponse])
async def list_order_payments(
    order_id: UUID, seller: CurrentSeller, service: OrderServiceDep
) -> list[PaymentRecordResponse]:
    return unwrap(await service.list_payments(order_id, seller.id))


@router.post("/{order_id}/send", response_model=OrderResponse)
async def send_quotation(
    order_id: UUID, seller: CurrentSeller, service: OrderServiceDep
) -> OrderResponse:
    return unwrap(await service.send(order_id, seller.id, actor_id=str(seller.id)))


@router.post("/{order_id}/accept", response_model=OrderResponse)
async def accept_quotation(
    order_id: UUID, seller: CurrentSeller, service: OrderServiceDep
) -> OrderResponse:
    """Record an acceptance the buyer gave outside the quotation link."""
    return unwrap(
        await service.accept(order_id, actor_id=str(seller.id), seller_id=seller.id)
    )


@router.post("/{order_id}/request-balance", response_model=OrderResponse)
async def request_balance(
    order_id: UUID, seller: CurrentSeller, service: OrderServiceDep
) -> OrderResponse:
    return unwrap(
        await service.request_balance(order_id, seller.id, actor_id=str(seller.id))
    )


@router.post("/{order_id}/complete", response_model=OrderResponse)
async def complete_order(
    order_id: UUID, seller: CurrentSeller, service: OrderServiceDep
) -> OrderResponse:
    return unwrap(await service.complete(order_id, seller.id, actor_id=str(seller.id)))


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: UUID,
    payload: JSONBody,
    seller: CurrentSeller,
    service: OrderServiceDep,
) -> OrderResponse:
    request = require_valid(validate_cancel_request(payload))
    return unwrap(
        await service.cancel(
            order_id, seller.id, reason=request.reason, actor_id=str(seller.id)
        )
    )


@router.post("/{order_id}/ship", response_model=OrderResponse)
async def ship_order(
    order_id: UUID, seller: CurrentSeller, service: OrderServiceDep
) -> OrderResponse:
    return unwrap(await service.ship(order_id, seller.id, actor_id=str(seller.id)))


@router.post("/{order_id}/deliver", response_model=OrderResponse)
async def deliver_order(
    order_id: UUID, seller: CurrentSeller, service: OrderServiceDep
) -> OrderResponse:
    return unwrap(await service.deliver(order_id, seller.id, actor_id=str(seller.id)))


@router.post("/{order_id}/refund", response_model=PaymentReceipt)
async def refund_order(
    order_id: UUID,
    payload: JSONBody,
    seller: CurrentSeller,
    service: OrderServiceDep,
    idempotency_key: IdempotencyKeyHeader = None,
):
    request = require_valid(
        validate_refund_request(with_idempotency_key(payload, idempotency_key))
    )
    return payment_response(
        await service.refund(
            order_id,
            request.amount_cents,
            request.idempotency_key,
            reason=request.reason,
            actor_id=str(seller.id),
            seller_id=seller.id,
        )
    )
