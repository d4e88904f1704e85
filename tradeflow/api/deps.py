"""
FastAPI dependencies for authentication, sessions and services.
"""

from dataclasses import dataclass
from typing import Annotated, Any, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from tradeflow.core.errors import ErrorKind, Outcome
from tradeflow.core.logging import get_logger, set_actor_id
from tradeflow.core.security import TokenError, decode_token
from tradeflow.database.connection import get_db
from tradeflow.schemas.validation import ValidationResult
from tradeflow.services.notifications.notifier import OrderNotifier, get_order_notifier
from tradeflow.services.orders.service import OrderService
from tradeflow.services.payments.service import PaymentService
from tradeflow.services.payments.stripe_client import StripeClient

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)

SELLER_ROLES = frozenset({"seller", "admin"})

REPLAY_HEADER = "Idempotent-Replayed"

ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.GUARD_VIOLATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.INSUFFICIENT_INVENTORY: status.HTTP_409_CONFLICT,
    ErrorKind.DUPLICATE_IDEMPOTENCY_KEY: status.HTTP_409_CONFLICT,
    ErrorKind.CONSTRAINT_VIOLATION: status.HTTP_409_CONFLICT,
    ErrorKind.PROVIDER_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.VALIDATION_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


@dataclass(frozen=True)
class Actor:
    id: UUID
    role: str


async def get_current_actor(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Actor:
    """
    Resolve the bearer token into an actor.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        payload = decode_token(credentials.credentials)
        actor_id = UUID(payload["sub"])
    except TokenError as e:
        logger.warning("Authentication failed", code=e.code)
        raise credentials_exception from e
    except ValueError as e:
        logger.warning("Authentication failed: Invalid subject format")
        raise credentials_exception from e

    set_actor_id(str(actor_id))
    return Actor(id=actor_id, role=payload.get("role", ""))


async def get_current_seller(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    if actor.role not in SELLER_ROLES:
        logger.warning(
            "Access denied: Insufficient permissions",
            actor_id=str(actor.id),
            role=actor.role,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
    return actor


def get_order_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    notifier: Annotated[OrderNotifier, Depends(get_order_notifier)],
) -> OrderService:
    return OrderService(db, notifier=notifier)


def get_stripe_client() -> StripeClient:
    return StripeClient()


def get_payment_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    order_service: Annotated[OrderService, Depends(get_order_service)],
    stripe_client: Annotated[StripeClient, Depends(get_stripe_client)],
) -> PaymentService:
    return PaymentService(db, order_service, stripe_client=stripe_client)


async def read_json_body(request: Request) -> Any:
    """Raw JSON body; validation happens in the schema layer."""
    body = await request.body()
    if not body:
        return {}
    try:
        return await request.json()
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body is not valid JSON",
        ) from e


def require_valid(result: ValidationResult):
    """Unwrap a validation result or raise 422 with every field error."""
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "kind": ErrorKind.VALIDATION_FAILED.value,
                "errors": [error.model_dump() for error in result.errors],
            },
        )
    return result.value


def unwrap(outcome: Outcome):
    """Return the outcome value or raise the mapped HTTP error."""
    if outcome.ok:
        return outcome.value

    error = outcome.error
    raise HTTPException(
        status_code=ERROR_STATUS_CODES.get(error.kind, status.HTTP_400_BAD_REQUEST),
        detail={
            "kind": error.kind.value,
            "message": error.message,
            "retriable": error.retriable,
            "context": error.context,
        },
    )


def with_idempotency_key(payload: Any, header_value: Optional[str]) -> Any:
    """The ``Idempotency-Key`` header wins over a key in the body."""
    if header_value is None or not isinstance(payload, dict):
        return payload
    return {**payload, "idempotency_key": header_value}


def payment_response(outcome: Outcome):
    """
    Payment result, replaying the original receipt for a reused key.

    A retried request whose key is already recorded gets the first
    response back with a 200 and an ``Idempotent-Replayed`` header.
    """
    error = outcome.error
    if (
        error is not None
        and error.kind == ErrorKind.DUPLICATE_IDEMPOTENCY_KEY
        and error.original_response is not None
    ):
        logger.info(
            "Replaying recorded payment response",
            idempotency_key=error.context.get("idempotency_key"),
        )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=error.original_response,
            headers={REPLAY_HEADER: "true"},
        )
    return unwrap(outcome)


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
CurrentSeller = Annotated[Actor, Depends(get_current_seller)]
OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
PaymentServiceDep = Annotated[PaymentService, Depends(get_payment_service)]
JSONBody = Annotated[Any, Depends(read_json_body)]
