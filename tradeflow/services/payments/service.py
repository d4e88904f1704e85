"""
Payment service: provider intents and signed webhook handling.

Ledger writes and the status transitions they trigger belong to
``OrderService``; this module only resolves provider events to the order
operation they confirm.
"""

import asyncio
import uuid
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from tradeflow.core.errors import (
    DomainError,
    ErrorKind,
    InvalidTransitionError,
    NotFoundError,
    Outcome,
    ValidationFailedError,
)
from tradeflow.core.logging import get_logger
from tradeflow.database.models.payment import PaymentType
from tradeflow.schemas.payments import PaymentIntentResponse, WebhookAck, WebhookEvent
from tradeflow.services.orders.enums import OrderStatus
from tradeflow.services.orders.repository import OrderRepository
from tradeflow.services.orders.service import OrderService
from tradeflow.services.payments.repository import PaymentRepository
from tradeflow.services.payments.stripe_client import StripeClient

logger = get_logger(__name__)

INTENT_RULES: dict[PaymentType, tuple[OrderStatus, str]] = {
    PaymentType.DEPOSIT: (OrderStatus.ACCEPTED, "deposit_cents"),
    PaymentType.BALANCE: (OrderStatus.BALANCE_DUE, "balance_cents"),
    PaymentType.FULL: (OrderStatus.PENDING, "total_cents"),
}


def intent_idempotency_key(payment_intent_id: str) -> str:
    return f"pi:{payment_intent_id}"


def refund_idempotency_key(charge_id: str) -> str:
    return f"re:{charge_id}"


class PaymentService:
    """Provider-facing payment operations."""

    def __init__(
        self,
        session: AsyncSession,
        order_service: OrderService,
        stripe_client: Optional[StripeClient] = None,
    ):
        self.session = session
        self.order_service = order_service
        self.stripe_client = stripe_client
        self.orders = OrderRepository(session)
        self.payments = PaymentRepository(session)

    async def create_payment_intent(
        self,
        order_id: uuid.UUID,
        payment_type: PaymentType,
        seller_id: Optional[uuid.UUID] = None,
    ) -> Outcome[PaymentIntentResponse]:
        """
        Create a provider intent for the amount the order currently owes.

        Deposits are collected from ``accepted``, balances from
        ``balance_due`` and full payments from ``pending``.
        """
        try:
            rule = INTENT_RULES.get(payment_type)
            if rule is None:
                raise ValidationFailedError(
                    "Refunds cannot be collected through a payment intent",
                    payment_type=payment_type.value,
                )
            required_status, amount_field = rule

            order = await self.orders.get_by_id(order_id, seller_id)
            if order is None:
                raise NotFoundError("Order not found", order_id=str(order_id))
            if order.status != required_status:
                raise InvalidTransitionError(
                    f"A {payment_type.value} payment can only be collected while "
                    f"the order is {required_status.value}",
                    current_status=order.status.value,
                    event=f"{payment_type.value}_payment",
                    order_id=str(order_id),
                )

            amount_cents = getattr(order, amount_field)
            stripe_client = self.stripe_client or StripeClient()
            intent = await asyncio.to_thread(
                stripe_client.create_payment_intent,
                amount_cents=amount_cents,
                currency=order.currency,
                order_id=order.id,
                payment_type=payment_type.value,
                receipt_email=order.buyer_email,
                idempotency_key=f"intent:{order.id}:{payment_type.value}",
            )
        except DomainError as e:
            logger.info(
                "Payment intent rejected",
                order_id=str(order_id),
                payment_type=payment_type.value,
                error_kind=e.kind.value,
                error=e.message,
            )
            return Outcome.failure(e)

        return Outcome.success(
            PaymentIntentResponse(
                order_id=order.id,
                payment_type=payment_type,
                amount_cents=amount_cents,
                currency=order.currency,
                provider_intent_id=intent.id,
                client_secret=getattr(intent, "client_secret", None),
            )
        )

    async def handle_webhook(
        self, raw_body: bytes, signature_header: Optional[str]
    ) -> Outcome[WebhookAck]:
        """
        Verify and apply a provider event.

        Raises:
            WebhookSignatureError: If the signature or timestamp is invalid
        """
        stripe_client = self.stripe_client or StripeClient()
        stripe_client.verify_webhook_signature(raw_body, signature_header)

        try:
            event = WebhookEvent.model_validate_json(raw_body)
        except ValidationError as e:
            logger.warning("Malformed webhook payload", error_count=e.error_count())
            return Outcome.failure(ValidationFailedError("Malformed webhook payload"))

        logger.info("Webhook received", event_id=event.id, event_type=event.type)

        handlers = {
            "payment_intent.succeeded": self._handle_payment_succeeded,
            "payment_intent.payment_failed": self._handle_payment_failed,
            "charge.refunded": self._handle_charge_refunded,
        }
        handler = handlers.get(event.type)
        if handler is None:
            return Outcome.success(
                WebhookAck(
                    handled=False,
                    event_id=event.id,
                    event_type=event.type,
                    detail="Event type not handled",
                )
            )
        return await handler(event)

    def _ack_outcome(self, event: WebhookEvent, outcome: Outcome) -> Outcome[WebhookAck]:
        """
        Translate an order operation outcome into a webhook acknowledgement.

        Retriable failures are returned as failures so the provider redelivers;
        permanent rejections are acknowledged to stop redelivery.
        """
        if outcome.ok:
            detail = "recorded"
        elif outcome.error.kind == ErrorKind.DUPLICATE_IDEMPOTENCY_KEY:
            detail = "already processed"
        elif outcome.error.retriable:
            return Outcome(error=outcome.error)
        else:
            logger.error(
                "Webhook event rejected by order lifecycle",
                event_id=event.id,
                event_type=event.type,
                error_kind=outcome.error.kind.value,
                error=outcome.error.message,
            )
            return Outcome.success(
                WebhookAck(
                    handled=False,
                    event_id=event.id,
                    event_type=event.type,
                    detail=outcome.error.message,
                )
            )

        return Outcome.success(
            WebhookAck(
                handled=True, event_id=event.id, event_type=event.type, detail=detail
            )
        )

    @staticmethod
    def _unhandled(event: WebhookEvent, detail: str) -> Outcome[WebhookAck]:
        logger.warning(
            "Webhook event ignored", event_id=event.id, event_type=event.type, detail=detail
        )
        return Outcome.success(
            WebhookAck(handled=False, event_id=event.id, event_type=event.type, detail=detail)
        )

    async def _handle_payment_succeeded(self, event: WebhookEvent) -> Outcome[WebhookAck]:
        intent: dict[str, Any] = event.data.object
        metadata = intent.get("metadata") or {}
        intent_id = intent.get("id")

        try:
            order_id = uuid.UUID(metadata["order_id"])
            payment_type = PaymentType(metadata["payment_type"])
        except (KeyError, ValueError):
            return self._unhandled(event, "Payment intent carries no order metadata")
        if not intent_id or payment_type == PaymentType.REFUND:
            return self._unhandled(event, "Payment intent cannot be matched to an order")

        amount_cents = intent.get("amount_received", intent.get("amount"))
        if not isinstance(amount_cents, int):
            return self._unhandled(event, "Payment intent carries no amount")

        outcome = await self.order_service.record_payment(
            order_id,
            payment_type,
            amount_cents,
            intent_idempotency_key(intent_id),
            provider_intent_id=intent_id,
            actor_id="stripe",
        )
        return self._ack_outcome(event, outcome)

    async def _handle_payment_failed(self, event: WebhookEvent) -> Outcome[WebhookAck]:
        intent = event.data.object
        error = intent.get("last_payment_error") or {}
        logger.warning(
            "Payment failed at provider",
            payment_intent_id=intent.get("id"),
            order_id=(intent.get("metadata") or {}).get("order_id"),
            code=error.get("code"),
            decline_code=error.get("decline_code"),
        )
        return Outcome.success(
            WebhookAck(
                handled=True, event_id=event.id, event_type=event.type, detail="logged"
            )
        )

    async def _handle_charge_refunded(self, event: WebhookEvent) -> Outcome[WebhookAck]:
        charge = event.data.object
        charge_id = charge.get("id")
        intent_id = charge.get("payment_intent")
        amount_cents = charge.get("amount_refunded")
        if not charge_id or not intent_id or not isinstance(amount_cents, int):
            return self._unhandled(event, "Charge cannot be matched to a payment")

        original = await self.payments.get_by_idempotency_key(
            intent_idempotency_key(intent_id)
        )
        if original is None:
            return self._unhandled(event, "No recorded payment for this charge")

        outcome = await self.order_service.refund(
            original.order_id,
            amount_cents,
            refund_idempotency_key(charge_id),
            reason="Refunded at payment provider",
            provider_intent_id=intent_id,
            actor_id="stripe",
        )
        return self._ack_outcome(event, outcome)


def get_payment_service(
    session: AsyncSession,
    order_service: OrderService,
    stripe_client: Optional[StripeClient] = None,
) -> PaymentService:
    return PaymentService(session, order_service, stripe_client=stripe_client)
