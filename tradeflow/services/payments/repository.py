"""
Payment ledger repository.

``record_payment`` relies on the unique idempotency key constraint to
reject a second record for the same key. The insert runs inside a
savepoint so the caller's transaction, and the order row lock it holds,
survive the rejection long enough to read back the original record.
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tradeflow.core.errors import (
    ConstraintViolationError,
    DuplicateIdempotencyKeyError,
    InvalidTransitionError,
)
from tradeflow.core.logging import get_logger, log_performance
from tradeflow.database.integrity import constraint_name_from, to_constraint_violation
from tradeflow.database.models.payment import (
    IDEMPOTENCY_KEY_CONSTRAINT,
    ORDER_PAYMENT_TYPE_INDEX,
    PaymentRecord,
    PaymentType,
)

logger = get_logger(__name__)


class PaymentRepository:
    """Append-only access to ``payment_records``."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_payment(
        self,
        order_id: uuid.UUID,
        payment_type: PaymentType,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        provider_intent_id: Optional[str] = None,
        response_payload: Optional[dict[str, Any]] = None,
        payment_id: Optional[uuid.UUID] = None,
    ) -> PaymentRecord:
        """
        Insert a ledger row.

        Args:
            order_id: Order the payment belongs to
            payment_type: deposit, balance, full or refund
            amount_cents: Non-negative amount in minor units
            currency: ISO 4217 code
            idempotency_key: Caller supplied unique key
            provider_intent_id: Provider intent or charge id
            response_payload: Success response replayed on retries
            payment_id: Pre-assigned id, generated when omitted

        Returns:
            The flushed record

        Raises:
            DuplicateIdempotencyKeyError: If the key was already used for this
                same payment; carries the original record's response payload
            InvalidTransitionError: If this payment type is already recorded
                for the order
            ConstraintViolationError: If the key belongs to a different
                payment, or for any other constraint failure
        """
        record = PaymentRecord(
            id=payment_id or uuid.uuid4(),
            order_id=order_id,
            payment_type=payment_type,
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
            provider_intent_id=provider_intent_id,
            response_payload=response_payload or {},
        )

        try:
            with log_performance(
                logger, "record_payment", order_id=str(order_id), payment_type=payment_type.value
            ):
                async with self.session.begin_nested():
                    self.session.add(record)
                    await self.session.flush()
        except IntegrityError as e:
            constraint = constraint_name_from(e)

            if constraint == IDEMPOTENCY_KEY_CONSTRAINT:
                original = await self.get_by_idempotency_key(idempotency_key)
                if original is None or (
                    original.order_id,
                    original.payment_type,
                    original.amount_cents,
                ) != (order_id, payment_type, amount_cents):
                    logger.warning(
                        "Idempotency key reused for a different payment",
                        order_id=str(order_id),
                        idempotency_key=idempotency_key,
                        original_order_id=str(original.order_id) if original else None,
                    )
                    raise ConstraintViolationError(
                        "Idempotency key reused for a different request",
                        constraint=IDEMPOTENCY_KEY_CONSTRAINT,
                        idempotency_key=idempotency_key,
                        order_id=str(order_id),
                    ) from e

                logger.info(
                    "Duplicate idempotency key rejected",
                    order_id=str(order_id),
                    idempotency_key=idempotency_key,
                    original_payment_id=str(original.id),
                )
                raise DuplicateIdempotencyKeyError(
                    "Payment already recorded for this idempotency key",
                    idempotency_key=idempotency_key,
                    original_response=original.response_payload,
                    order_id=str(order_id),
                ) from e

            if constraint == ORDER_PAYMENT_TYPE_INDEX:
                raise InvalidTransitionError(
                    f"A {payment_type.value} payment is already recorded for this order",
                    event=f"{payment_type.value}_payment",
                    order_id=str(order_id),
                ) from e

            logger.error(
                "Payment insert rejected",
                order_id=str(order_id),
                constraint=constraint,
                error=str(e.orig),
            )
            raise to_constraint_violation(
                e, "Payment could not be recorded", order_id=str(order_id)
            ) from e

        logger.info(
            "Payment recorded",
            payment_id=str(record.id),
            order_id=str(order_id),
            payment_type=payment_type.value,
            amount_cents=amount_cents,
        )
        return record

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PaymentRecord]:
        result = await self.session.execute(
            select(PaymentRecord).where(PaymentRecord.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def list_for_order(self, order_id: uuid.UUID) -> Sequence[PaymentRecord]:
        result = await self.session.execute(
            select(PaymentRecord)
            .where(PaymentRecord.order_id == order_id)
            .order_by(PaymentRecord.created_at, PaymentRecord.id)
        )
        return result.scalars().all()

    async def captured_total(self, order_id: uuid.UUID) -> int:
        """Sum of captured payments minus refunds, in minor units."""
        result = await self.session.execute(
            select(PaymentRecord.payment_type, func.coalesce(func.sum(PaymentRecord.amount_cents), 0))
            .where(PaymentRecord.order_id == order_id)
            .group_by(PaymentRecord.payment_type)
        )
        totals = {payment_type: int(amount) for payment_type, amount in result.all()}
        refunded = totals.pop(PaymentType.REFUND, 0)
        return sum(totals.values()) - refunded


def build_receipt(
    record_id: uuid.UUID,
    order_id: uuid.UUID,
    order_number: str,
    payment_type: PaymentType,
    amount_cents: int,
    currency: str,
    idempotency_key: str,
    order_status: str,
    recorded_at: datetime,
    provider_intent_id: Optional[str] = None,
) -> dict[str, Any]:
    """JSON payload stored with the record and replayed on retries."""
    return {
        "payment_id": str(record_id),
        "order_id": str(order_id),
        "order_number": order_number,
        "payment_type": payment_type.value,
        "amount_cents": amount_cents,
        "currency": currency,
        "idempotency_key": idempotency_key,
        "provider_intent_id": provider_intent_id,
        "order_status": order_status,
        "recorded_at": recorded_at.isoformat(),
    }
