"""Order state machine with transition guards and side effects.

The machine mutates an ORM ``Order`` in memory and stages an ``OrderEvent``
on the session. Committing is left to the caller so that the status
change, the event row and any ledger row land in one transaction.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from tradeflow.core.errors import GuardViolationError, InvalidTransitionError
from tradeflow.core.logging import get_logger
from tradeflow.database.models.order import Order, OrderEvent
from tradeflow.services.orders.enums import (
    OrderEventType,
    OrderStatus,
    get_allowed_transitions,
    validate_status_transition,
)
from tradeflow.services.orders.pricing import format_cents

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

EVENT_FOR_STATUS: Dict[OrderStatus, OrderEventType] = {
    OrderStatus.SENT: OrderEventType.SENT,
    OrderStatus.VIEWED: OrderEventType.VIEWED,
    OrderStatus.ACCEPTED: OrderEventType.ACCEPTED,
    OrderStatus.DEPOSIT_PAID: OrderEventType.DEPOSIT_PAID,
    OrderStatus.BALANCE_DUE: OrderEventType.BALANCE_REQUESTED,
    OrderStatus.FULLY_PAID: OrderEventType.BALANCE_PAID,
    OrderStatus.COMPLETED: OrderEventType.COMPLETED,
    OrderStatus.EXPIRED: OrderEventType.EXPIRED,
    OrderStatus.PROCESSING: OrderEventType.PAID,
    OrderStatus.SHIPPED: OrderEventType.SHIPPED,
    OrderStatus.DELIVERED: OrderEventType.DELIVERED,
    OrderStatus.REFUNDED: OrderEventType.REFUNDED,
    OrderStatus.CANCELLED: OrderEventType.CANCELLED,
}


@dataclass
class TransitionContext:
    """Inputs a guard or side effect may need."""

    now: datetime
    actor_id: Optional[str] = None
    reason: Optional[str] = None
    amount_cents: Optional[int] = None
    captured_cents: int = 0
    details: Dict[str, Any] = field(default_factory=dict)


Guard = Callable[[Order, TransitionContext], None]
SideEffect = Callable[[Order, TransitionContext], None]


class OrderStateMachine:
    """State machine for quotation and retail order transitions."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session
        self._transition_guards: Dict[tuple[OrderStatus, OrderStatus], Guard] = (
            self._initialize_guards()
        )
        self._side_effects: Dict[OrderStatus, SideEffect] = (
            self._initialize_side_effects()
        )

    def _initialize_guards(self) -> Dict[tuple[OrderStatus, OrderStatus], Guard]:
        return {
            (OrderStatus.DRAFT, OrderStatus.SENT): self._guard_sendable,
            (OrderStatus.SENT, OrderStatus.ACCEPTED): self._guard_not_expired,
            (OrderStatus.VIEWED, OrderStatus.ACCEPTED): self._guard_not_expired,
            (OrderStatus.ACCEPTED, OrderStatus.DEPOSIT_PAID): self._guard_deposit_amount,
            (OrderStatus.DEPOSIT_PAID, OrderStatus.BALANCE_DUE): (
                self._guard_balance_requestable
            ),
            (OrderStatus.BALANCE_DUE, OrderStatus.FULLY_PAID): self._guard_balance_amount,
            (OrderStatus.SENT, OrderStatus.EXPIRED): self._guard_lapsed,
            (OrderStatus.VIEWED, OrderStatus.EXPIRED): self._guard_lapsed,
            (OrderStatus.ACCEPTED, OrderStatus.EXPIRED): self._guard_lapsed,
            (OrderStatus.PENDING, OrderStatus.PROCESSING): self._guard_full_amount,
            (OrderStatus.PROCESSING, OrderStatus.REFUNDED): self._guard_refund_amount,
            (OrderStatus.DELIVERED, OrderStatus.REFUNDED): self._guard_refund_amount,
        }

    def _initialize_side_effects(self) -> Dict[OrderStatus, SideEffect]:
        return {
            OrderStatus.SENT: self._stamp("sent_at"),
            OrderStatus.VIEWED: self._stamp("viewed_at"),
            OrderStatus.ACCEPTED: self._stamp("accepted_at"),
            OrderStatus.DEPOSIT_PAID: self._stamp("deposit_paid_at"),
            OrderStatus.BALANCE_DUE: self._stamp("balance_requested_at"),
            OrderStatus.FULLY_PAID: self._stamp("balance_paid_at"),
            OrderStatus.COMPLETED: self._stamp("completed_at"),
            OrderStatus.EXPIRED: self._stamp("expired_at"),
            OrderStatus.PROCESSING: self._stamp("paid_at"),
            OrderStatus.SHIPPED: self._stamp("shipped_at"),
            OrderStatus.DELIVERED: self._stamp("delivered_at"),
            OrderStatus.REFUNDED: self._stamp("refunded_at"),
            OrderStatus.CANCELLED: self._effect_cancelled,
        }

    def validate_transition(
        self, order: Order, target_status: OrderStatus, context: TransitionContext
    ) -> None:
        """Check the transition table, then the guard for this edge.

        Raises:
            InvalidTransitionError: If the status does not permit the event
            GuardViolationError: If a monetary or timing rule fails
        """
        current = order.status

        if current.is_terminal():
            raise InvalidTransitionError(
                f"Order {order.order_number} is {current.value} and cannot change",
                current_status=current.value,
                event=target_status.value,
                order_id=str(order.id),
            )

        if not validate_status_transition(order.kind, current, target_status):
            raise InvalidTransitionError(
                f"Cannot move {order.kind.value} {order.order_number} from "
                f"{current.value} to {target_status.value}",
                current_status=current.value,
                event=target_status.value,
                order_id=str(order.id),
                allowed=sorted(s.value for s in self.get_allowed_transitions(order)),
            )

        guard = self._transition_guards.get((current, target_status))
        if guard is not None:
            guard(order, context)

    def apply_transition(
        self, order: Order, target_status: OrderStatus, context: TransitionContext
    ) -> OrderEvent:
        """Validate and apply a transition, staging its event row.

        Returns:
            The staged ``OrderEvent``
        """
        self.validate_transition(order, target_status, context)

        from_status = order.status
        order.status = target_status
        order.updated_at = context.now
        if context.actor_id:
            order.updated_by = context.actor_id

        side_effect = self._side_effects.get(target_status)
        if side_effect is not None:
            side_effect(order, context)

        event = self.record_event(
            order,
            EVENT_FOR_STATUS[target_status],
            context,
            from_status=from_status,
        )

        logger.info(
            "Order transitioned",
            order_id=str(order.id),
            order_number=order.order_number,
            from_status=from_status.value,
            to_status=target_status.value,
            actor_id=context.actor_id,
        )
        return event

    def record_event(
        self,
        order: Order,
        event_type: OrderEventType,
        context: TransitionContext,
        from_status: Optional[OrderStatus] = None,
    ) -> OrderEvent:
        details = dict(context.details)
        if context.amount_cents is not None:
            details.setdefault("amount_cents", context.amount_cents)

        event = OrderEvent(
            order_id=order.id,
            event_type=event_type,
            from_status=from_status,
            to_status=order.status,
            actor_id=context.actor_id,
            reason=context.reason,
            details=details,
        )
        self.db.add(event)
        return event

    def get_allowed_transitions(self, order: Order) -> Set[OrderStatus]:
        return get_allowed_transitions(order.kind, order.status)

    def can_cancel(self, order: Order) -> bool:
        return OrderStatus.CANCELLED in self.get_allowed_transitions(order)

    # Guards

    def _guard_sendable(self, order: Order, context: TransitionContext) -> None:
        if not order.line_items:
            raise GuardViolationError(
                "Quotation must have at least one line item before sending",
                order_id=str(order.id),
            )
        if not order.buyer_email or not EMAIL_PATTERN.match(order.buyer_email):
            raise GuardViolationError(
                "Quotation needs a valid buyer email before sending",
                order_id=str(order.id),
            )
        if order.is_past_valid_until(context.now):
            raise GuardViolationError(
                "Quotation validity date is in the past",
                order_id=str(order.id),
                valid_until=order.valid_until.isoformat(),
            )

    def _guard_not_expired(self, order: Order, context: TransitionContext) -> None:
        if order.is_past_valid_until(context.now):
            raise GuardViolationError(
                "Quotation has expired",
                order_id=str(order.id),
                valid_until=order.valid_until.isoformat(),
            )

    def _guard_lapsed(self, order: Order, context: TransitionContext) -> None:
        if not order.is_past_valid_until(context.now):
            raise GuardViolationError(
                "Quotation has not expired yet",
                order_id=str(order.id),
            )

    def _guard_deposit_amount(self, order: Order, context: TransitionContext) -> None:
        if order.deposit_cents <= 0:
            raise GuardViolationError(
                "Quotation has no deposit to pay",
                order_id=str(order.id),
            )
        self._require_exact_amount(order, context, order.deposit_cents, "Deposit")

    def _guard_balance_requestable(
        self, order: Order, context: TransitionContext
    ) -> None:
        if order.deposit_paid_at is None:
            raise GuardViolationError(
                "Balance can only be requested after the deposit is paid",
                order_id=str(order.id),
            )
        if order.balance_requested_at is not None:
            raise GuardViolationError(
                "Balance has already been requested",
                order_id=str(order.id),
            )
        if order.balance_cents <= 0:
            raise GuardViolationError(
                "Quotation has no outstanding balance",
                order_id=str(order.id),
            )

    def _guard_balance_amount(self, order: Order, context: TransitionContext) -> None:
        self._require_exact_amount(order, context, order.balance_cents, "Balance")

    def _guard_full_amount(self, order: Order, context: TransitionContext) -> None:
        self._require_exact_amount(order, context, order.total_cents, "Payment")

    def _guard_refund_amount(self, order: Order, context: TransitionContext) -> None:
        amount = context.amount_cents
        if amount is None or amount <= 0:
            raise GuardViolationError(
                "Refund amount must be greater than zero",
                order_id=str(order.id),
            )
        if amount > context.captured_cents:
            raise GuardViolationError(
                "Refund cannot exceed the captured amount "
                f"({format_cents(context.captured_cents, order.currency)})",
                order_id=str(order.id),
                amount_cents=amount,
                captured_cents=context.captured_cents,
            )

    @staticmethod
    def _require_exact_amount(
        order: Order, context: TransitionContext, expected: int, label: str
    ) -> None:
        if context.amount_cents is None:
            raise GuardViolationError(
                f"{label} amount is required", order_id=str(order.id)
            )
        if context.amount_cents != expected:
            raise GuardViolationError(
                f"{label} must equal {format_cents(expected, order.currency)}",
                order_id=str(order.id),
                amount_cents=context.amount_cents,
                expected_cents=expected,
            )

    # Side effects

    @staticmethod
    def _stamp(attribute: str) -> SideEffect:
        def effect(order: Order, context: TransitionContext) -> None:
            if getattr(order, attribute) is None:
                setattr(order, attribute, context.now)

        return effect

    def _effect_cancelled(self, order: Order, context: TransitionContext) -> None:
        if order.cancelled_at is None:
            order.cancelled_at = context.now
        if context.reason:
            order.cancellation_reason = context.reason[:500]


def get_order_state_machine(db_session: AsyncSession) -> OrderStateMachine:
    return OrderStateMachine(db_session)
