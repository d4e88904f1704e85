"""
Test suite for OrderStateMachine.

Covers the transition table, monetary and timing guards, transition
timestamps and the event rows staged on the session.
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tradeflow.core.errors import GuardViolationError, InvalidTransitionError
from tradeflow.database.models.order import OrderEvent
from tradeflow.services.orders.enums import OrderEventType, OrderKind, OrderStatus
from tradeflow.services.orders.state_machine import (
    OrderStateMachine,
    TransitionContext,
    get_order_state_machine,
)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def mock_db_session() -> Mock:
    """Session double; the machine only ever calls ``add``."""
    session = Mock(spec=AsyncSession)
    session.add = Mock()
    return session


@pytest.fixture
def state_machine(mock_db_session: Mock) -> OrderStateMachine:
    return OrderStateMachine(db_session=mock_db_session)


@pytest.fixture
def context(now) -> TransitionContext:
    return TransitionContext(now=now, actor_id="seller-1")


# ============================================================================
# Transition Table Tests
# ============================================================================


class TestTransitionTable:
    """Tests for transitions rejected before any guard runs."""

    def test_terminal_status_rejects_every_event(self, state_machine, make_order, context):
        """Test a completed quotation cannot change status."""
        order = make_order(status=OrderStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError) as exc_info:
            state_machine.apply_transition(order, OrderStatus.CANCELLED, context)

        assert exc_info.value.current_status == "completed"
        assert order.status == OrderStatus.COMPLETED

    def test_balance_before_deposit_is_invalid(self, state_machine, make_order, now):
        """Test balance payment on an accepted quotation is rejected."""
        order = make_order(status=OrderStatus.ACCEPTED)
        context = TransitionContext(now=now, amount_cents=6000)

        with pytest.raises(InvalidTransitionError) as exc_info:
            state_machine.apply_transition(order, OrderStatus.FULLY_PAID, context)

        assert exc_info.value.context["allowed"] == [
            "cancelled",
            "deposit_paid",
            "expired",
        ]
        assert order.status == OrderStatus.ACCEPTED
        assert order.balance_paid_at is None

    def test_retail_order_rejects_quotation_transition(
        self, state_machine, make_order, context
    ):
        order = make_order(kind=OrderKind.RETAIL, status=OrderStatus.PENDING)

        with pytest.raises(InvalidTransitionError):
            state_machine.apply_transition(order, OrderStatus.ACCEPTED, context)

    def test_rejected_transition_stages_no_event(
        self, state_machine, make_order, context, mock_db_session
    ):
        order = make_order(status=OrderStatus.DRAFT)

        with pytest.raises(InvalidTransitionError):
            state_machine.apply_transition(order, OrderStatus.ACCEPTED, context)

        mock_db_session.add.assert_not_called()

    def test_can_cancel(self, state_machine, make_order):
        assert state_machine.can_cancel(make_order(status=OrderStatus.DEPOSIT_PAID))
        assert not state_machine.can_cancel(make_order(status=OrderStatus.FULLY_PAID))


# ============================================================================
# Guard Tests
# ============================================================================


class TestSendGuard:
    """Tests for DRAFT -> SENT."""

    def test_send_requires_line_items(self, state_machine, make_order, context):
        order = make_order(line_items=[])

        with pytest.raises(GuardViolationError, match="at least one line item"):
            state_machine.apply_transition(order, OrderStatus.SENT, context)

    def test_send_requires_valid_buyer_email(self, state_machine, make_order, context):
        order = make_order(buyer_email="not-an-email")

        with pytest.raises(GuardViolationError, match="valid buyer email"):
            state_machine.apply_transition(order, OrderStatus.SENT, context)

    def test_send_rejects_past_validity(self, state_machine, make_order, now):
        order = make_order(valid_until=now - timedelta(minutes=1))

        with pytest.raises(GuardViolationError, match="in the past"):
            state_machine.apply_transition(
                order, OrderStatus.SENT, TransitionContext(now=now)
            )

    def test_send_stamps_sent_at(self, state_machine, make_order, context):
        order = make_order()

        state_machine.apply_transition(order, OrderStatus.SENT, context)

        assert order.status == OrderStatus.SENT
        assert order.sent_at == context.now
        assert order.updated_by == "seller-1"


class TestAcceptGuard:
    """Tests for accepting a sent or viewed quotation."""

    def test_accept_after_expiry_is_rejected(self, state_machine, make_order, now):
        """Test accepting a lapsed quotation fails and leaves it unchanged."""
        order = make_order(status=OrderStatus.SENT, valid_until=now - timedelta(days=1))

        with pytest.raises(GuardViolationError, match="Quotation has expired"):
            state_machine.apply_transition(
                order, OrderStatus.ACCEPTED, TransitionContext(now=now)
            )

        assert order.status == OrderStatus.SENT
        assert order.accepted_at is None

    def test_accept_from_viewed(self, state_machine, make_order, context):
        order = make_order(status=OrderStatus.VIEWED)

        state_machine.apply_transition(order, OrderStatus.ACCEPTED, context)

        assert order.status == OrderStatus.ACCEPTED
        assert order.accepted_at == context.now


class TestPaymentGuards:
    """Tests for exact-amount payment guards."""

    def test_deposit_must_match_exactly(self, state_machine, make_order, now):
        order = make_order(status=OrderStatus.ACCEPTED)

        with pytest.raises(GuardViolationError, match=r"Deposit must equal \$40\.00"):
            state_machine.apply_transition(
                order,
                OrderStatus.DEPOSIT_PAID,
                TransitionContext(now=now, amount_cents=3999),
            )

    def test_deposit_amount_is_required(self, state_machine, make_order, now):
        order = make_order(status=OrderStatus.ACCEPTED)

        with pytest.raises(GuardViolationError, match="amount is required"):
            state_machine.apply_transition(
                order, OrderStatus.DEPOSIT_PAID, TransitionContext(now=now)
            )

    def test_deposit_paid(self, state_machine, make_order, now):
        order = make_order(status=OrderStatus.ACCEPTED)

        state_machine.apply_transition(
            order,
            OrderStatus.DEPOSIT_PAID,
            TransitionContext(now=now, amount_cents=4000),
        )

        assert order.status == OrderStatus.DEPOSIT_PAID
        assert order.deposit_paid_at == now

    def test_balance_request_requires_paid_deposit(self, state_machine, make_order, now):
        order = make_order(status=OrderStatus.DEPOSIT_PAID, deposit_paid_at=None)

        with pytest.raises(GuardViolationError, match="after the deposit is paid"):
            state_machine.apply_transition(
                order, OrderStatus.BALANCE_DUE, TransitionContext(now=now)
            )

    def test_balance_must_match_exactly(self, state_machine, make_order, now):
        order = make_order(status=OrderStatus.BALANCE_DUE)

        with pytest.raises(GuardViolationError, match=r"Balance must equal \$60\.00"):
            state_machine.apply_transition(
                order,
                OrderStatus.FULLY_PAID,
                TransitionContext(now=now, amount_cents=10000),
            )

    def test_retail_payment_must_cover_total(self, state_machine, make_order, now):
        order = make_order(kind=OrderKind.RETAIL, status=OrderStatus.PENDING)

        with pytest.raises(GuardViolationError, match=r"Payment must equal \$100\.00"):
            state_machine.apply_transition(
                order,
                OrderStatus.PROCESSING,
                TransitionContext(now=now, amount_cents=5000),
            )

    def test_refund_cannot_exceed_captured(self, state_machine, make_order, now):
        order = make_order(kind=OrderKind.RETAIL, status=OrderStatus.PROCESSING)

        with pytest.raises(GuardViolationError, match="captured amount"):
            state_machine.apply_transition(
                order,
                OrderStatus.REFUNDED,
                TransitionContext(now=now, amount_cents=10001, captured_cents=10000),
            )

    def test_partial_refund_within_captured(self, state_machine, make_order, now):
        order = make_order(kind=OrderKind.RETAIL, status=OrderStatus.DELIVERED)

        state_machine.apply_transition(
            order,
            OrderStatus.REFUNDED,
            TransitionContext(now=now, amount_cents=2500, captured_cents=10000),
        )

        assert order.status == OrderStatus.REFUNDED
        assert order.refunded_at == now


class TestExpiryGuard:
    """Tests for lapsing quotations into EXPIRED."""

    def test_cannot_expire_before_valid_until(self, state_machine, make_order, context):
        order = make_order(status=OrderStatus.SENT)

        with pytest.raises(GuardViolationError, match="not expired yet"):
            state_machine.apply_transition(order, OrderStatus.EXPIRED, context)

    def test_accepted_quotation_expires(self, state_machine, make_order, now):
        order = make_order(status=OrderStatus.ACCEPTED, valid_until=now - timedelta(hours=1))

        state_machine.apply_transition(
            order, OrderStatus.EXPIRED, TransitionContext(now=now, actor_id="system")
        )

        assert order.status == OrderStatus.EXPIRED
        assert order.expired_at == now


# ============================================================================
# Side Effect and Event Tests
# ============================================================================


class TestEvents:
    """Tests for staged order events."""

    def test_transition_stages_event(self, state_machine, make_order, now, mock_db_session):
        order = make_order(status=OrderStatus.ACCEPTED)
        context = TransitionContext(
            now=now,
            actor_id="stripe",
            amount_cents=4000,
            details={"idempotency_key": "pi:pi_123"},
        )

        event = state_machine.apply_transition(order, OrderStatus.DEPOSIT_PAID, context)

        mock_db_session.add.assert_called_once_with(event)
        assert isinstance(event, OrderEvent)
        assert event.event_type == OrderEventType.DEPOSIT_PAID
        assert event.from_status == OrderStatus.ACCEPTED
        assert event.to_status == OrderStatus.DEPOSIT_PAID
        assert event.details == {"idempotency_key": "pi:pi_123", "amount_cents": 4000}

    def test_cancel_records_reason(self, state_machine, make_order, now):
        order = make_order(status=OrderStatus.SENT)
        context = TransitionContext(now=now, reason="Buyer changed supplier")

        event = state_machine.apply_transition(order, OrderStatus.CANCELLED, context)

        assert order.cancelled_at == now
        assert order.cancellation_reason == "Buyer changed supplier"
        assert event.reason == "Buyer changed supplier"

    def test_timestamps_are_written_once(self, state_machine, make_order, now):
        """Test an existing timestamp is not overwritten."""
        earlier = now - timedelta(days=2)
        order = make_order(status=OrderStatus.DRAFT, sent_at=earlier)

        state_machine.apply_transition(order, OrderStatus.SENT, TransitionContext(now=now))

        assert order.sent_at == earlier


def test_get_order_state_machine(mock_db_session):
    assert isinstance(get_order_state_machine(mock_db_session), OrderStateMachine)
