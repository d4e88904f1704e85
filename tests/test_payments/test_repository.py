"""
Tests for the payment ledger repository and its idempotency handling.
"""

from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, Mock
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from tradeflow.core.errors import (
    ConstraintViolationError,
    DuplicateIdempotencyKeyError,
    InvalidTransitionError,
)
from tradeflow.database.integrity import constraint_name_from
from tradeflow.database.models.payment import (
    IDEMPOTENCY_KEY_CONSTRAINT,
    ORDER_PAYMENT_TYPE_INDEX,
    PaymentRecord,
    PaymentType,
)
from tradeflow.services.payments.repository import PaymentRepository, build_receipt


class DriverError(Exception):
    """Stand-in for a driver exception carrying the violated constraint."""

    def __init__(self, message: str, constraint_name: Optional[str] = None):
        super().__init__(message)
        self.constraint_name = constraint_name


def integrity_error(constraint: Optional[str], message: str = "duplicate key") -> IntegrityError:
    return IntegrityError("INSERT INTO payment_records", {}, DriverError(message, constraint))


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def repository(mock_session) -> PaymentRepository:
    return PaymentRepository(mock_session)


@pytest.fixture
def record_kwargs() -> dict:
    return {
        "order_id": uuid4(),
        "payment_type": PaymentType.DEPOSIT,
        "amount_cents": 4000,
        "currency": "USD",
        "idempotency_key": "dep-key-0001",
        "provider_intent_id": "pi_123",
        "response_payload": {"order_status": "deposit_paid"},
    }


# ============================================================================
# Record Payment Tests
# ============================================================================


class TestRecordPayment:
    """Tests for ledger inserts."""

    @pytest.mark.asyncio
    async def test_insert_runs_in_savepoint(self, repository, mock_session, record_kwargs):
        payment_id = uuid4()

        record = await repository.record_payment(**record_kwargs, payment_id=payment_id)

        assert isinstance(record, PaymentRecord)
        assert record.id == payment_id
        assert record.amount_cents == 4000
        assert record.response_payload == {"order_status": "deposit_paid"}
        mock_session.begin_nested.assert_called_once()
        mock_session.add.assert_called_once_with(record)
        mock_session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_key_carries_original_response(
        self, repository, mock_session, record_kwargs
    ):
        original = Mock(
            id=uuid4(),
            order_id=record_kwargs["order_id"],
            payment_type=PaymentType.DEPOSIT,
            amount_cents=4000,
            response_payload={"payment_id": "first"},
        )
        mock_session.flush.side_effect = integrity_error(IDEMPOTENCY_KEY_CONSTRAINT)
        repository.get_by_idempotency_key = AsyncMock(return_value=original)

        with pytest.raises(DuplicateIdempotencyKeyError) as exc_info:
            await repository.record_payment(**record_kwargs)

        assert exc_info.value.idempotency_key == "dep-key-0001"
        assert exc_info.value.original_response == {"payment_id": "first"}
        repository.get_by_idempotency_key.assert_awaited_once_with("dep-key-0001")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"order_id": uuid4()},
            {"amount_cents": 9900},
            {"payment_type": PaymentType.BALANCE},
        ],
        ids=["other_order", "other_amount", "other_type"],
    )
    async def test_key_reused_for_different_payment(
        self, repository, mock_session, record_kwargs, overrides
    ):
        """Test a key already spent on another payment never replays its receipt."""
        original = Mock(
            id=uuid4(),
            order_id=record_kwargs["order_id"],
            payment_type=PaymentType.DEPOSIT,
            amount_cents=4000,
            response_payload={"payment_id": "first", "order_number": "QUO-OTHER"},
        )
        mock_session.flush.side_effect = integrity_error(IDEMPOTENCY_KEY_CONSTRAINT)
        repository.get_by_idempotency_key = AsyncMock(return_value=original)

        with pytest.raises(ConstraintViolationError) as exc_info:
            await repository.record_payment(**{**record_kwargs, **overrides})

        assert exc_info.value.constraint == IDEMPOTENCY_KEY_CONSTRAINT
        assert not hasattr(exc_info.value, "original_response")

    @pytest.mark.asyncio
    async def test_key_conflict_without_readable_original(
        self, repository, mock_session, record_kwargs
    ):
        mock_session.flush.side_effect = integrity_error(IDEMPOTENCY_KEY_CONSTRAINT)
        repository.get_by_idempotency_key = AsyncMock(return_value=None)

        with pytest.raises(ConstraintViolationError) as exc_info:
            await repository.record_payment(**record_kwargs)

        assert exc_info.value.constraint == IDEMPOTENCY_KEY_CONSTRAINT

    @pytest.mark.asyncio
    async def test_second_payment_of_same_type(self, repository, mock_session, record_kwargs):
        """Test a new key for an already recorded deposit is an invalid transition."""
        mock_session.flush.side_effect = integrity_error(ORDER_PAYMENT_TYPE_INDEX)

        with pytest.raises(InvalidTransitionError, match="deposit payment is already recorded"):
            await repository.record_payment(**record_kwargs)

    @pytest.mark.asyncio
    async def test_other_constraint(self, repository, mock_session, record_kwargs):
        mock_session.flush.side_effect = integrity_error("payment_records_order_id_fkey")

        with pytest.raises(ConstraintViolationError) as exc_info:
            await repository.record_payment(**record_kwargs)

        assert exc_info.value.constraint == "payment_records_order_id_fkey"


class TestConstraintName:
    def test_name_from_driver_attribute(self):
        assert constraint_name_from(integrity_error("uq_x")) == "uq_x"

    def test_name_from_chained_cause(self):
        wrapper = Exception("adapter error")
        wrapper.__cause__ = DriverError("duplicate key", "uq_y")

        assert constraint_name_from(IntegrityError("INSERT", {}, wrapper)) == "uq_y"

    def test_name_parsed_from_message(self):
        error = integrity_error(
            None,
            'duplicate key value violates unique constraint "uq_payment_records_idempotency_key"',
        )

        assert constraint_name_from(error) == IDEMPOTENCY_KEY_CONSTRAINT

    def test_unknown(self):
        assert constraint_name_from(integrity_error(None, "boom")) is None


# ============================================================================
# Query Tests
# ============================================================================


class TestCapturedTotal:
    @pytest.mark.asyncio
    async def test_refunds_are_subtracted(self, repository, mock_session):
        result = MagicMock()
        result.all.return_value = [
            (PaymentType.DEPOSIT, 4000),
            (PaymentType.BALANCE, 6000),
            (PaymentType.REFUND, 1500),
        ]
        mock_session.execute.return_value = result

        assert await repository.captured_total(uuid4()) == 8500

    @pytest.mark.asyncio
    async def test_no_payments(self, repository, mock_session):
        result = MagicMock()
        result.all.return_value = []
        mock_session.execute.return_value = result

        assert await repository.captured_total(uuid4()) == 0


def test_build_receipt():
    payment_id = uuid4()
    order_id = uuid4()
    recorded_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    receipt = build_receipt(
        record_id=payment_id,
        order_id=order_id,
        order_number="QUO-20260301-AAAAAA",
        payment_type=PaymentType.BALANCE,
        amount_cents=6000,
        currency="USD",
        idempotency_key="bal-key-0001",
        order_status="fully_paid",
        recorded_at=recorded_at,
    )

    assert receipt["payment_id"] == str(payment_id)
    assert receipt["payment_type"] == "balance"
    assert receipt["recorded_at"] == "2026-03-01T12:00:00+00:00"
    assert receipt["provider_intent_id"] is None
