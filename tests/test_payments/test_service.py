"""
Test suite for PaymentService: provider intents and signed webhooks.
"""

import json
import time
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import pytest

from tradeflow.core.errors import (
    DuplicateIdempotencyKeyError,
    ErrorKind,
    GuardViolationError,
    Outcome,
    ProviderError,
)
from tradeflow.core.security import WebhookSignatureError
from tradeflow.database.models.payment import PaymentType
from tradeflow.services.orders.enums import OrderKind, OrderStatus
from tradeflow.services.orders.repository import OrderRepository
from tradeflow.services.orders.service import OrderService
from tradeflow.services.payments.repository import PaymentRepository
from tradeflow.services.payments.service import (
    PaymentService,
    get_payment_service,
    intent_idempotency_key,
    refund_idempotency_key,
)
from tradeflow.services.payments.stripe_client import PaymentDeclinedError, StripeClient


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def order_service_mock() -> AsyncMock:
    return AsyncMock(spec=OrderService)


@pytest.fixture
def stripe_client() -> Mock:
    client = Mock(spec=StripeClient)
    intent = Mock()
    intent.id = "pi_123"
    intent.client_secret = "pi_123_secret"
    client.create_payment_intent.return_value = intent
    client.verify_webhook_signature.side_effect = StripeClient(
        api_key="sk_test_123"
    ).verify_webhook_signature
    return client


@pytest.fixture
def payment_service(mock_session, order_service_mock, stripe_client) -> PaymentService:
    service = PaymentService(mock_session, order_service_mock, stripe_client=stripe_client)
    service.orders = AsyncMock(spec=OrderRepository)
    service.payments = AsyncMock(spec=PaymentRepository)
    return service


@pytest.fixture
def signed(sign_webhook):
    """Serialize an event and sign it with the configured secret."""

    def _signed(event: dict) -> tuple[bytes, str]:
        body = json.dumps(event).encode("utf-8")
        return body, sign_webhook(body)

    return _signed


def succeeded_event(order_id, payment_type: str = "deposit", amount: int = 4000) -> dict:
    return {
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": "pi_123",
                "amount_received": amount,
                "metadata": {"order_id": str(order_id), "payment_type": payment_type},
            }
        },
    }


# ============================================================================
# Payment Intent Tests
# ============================================================================


class TestCreatePaymentIntent:
    """Tests for provider intent creation."""

    @pytest.mark.asyncio
    async def test_deposit_intent_for_accepted_quotation(
        self, payment_service, make_order, stripe_client
    ):
        order = make_order(status=OrderStatus.ACCEPTED)
        payment_service.orders.get_by_id.return_value = order

        outcome = await payment_service.create_payment_intent(order.id, PaymentType.DEPOSIT)

        assert outcome.value.amount_cents == 4000
        assert outcome.value.provider_intent_id == "pi_123"
        assert outcome.value.client_secret == "pi_123_secret"
        kwargs = stripe_client.create_payment_intent.call_args.kwargs
        assert kwargs["idempotency_key"] == f"intent:{order.id}:deposit"
        assert kwargs["payment_type"] == "deposit"

    @pytest.mark.asyncio
    async def test_full_intent_for_pending_retail_order(self, payment_service, make_order):
        order = make_order(kind=OrderKind.RETAIL, status=OrderStatus.PENDING)
        payment_service.orders.get_by_id.return_value = order

        outcome = await payment_service.create_payment_intent(order.id, PaymentType.FULL)

        assert outcome.value.amount_cents == 10000

    @pytest.mark.asyncio
    async def test_balance_intent_before_request(
        self, payment_service, make_order, stripe_client
    ):
        order = make_order(status=OrderStatus.DEPOSIT_PAID)
        payment_service.orders.get_by_id.return_value = order

        outcome = await payment_service.create_payment_intent(order.id, PaymentType.BALANCE)

        assert outcome.error.kind == ErrorKind.INVALID_TRANSITION
        stripe_client.create_payment_intent.assert_not_called()

    @pytest.mark.asyncio
    async def test_refund_intent_is_rejected(self, payment_service):
        outcome = await payment_service.create_payment_intent(uuid4(), PaymentType.REFUND)

        assert outcome.error.kind == ErrorKind.VALIDATION_FAILED

    @pytest.mark.asyncio
    async def test_unknown_order(self, payment_service):
        payment_service.orders.get_by_id.return_value = None

        outcome = await payment_service.create_payment_intent(uuid4(), PaymentType.DEPOSIT)

        assert outcome.error.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_provider_failure(self, payment_service, make_order, stripe_client):
        payment_service.orders.get_by_id.return_value = make_order(status=OrderStatus.ACCEPTED)
        stripe_client.create_payment_intent.side_effect = ProviderError(
            "Payment provider unavailable"
        )

        outcome = await payment_service.create_payment_intent(uuid4(), PaymentType.DEPOSIT)

        assert outcome.error.kind == ErrorKind.PROVIDER_ERROR
        assert outcome.error.retriable is True

    @pytest.mark.asyncio
    async def test_declined_request_is_not_retriable(
        self, payment_service, make_order, stripe_client
    ):
        payment_service.orders.get_by_id.return_value = make_order(status=OrderStatus.ACCEPTED)
        stripe_client.create_payment_intent.side_effect = PaymentDeclinedError(
            "Card error: Your card was declined."
        )

        outcome = await payment_service.create_payment_intent(uuid4(), PaymentType.DEPOSIT)

        assert outcome.error.retriable is False


# ============================================================================
# Webhook Tests
# ============================================================================


class TestWebhookVerification:
    """Tests for signature checks ahead of event handling."""

    @pytest.mark.asyncio
    async def test_tampered_body(self, signed, payment_service, order_service_mock):
        body, header = signed(succeeded_event(uuid4()))

        with pytest.raises(WebhookSignatureError) as exc_info:
            await payment_service.handle_webhook(body + b" ", header)

        assert exc_info.value.code == "SIGNATURE_INVALID"
        order_service_mock.record_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_timestamp(self, payment_service, sign_webhook):
        body = json.dumps(succeeded_event(uuid4())).encode("utf-8")
        header = sign_webhook(body, timestamp=int(time.time()) - 3600)

        with pytest.raises(WebhookSignatureError) as exc_info:
            await payment_service.handle_webhook(body, header)

        assert exc_info.value.code == "SIGNATURE_INVALID"

    @pytest.mark.asyncio
    async def test_missing_header(self, payment_service):
        with pytest.raises(WebhookSignatureError) as exc_info:
            await payment_service.handle_webhook(b"{}", None)

        assert exc_info.value.code == "SIGNATURE_MISSING"

    @pytest.mark.asyncio
    async def test_malformed_payload(self, payment_service, sign_webhook):
        body = b'{"type": "payment_intent.succeeded"}'
        header = sign_webhook(body)

        outcome = await payment_service.handle_webhook(body, header)

        assert outcome.error.kind == ErrorKind.VALIDATION_FAILED


class TestPaymentSucceeded:
    """Tests for ``payment_intent.succeeded``."""

    @pytest.mark.asyncio
    async def test_records_payment_keyed_by_intent(
        self, signed, payment_service, order_service_mock
    ):
        order_id = uuid4()
        order_service_mock.record_payment.return_value = Outcome.success(Mock())
        body, header = signed(succeeded_event(order_id))

        outcome = await payment_service.handle_webhook(body, header)

        assert outcome.value.handled is True
        assert outcome.value.detail == "recorded"
        order_service_mock.record_payment.assert_awaited_once_with(
            order_id,
            PaymentType.DEPOSIT,
            4000,
            "pi:pi_123",
            provider_intent_id="pi_123",
            actor_id="stripe",
        )

    @pytest.mark.asyncio
    async def test_redelivery_is_acknowledged(
        self, signed, payment_service, order_service_mock
    ):
        order_service_mock.record_payment.return_value = Outcome.failure(
            DuplicateIdempotencyKeyError(
                "Payment already recorded for this idempotency key",
                idempotency_key="pi:pi_123",
                original_response={"payment_id": "first"},
            )
        )
        body, header = signed(succeeded_event(uuid4()))

        outcome = await payment_service.handle_webhook(body, header)

        assert outcome.value.handled is True
        assert outcome.value.detail == "already processed"

    @pytest.mark.asyncio
    async def test_permanent_rejection_is_acknowledged(
        self, signed, payment_service, order_service_mock
    ):
        """Test a guard failure stops redelivery instead of failing the webhook."""
        order_service_mock.record_payment.return_value = Outcome.failure(
            GuardViolationError("Deposit must equal $40.00")
        )
        body, header = signed(succeeded_event(uuid4(), amount=3000))

        outcome = await payment_service.handle_webhook(body, header)

        assert outcome.ok
        assert outcome.value.handled is False
        assert outcome.value.detail == "Deposit must equal $40.00"

    @pytest.mark.asyncio
    async def test_retriable_failure_is_returned(
        self, signed, payment_service, order_service_mock
    ):
        order_service_mock.record_payment.return_value = Outcome.failure(
            ProviderError("Database unavailable")
        )
        body, header = signed(succeeded_event(uuid4()))

        outcome = await payment_service.handle_webhook(body, header)

        assert not outcome.ok
        assert outcome.error.retriable is True

    @pytest.mark.asyncio
    async def test_intent_without_metadata_is_ignored(
        self, signed, payment_service, order_service_mock
    ):
        event = succeeded_event(uuid4())
        event["data"]["object"]["metadata"] = {}
        body, header = signed(event)

        outcome = await payment_service.handle_webhook(body, header)

        assert outcome.value.handled is False
        order_service_mock.record_payment.assert_not_awaited()


class TestOtherEvents:
    @pytest.mark.asyncio
    async def test_payment_failed_is_logged(
        self, signed, payment_service, order_service_mock
    ):
        body, header = signed(
            {
                "id": "evt_2",
                "type": "payment_intent.payment_failed",
                "data": {
                    "object": {
                        "id": "pi_123",
                        "last_payment_error": {"code": "card_declined"},
                    }
                },
            }
        )

        outcome = await payment_service.handle_webhook(body, header)

        assert outcome.value.handled is True
        assert outcome.value.detail == "logged"
        order_service_mock.record_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_charge_refunded(self, signed, payment_service, order_service_mock):
        order_id = uuid4()
        payment_service.payments.get_by_idempotency_key.return_value = Mock(order_id=order_id)
        order_service_mock.refund.return_value = Outcome.success(Mock())
        body, header = signed(
            {
                "id": "evt_3",
                "type": "charge.refunded",
                "data": {
                    "object": {
                        "id": "ch_1",
                        "payment_intent": "pi_123",
                        "amount_refunded": 2500,
                    }
                },
            }
        )

        outcome = await payment_service.handle_webhook(body, header)

        assert outcome.value.handled is True
        payment_service.payments.get_by_idempotency_key.assert_awaited_once_with("pi:pi_123")
        args = order_service_mock.refund.await_args
        assert args.args == (order_id, 2500, "re:ch_1")
        assert args.kwargs["actor_id"] == "stripe"

    @pytest.mark.asyncio
    async def test_refund_of_unknown_charge(
        self, signed, payment_service, order_service_mock
    ):
        payment_service.payments.get_by_idempotency_key.return_value = None
        body, header = signed(
            {
                "id": "evt_4",
                "type": "charge.refunded",
                "data": {
                    "object": {
                        "id": "ch_2",
                        "payment_intent": "pi_unknown",
                        "amount_refunded": 100,
                    }
                },
            }
        )

        outcome = await payment_service.handle_webhook(body, header)

        assert outcome.value.handled is False
        order_service_mock.refund.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unhandled_event_type(self, signed, payment_service):
        body, header = signed({"id": "evt_5", "type": "customer.created", "data": {"object": {}}})

        outcome = await payment_service.handle_webhook(body, header)

        assert outcome.value.handled is False
        assert outcome.value.detail == "Event type not handled"


def test_idempotency_keys():
    assert intent_idempotency_key("pi_1") == "pi:pi_1"
    assert refund_idempotency_key("ch_1") == "re:ch_1"


def test_get_payment_service(mock_session):
    order_service = OrderService(mock_session)

    service = get_payment_service(mock_session, order_service)

    assert service.order_service is order_service
