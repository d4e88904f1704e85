"""
Tests for the Stripe client retry and error mapping.
"""

from unittest.mock import Mock, patch
from uuid import uuid4

import time

import pytest
import stripe

from tradeflow.core.errors import ErrorKind, ProviderError
from tradeflow.core.security import WebhookSignatureError
from tradeflow.services.payments.stripe_client import PaymentDeclinedError, StripeClient


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def sleep() -> Mock:
    return Mock()


@pytest.fixture
def client(sleep) -> StripeClient:
    return StripeClient(api_key="sk_test_123", max_retries=3, sleep=sleep)


@pytest.fixture
def intent() -> Mock:
    intent = Mock()
    intent.id = "pi_123"
    intent.client_secret = "pi_123_secret"
    return intent


# ============================================================================
# Create Payment Intent Tests
# ============================================================================


class TestCreatePaymentIntent:
    def test_intent_carries_order_metadata(self, client, intent):
        order_id = uuid4()

        with patch.object(stripe.PaymentIntent, "create", return_value=intent) as create:
            result = client.create_payment_intent(
                amount_cents=4000,
                currency="USD",
                order_id=order_id,
                payment_type="deposit",
                receipt_email="buyer@example.com",
                idempotency_key="intent:abc:deposit",
            )

        assert result is intent
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 4000
        assert kwargs["currency"] == "usd"
        assert kwargs["metadata"] == {"order_id": str(order_id), "payment_type": "deposit"}
        assert kwargs["idempotency_key"] == "intent:abc:deposit"
        assert kwargs["receipt_email"] == "buyer@example.com"

    def test_transient_errors_are_retried(self, client, intent, sleep):
        side_effects = [
            stripe.RateLimitError("Too many requests"),
            stripe.APIConnectionError("Connection reset"),
            intent,
        ]

        with patch.object(stripe.PaymentIntent, "create", side_effect=side_effects) as create:
            result = client.create_payment_intent(4000, "USD", uuid4(), "deposit")

        assert result is intent
        assert create.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_retries_exhausted(self, client, sleep):
        with patch.object(
            stripe.PaymentIntent, "create", side_effect=stripe.APIError("Server error")
        ) as create:
            with pytest.raises(ProviderError) as exc_info:
                client.create_payment_intent(4000, "USD", uuid4(), "deposit")

        assert create.call_count == 4
        assert sleep.call_count == 3
        assert exc_info.value.retriable is True
        assert exc_info.value.kind == ErrorKind.PROVIDER_ERROR

    def test_card_error_is_not_retried(self, client, sleep):
        error = stripe.CardError("Your card was declined.", "card", "card_declined")

        with patch.object(stripe.PaymentIntent, "create", side_effect=error):
            with pytest.raises(PaymentDeclinedError) as exc_info:
                client.create_payment_intent(4000, "USD", uuid4(), "deposit")

        assert exc_info.value.retriable is False
        assert exc_info.value.context["code"] == "card_declined"
        sleep.assert_not_called()

    def test_invalid_request_is_declined(self, client, sleep):
        error = stripe.InvalidRequestError("Amount must be at least 50 cents", "amount")

        with patch.object(stripe.PaymentIntent, "create", side_effect=error):
            with pytest.raises(PaymentDeclinedError):
                client.create_payment_intent(10, "USD", uuid4(), "deposit")

        sleep.assert_not_called()


class TestBackoff:
    def test_backoff_is_capped(self, sleep):
        client = StripeClient(api_key="sk_test_123", max_backoff=5.0, sleep=sleep)

        assert [client._calculate_backoff(attempt) for attempt in range(5)] == [
            1.0,
            2.0,
            4.0,
            5.0,
            5.0,
        ]

    def test_zero_retries(self, sleep):
        client = StripeClient(api_key="sk_test_123", max_retries=0, sleep=sleep)

        with patch.object(
            stripe.PaymentIntent, "create", side_effect=stripe.RateLimitError("slow down")
        ):
            with pytest.raises(ProviderError):
                client.create_payment_intent(4000, "USD", uuid4(), "deposit")

        sleep.assert_not_called()


def test_retrieve_payment_intent(client, intent):
    with patch.object(stripe.PaymentIntent, "retrieve", return_value=intent) as retrieve:
        assert client.retrieve_payment_intent("pi_123") is intent

    retrieve.assert_called_once_with("pi_123")


# ============================================================================
# Webhook Signature Tests
# ============================================================================


BODY = b'{"id": "evt_1", "type": "payment_intent.succeeded"}'


class TestWebhookSignature:
    """Tests for webhook verification through the SDK."""

    @pytest.fixture
    def webhook_client(self) -> StripeClient:
        return StripeClient(
            api_key="sk_test_123", webhook_secret="whsec_test_secret", webhook_tolerance=300
        )

    def test_valid_signature(self, webhook_client, sign_webhook):
        webhook_client.verify_webhook_signature(BODY, sign_webhook(BODY))

    def test_any_listed_signature_may_match(self, webhook_client, sign_webhook):
        valid = sign_webhook(BODY)
        timestamp, signature = valid.split(",")
        header = f"{timestamp},v1={'0' * 64},{signature}"

        webhook_client.verify_webhook_signature(BODY, header)

    def test_modified_body(self, webhook_client, sign_webhook):
        header = sign_webhook(BODY)

        with pytest.raises(WebhookSignatureError) as exc_info:
            webhook_client.verify_webhook_signature(
                BODY.replace(b"evt_1", b"evt_2"), header
            )

        assert exc_info.value.code == "SIGNATURE_INVALID"
        assert isinstance(exc_info.value.__cause__, stripe.SignatureVerificationError)

    def test_wrong_secret(self, webhook_client, sign_webhook):
        header = sign_webhook(BODY, secret="whsec_other")

        with pytest.raises(WebhookSignatureError) as exc_info:
            webhook_client.verify_webhook_signature(BODY, header)

        assert exc_info.value.code == "SIGNATURE_INVALID"

    def test_stale_timestamp(self, webhook_client, sign_webhook):
        header = sign_webhook(BODY, timestamp=int(time.time()) - 3600)

        with pytest.raises(WebhookSignatureError) as exc_info:
            webhook_client.verify_webhook_signature(BODY, header)

        assert exc_info.value.code == "SIGNATURE_INVALID"

    def test_tolerance_comes_from_settings(self):
        client = StripeClient(api_key="sk_test_123")

        assert client.webhook_tolerance == 300
        assert client.webhook_secret == "whsec_test_secret"

    @pytest.mark.parametrize("header", [None, ""])
    def test_missing_header(self, webhook_client, header):
        with pytest.raises(WebhookSignatureError) as exc_info:
            webhook_client.verify_webhook_signature(BODY, header)

        assert exc_info.value.code == "SIGNATURE_MISSING"

    def test_unconfigured_secret(self, sign_webhook):
        client = StripeClient(api_key="sk_test_123", webhook_secret="")

        with pytest.raises(WebhookSignatureError) as exc_info:
            client.verify_webhook_signature(BODY, sign_webhook(BODY))

        assert exc_info.value.code == "SIGNATURE_UNCONFIGURED"

    @pytest.mark.parametrize(
        "header", ["garbage", "t=1700000000", "v1=abc", "t=yesterday,v1=abc"]
    )
    def test_malformed_header(self, webhook_client, header):
        with pytest.raises(WebhookSignatureError) as exc_info:
            webhook_client.verify_webhook_signature(BODY, header)

        assert exc_info.value.code == "SIGNATURE_INVALID"
