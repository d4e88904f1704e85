"""
Stripe API client wrapper with retry logic.

Rate limits, connection failures and 5xx API errors are retried with
bounded exponential backoff; everything else fails fast. All failures
surface as ``ProviderError`` so the order core never sees SDK exceptions.
Webhook signatures are checked with the SDK's own verifier and surface as
``WebhookSignatureError``.
"""

import time
from typing import Any, Callable, Optional
from uuid import UUID

import stripe
from stripe import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    CardError,
    IdempotencyError,
    InvalidRequestError,
    RateLimitError,
    SignatureVerificationError,
    StripeError,
)

from tradeflow.core.config import get_settings
from tradeflow.core.errors import ProviderError
from tradeflow.core.logging import get_logger
from tradeflow.core.security import WebhookSignatureError

logger = get_logger(__name__)

RETRYABLE_ERRORS = (APIConnectionError, RateLimitError, APIError)


class PaymentDeclinedError(ProviderError):
    """The provider rejected the request itself; retrying will not help."""

    retriable = False


class StripeClient:
    """
    Stripe payment intent operations with exponential backoff.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        max_retries: Optional[int] = None,
        initial_backoff: float = 1.0,
        max_backoff: float = 16.0,
        backoff_multiplier: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        webhook_secret: Optional[str] = None,
        webhook_tolerance: Optional[int] = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.stripe_secret_key
        self.max_retries = (
            settings.stripe_max_retries if max_retries is None else max_retries
        )
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self._sleep = sleep
        self.webhook_secret = (
            settings.stripe_webhook_secret if webhook_secret is None else webhook_secret
        )
        self.webhook_tolerance = (
            settings.webhook_tolerance_seconds
            if webhook_tolerance is None
            else webhook_tolerance
        )

        stripe.api_key = self.api_key
        stripe.max_network_retries = 0

    def _calculate_backoff(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (0-indexed), capped at max_backoff."""
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    def _execute_with_retry(
        self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        """
        Call the SDK, retrying transient failures.

        Raises:
            PaymentDeclinedError: For card, request, auth and idempotency errors
            ProviderError: When transient failures outlast the retry budget
        """
        for attempt in range(self.max_retries + 1):
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(
                        "Stripe operation succeeded after retry",
                        operation=operation,
                        attempt=attempt,
                    )
                return result

            except CardError as e:
                logger.warning(
                    "Stripe card error",
                    operation=operation,
                    code=e.code,
                    decline_code=getattr(e, "decline_code", None),
                )
                raise PaymentDeclinedError(
                    f"Card error: {e.user_message or str(e)}",
                    code=e.code,
                    operation=operation,
                ) from e

            except (AuthenticationError, InvalidRequestError, IdempotencyError) as e:
                logger.error(
                    "Stripe request rejected",
                    operation=operation,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise PaymentDeclinedError(
                    f"Payment provider rejected the request: {e.user_message or str(e)}",
                    code=getattr(e, "code", None),
                    operation=operation,
                ) from e

            except RETRYABLE_ERRORS as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Stripe operation failed after all retries",
                        operation=operation,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise ProviderError(
                        "Payment provider unavailable",
                        operation=operation,
                        error_type=type(e).__name__,
                    ) from e

                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    "Stripe transient error, retrying",
                    operation=operation,
                    attempt=attempt,
                    backoff_seconds=backoff,
                    error_type=type(e).__name__,
                )
                self._sleep(backoff)

            except StripeError as e:
                logger.error(
                    "Unexpected Stripe error",
                    operation=operation,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise ProviderError(
                    f"Payment provider error: {e.user_message or str(e)}",
                    operation=operation,
                ) from e

        raise ProviderError("Payment provider unavailable", operation=operation)

    def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        order_id: UUID,
        payment_type: str,
        receipt_email: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """
        Create a payment intent tagged with the order and payment type.

        The metadata is what the ``payment_intent.succeeded`` webhook uses to
        find the order again.
        """
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "metadata": {"order_id": str(order_id), "payment_type": payment_type},
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = self._execute_with_retry(
            "create_payment_intent", stripe.PaymentIntent.create, **params
        )
        logger.info(
            "Payment intent created",
            payment_intent_id=intent.id,
            order_id=str(order_id),
            payment_type=payment_type,
            amount_cents=amount_cents,
        )
        return intent

    def retrieve_payment_intent(self, payment_intent_id: str) -> Any:
        return self._execute_with_retry(
            "retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id
        )

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> None:
        """
        Check a webhook ``Stripe-Signature`` header against the raw body.

        Args:
            payload: Exact request body bytes
            signature: Signature header value

        Raises:
            WebhookSignatureError: If the header is missing, no secret is
                configured, or the SDK rejects the signature or its timestamp
        """
        logger.debug("Verifying webhook signature")
        if not signature:
            raise WebhookSignatureError("Missing signature header", code="SIGNATURE_MISSING")
        if not self.webhook_secret:
            raise WebhookSignatureError(
                "Webhook signing secret is not configured", code="SIGNATURE_UNCONFIGURED"
            )

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                tolerance=self.webhook_tolerance,
            )
        except UnicodeDecodeError as e:
            logger.error("Invalid webhook payload encoding", error=str(e))
            raise WebhookSignatureError(
                "Webhook payload is not valid UTF-8", code="PAYLOAD_INVALID"
            ) from e
        except SignatureVerificationError as e:
            logger.error("Webhook signature verification failed", error=str(e))
            raise WebhookSignatureError(
                "Webhook signature verification failed",
                code="SIGNATURE_INVALID",
                reason=str(e),
            ) from e


def get_stripe_client() -> StripeClient:
    return StripeClient()
