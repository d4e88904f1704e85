"""
Amazon SES email client with retry and backoff.
"""

import time
from typing import Any, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
)

from tradeflow.core.config import get_settings
from tradeflow.core.logging import get_logger

logger = get_logger(__name__)

NON_RETRIABLE_ERROR_CODES = frozenset(
    {
        "MessageRejected",
        "MailFromDomainNotVerified",
        "ConfigurationSetDoesNotExist",
        "AccountSendingPausedException",
    }
)


class SESClientError(Exception):
    """Email could not be handed to SES."""

    def __init__(self, message: str, retriable: bool = True, **context: Any):
        super().__init__(message)
        self.retriable = retriable
        self.context = context


class SESClient:
    """
    Plain-text email sender.

    Throttling and connection failures are retried with exponential
    backoff; rejections are raised immediately.
    """

    def __init__(
        self,
        client: Any = None,
        sender: Optional[str] = None,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
    ) -> None:
        settings = get_settings()
        self.sender = sender or settings.ses_sender_email
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client = client or boto3.client(
            "ses",
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
        )

    def send_email(self, to_address: str, subject: str, body_text: str) -> str:
        """
        Send one email.

        Returns:
            SES message id

        Raises:
            SESClientError: If SES rejects the message or retries run out
        """
        params = {
            "Source": self.sender,
            "Destination": {"ToAddresses": [to_address]},
            "Message": {
                "Subject": {"Data": subject, "Charset": "UTF-8"},
                "Body": {"Text": {"Data": body_text, "Charset": "UTF-8"}},
            },
        }

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                response = self._client.send_email(**params)
                message_id = response["MessageId"]
                logger.info(
                    "Email sent via SES",
                    message_id=message_id,
                    subject=subject,
                    attempt=attempt + 1,
                )
                return message_id

            except ClientError as e:
                error = e.response.get("Error", {})
                code = error.get("Code", "Unknown")
                logger.warning(
                    "SES client error",
                    attempt=attempt + 1,
                    error_code=code,
                    error_message=error.get("Message", str(e)),
                )
                if code in NON_RETRIABLE_ERROR_CODES:
                    raise SESClientError(
                        f"SES rejected message: {code}",
                        retriable=False,
                        error_code=code,
                    ) from e
                last_error = e

            except (EndpointConnectionError, BotoCoreError) as e:
                logger.warning("SES connection error", attempt=attempt + 1, error=str(e))
                last_error = e

            if attempt < self.max_retries - 1:
                time.sleep(self.retry_backoff * (2**attempt))

        raise SESClientError(
            f"Failed to send email after {self.max_retries} attempts",
            last_error=str(last_error),
        ) from last_error
