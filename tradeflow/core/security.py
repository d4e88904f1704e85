"""
Security utilities: JWT bearer tokens and buyer access tokens.

Webhook signatures are verified by ``StripeClient``; the error type they
raise lives here with the other security errors.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from tradeflow.core.config import get_settings
from tradeflow.core.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60


class SecurityError(Exception):
    """Base exception for security-related errors."""

    def __init__(self, message: str, code: str, **context: Any):
        super().__init__(message)
        self.code = code
        self.context = context


class TokenError(SecurityError):
    """Exception raised for token-related errors."""

    pass


class WebhookSignatureError(SecurityError):
    """Exception raised when a webhook signature cannot be verified."""

    pass


def create_access_token(
    subject: str,
    role: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed access token for an actor.

    Args:
        subject: Actor id placed in the ``sub`` claim
        role: Actor role (``seller``, ``buyer`` or ``admin``)
        expires_delta: Optional custom lifetime

    Returns:
        Encoded JWT
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {"sub": subject, "role": role, "exp": expire, "iat": now, "type": "access"}
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT.

    Raises:
        TokenError: If token is empty, expired or malformed
    """
    if not token:
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token has expired", error=str(e))
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        logger.warning("Invalid token", error=str(e), error_type=type(e).__name__)
        raise TokenError("Invalid token", code="TOKEN_INVALID") from e

    if payload.get("type") != "access" or not payload.get("sub"):
        raise TokenError("Token is not an access token", code="TOKEN_INVALID")

    return payload


def generate_secure_token(length: int = 32) -> str:
    """
    Generate a URL-safe random token, used for buyer access links.

    Raises:
        ValueError: If length is not positive
    """
    if length <= 0:
        raise ValueError("Token length must be positive")
    return secrets.token_urlsafe(length)

