"""
Domain error taxonomy and typed operation outcomes.

Services raise ``DomainError`` subclasses internally and translate them
into ``Outcome`` values at their public boundary, so callers branch on
``outcome.error.kind`` instead of catching exceptions.
"""

from enum import Enum
from typing import Any, ClassVar, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Classification of failures surfaced by the order core."""

    INVALID_TRANSITION = "invalid_transition"
    GUARD_VIOLATION = "guard_violation"
    INSUFFICIENT_INVENTORY = "insufficient_inventory"
    DUPLICATE_IDEMPOTENCY_KEY = "duplicate_idempotency_key"
    CONSTRAINT_VIOLATION = "constraint_violation"
    PROVIDER_ERROR = "provider_error"
    NOT_FOUND = "not_found"
    VALIDATION_FAILED = "validation_failed"


class DomainError(Exception):
    """Base exception for order lifecycle failures."""

    kind: ClassVar[ErrorKind] = ErrorKind.CONSTRAINT_VIOLATION
    retriable: ClassVar[bool] = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidTransitionError(DomainError):
    """Current status does not permit the requested event."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        event: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(
            message, current_status=current_status, event=event, **context
        )
        self.current_status = current_status
        self.event = event


class GuardViolationError(DomainError):
    """A monetary or timing rule rejected the transition."""

    kind = ErrorKind.GUARD_VIOLATION


class InsufficientInventoryError(DomainError):
    """Stock cannot cover the requested quantity."""

    kind = ErrorKind.INSUFFICIENT_INVENTORY


class DuplicateIdempotencyKeyError(DomainError):
    """
    The idempotency key was already used by a recorded payment.

    Carries the response of the original successful request so callers
    can treat the retry as already applied.
    """

    kind = ErrorKind.DUPLICATE_IDEMPOTENCY_KEY

    def __init__(
        self,
        message: str,
        idempotency_key: str,
        original_response: Optional[dict[str, Any]] = None,
        **context: Any,
    ):
        super().__init__(message, idempotency_key=idempotency_key, **context)
        self.idempotency_key = idempotency_key
        self.original_response = original_response


class ConstraintViolationError(DomainError):
    """A storage-level uniqueness or foreign key constraint failed."""

    kind = ErrorKind.CONSTRAINT_VIOLATION

    def __init__(self, message: str, constraint: Optional[str] = None, **context: Any):
        super().__init__(message, constraint=constraint, **context)
        self.constraint = constraint


class ProviderError(DomainError):
    """Payment or email provider failure."""

    kind = ErrorKind.PROVIDER_ERROR
    retriable = True


class NotFoundError(DomainError):
    kind = ErrorKind.NOT_FOUND


class ValidationFailedError(DomainError):
    """Input rejected at the boundary."""

    kind = ErrorKind.VALIDATION_FAILED


class OutcomeError(BaseModel):
    """Serializable description of a failed operation."""

    kind: ErrorKind
    message: str
    retriable: bool = False
    context: dict[str, Any] = Field(default_factory=dict)
    original_response: Optional[dict[str, Any]] = None

    @classmethod
    def from_exception(cls, error: DomainError) -> "OutcomeError":
        return cls(
            kind=error.kind,
            message=error.message,
            retriable=error.retriable,
            context={k: v for k, v in error.context.items() if v is not None},
            original_response=getattr(error, "original_response", None),
        )


class Outcome(BaseModel, Generic[T]):
    """
    Result of a public service operation.

    Exactly one of ``value`` and ``error`` is set.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    value: Optional[T] = None
    error: Optional[OutcomeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: DomainError) -> "Outcome[T]":
        return cls(error=OutcomeError.from_exception(error))
