"""Order status enums and per-kind transition tables.

Quotations follow the deposit/balance lifecycle:

- DRAFT -> SENT, CANCELLED
- SENT -> VIEWED, ACCEPTED, EXPIRED, CANCELLED
- VIEWED -> ACCEPTED, EXPIRED, CANCELLED
- ACCEPTED -> DEPOSIT_PAID, EXPIRED, CANCELLED
- DEPOSIT_PAID -> BALANCE_DUE, CANCELLED
- BALANCE_DUE -> FULLY_PAID, CANCELLED
- FULLY_PAID -> COMPLETED

Retail orders created at checkout follow the simple lifecycle:

- PENDING -> PROCESSING, CANCELLED
- PROCESSING -> SHIPPED, REFUNDED, CANCELLED
- SHIPPED -> DELIVERED
- DELIVERED -> REFUNDED

COMPLETED, CANCELLED, EXPIRED and REFUNDED are terminal.
"""

from enum import Enum
from typing import Dict, FrozenSet, Set


class OrderKind(str, Enum):
    """Whether an order is a trade quotation or a retail checkout order."""

    QUOTATION = "quotation"
    RETAIL = "retail"


class OrderStatus(str, Enum):
    """Union of quotation and retail statuses."""

    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    DEPOSIT_PAID = "deposit_paid"
    BALANCE_DUE = "balance_due"
    FULLY_PAID = "fully_paid"
    COMPLETED = "completed"
    EXPIRED = "expired"

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    REFUNDED = "refunded"

    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Invalid order status: {value}. Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def is_expirable(self) -> bool:
        """Statuses that lapse into EXPIRED once valid_until passes."""
        return self in EXPIRABLE_STATUSES

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class OrderEventType(str, Enum):
    """Entries of the append-only order event log."""

    CREATED = "created"
    UPDATED = "updated"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    DEPOSIT_PAID = "deposit_paid"
    BALANCE_REQUESTED = "balance_requested"
    BALANCE_PAID = "balance_paid"
    COMPLETED = "completed"
    EXPIRED = "expired"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
        OrderStatus.REFUNDED,
    }
)

EXPIRABLE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.SENT, OrderStatus.VIEWED, OrderStatus.ACCEPTED}
)

QUOTATION_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.DRAFT: {OrderStatus.SENT, OrderStatus.CANCELLED},
    OrderStatus.SENT: {
        OrderStatus.VIEWED,
        OrderStatus.ACCEPTED,
        OrderStatus.EXPIRED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.VIEWED: {
        OrderStatus.ACCEPTED,
        OrderStatus.EXPIRED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.ACCEPTED: {
        OrderStatus.DEPOSIT_PAID,
        OrderStatus.EXPIRED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.DEPOSIT_PAID: {OrderStatus.BALANCE_DUE, OrderStatus.CANCELLED},
    OrderStatus.BALANCE_DUE: {OrderStatus.FULLY_PAID, OrderStatus.CANCELLED},
    OrderStatus.FULLY_PAID: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),  # Terminal
    OrderStatus.CANCELLED: set(),  # Terminal
    OrderStatus.EXPIRED: set(),  # Terminal
}

RETAIL_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {
        OrderStatus.SHIPPED,
        OrderStatus.REFUNDED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),  # Terminal
    OrderStatus.REFUNDED: set(),  # Terminal
}

STATUS_TRANSITIONS: Dict[OrderKind, Dict[OrderStatus, Set[OrderStatus]]] = {
    OrderKind.QUOTATION: QUOTATION_STATUS_TRANSITIONS,
    OrderKind.RETAIL: RETAIL_STATUS_TRANSITIONS,
}

INITIAL_STATUS: Dict[OrderKind, OrderStatus] = {
    OrderKind.QUOTATION: OrderStatus.DRAFT,
    OrderKind.RETAIL: OrderStatus.PENDING,
}


def validate_status_transition(
    kind: OrderKind, current: OrderStatus, new: OrderStatus
) -> bool:
    """Check whether ``current -> new`` is allowed for orders of ``kind``."""
    return new in STATUS_TRANSITIONS[kind].get(current, set())


def get_allowed_transitions(kind: OrderKind, current: OrderStatus) -> Set[OrderStatus]:
    """Get all statuses reachable in one step from ``current``.

    Returns:
        A copy of the allowed target set, empty for terminal or foreign statuses
    """
    return STATUS_TRANSITIONS[kind].get(current, set()).copy()
