"""
Plain-text order lifecycle messages sent to buyers.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from tradeflow.core.config import get_settings
from tradeflow.database.models.order import Order
from tradeflow.services.orders.enums import OrderEventType
from tradeflow.services.orders.pricing import format_cents


class OrderNotification(BaseModel):
    """Outbound "send email for order X" event."""

    order_id: UUID
    order_number: str
    event: OrderEventType
    recipient: str
    subject: str
    body: str


_SUBJECTS: dict[OrderEventType, str] = {
    OrderEventType.SENT: "Quotation {number} is ready for review",
    OrderEventType.ACCEPTED: "Quotation {number} accepted",
    OrderEventType.DEPOSIT_PAID: "Deposit received for {number}",
    OrderEventType.BALANCE_REQUESTED: "Balance due for {number}",
    OrderEventType.BALANCE_PAID: "Payment complete for {number}",
    OrderEventType.COMPLETED: "Order {number} fulfilled",
    OrderEventType.EXPIRED: "Quotation {number} has expired",
    OrderEventType.CANCELLED: "Order {number} cancelled",
    OrderEventType.PAID: "Order confirmation {number}",
    OrderEventType.SHIPPED: "Order {number} shipped",
    OrderEventType.DELIVERED: "Order {number} delivered",
    OrderEventType.REFUNDED: "Refund issued for {number}",
}


def _body(order: Order, event: OrderEventType) -> str:
    def money(cents: int) -> str:
        return format_cents(cents, order.currency)

    greeting = f"Hello {order.buyer_name or 'there'},"

    if event == OrderEventType.SENT:
        link = f"{get_settings().buyer_portal_url.rstrip('/')}/{order.access_token}"
        lines = [
            f"Quotation {order.order_number} totals {money(order.total_cents)}.",
            f"A deposit of {money(order.deposit_cents)} is due on acceptance.",
        ]
        if order.valid_until is not None:
            lines.append(f"The offer is valid until {order.valid_until:%Y-%m-%d}.")
        lines.append(f"Review it here: {link}")
    elif event == OrderEventType.ACCEPTED:
        lines = [f"Please pay the deposit of {money(order.deposit_cents)} to proceed."]
    elif event == OrderEventType.DEPOSIT_PAID:
        lines = [f"We received your deposit of {money(order.deposit_cents)}."]
    elif event == OrderEventType.BALANCE_REQUESTED:
        lines = [f"The remaining balance of {money(order.balance_cents)} is now due."]
    elif event == OrderEventType.BALANCE_PAID:
        lines = [f"We received your balance payment of {money(order.balance_cents)}."]
    elif event == OrderEventType.PAID:
        lines = [f"Thank you for your order of {money(order.total_cents)}."]
    elif event == OrderEventType.CANCELLED:
        lines = ["This order has been cancelled."]
        if order.cancellation_reason:
            lines.append(f"Reason: {order.cancellation_reason}")
    else:
        lines = [_SUBJECTS[event].format(number=order.order_number) + "."]

    return "\n\n".join([greeting, *lines])


def compose_notification(
    order: Order, event: OrderEventType
) -> Optional[OrderNotification]:
    """
    Build the buyer email for an event, or None when the event is silent.
    """
    subject = _SUBJECTS.get(event)
    if subject is None:
        return None

    return OrderNotification(
        order_id=order.id,
        order_number=order.order_number,
        event=event,
        recipient=order.buyer_email,
        subject=subject.format(number=order.order_number),
        body=_body(order, event),
    )
