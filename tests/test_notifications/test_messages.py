"""
Tests for buyer notification composition.
"""

import pytest

from tradeflow.core.config import get_settings
from tradeflow.services.notifications.messages import compose_notification
from tradeflow.services.orders.enums import OrderEventType, OrderKind, OrderStatus


class TestComposeNotification:
    def test_sent_includes_link_and_amounts(self, make_order):
        order = make_order(status=OrderStatus.SENT)

        notification = compose_notification(order, OrderEventType.SENT)

        assert notification.recipient == "buyer@example.com"
        assert notification.subject == f"Quotation {order.order_number} is ready for review"
        assert "totals $100.00" in notification.body
        assert "deposit of $40.00" in notification.body
        portal = get_settings().buyer_portal_url.rstrip("/")
        assert f"{portal}/{order.access_token}" in notification.body
        assert notification.body.startswith("Hello Dana Buyer,")

    def test_balance_request_quotes_balance(self, make_order):
        order = make_order(status=OrderStatus.BALANCE_DUE)

        notification = compose_notification(order, OrderEventType.BALANCE_REQUESTED)

        assert "balance of $60.00 is now due" in notification.body

    def test_cancellation_reason(self, make_order):
        order = make_order(status=OrderStatus.CANCELLED, cancellation_reason="Out of season")

        notification = compose_notification(order, OrderEventType.CANCELLED)

        assert "Reason: Out of season" in notification.body

    def test_retail_confirmation(self, make_order):
        order = make_order(kind=OrderKind.RETAIL, status=OrderStatus.PROCESSING)

        notification = compose_notification(order, OrderEventType.PAID)

        assert notification.subject == f"Order confirmation {order.order_number}"

    def test_anonymous_greeting(self, make_order):
        order = make_order(status=OrderStatus.COMPLETED, buyer_name=None)

        notification = compose_notification(order, OrderEventType.COMPLETED)

        assert notification.body.startswith("Hello there,")

    @pytest.mark.parametrize(
        "event", [OrderEventType.CREATED, OrderEventType.UPDATED, OrderEventType.VIEWED]
    )
    def test_silent_events(self, make_order, event):
        assert compose_notification(make_order(), event) is None

    def test_payload_survives_json_mode(self, make_order):
        notification = compose_notification(make_order(), OrderEventType.ACCEPTED)

        payload = notification.model_dump(mode="json")

        assert payload["event"] == "accepted"
        assert payload["order_id"] == str(notification.order_id)
