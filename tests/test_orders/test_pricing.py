"""
Tests for integer-cent order pricing.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from tradeflow.core.errors import GuardViolationError
from tradeflow.services.orders.pricing import (
    apply_percentage,
    calculate_pricing,
    find_moq_violations,
    format_cents,
    price_lines,
    split_deposit,
)


def _line(quantity: int, unit_price_cents: int, **extra):
    return {"name": "Widget", "quantity": quantity, "unit_price_cents": unit_price_cents, **extra}


class TestFormatting:
    @pytest.mark.parametrize(
        "cents,currency,expected",
        [
            (4000, "USD", "$40.00"),
            (123456, "EUR", "€1,234.56"),
            (5, "GBP", "£0.05"),
            (-250, "USD", "-$2.50"),
            (990, "JPY", "9.90 JPY"),
        ],
    )
    def test_format_cents(self, cents, currency, expected):
        assert format_cents(cents, currency) == expected


class TestPercentages:
    """Tests for half-up rounding to whole cents."""

    def test_half_cent_rounds_up(self):
        assert apply_percentage(1, 50) == 1

    def test_fractional_rate(self):
        """Test 8.875% of $19.99 rounds to $1.77."""
        assert apply_percentage(1999, Decimal("8.875")) == 177

    def test_split_sums_to_total(self):
        deposit, balance = split_deposit(9999, 33)

        assert deposit == 3300
        assert deposit + balance == 9999


class TestCalculatePricing:
    """Tests for totals and the deposit/balance split."""

    def test_line_totals_and_subtotal(self):
        pricing = calculate_pricing(
            [_line(2, 5000), _line(3, 199)], currency="USD"
        )

        assert [line.line_total_cents for line in pricing.lines] == [10000, 597]
        assert [line.position for line in pricing.lines] == [0, 1]
        assert pricing.subtotal_cents == 10597
        assert pricing.total_cents == 10597
        assert pricing.deposit_cents == 0
        assert pricing.balance_cents == 10597

    def test_tax_and_shipping(self):
        pricing = calculate_pricing(
            [_line(1, 10000)],
            currency="USD",
            tax_rate=Decimal("7.25"),
            shipping_cents=1500,
        )

        assert pricing.tax_cents == 725
        assert pricing.total_cents == 12225

    def test_deposit_percentage_of_total(self):
        pricing = calculate_pricing(
            [_line(1, 10001)], currency="USD", deposit_percentage=50
        )

        assert pricing.deposit_cents == 5001
        assert pricing.balance_cents == 5000
        assert pricing.deposit_percentage == 50

    def test_explicit_deposit_wins(self):
        pricing = calculate_pricing(
            [_line(2, 5000)], currency="USD", deposit_percentage=50, deposit_cents=4000
        )

        assert pricing.deposit_cents == 4000
        assert pricing.balance_cents == 6000
        assert pricing.deposit_percentage is None

    def test_deposit_above_total_is_rejected(self):
        with pytest.raises(GuardViolationError) as exc_info:
            calculate_pricing([_line(2, 5000)], currency="USD", deposit_cents=10001)

        assert exc_info.value.message == "Deposit cannot exceed total ($100.00)"

    @pytest.mark.parametrize("deposit_cents", [0, 10000])
    def test_required_split_rejects_zero_or_full_deposit(self, deposit_cents):
        with pytest.raises(GuardViolationError, match="greater than zero and less than"):
            calculate_pricing(
                [_line(2, 5000)],
                currency="USD",
                deposit_cents=deposit_cents,
                require_split=True,
            )

    def test_full_deposit_allowed_without_required_split(self):
        pricing = calculate_pricing([_line(2, 5000)], currency="USD", deposit_cents=10000)

        assert pricing.balance_cents == 0


class TestMOQ:
    def test_lines_below_moq_are_reported(self):
        product_id = uuid4()
        lines = price_lines(
            [
                _line(5, 100, product_id=product_id),
                _line(1, 100),
                _line(12, 100, product_id=product_id),
            ]
        )

        violations = find_moq_violations(lines, {product_id: 10})

        assert [violation.index for violation in violations] == [0]
        assert violations[0].message == "Line 1: minimum order quantity is 10"

    def test_unknown_product_defaults_to_moq_of_one(self):
        lines = price_lines([_line(1, 100, product_id=uuid4())])

        assert find_moq_violations(lines, {}) == []
