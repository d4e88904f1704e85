"""
Order pricing in integer minor units.

Line totals, tax, deposit/balance split and MOQ checks. Nothing here
touches floats: tax and deposit percentages are applied with ``Decimal``
and rounded half-up to whole cents.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional, Sequence
from uuid import UUID

from tradeflow.core.errors import GuardViolationError

CURRENCY_SYMBOLS = {"USD": "$", "CAD": "$", "AUD": "$", "EUR": "€", "GBP": "£"}


@dataclass(frozen=True)
class PricedLine:
    position: int
    name: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    product_id: Optional[UUID] = None
    sku: Optional[str] = None


@dataclass(frozen=True)
class PricingBreakdown:
    lines: tuple[PricedLine, ...]
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    total_cents: int
    deposit_cents: int
    balance_cents: int
    deposit_percentage: Optional[int]


@dataclass(frozen=True)
class MOQViolation:
    index: int
    product_id: UUID
    quantity: int
    moq: int

    @property
    def message(self) -> str:
        return f"Line {self.index + 1}: minimum order quantity is {self.moq}"


def format_cents(cents: int, currency: str = "USD") -> str:
    """Render minor units for messages, e.g. ``$1,234.50``."""
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    amount = f"{whole:,}.{frac:02d}"
    if symbol:
        return f"{sign}{symbol}{amount}"
    return f"{sign}{amount} {currency.upper()}"


def apply_percentage(amount_cents: int, percentage: Decimal | int) -> int:
    """``round_half_up(amount * percentage / 100)`` in whole cents."""
    value = Decimal(amount_cents) * Decimal(percentage) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_deposit(total_cents: int, percentage: int) -> tuple[int, int]:
    """
    Split a total into deposit and balance.

    Returns:
        ``(deposit_cents, balance_cents)`` summing exactly to ``total_cents``
    """
    deposit = apply_percentage(total_cents, percentage)
    return deposit, total_cents - deposit


def price_lines(line_items: Sequence[Mapping]) -> tuple[PricedLine, ...]:
    """
    Price raw line item mappings in their given order.

    Each mapping carries ``name``, ``quantity``, ``unit_price_cents`` and
    optionally ``product_id`` / ``sku``.
    """
    priced = []
    for position, item in enumerate(line_items):
        quantity = int(item["quantity"])
        unit_price = int(item["unit_price_cents"])
        priced.append(
            PricedLine(
                position=position,
                name=item["name"],
                quantity=quantity,
                unit_price_cents=unit_price,
                line_total_cents=quantity * unit_price,
                product_id=item.get("product_id"),
                sku=item.get("sku"),
            )
        )
    return tuple(priced)


def calculate_pricing(
    line_items: Sequence[Mapping],
    *,
    currency: str,
    tax_rate: Decimal = Decimal("0"),
    shipping_cents: int = 0,
    deposit_percentage: Optional[int] = None,
    deposit_cents: Optional[int] = None,
    require_split: bool = False,
) -> PricingBreakdown:
    """
    Compute order totals and the deposit/balance split.

    An explicit ``deposit_cents`` wins over ``deposit_percentage``. With
    neither, the whole total is due as balance.

    Raises:
        GuardViolationError: If the deposit exceeds the total, or when
            ``require_split`` is set and the deposit is not strictly
            between zero and the total
    """
    lines = price_lines(line_items)
    subtotal = sum(line.line_total_cents for line in lines)
    tax = apply_percentage(subtotal, tax_rate)
    total = subtotal + tax + shipping_cents

    if deposit_cents is not None:
        deposit = deposit_cents
        percentage = None
    elif deposit_percentage is not None:
        deposit = apply_percentage(total, deposit_percentage)
        percentage = deposit_percentage
    else:
        deposit = 0
        percentage = None

    if deposit > total:
        raise GuardViolationError(
            f"Deposit cannot exceed total ({format_cents(total, currency)})",
            deposit_cents=deposit,
            total_cents=total,
        )
    if require_split and not 0 < deposit < total:
        raise GuardViolationError(
            "Deposit must be greater than zero and less than the total "
            f"({format_cents(total, currency)})",
            deposit_cents=deposit,
            total_cents=total,
        )

    return PricingBreakdown(
        lines=lines,
        subtotal_cents=subtotal,
        tax_cents=tax,
        shipping_cents=shipping_cents,
        total_cents=total,
        deposit_cents=deposit,
        balance_cents=total - deposit,
        deposit_percentage=percentage,
    )


def find_moq_violations(
    lines: Sequence[PricedLine], moq_by_product: Mapping[UUID, int]
) -> list[MOQViolation]:
    """Report every line whose quantity is below its product's MOQ."""
    violations = []
    for index, line in enumerate(lines):
        if line.product_id is None:
            continue
        moq = moq_by_product.get(line.product_id, 1)
        if line.quantity < moq:
            violations.append(
                MOQViolation(
                    index=index,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    moq=moq,
                )
            )
    return violations
