"""Order pricing.

Pure functions over ``Decimal``. Nothing here touches the database or
rounds intermediate values; amounts are rounded to the currency's minor
unit once, by ``Totals.rounded()``, right before they are stored.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: float | int | str | Decimal | None) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: float | int | str | Decimal | None) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricedLine:
    product_id: int
    unit_price: Decimal
    quantity: int

    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity


def subtotal_of(lines: Iterable[PricedLine]) -> Decimal:
    return sum((line.total for line in lines), ZERO)


def tax_amount_for(subtotal: Decimal, discount_amount: Decimal, tax_rate: Decimal) -> Decimal:
    return (subtotal - discount_amount) * tax_rate


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    total: Decimal

    def rounded(self) -> "Totals":
        """Round every component and recompute the total from the rounded
        parts, so the stored values satisfy the pricing identity exactly."""
        subtotal = money(self.subtotal)
        discount_amount = money(self.discount_amount)
        tax_amount = money(self.tax_amount)
        shipping_cost = money(self.shipping_cost)
        return Totals(
            subtotal=subtotal,
            discount_amount=discount_amount,
            tax_rate=self.tax_rate,
            tax_amount=tax_amount,
            shipping_cost=shipping_cost,
            total=subtotal - discount_amount + tax_amount + shipping_cost,
        )


def compute_totals(
    subtotal: Decimal,
    discount_amount: Decimal = ZERO,
    tax_rate: Decimal = ZERO,
    shipping_cost: Decimal = ZERO,
) -> Totals:
    subtotal = to_decimal(subtotal)
    # A discount can never take the goods below zero
    discount_amount = min(to_decimal(discount_amount), subtotal)
    tax_rate = to_decimal(tax_rate)
    shipping_cost = to_decimal(shipping_cost)
    tax_amount = tax_amount_for(subtotal, discount_amount, tax_rate)
    return Totals(
        subtotal=subtotal,
        discount_amount=discount_amount,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        shipping_cost=shipping_cost,
        total=subtotal - discount_amount + tax_amount + shipping_cost,
    )
