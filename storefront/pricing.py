"""
Pricing calculator.

Pure functions over ``Decimal`` values. There are no discounts or coupons:
given the same catalog snapshot the result is always the same.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Convert a number or numeric string to a two-place ``Decimal``."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def effective_unit_price(
    base_price,
    price_additional=None,
    price_override: Optional[Decimal] = None,
) -> Decimal:
    """
    Unit price of a variant.

    A price override replaces the product base price entirely; otherwise the
    variant's additional amount is added to the base price.
    """
    if price_override is not None:
        return to_money(price_override)
    return to_money(to_money(base_price) + to_money(price_additional))


def variant_unit_price(variant) -> Decimal:
    return effective_unit_price(
        variant.product.base_price,
        variant.price_additional,
        variant.price_override,
    )


def line_subtotal(unit_price, quantity: int) -> Decimal:
    return to_money(to_money(unit_price) * quantity)


def order_subtotal(line_subtotals: Iterable) -> Decimal:
    return to_money(sum((to_money(s) for s in line_subtotals), Decimal("0.00")))


def order_total(subtotal, shipping_cost) -> Decimal:
    """Order total is the subtotal plus the externally quoted shipping cost."""
    shipping = to_money(shipping_cost)
    if shipping < 0:
        raise ValueError("shipping cost cannot be negative")
    return to_money(to_money(subtotal) + shipping)
