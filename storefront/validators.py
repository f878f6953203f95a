"""
Business validation for checkout input beyond schema validation.
"""
from decimal import Decimal
from typing import List, Tuple

from . import schemas

MAX_CART_LINES = 100
MAX_LINE_QUANTITY = 10000
MAX_SHIPPING_COST = Decimal("100000000")


def validate_cart_items(items: List[schemas.CartItem]) -> Tuple[bool, str]:
    """
    Validate cart lines for business rules.

    Args:
        items: List of cart lines

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order harus memiliki minimal 1 item"

    if len(items) > MAX_CART_LINES:
        return False, f"Order tidak boleh memiliki lebih dari {MAX_CART_LINES} item"

    # Check for duplicate SKUs
    skus = [item.sku for item in items]
    if len(skus) != len(set(skus)):
        return False, "Order memiliki SKU yang duplikat"

    for item in items:
        if item.quantity <= 0:
            return False, f"Item {item.sku}: kuantitas minimal 1"

        if item.quantity > MAX_LINE_QUANTITY:
            return False, f"Item {item.sku}: kuantitas melebihi batas ({MAX_LINE_QUANTITY})"

    return True, ""


def validate_shipping_cost(shipping_cost: Decimal) -> Tuple[bool, str]:
    if shipping_cost < 0:
        return False, "Ongkos kirim tidak boleh negatif"
    if shipping_cost > MAX_SHIPPING_COST:
        return False, "Ongkos kirim melebihi batas"
    return True, ""
