"""
Inventory ledger.

Owns the available quantity of each product variant. Reservations are a
single conditional ``UPDATE ... SET stock = stock - n WHERE stock >= n``
whose affected row count decides success, so two concurrent callers can
never oversell the same SKU. Nothing here commits: reservations belong to
the caller's transaction and vanish with it on rollback.
"""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, joinedload

from . import models
from .errors import InsufficientStock, NotFound, ValidationError

logger = logging.getLogger(__name__)


def get_variant_by_sku(db: Session, sku: str) -> Optional[models.ProductVariant]:
    """
    Retrieve a variant (with its product) by SKU.

    Args:
        db: Database session
        sku: SKU to search for

    Returns:
        ProductVariant object or None if not found
    """
    return (
        db.query(models.ProductVariant)
        .options(joinedload(models.ProductVariant.product))
        .filter(models.ProductVariant.sku == sku)
        .first()
    )


def display_name(variant: models.ProductVariant) -> str:
    """Product name with size and color, e.g. ``Gamis Aisyah (L, Navy)``."""
    details = ", ".join(part for part in (variant.size, variant.color) if part)
    name = variant.product.name if variant.product is not None else variant.sku
    return f"{name} ({details})" if details else name


def _check_quantity(qty: int) -> None:
    if qty is None or qty <= 0:
        raise ValidationError("Kuantitas harus lebih dari 0")


def reserve(db: Session, sku: str, qty: int) -> int:
    """
    Atomically take ``qty`` units of ``sku`` out of available stock.

    Args:
        db: Database session (the caller owns the transaction)
        sku: Variant SKU
        qty: Units to reserve, must be positive

    Returns:
        The new available quantity

    Raises:
        ValidationError: qty is not positive
        NotFound: no variant with this SKU
        InsufficientStock: variant inactive or fewer than qty units available
    """
    _check_quantity(qty)

    result = db.execute(
        update(models.ProductVariant)
        .where(
            models.ProductVariant.sku == sku,
            models.ProductVariant.active.is_(True),
            models.ProductVariant.stock >= qty,
        )
        .values(stock=models.ProductVariant.stock - qty)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 1:
        balance = db.execute(
            select(models.ProductVariant.stock).where(models.ProductVariant.sku == sku)
        ).scalar_one()
        logger.info(f"Reserved {qty} units of SKU '{sku}', {balance} left")
        return balance

    variant = get_variant_by_sku(db, sku)
    if variant is None:
        raise NotFound(f"Varian produk dengan SKU {sku} tidak ditemukan")
    db.refresh(variant)
    available = variant.stock if variant.active else 0
    logger.warning(
        f"Reservation of {qty} units of SKU '{sku}' rejected "
        f"(active={variant.active}, available={variant.stock})"
    )
    raise InsufficientStock(sku, display_name(variant), available)


def release(db: Session, sku: str, qty: int) -> int:
    """
    Give ``qty`` units of ``sku`` back to available stock.

    Returns:
        The new available quantity

    Raises:
        ValidationError: qty is not positive
        NotFound: no variant with this SKU
    """
    _check_quantity(qty)

    result = db.execute(
        update(models.ProductVariant)
        .where(models.ProductVariant.sku == sku)
        .values(stock=models.ProductVariant.stock + qty)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound(f"Varian produk dengan SKU {sku} tidak ditemukan")

    balance = db.execute(
        select(models.ProductVariant.stock).where(models.ProductVariant.sku == sku)
    ).scalar_one()
    logger.info(f"Released {qty} units of SKU '{sku}', {balance} available")
    return balance


def is_available(db: Session, sku: str, qty: int) -> bool:
    """
    Advisory stock check. The authoritative check happens inside ``reserve``.
    """
    variant = get_variant_by_sku(db, sku)
    if variant is None or not variant.active:
        return False
    return variant.stock >= qty
