"""
Checkout orchestrator.

Turns a cart into a persisted order in ``PENDING_PAYMENT``: validates the
cart, snapshots the shipping address, reserves stock line by line, prices
every line and numbers the order. Everything happens in one database
transaction; if any line cannot be reserved the transaction is rolled back
and no stock moves.
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, inventory, models, pricing, schemas, validators
from .enums import OrderStatus
from .errors import InsufficientStock, NotFound, ValidationError

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = (
    "receiver_name",
    "receiver_phone",
    "address_line1",
    "address_line2",
    "city",
    "province",
    "postal_code",
)


def next_order_number(db: Session, now: Optional[datetime] = None) -> str:
    """
    Allocate the next order number for the day, ``ORD-YYYYMMDD-NNNNN``.

    The per-day counter row is incremented with a single UPDATE, which holds
    the row lock until the surrounding transaction ends.
    """
    day = (now or datetime.utcnow()).strftime("%Y%m%d")
    result = db.execute(
        update(models.OrderSequence)
        .where(models.OrderSequence.day == day)
        .values(last_value=models.OrderSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.add(models.OrderSequence(day=day, last_value=1))
        db.flush()
        value = 1
    else:
        value = db.execute(
            select(models.OrderSequence.last_value).where(models.OrderSequence.day == day)
        ).scalar_one()
    return f"ORD-{day}-{value:05d}"


def _address_snapshot(source) -> Dict[str, Optional[str]]:
    return {field: getattr(source, field) for field in ADDRESS_FIELDS}


def resolve_address(db: Session, user_id: str, request: schemas.CheckoutRequest) -> Dict[str, Optional[str]]:
    """
    Pick the shipping address for an order and copy it into a plain dict.

    Order of preference: saved address by id, inline address, default address.

    Raises:
        NotFound: address_id does not belong to the user
        ValidationError: saved address inactive, or no address available at all
    """
    if request.address_id:
        address = (
            db.query(models.Address)
            .filter(models.Address.id == request.address_id, models.Address.user_id == user_id)
            .first()
        )
        if address is None:
            raise NotFound("Alamat tidak ditemukan")
        if not address.active:
            raise ValidationError("Alamat tidak aktif")
        return _address_snapshot(address)

    if request.shipping_address is not None:
        return request.shipping_address.model_dump()

    default_address = (
        db.query(models.Address)
        .filter(
            models.Address.user_id == user_id,
            models.Address.is_default.is_(True),
            models.Address.active.is_(True),
        )
        .first()
    )
    if default_address is None:
        raise ValidationError("Harap sediakan alamat pengiriman atau atur alamat default")
    return _address_snapshot(default_address)


def _save_to_address_book(db: Session, user_id: str, request: schemas.CheckoutRequest) -> None:
    """Best effort: a failure here never fails the checkout."""
    try:
        db.add(models.Address(
            user_id=user_id,
            label=request.address_label or "Alamat Order Baru",
            is_default=False,
            **request.shipping_address.model_dump(),
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Failed to save checkout address for user {user_id}: {e}")


def _build_order(
    db: Session,
    user_id: str,
    customer_email: Optional[str],
    request: schemas.CheckoutRequest,
    address: Dict[str, Optional[str]],
) -> models.Order:
    items = []
    for position, line in enumerate(request.items):
        variant = inventory.get_variant_by_sku(db, line.sku)
        if variant is None:
            raise NotFound(f"Varian produk dengan SKU {line.sku} tidak ditemukan")

        unit_price = pricing.variant_unit_price(variant)
        inventory.reserve(db, variant.sku, line.quantity)

        items.append(models.OrderItem(
            position=position,
            product_id=variant.product_id,
            variant_id=variant.id,
            product_name=variant.product.name,
            sku=variant.sku,
            size=variant.size or "",
            color=variant.color or "",
            quantity=line.quantity,
            unit_price=unit_price,
            subtotal=pricing.line_subtotal(unit_price, line.quantity),
        ))

    subtotal = pricing.order_subtotal(item.subtotal for item in items)
    shipping_cost = pricing.to_money(request.shipping_cost)

    order = models.Order(
        order_number=next_order_number(db),
        user_id=user_id,
        customer_email=customer_email,
        order_type=request.order_type.value,
        status=OrderStatus.PENDING_PAYMENT.value,
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        total=pricing.order_total(subtotal, shipping_cost),
        notes=request.notes,
        courier_code=request.courier_code,
        courier_service=request.courier_service,
        items=items,
        **address,
    )
    db.add(order)
    db.flush()
    crud.log_order_event(
        db,
        order_id=order.id,
        event_type="created",
        description=f"Order created with status '{OrderStatus.PENDING_PAYMENT.value}'",
        new_value=OrderStatus.PENDING_PAYMENT.value,
        source="checkout",
        user_id=user_id,
    )
    return order


def place_order(
    db: Session,
    user_id: str,
    request: schemas.CheckoutRequest,
    customer_email: Optional[str] = None,
) -> models.Order:
    """
    Run a checkout and commit the resulting order.

    Args:
        db: Database session
        user_id: Customer placing the order
        request: Cart, address choice, order type and quoted shipping cost
        customer_email: Snapshot for the payment page

    Returns:
        The persisted Order in PENDING_PAYMENT

    Raises:
        ValidationError: malformed cart or address
        NotFound: unknown SKU or address
        InsufficientStock: first line that could not be reserved
    """
    is_valid, error_message = validators.validate_cart_items(request.items)
    if not is_valid:
        raise ValidationError(error_message)
    is_valid, error_message = validators.validate_shipping_cost(request.shipping_cost)
    if not is_valid:
        raise ValidationError(error_message)

    address = resolve_address(db, user_id, request)

    # A second attempt only covers two checkouts racing to open a new day's sequence row
    for attempt in range(2):
        try:
            order = _build_order(db, user_id, customer_email, request, address)
            db.commit()
            break
        except InsufficientStock as e:
            db.rollback()
            logger.warning(f"Checkout for user {user_id} rejected: insufficient stock for SKU '{e.sku}'")
            raise
        except IntegrityError:
            db.rollback()
            if attempt == 1:
                raise
            logger.warning(f"Checkout for user {user_id} hit a numbering collision, retrying")
        except Exception:
            db.rollback()
            raise

    logger.info(f"Order {order.order_number} placed by user {user_id}, total {order.total}")

    if request.shipping_address is not None and request.save_to_address_book:
        _save_to_address_book(db, user_id, request)

    return crud.get_order(db, order.id)
