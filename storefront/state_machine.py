"""
Order status state machine.

``plan_transition`` is the pure decision: given the current status, the
requested one and who is asking, it either refuses with ``InvalidTransition``
or returns a ``TransitionPlan`` describing what to stamp and whether stock
must be given back. ``apply_transition`` persists a plan with a
compare-and-set on the order's status, so two racing signals for the same
order cannot both apply it and stock is released at most once.

The machine enforces two hard gates and trusts its callers for the rest:

* terminal orders never move again (the refund of a completed order by the
  payment gateway is the only way out of ``COMPLETED``);
* reservations are released exactly once, on the way into ``CANCELLED`` or
  ``EXPIRED``.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import crud, inventory, models
from .enums import OrderStatus
from .errors import Conflict, InvalidTransition

logger = logging.getLogger(__name__)


class TransitionSource(str, enum.Enum):
    """Entry point asking for a transition."""
    CHECKOUT = "checkout"
    ADMIN = "admin"
    CUSTOMER = "customer"
    PAYMENT = "payment"
    CARRIER = "carrier"
    SYSTEM = "system"


TERMINAL_STATES = frozenset({
    OrderStatus.CANCELLED,
    OrderStatus.COMPLETED,
    OrderStatus.REFUNDED,
    OrderStatus.EXPIRED,
})

# Targets that hand reserved stock back to the ledger
RELEASING_STATES = frozenset({OrderStatus.CANCELLED, OrderStatus.EXPIRED})

# Sources that deliver at-least-once; re-reaching the current status is a no-op for them
REPLAYING_SOURCES = frozenset({
    TransitionSource.PAYMENT,
    TransitionSource.CARRIER,
    TransitionSource.SYSTEM,
    TransitionSource.CUSTOMER,
})

TIMESTAMP_FIELDS = {
    OrderStatus.PAID: ("paid_at",),
    OrderStatus.SHIPPED: ("shipped_at",),
    OrderStatus.DELIVERED: ("completed_at",),
    OrderStatus.COMPLETED: ("completed_at",),
    OrderStatus.CANCELLED: ("cancelled_at",),
    OrderStatus.REFUNDED: ("refunded_at",),
    OrderStatus.EXPIRED: ("expired_at",),
}


@dataclass(frozen=True)
class TransitionPlan:
    current: OrderStatus
    target: OrderStatus
    noop: bool = False
    release_stock: bool = False
    timestamps: Tuple[str, ...] = ()


def plan_transition(
    current,
    target,
    source: TransitionSource,
    stock_released: bool = False,
) -> TransitionPlan:
    """
    Decide whether ``current -> target`` may happen for ``source``.

    Args:
        current: Current order status
        target: Requested order status
        source: Entry point asking for the change
        stock_released: Whether the order's reservations were already given back

    Returns:
        TransitionPlan (``noop`` when nothing needs to change)

    Raises:
        InvalidTransition: the request crosses one of the gates
    """
    current = OrderStatus(current)
    target = OrderStatus(target)

    if current == target:
        if current in TERMINAL_STATES and source not in REPLAYING_SOURCES:
            raise InvalidTransition(f"Order dengan status {current.value} tidak dapat diubah")
        return TransitionPlan(current, target, noop=True)

    if current in TERMINAL_STATES:
        refund_of_completed = (
            current == OrderStatus.COMPLETED
            and target == OrderStatus.REFUNDED
            and source == TransitionSource.PAYMENT
        )
        if not refund_of_completed:
            raise InvalidTransition(f"Order dengan status {current.value} tidak dapat diubah")
    elif target == OrderStatus.PENDING_PAYMENT:
        raise InvalidTransition("Order tidak dapat dikembalikan ke status PENDING_PAYMENT")
    elif target == OrderStatus.EXPIRED and current != OrderStatus.PENDING_PAYMENT:
        raise InvalidTransition("Hanya order yang menunggu pembayaran yang dapat kedaluwarsa")
    elif target == OrderStatus.REFUNDED and current != OrderStatus.PAID:
        raise InvalidTransition(f"Order dengan status {current.value} tidak dapat di-refund")

    return TransitionPlan(
        current=current,
        target=target,
        release_stock=target in RELEASING_STATES and not stock_released,
        timestamps=TIMESTAMP_FIELDS.get(target, ()),
    )


def _release_reservations(db: Session, order: models.Order) -> None:
    for item in order.items:
        inventory.release(db, item.sku, item.quantity)


def apply_transition(
    db: Session,
    order: models.Order,
    target,
    source: TransitionSource,
    user_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> bool:
    """
    Move ``order`` to ``target`` inside the caller's transaction.

    Returns:
        True if the order changed, False for an idempotent replay

    Raises:
        InvalidTransition: the transition is not allowed
        Conflict: the order kept changing underneath us
    """
    target = OrderStatus(target)

    for _ in range(2):
        plan = plan_transition(order.status, target, source, order.stock_released_at is not None)
        if plan.noop:
            logger.info(f"Order {order.order_number} already {target.value}, ignoring {source.value} replay")
            return False

        now = datetime.utcnow()
        values = {"status": target.value, "updated_at": now}
        for field in plan.timestamps:
            if getattr(order, field) is None:
                values[field] = now
        if plan.release_stock:
            values["stock_released_at"] = now

        result = db.execute(
            update(models.Order)
            .where(models.Order.id == order.id, models.Order.status == plan.current.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            break
        # Lost the race: re-read and decide again against the fresh status
        db.refresh(order)
    else:
        raise Conflict("Order sedang diperbarui, silakan coba lagi")

    if plan.release_stock:
        _release_reservations(db, order)

    db.refresh(order)
    description = f"Status changed from '{plan.current.value}' to '{target.value}'"
    if reason:
        description = f"{description}: {reason}"
    crud.log_order_event(
        db,
        order_id=order.id,
        event_type="status_changed",
        description=description,
        old_value=plan.current.value,
        new_value=target.value,
        source=source.value,
        user_id=user_id,
    )
    logger.info(f"Order {order.order_number}: {plan.current.value} -> {target.value} ({source.value})")
    return True
