"""
Read helpers and the order timeline for the storefront service.

Writes that carry business rules live in ``checkout``, ``state_machine``,
``payments`` and ``shipments``; this module only reads and appends events.
"""
from typing import List, Optional

from sqlalchemy.orm import Session, selectinload

from . import models


def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order with its items, payments and shipment.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return (
        db.query(models.Order)
        .options(
            selectinload(models.Order.items),
            selectinload(models.Order.payments),
            selectinload(models.Order.shipment),
        )
        .filter(models.Order.id == order_id)
        .first()
    )


def get_orders(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
) -> List[models.Order]:
    """
    Retrieve a list of orders with pagination, newest first.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
        user_id: Only orders of this user
        status: Only orders in this status

    Returns:
        List of Order objects
    """
    query = db.query(models.Order).options(selectinload(models.Order.items))
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    if status is not None:
        query = query.filter(models.Order.status == status)
    return query.order_by(models.Order.created_at.desc()).offset(skip).limit(limit).all()


def get_payment(db: Session, payment_id: str) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.id == payment_id).first()


def get_payment_by_transaction_id(db: Session, transaction_id: str) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.transaction_id == transaction_id).first()


def get_pending_payment(db: Session, order_id: str) -> Optional[models.Payment]:
    return (
        db.query(models.Payment)
        .filter(models.Payment.order_id == order_id, models.Payment.status == "PENDING")
        .first()
    )


def get_payments_for_order(db: Session, order_id: str) -> List[models.Payment]:
    return (
        db.query(models.Payment)
        .filter(models.Payment.order_id == order_id)
        .order_by(models.Payment.created_at.desc())
        .all()
    )


def get_shipment_by_carrier_order_id(db: Session, carrier_order_id: str) -> Optional[models.Shipment]:
    return db.query(models.Shipment).filter(models.Shipment.carrier_order_id == carrier_order_id).first()


def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: str = None,
    new_value: str = None,
    source: str = None,
    user_id: str = None,
) -> models.OrderEvent:
    """
    Append an event to the order timeline. The caller commits.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed", "payment", "shipment")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        source: Entry point that caused the event (optional)
        user_id: User who triggered the event (optional)
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        source=source,
        user_id=user_id,
    )
    db.add(event)
    return event


def get_order_events(db: Session, order_id: str) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
        .all()
    )
