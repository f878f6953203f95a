"""
SQLAlchemy ORM models for the storefront service.

Defines the database schema for catalog variants (the inventory unit), stored
addresses, orders with their line items, payments, shipments and the order
timeline. The models carry data only; status decisions live in
``state_machine`` and money arithmetic in ``pricing``.
"""
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base
from .enums import OrderStatus, PaymentStatus, ShipmentStatus


def _uuid() -> str:
    return str(uuid.uuid4())


class Product(Base):
    """
    Catalog product. Only the fields checkout needs are mapped here; catalog
    administration lives in another service.
    """
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    base_price = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    variants = relationship("ProductVariant", back_populates="product")


class ProductVariant(Base):
    """
    Purchasable size/color combination of a product with its own stock count.

    Attributes:
        sku (str): Unique stock keeping unit
        stock (int): Units available for reservation, never negative
        price_additional (Decimal): Added to the product base price
        price_override (Decimal): When set, replaces base price + additional entirely
        active (bool): Inactive variants cannot be reserved
    """
    __tablename__ = "product_variants"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_product_variants_stock_non_negative"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    sku = Column(String(100), unique=True, index=True, nullable=False)
    size = Column(String(50), nullable=False, default="")
    color = Column(String(50), nullable=False, default="")
    stock = Column(Integer, nullable=False, default=0)
    price_additional = Column(Numeric(12, 2), nullable=True)
    price_override = Column(Numeric(12, 2), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship("Product", back_populates="variants")


class Address(Base):
    """Saved shipping address in a user's address book."""
    __tablename__ = "addresses"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    label = Column(String(100), nullable=True)
    receiver_name = Column(String(255), nullable=False)
    receiver_phone = Column(String(20), nullable=False)
    address_line1 = Column(Text, nullable=False)
    address_line2 = Column(Text, nullable=True)
    city = Column(String(100), nullable=False)
    province = Column(String(100), nullable=False)
    postal_code = Column(String(10), nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Order(Base):
    """
    Order aggregate root.

    The receiver address, customer email and courier choice are snapshots
    taken at checkout and are never re-read from the address book.
    ``total`` is always ``subtotal + shipping_cost``.

    Attributes:
        order_number (str): Human readable number, ``ORD-YYYYMMDD-NNNNN``
        status (str): One of ``OrderStatus``
        stock_released_at (datetime): Set once when reservations are given back
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_number = Column(String(50), unique=True, index=True, nullable=False)
    user_id = Column(String(36), nullable=False, index=True)
    customer_email = Column(String(255), nullable=True)
    order_type = Column(String(20), nullable=False)
    status = Column(String(32), nullable=False, default=OrderStatus.PENDING_PAYMENT.value, index=True)

    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False)
    notes = Column(Text, nullable=True)
    courier_code = Column(String(50), nullable=True)
    courier_service = Column(String(50), nullable=True)

    receiver_name = Column(String(255), nullable=False)
    receiver_phone = Column(String(20), nullable=False)
    address_line1 = Column(Text, nullable=False)
    address_line2 = Column(Text, nullable=True)
    city = Column(String(100), nullable=False)
    province = Column(String(100), nullable=False)
    postal_code = Column(String(10), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    paid_at = Column(DateTime, nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    stock_released_at = Column(DateTime, nullable=True)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.position")
    payments = relationship("Payment", back_populates="order", order_by="Payment.created_at")
    shipment = relationship("Shipment", back_populates="order", uselist=False)


class OrderItem(Base):
    """
    Snapshot of one purchased variant. Immutable after checkout.

    Attributes:
        unit_price (Decimal): Effective price at the time of purchase
        subtotal (Decimal): ``unit_price * quantity``
    """
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(36), nullable=False)
    variant_id = Column(String(36), ForeignKey("product_variants.id"), nullable=False)
    product_name = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=False)
    size = Column(String(50), nullable=False, default="")
    color = Column(String(50), nullable=False, default="")
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    """
    One payment attempt against an order. An order may collect several
    attempts over time but only one of them may be ``PENDING`` at once,
    enforced by a partial unique index.
    """
    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payments_one_pending_per_order",
            "order_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    transaction_id = Column(String(255), unique=True, index=True, nullable=False)
    method = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False, default=PaymentStatus.PENDING.value)
    amount = Column(Numeric(12, 2), nullable=False)
    redirect_url = Column(String(500), nullable=True)
    snap_token = Column(String(255), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    webhook_payload = Column(Text, nullable=True)
    signature_key = Column(String(255), nullable=True)
    initiated_at = Column(DateTime, default=datetime.utcnow)
    settled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="payments")


class Shipment(Base):
    """Carrier shipment for an order; at most one per order."""
    __tablename__ = "shipments"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id"), unique=True, nullable=False)
    carrier_order_id = Column(String(100), index=True, nullable=True)
    carrier_tracking_id = Column(String(100), nullable=True)
    tracking_url = Column(String(500), nullable=True)
    courier_code = Column(String(100), nullable=True)
    service_level = Column(String(100), nullable=True)
    waybill = Column(String(255), nullable=True)
    cost = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String(32), nullable=False, default=ShipmentStatus.PENDING.value)
    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="shipment")


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): Type of event (e.g., "created", "status_changed", "payment")
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        source (str): Entry point that caused the event (checkout, admin, payment, carrier, ...)
        user_id (str): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    source = Column(String(32), nullable=True)
    user_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class OrderSequence(Base):
    """Per-day counter behind order numbers."""
    __tablename__ = "order_sequences"

    day = Column(String(8), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)
