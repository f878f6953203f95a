"""
Pydantic schemas for request/response validation in the storefront service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import OrderStatus, OrderType, PaymentMethod


class CartItem(BaseModel):
    """Schema for one cart line."""
    sku: str = Field(..., min_length=1, max_length=100, description="Variant SKU")
    quantity: int = Field(..., gt=0, description="Quantity ordered")


class ShippingAddress(BaseModel):
    """Inline shipping address supplied at checkout."""
    receiver_name: str = Field(..., min_length=1, max_length=255)
    receiver_phone: str = Field(..., pattern=r"^(\+62|62|0)[0-9]{9,12}$")
    address_line1: str = Field(..., min_length=1)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=1, max_length=100)
    province: str = Field(..., min_length=1, max_length=100)
    postal_code: str = Field(..., pattern=r"^[0-9]{5}$")


class CheckoutRequest(BaseModel):
    """
    Schema for placing an order.

    The address comes from ``address_id`` (a saved address), from
    ``shipping_address`` (inline, optionally saved to the address book), or
    from the user's default address when neither is given.
    """
    items: List[CartItem] = Field(..., min_length=1, description="Cart lines")
    address_id: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    save_to_address_book: bool = False
    address_label: Optional[str] = Field(None, max_length=100)
    order_type: OrderType = OrderType.READY
    shipping_cost: Decimal = Field(..., ge=0, description="Quoted by the rate lookup")
    courier_code: Optional[str] = Field(None, max_length=50)
    courier_service: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    """Schema for the admin status endpoint."""
    status: OrderStatus
    reason: Optional[str] = None


class PaymentCreate(BaseModel):
    order_id: str
    method: PaymentMethod


class PaymentCallback(BaseModel):
    """Gateway notification. Unknown fields are kept for the audit trail."""
    model_config = ConfigDict(extra="allow")

    order_id: str
    status_code: str
    gross_amount: str
    signature_key: str
    transaction_status: str
    fraud_status: Optional[str] = None


class CarrierEvent(BaseModel):
    """Carrier status notification. Unknown fields are ignored."""
    model_config = ConfigDict(extra="allow")

    order_id: Optional[str] = None
    status: Optional[str] = None
    courier_waybill_id: Optional[str] = None
    courier_tracking_id: Optional[str] = None
    courier_link: Optional[str] = None
    courier: Optional[Dict[str, Any]] = None

    def waybill(self) -> Optional[str]:
        if self.courier_waybill_id:
            return self.courier_waybill_id
        if self.courier:
            return self.courier.get("waybill_id")
        return None


class OrderItem(BaseModel):
    id: str
    product_id: str
    variant_id: str
    product_name: str
    sku: str
    size: str
    color: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal

    class Config:
        from_attributes = True


class Payment(BaseModel):
    id: str
    order_id: str
    transaction_id: str
    method: str
    status: str
    amount: Decimal
    redirect_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class Shipment(BaseModel):
    id: str
    order_id: str
    carrier_order_id: Optional[str] = None
    courier_code: Optional[str] = None
    service_level: Optional[str] = None
    waybill: Optional[str] = None
    tracking_url: Optional[str] = None
    cost: Decimal
    status: str
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderSummary(BaseModel):
    """Order without payments and shipment, for list views."""
    id: str
    order_number: str
    user_id: str
    order_type: str
    status: str
    subtotal: Decimal
    shipping_cost: Decimal
    total: Decimal
    created_at: datetime

    class Config:
        from_attributes = True


class Order(OrderSummary):
    """
    Full order aggregate.

    Attributes:
        items (List[OrderItem]): Line item snapshots
        payments (List[Payment]): Every payment attempt
        shipment (Shipment): Carrier shipment, if created
    """
    customer_email: Optional[str] = None
    notes: Optional[str] = None
    courier_code: Optional[str] = None
    courier_service: Optional[str] = None
    receiver_name: str
    receiver_phone: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    province: str
    postal_code: str
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    items: List[OrderItem] = Field(default_factory=list)
    payments: List[Payment] = Field(default_factory=list)
    shipment: Optional[Shipment] = None


class PaymentIntent(BaseModel):
    payment_id: str
    transaction_id: str
    redirect_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    status: str


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (str): Order identifier
        event_type (str): Type of event (created, status_changed, payment, shipment)
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        source (str): Entry point that caused the event (optional)
        user_id (str): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    source: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class StockAvailability(BaseModel):
    sku: str
    quantity: int
    available: bool
