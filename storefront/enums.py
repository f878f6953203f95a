"""
Status and type enumerations shared by the storefront models and schemas.

Values are stored as plain strings in the database.
"""
import enum


class OrderStatus(str, enum.Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    IN_PRODUCTION = "IN_PRODUCTION"
    READY_TO_SHIP = "READY_TO_SHIP"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    EXPIRED = "EXPIRED"


class OrderType(str, enum.Enum):
    READY = "READY"  # ready stock
    PO = "PO"  # pre-order


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SETTLEMENT = "SETTLEMENT"
    EXPIRE = "EXPIRE"
    CANCEL = "CANCEL"
    DENY = "DENY"
    REFUND = "REFUND"


class PaymentMethod(str, enum.Enum):
    BANK_TRANSFER = "BANK_TRANSFER"
    QRIS = "QRIS"
    E_WALLET = "E_WALLET"
    CREDIT_CARD = "CREDIT_CARD"


class ShipmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    READY_TO_SHIP = "READY_TO_SHIP"
    SHIPPED = "SHIPPED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
