"""
Error taxonomy for the storefront service.

Every domain failure is a ``StoreError`` with a stable ``kind`` and the HTTP
status it maps to. Messages are customer facing and written in Indonesian;
internal details only go to the log.
"""
from typing import Optional


class StoreError(Exception):
    kind = "store_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class ValidationError(StoreError):
    kind = "validation_error"
    status_code = 400


class NotFound(StoreError):
    kind = "not_found"
    status_code = 404


class Forbidden(StoreError):
    kind = "forbidden"
    status_code = 403


class Conflict(StoreError):
    kind = "conflict"
    status_code = 409


class PaymentAlreadyPending(Conflict):
    kind = "payment_already_pending"


class ShipmentAlreadyExists(Conflict):
    kind = "shipment_already_exists"


class InsufficientStock(StoreError):
    """
    Stock shortfall for one line item.

    Attributes:
        sku: SKU of the offending variant
        display_name: Product name with size and color, for the rejection message
        available: Units that were available when the reservation failed
    """
    kind = "insufficient_stock"
    status_code = 409

    def __init__(self, sku: str, display_name: Optional[str] = None, available: Optional[int] = None):
        label = display_name or sku
        if available is None:
            message = f"Stok tidak cukup untuk {label}"
        else:
            message = f"Stok tidak cukup untuk {label}. Stok tersedia: {available}"
        super().__init__(message)
        self.sku = sku
        self.display_name = display_name
        self.available = available

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["sku"] = self.sku
        return data


class InvalidTransition(StoreError):
    kind = "invalid_transition"
    status_code = 409


class OrderNotPayable(InvalidTransition):
    kind = "order_not_payable"


class OrderNotPaid(InvalidTransition):
    kind = "order_not_paid"


class InvalidSignature(StoreError):
    kind = "invalid_signature"
    status_code = 400


class ExternalServiceError(StoreError):
    """
    Outbound call to an external system timed out or was refused.

    ``detail`` keeps the raw response text for the log; it is never shown to
    the customer.
    """
    status_code = 502
    retryable = True

    def __init__(self, message: str, detail: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.detail = detail
        self.status = status


class GatewayError(ExternalServiceError):
    """Payment gateway timed out or answered with a non-2xx response."""
    kind = "gateway_error"


class CarrierError(ExternalServiceError):
    """Carrier API timed out or answered with a non-2xx response."""
    kind = "carrier_error"
