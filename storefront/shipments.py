"""
Shipment Tracker.

Books a carrier pickup once an order is paid and follows the carrier's
lifecycle notifications, cascading them into order status changes. Carrier
notifications always get a success answer: unknown shipments and unknown
status codes are logged and skipped so the carrier does not retry them.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud, models, pricing, schemas, state_machine
from .clients import carrier_client
from .config import CarrierConfig
from .enums import OrderStatus, ShipmentStatus
from .errors import NotFound, OrderNotPaid, ShipmentAlreadyExists
from .state_machine import TransitionSource

logger = logging.getLogger(__name__)

CARRIER_STATUS_MAP = {
    "confirmed": ShipmentStatus.READY_TO_SHIP,
    "allocated": ShipmentStatus.READY_TO_SHIP,
    "picking_up": ShipmentStatus.READY_TO_SHIP,
    "picked": ShipmentStatus.SHIPPED,
    "dropping_off": ShipmentStatus.SHIPPED,
    "delivered": ShipmentStatus.DELIVERED,
    "cancelled": ShipmentStatus.CANCELLED,
    "canceled": ShipmentStatus.CANCELLED,
    "rejected": ShipmentStatus.CANCELLED,
    "returned": ShipmentStatus.CANCELLED,
}

# Shipment status -> order status it drives. READY_TO_SHIP is set when the
# shipment is booked, so the carrier's early codes only refresh tracking data.
ORDER_STATUS_FOR_SHIPMENT = {
    ShipmentStatus.SHIPPED: OrderStatus.SHIPPED,
    ShipmentStatus.DELIVERED: OrderStatus.DELIVERED,
    ShipmentStatus.CANCELLED: OrderStatus.CANCELLED,
}

# Shipment status moves the carrier is allowed to make; a late or redelivered
# code that would step backwards is ignored.
ALLOWED_SHIPMENT_MOVES = {
    ShipmentStatus.PENDING: frozenset({
        ShipmentStatus.READY_TO_SHIP,
        ShipmentStatus.SHIPPED,
        ShipmentStatus.DELIVERED,
        ShipmentStatus.CANCELLED,
    }),
    ShipmentStatus.READY_TO_SHIP: frozenset({
        ShipmentStatus.SHIPPED,
        ShipmentStatus.DELIVERED,
        ShipmentStatus.CANCELLED,
    }),
    ShipmentStatus.SHIPPED: frozenset({ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED}),
    ShipmentStatus.IN_TRANSIT: frozenset({ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED}),
}


def map_carrier_status(code: Optional[str]) -> Optional[ShipmentStatus]:
    """Map a carrier lifecycle code to a shipment status, None when unknown."""
    if not code:
        return None
    return CARRIER_STATUS_MAP.get(code.strip().lower())


@dataclass
class CarrierEventResult:
    """
    Outcome of one carrier notification.

    Attributes:
        shipment: Matched shipment, None for an unknown carrier order id
        status: Mapped shipment status, None for an unknown code
        old_order_status: Order status before the event, set only when it changed
        new_order_status: Order status after the event, set only when it changed
    """
    shipment: Optional[models.Shipment] = None
    status: Optional[ShipmentStatus] = None
    old_order_status: Optional[str] = None
    new_order_status: Optional[str] = None

    @property
    def order_changed(self) -> bool:
        return self.new_order_status is not None


class ShipmentTracker:
    """
    Creates carrier orders and applies carrier notifications.

    Args:
        config: Carrier credentials plus shipper and origin details
        client_factory: Builds the httpx.AsyncClient used for outbound calls
    """

    def __init__(self, config: CarrierConfig, client_factory: Optional[carrier_client.ClientFactory] = None):
        self.config = config
        self.client_factory = client_factory or carrier_client.default_client_factory(config)

    def build_carrier_request(self, order: models.Order) -> dict:
        """Carrier order body built from the order's address and item snapshots."""
        destination_address = order.address_line1
        if order.address_line2:
            destination_address = f"{destination_address}, {order.address_line2}"
        return {
            "reference_id": order.order_number,
            "shipper_contact_name": self.config.shipper_contact_name,
            "shipper_contact_phone": self.config.shipper_contact_phone,
            "shipper_contact_email": self.config.shipper_contact_email,
            "shipper_organization": self.config.shipper_organization,
            "origin_contact_name": self.config.origin_contact_name,
            "origin_contact_phone": self.config.origin_contact_phone,
            "origin_address": self.config.origin_address,
            "origin_postal_code": self.config.origin_postal_code,
            "destination_contact_name": order.receiver_name,
            "destination_contact_phone": order.receiver_phone,
            "destination_contact_email": order.customer_email,
            "destination_address": f"{destination_address}, {order.city}, {order.province}",
            "destination_postal_code": order.postal_code,
            "courier_company": order.courier_code or self.config.default_courier_code,
            "courier_type": order.courier_service or self.config.default_courier_service,
            "delivery_type": "now",
            "order_note": f"Order #{order.order_number}",
            "items": [
                {
                    "name": item.product_name,
                    "description": f"{item.size} {item.color}".strip(),
                    "sku": item.sku,
                    "value": int(pricing.to_money(item.unit_price)),
                    "quantity": item.quantity,
                    "weight": self.config.item_weight_grams,
                }
                for item in order.items
            ],
        }

    def _check_shippable(self, db: Session, order_id: str) -> models.Order:
        order = crud.get_order(db, order_id)
        if order is None:
            raise NotFound(f"Order dengan ID {order_id} tidak ditemukan")
        if order.shipment is not None:
            raise ShipmentAlreadyExists("Pengiriman untuk order ini sudah dibuat")
        if order.status != OrderStatus.PAID.value:
            raise OrderNotPaid(f"Order dengan status {order.status} belum dapat dikirim")
        return order

    async def create_for_order(
        self,
        db: Session,
        order_id: str,
        source: TransitionSource = TransitionSource.SYSTEM,
        user_id: Optional[str] = None,
    ) -> models.Shipment:
        """
        Book the carrier pickup for a paid order and move it to READY_TO_SHIP.

        Args:
            db: Database session
            order_id: Order to ship
            source: SYSTEM after settlement, ADMIN for a manual retry
            user_id: Admin who retried, if any

        Returns:
            The persisted Shipment

        Raises:
            NotFound: order does not exist
            OrderNotPaid: order is not PAID
            ShipmentAlreadyExists: order already has a shipment
            CarrierError: carrier unreachable or refused the order
        """
        order = self._check_shippable(db, order_id)
        payload = self.build_carrier_request(order)
        shipping_cost = pricing.to_money(order.shipping_cost)
        db.commit()

        response = await carrier_client.create_order(self.config, payload, self.client_factory)
        courier = response.get("courier") or {}
        carrier_order_id = response.get("id")

        try:
            order = self._check_shippable(db, order_id)
            shipment = models.Shipment(
                order_id=order.id,
                carrier_order_id=carrier_order_id,
                carrier_tracking_id=courier.get("tracking_id"),
                waybill=courier.get("waybill_id"),
                tracking_url=courier.get("link"),
                courier_code=courier.get("company") or payload["courier_company"],
                service_level=courier.get("type") or payload["courier_type"],
                cost=pricing.to_money(response["price"]) if response.get("price") is not None else shipping_cost,
                status=ShipmentStatus.READY_TO_SHIP.value,
            )
            db.add(shipment)
            db.flush()
            crud.log_order_event(
                db,
                order_id=order.id,
                event_type="shipment",
                description=f"Carrier order {carrier_order_id} booked with {shipment.courier_code}",
                new_value=ShipmentStatus.READY_TO_SHIP.value,
                source=source.value,
                user_id=user_id,
            )
            state_machine.apply_transition(
                db, order, OrderStatus.READY_TO_SHIP, source,
                user_id=user_id, reason=f"carrier order {carrier_order_id} booked",
            )
            db.commit()
        except IntegrityError as e:
            db.rollback()
            logger.warning(f"Carrier order {carrier_order_id} for order {order_id} lost a race: {e.orig}")
            raise ShipmentAlreadyExists("Pengiriman untuk order ini sudah dibuat") from e
        except ShipmentAlreadyExists:
            db.rollback()
            logger.warning(f"Carrier order {carrier_order_id} for order {order_id} is a duplicate")
            raise
        except Exception:
            db.rollback()
            raise

        db.refresh(shipment)
        logger.info(f"Shipment {carrier_order_id} created for order {order.order_number}")
        return shipment

    def handle_carrier_event(self, db: Session, event: schemas.CarrierEvent) -> CarrierEventResult:
        """
        Apply one carrier notification.

        Unknown carrier order ids, unknown status codes and codes that would
        move the shipment backwards are logged and ignored. A repeated status
        only refreshes tracking data. Order transitions go through the state
        machine, so a duplicated cancellation releases stock only once.

        Raises:
            InvalidTransition: the order is terminal and cannot follow the carrier
        """
        shipment = crud.get_shipment_by_carrier_order_id(db, event.order_id) if event.order_id else None
        if shipment is None:
            logger.warning(f"Carrier event for unknown shipment {event.order_id!r}, ignoring")
            return CarrierEventResult()

        status = map_carrier_status(event.status)
        if status is None:
            logger.warning(f"Unknown carrier status {event.status!r} for shipment {event.order_id}, ignoring")
            return CarrierEventResult(shipment=shipment)

        previous = shipment.status
        if previous != status.value and status not in ALLOWED_SHIPMENT_MOVES.get(ShipmentStatus(previous), ()):
            logger.warning(
                f"Ignoring out-of-order carrier status {event.status!r} for shipment "
                f"{shipment.carrier_order_id}: {previous} -> {status.value}"
            )
            return CarrierEventResult(shipment=shipment)

        old_order_status = new_order_status = None
        try:
            now = datetime.utcnow()
            shipment.status = status.value
            waybill = event.waybill()
            if waybill:
                shipment.waybill = waybill
            if event.courier_tracking_id:
                shipment.carrier_tracking_id = event.courier_tracking_id
            if event.courier_link:
                shipment.tracking_url = event.courier_link
            if status == ShipmentStatus.SHIPPED and shipment.shipped_at is None:
                shipment.shipped_at = now
            if status == ShipmentStatus.DELIVERED and shipment.delivered_at is None:
                shipment.delivered_at = now
            db.flush()

            if previous != status.value:
                crud.log_order_event(
                    db,
                    order_id=shipment.order_id,
                    event_type="shipment",
                    description=f"Shipment {shipment.carrier_order_id} changed from '{previous}' to '{status.value}'",
                    old_value=previous,
                    new_value=status.value,
                    source=TransitionSource.CARRIER.value,
                )

            # A replayed status already moved the order in the same commit
            target = ORDER_STATUS_FOR_SHIPMENT.get(status) if previous != status.value else None
            if target is not None:
                order = db.get(models.Order, shipment.order_id)
                before = order.status
                if state_machine.apply_transition(
                    db, order, target, TransitionSource.CARRIER,
                    reason=f"carrier status '{event.status}'",
                ):
                    old_order_status, new_order_status = before, target.value
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(shipment)
        return CarrierEventResult(
            shipment=shipment,
            status=status,
            old_order_status=old_order_status,
            new_order_status=new_order_status,
        )
