"""
Payment Gateway Adapter.

Creates hosted-payment intents for unpaid orders and applies the gateway's
asynchronous status notifications. Notifications are delivered at least
once, so applying the same status twice is a no-op. Settlement is the only
way an order becomes ``PAID``.

No database transaction is held open while the gateway is being called:
preconditions are checked and the read transaction is ended first, the
outcome is persisted afterwards and the preconditions are checked again.
"""
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud, models, pricing, schemas, state_machine
from .clients import gateway_client
from .config import GatewayConfig
from .enums import OrderStatus, PaymentMethod, PaymentStatus
from .errors import (
    Conflict,
    GatewayError,
    InvalidSignature,
    InvalidTransition,
    NotFound,
    OrderNotPayable,
    PaymentAlreadyPending,
    ValidationError,
)
from .state_machine import TransitionSource

logger = logging.getLogger(__name__)

# Gateway transaction_status -> internal payment status. ``capture`` depends
# on the fraud review and is resolved through CAPTURE_FRAUD_STATUS_MAP.
GATEWAY_STATUS_MAP = {
    "settlement": PaymentStatus.SETTLEMENT,
    "pending": PaymentStatus.PENDING,
    "deny": PaymentStatus.DENY,
    "expire": PaymentStatus.EXPIRE,
    "cancel": PaymentStatus.CANCEL,
    "refund": PaymentStatus.REFUND,
    "partial_refund": PaymentStatus.REFUND,
}

CAPTURE_FRAUD_STATUS_MAP = {
    "accept": PaymentStatus.SETTLEMENT,
    "challenge": PaymentStatus.PENDING,
}

# Payment status moves the gateway is allowed to make; everything else is an
# out-of-order delivery and is ignored.
ALLOWED_PAYMENT_MOVES = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.SETTLEMENT,
        PaymentStatus.DENY,
        PaymentStatus.EXPIRE,
        PaymentStatus.CANCEL,
    }),
    PaymentStatus.SETTLEMENT: frozenset({PaymentStatus.REFUND}),
}

ITEM_NAME_LIMIT = 50
SHIPPING_ITEM_ID = "SHIPPING"
ROUNDING_ITEM_ID = "ROUNDING"
GATEWAY_TIMEZONE = timezone(timedelta(hours=7))
COLLISION_MARKER = "already been taken"


def map_gateway_status(transaction_status: str, fraud_status: Optional[str] = None) -> PaymentStatus:
    """
    Map the gateway's transaction status (plus fraud review for card
    captures) to an internal payment status. Unknown statuses map to PENDING.
    """
    if transaction_status == "capture":
        return CAPTURE_FRAUD_STATUS_MAP.get(fraud_status, PaymentStatus.DENY)
    return GATEWAY_STATUS_MAP.get(transaction_status, PaymentStatus.PENDING)


def signature_for(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """Lowercase hex SHA-512 of ``order_id + status_code + gross_amount + server_key``."""
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def generate_transaction_id(now: Optional[datetime] = None) -> str:
    """Transaction id in the form ``TRX-YYYYMMDD-HHMMSS-NNNN``."""
    now = now or datetime.now()
    suffix = 1000 + secrets.randbelow(9000)
    return f"TRX-{now:%Y%m%d-%H%M%S}-{suffix}"


def _whole_rupiah(value) -> int:
    return int(pricing.to_money(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class CallbackResult:
    """
    Outcome of one gateway notification.

    Attributes:
        payment: The payment the notification was about
        changed: False when the notification was a replay or out of order
        order_paid: True when this notification moved the order to PAID
    """
    payment: models.Payment
    changed: bool = False
    order_paid: bool = False


class PaymentGatewayAdapter:
    """
    Talks to the hosted-payment gateway on behalf of orders.

    Args:
        config: Gateway credentials and limits
        client_factory: Builds the httpx.AsyncClient used for outbound calls
    """

    def __init__(self, config: GatewayConfig, client_factory: Optional[gateway_client.ClientFactory] = None):
        self.config = config
        self.client_factory = client_factory or gateway_client.default_client_factory(config)

    def build_transaction_request(self, order: models.Order, transaction_id: str) -> dict:
        """
        Build the gateway transaction body for an order.

        ``item_details`` lists every line item plus shipping as its own line,
        and a rounding line when whole-rupiah prices leave a remainder; the
        gateway rejects requests whose items do not add up to the gross
        amount.
        """
        address = {
            "first_name": order.receiver_name,
            "phone": order.receiver_phone,
            "address": order.address_line1,
            "city": order.city,
            "postal_code": order.postal_code,
            "country_code": self.config.country_code,
        }
        item_details = [
            {
                "id": item.variant_id,
                "price": _whole_rupiah(item.unit_price),
                "quantity": item.quantity,
                "name": f"{item.product_name} - {item.size} {item.color}".strip()[:ITEM_NAME_LIMIT],
            }
            for item in order.items
        ]
        item_details.append({
            "id": SHIPPING_ITEM_ID,
            "price": _whole_rupiah(order.shipping_cost),
            "quantity": 1,
            "name": "Ongkos Kirim",
        })
        gross_amount = _whole_rupiah(order.total)
        # Lines are rounded one by one but must still add up to gross_amount
        adjustment = gross_amount - sum(line["price"] * line["quantity"] for line in item_details)
        if adjustment:
            item_details.append({
                "id": ROUNDING_ITEM_ID,
                "price": adjustment,
                "quantity": 1,
                "name": "Pembulatan",
            })
        start_time = datetime.now(GATEWAY_TIMEZONE).strftime("%Y-%m-%d %H:%M:%S %z")
        return {
            "transaction_details": {
                "order_id": transaction_id,
                "gross_amount": gross_amount,
            },
            "customer_details": {
                "first_name": order.receiver_name,
                "email": order.customer_email,
                "phone": order.receiver_phone,
                "billing_address": dict(address),
                "shipping_address": dict(address),
            },
            "item_details": item_details,
            "expiry": {
                "start_time": start_time,
                "unit": "hours",
                "duration": self.config.expiry_hours,
            },
        }

    async def _submit(self, payload: dict) -> dict:
        """Submit a transaction, regenerating the id once on a collision."""
        transaction_id = payload["transaction_details"]["order_id"]
        try:
            return await gateway_client.create_transaction(self.config, payload, self.client_factory)
        except GatewayError as e:
            if COLLISION_MARKER not in (e.detail or ""):
                raise
            retry_id = f"{transaction_id}-RETRY-{int(time.time() * 1000)}"
            logger.warning(f"Transaction id {transaction_id} collided at the gateway, retrying as {retry_id}")
            payload["transaction_details"]["order_id"] = retry_id

        try:
            return await gateway_client.create_transaction(self.config, payload, self.client_factory)
        except GatewayError as e:
            raise GatewayError(
                "Gagal membuat pembayaran setelah retry",
                detail=e.detail,
                status=e.status,
            ) from e

    def _check_payable(self, db: Session, order_id: str) -> models.Order:
        order = crud.get_order(db, order_id)
        if order is None:
            raise NotFound(f"Order dengan ID {order_id} tidak ditemukan")
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            raise OrderNotPayable(f"Order dengan status {order.status} tidak dapat dibayar")
        if crud.get_pending_payment(db, order_id) is not None:
            raise PaymentAlreadyPending("Order ini sudah memiliki pembayaran yang sedang pending")
        return order

    async def create_intent(
        self,
        db: Session,
        order_id: str,
        method: PaymentMethod,
        user_id: Optional[str] = None,
    ) -> models.Payment:
        """
        Open a hosted-payment session for an unpaid order.

        Args:
            db: Database session
            order_id: Order to pay
            method: Payment method chosen by the customer
            user_id: Who asked, for the timeline

        Returns:
            The persisted PENDING Payment with the gateway redirect URL

        Raises:
            NotFound: order does not exist
            OrderNotPayable: order is not PENDING_PAYMENT
            PaymentAlreadyPending: order already has a pending payment
            GatewayError: gateway unreachable, or a second id collision
        """
        order = self._check_payable(db, order_id)
        transaction_id = generate_transaction_id()
        payload = self.build_transaction_request(order, transaction_id)
        amount = pricing.to_money(order.total)
        # Nothing stays locked while the gateway is being called
        db.commit()

        response = await self._submit(payload)
        transaction_id = payload["transaction_details"]["order_id"]

        try:
            order = self._check_payable(db, order_id)
            payment = models.Payment(
                order_id=order.id,
                transaction_id=transaction_id,
                method=PaymentMethod(method).value,
                status=PaymentStatus.PENDING.value,
                amount=amount,
                redirect_url=response.get("redirect_url"),
                snap_token=response.get("token"),
                expires_at=datetime.utcnow() + timedelta(hours=self.config.expiry_hours),
                initiated_at=datetime.utcnow(),
            )
            db.add(payment)
            db.flush()
            crud.log_order_event(
                db,
                order_id=order.id,
                event_type="payment",
                description=f"Payment {transaction_id} created via {payment.method}",
                new_value=PaymentStatus.PENDING.value,
                source=TransitionSource.PAYMENT.value,
                user_id=user_id,
            )
            db.commit()
        except IntegrityError as e:
            db.rollback()
            logger.warning(f"Concurrent payment creation for order {order_id}: {e.orig}")
            raise PaymentAlreadyPending("Order ini sudah memiliki pembayaran yang sedang pending") from e
        except Exception:
            db.rollback()
            raise

        db.refresh(payment)
        logger.info(f"Payment {transaction_id} created for order {order.order_number}, amount {amount}")
        return payment

    def verify_signature(self, callback: schemas.PaymentCallback) -> None:
        expected = signature_for(
            callback.order_id,
            callback.status_code,
            callback.gross_amount,
            self.config.server_key,
        )
        if not hmac.compare_digest(expected.encode("utf-8"), callback.signature_key.encode("utf-8")):
            logger.warning(f"Rejected gateway notification for {callback.order_id}: invalid signature")
            raise InvalidSignature("Signature tidak valid")

    def handle_callback(self, db: Session, callback: schemas.PaymentCallback) -> CallbackResult:
        """
        Apply one gateway notification.

        Raises:
            InvalidSignature: signature mismatch; nothing is touched
            NotFound: unknown transaction id
            ValidationError: gross amount differs from the payment amount
            InvalidTransition: settlement or refund for an order that cannot take it
        """
        self.verify_signature(callback)

        payment = crud.get_payment_by_transaction_id(db, callback.order_id)
        if payment is None:
            raise NotFound(f"Payment dengan transaction ID {callback.order_id} tidak ditemukan")

        try:
            gross_amount = pricing.to_money(Decimal(callback.gross_amount))
        except InvalidOperation as e:
            raise ValidationError("Jumlah pembayaran tidak valid") from e
        if gross_amount != _whole_rupiah(payment.amount):
            logger.warning(
                f"Gateway amount {gross_amount} does not match payment "
                f"{payment.transaction_id} amount {payment.amount}"
            )
            raise ValidationError("Jumlah pembayaran tidak sesuai")

        current = PaymentStatus(payment.status)
        new_status = map_gateway_status(callback.transaction_status, callback.fraud_status)

        if new_status == current:
            logger.info(f"Payment {payment.transaction_id} already {current.value}, ignoring replay")
            return CallbackResult(payment=payment)
        if new_status not in ALLOWED_PAYMENT_MOVES.get(current, ()):
            logger.warning(
                f"Ignoring out-of-order notification for payment {payment.transaction_id}: "
                f"{current.value} -> {new_status.value}"
            )
            return CallbackResult(payment=payment)

        order_paid = False
        try:
            now = datetime.utcnow()
            values = {
                "status": new_status.value,
                "webhook_payload": json.dumps(callback.model_dump()),
                "signature_key": callback.signature_key,
                "updated_at": now,
            }
            if new_status == PaymentStatus.SETTLEMENT:
                values["settled_at"] = now
            result = db.execute(
                update(models.Payment)
                .where(models.Payment.id == payment.id, models.Payment.status == current.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                db.refresh(payment)
                if payment.status == new_status.value:
                    logger.info(f"Payment {payment.transaction_id} reached {new_status.value} concurrently")
                    return CallbackResult(payment=payment)
                raise Conflict("Pembayaran sedang diproses, silakan coba lagi")

            order = db.get(models.Order, payment.order_id)
            crud.log_order_event(
                db,
                order_id=order.id,
                event_type="payment",
                description=f"Payment {payment.transaction_id} changed from '{current.value}' to '{new_status.value}'",
                old_value=current.value,
                new_value=new_status.value,
                source=TransitionSource.PAYMENT.value,
            )

            if new_status == PaymentStatus.SETTLEMENT:
                order_paid = state_machine.apply_transition(
                    db, order, OrderStatus.PAID, TransitionSource.PAYMENT,
                    reason=f"payment {payment.transaction_id} settled",
                )
            elif new_status == PaymentStatus.REFUND:
                state_machine.apply_transition(
                    db, order, OrderStatus.REFUNDED, TransitionSource.PAYMENT,
                    reason=f"payment {payment.transaction_id} refunded by gateway",
                )
            db.commit()
        except InvalidTransition as e:
            db.rollback()
            logger.warning(f"Gateway notification for payment {payment.transaction_id} rejected: {e.message}")
            raise
        except Exception:
            db.rollback()
            raise

        db.refresh(payment)
        logger.info(f"Payment {payment.transaction_id}: {current.value} -> {new_status.value}")
        return CallbackResult(payment=payment, changed=True, order_paid=order_paid)

    def refund(self, db: Session, payment_id: str, user_id: Optional[str] = None) -> models.Payment:
        """
        Record a refund of a settled payment and move its order to REFUNDED.

        Raises:
            NotFound: payment does not exist
            InvalidTransition: payment is not settled, or the order cannot be refunded
        """
        payment = crud.get_payment(db, payment_id)
        if payment is None:
            raise NotFound("Payment tidak ditemukan")
        if payment.status != PaymentStatus.SETTLEMENT.value:
            raise InvalidTransition(f"Payment dengan status {payment.status} tidak dapat di-refund")

        try:
            result = db.execute(
                update(models.Payment)
                .where(models.Payment.id == payment.id, models.Payment.status == PaymentStatus.SETTLEMENT.value)
                .values(status=PaymentStatus.REFUND.value, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise Conflict("Pembayaran sedang diproses, silakan coba lagi")

            order = db.get(models.Order, payment.order_id)
            crud.log_order_event(
                db,
                order_id=order.id,
                event_type="payment",
                description=f"Payment {payment.transaction_id} refunded",
                old_value=PaymentStatus.SETTLEMENT.value,
                new_value=PaymentStatus.REFUND.value,
                source=TransitionSource.ADMIN.value,
                user_id=user_id,
            )
            state_machine.apply_transition(
                db, order, OrderStatus.REFUNDED, TransitionSource.PAYMENT,
                user_id=user_id, reason=f"payment {payment.transaction_id} refunded",
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(payment)
        logger.info(f"Payment {payment.transaction_id} refunded by user {user_id}")
        return payment
