"""
Storefront Service API

FastAPI service for checkout and order fulfillment: turns carts into orders
with reserved stock, opens hosted-payment sessions, applies payment gateway
and carrier notifications, and exposes the order status machine to admins.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    POST /orders: Checkout a cart into a new order
    GET /orders: List orders (customers see their own)
    GET /orders/{order_id}: Full order with items, payments and shipment
    PATCH /orders/{order_id}/status: Admin status transition
    POST /orders/{order_id}/cancel: Customer cancellation of an unpaid order
    GET /orders/{order_id}/timeline: Order event history
    GET /orders/{order_id}/payments: Payment attempts of an order
    POST /orders/{order_id}/shipment: Admin (re)try of the carrier booking
    GET /inventory/{sku}: Advisory stock availability
    POST /payments: Open a hosted-payment session
    POST /payments/webhook: Payment gateway notifications
    POST /payments/{payment_id}/refund: Admin refund of a settled payment
    POST /webhooks/carrier: Carrier notifications
    POST /admin/jobs/expire-unpaid: Run the unpaid order sweep once

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "storefront-service"
"""
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import (
    auth,
    checkout,
    config,
    crud,
    inventory,
    jobs,
    models,
    schemas,
    state_machine,
    webhooks,
)
from .database import engine, get_db
from .enums import OrderStatus
from .errors import (
    CarrierError,
    Forbidden,
    InvalidTransition,
    NotFound,
    OrderNotPaid,
    ShipmentAlreadyExists,
    StoreError,
)
from .payments import PaymentGatewayAdapter
from .shipments import ShipmentTracker
from .state_machine import TransitionSource

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    # Create database tables
    models.Base.metadata.create_all(bind=engine)
    if config.ORDER_EXPIRY_SWEEP_ENABLED:
        jobs.start_scheduler()
    yield
    jobs.shutdown_scheduler()


app = FastAPI(title="storefront-service", lifespan=lifespan)


@lru_cache()
def get_gateway_adapter() -> PaymentGatewayAdapter:
    return PaymentGatewayAdapter(config.load_gateway_config())


@lru_cache()
def get_shipment_tracker() -> ShipmentTracker:
    return ShipmentTracker(config.load_carrier_config())


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "message": "Terjadi kesalahan pada server"},
    )


def get_accessible_order(db: Session, order_id: str, current_user: auth.CurrentUser) -> models.Order:
    """
    Load an order the current user may see.

    Raises:
        NotFound: order does not exist
        Forbidden: order belongs to another customer
    """
    db_order = crud.get_order(db, order_id=order_id)
    if db_order is None:
        raise NotFound("Order tidak ditemukan")

    # Check ownership unless admin
    if not current_user.is_admin and db_order.user_id != current_user.id:
        raise Forbidden("Anda tidak memiliki akses ke order ini")
    return db_order


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the storefront service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


@app.post("/orders", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
async def create_order(
    request: schemas.CheckoutRequest,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Checkout a cart into a new order in PENDING_PAYMENT.

    Stock for every line is reserved in the same transaction that creates the
    order; the first line that cannot be reserved rejects the whole cart.

    Raises:
        ValidationError (400): malformed cart or address
        NotFound (404): unknown SKU or address
        InsufficientStock (409): names the first line that could not be reserved
    """
    db_order = checkout.place_order(db, current_user.id, request, customer_email=current_user.email)
    webhooks.notify_order_created(db_order.id, db_order.order_number, str(db_order.total))
    return db_order


@app.get("/orders", response_model=List[schemas.OrderSummary])
def list_orders(
    skip: int = 0,
    limit: int = 100,
    status: Optional[OrderStatus] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List orders with pagination, newest first (customers see their own, admins see all).

    Args:
        skip: Number of records to skip (default: 0)
        limit: Maximum number of records to return (default: 100)
        status: Only orders in this status
    """
    user_id = None if current_user.is_admin else current_user.id
    return crud.get_orders(
        db,
        skip=skip,
        limit=min(limit, 500),
        user_id=user_id,
        status=status.value if status else None,
    )


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Get a single order with items, payments and shipment (owner or admin)."""
    return get_accessible_order(db, order_id, current_user)


@app.patch("/orders/{order_id}/status", response_model=schemas.Order)
async def update_order_status(
    order_id: str,
    update: schemas.OrderStatusUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Apply one explicit status transition (admins only).

    Goes through the same state machine as the payment and carrier
    notifications: terminal orders refuse every change with 409.
    """
    db_order = crud.get_order(db, order_id=order_id)
    if db_order is None:
        raise NotFound("Order tidak ditemukan")

    old_status = db_order.status
    try:
        changed = state_machine.apply_transition(
            db, db_order, update.status, TransitionSource.ADMIN,
            user_id=current_user.id, reason=update.reason,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if changed:
        webhooks.notify_order_status_changed(order_id, old_status, update.status.value)
    return crud.get_order(db, order_id=order_id)


@app.post("/orders/{order_id}/cancel", response_model=schemas.Order)
async def cancel_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Cancel an unpaid order and give its stock back (owner or admin).

    Raises:
        InvalidTransition (409): the order is no longer waiting for payment
    """
    db_order = get_accessible_order(db, order_id, current_user)
    if db_order.status not in (OrderStatus.PENDING_PAYMENT.value, OrderStatus.CANCELLED.value):
        raise InvalidTransition("Hanya order yang menunggu pembayaran yang dapat dibatalkan")

    old_status = db_order.status
    try:
        changed = state_machine.apply_transition(
            db, db_order, OrderStatus.CANCELLED, TransitionSource.CUSTOMER,
            user_id=current_user.id, reason="cancelled by customer",
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if changed:
        webhooks.notify_order_status_changed(order_id, old_status, OrderStatus.CANCELLED.value)
    return crud.get_order(db, order_id=order_id)


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get the timeline of events for an order (owner or admin).

    Returns:
        List of order events in chronological order
    """
    get_accessible_order(db, order_id, current_user)
    return crud.get_order_events(db, order_id)


@app.get("/orders/{order_id}/payments", response_model=List[schemas.Payment])
def list_order_payments(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Payment attempts of an order, newest first (owner or admin)."""
    get_accessible_order(db, order_id, current_user)
    return crud.get_payments_for_order(db, order_id)


@app.post("/orders/{order_id}/shipment", response_model=schemas.Shipment, status_code=status.HTTP_201_CREATED)
async def create_shipment(
    order_id: str,
    db: Session = Depends(get_db),
    tracker: ShipmentTracker = Depends(get_shipment_tracker),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Book the carrier pickup for a paid order (admins only).

    Used when the automatic booking after settlement failed.

    Raises:
        OrderNotPaid (409): order is not PAID
        ShipmentAlreadyExists (409): order already has a shipment
        CarrierError (502): carrier unreachable; safe to retry
    """
    shipment = await tracker.create_for_order(
        db, order_id, source=TransitionSource.ADMIN, user_id=current_user.id
    )
    webhooks.notify_order_status_changed(order_id, OrderStatus.PAID.value, OrderStatus.READY_TO_SHIP.value)
    return shipment


@app.get("/inventory/{sku}", response_model=schemas.StockAvailability)
def get_stock_availability(
    sku: str,
    quantity: int = 1,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Advisory availability check. The authoritative check happens when the
    order is placed.
    """
    if inventory.get_variant_by_sku(db, sku) is None:
        raise NotFound(f"Varian produk dengan SKU {sku} tidak ditemukan")
    return schemas.StockAvailability(
        sku=sku,
        quantity=quantity,
        available=inventory.is_available(db, sku, quantity),
    )


@app.post("/payments", response_model=schemas.PaymentIntent, status_code=status.HTTP_201_CREATED)
async def create_payment(
    request: schemas.PaymentCreate,
    db: Session = Depends(get_db),
    adapter: PaymentGatewayAdapter = Depends(get_gateway_adapter),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Open a hosted-payment session for an unpaid order (owner or admin).

    Returns:
        Redirect URL of the gateway payment page

    Raises:
        OrderNotPayable (409): order is not PENDING_PAYMENT
        PaymentAlreadyPending (409): another payment is still pending
        GatewayError (502): gateway unreachable; the order stays unpaid and payment can be retried
    """
    get_accessible_order(db, request.order_id, current_user)
    payment = await adapter.create_intent(db, request.order_id, request.method, user_id=current_user.id)
    return schemas.PaymentIntent(
        payment_id=payment.id,
        transaction_id=payment.transaction_id,
        redirect_url=payment.redirect_url,
        expires_at=payment.expires_at,
        status=payment.status,
    )


@app.post("/payments/webhook", response_model=dict)
async def payment_webhook(
    callback: schemas.PaymentCallback,
    db: Session = Depends(get_db),
    adapter: PaymentGatewayAdapter = Depends(get_gateway_adapter),
    tracker: ShipmentTracker = Depends(get_shipment_tracker)
):
    """
    Payment gateway notification (public, authenticated by signature).

    A settlement moves the order to PAID and then books the carrier pickup.
    A carrier failure at that point leaves the order PAID for the admin
    retry endpoint.

    Raises:
        InvalidSignature (400): signature mismatch; nothing is changed
    """
    result = adapter.handle_callback(db, callback)

    if result.order_paid:
        order_id = result.payment.order_id
        webhooks.notify_order_status_changed(order_id, OrderStatus.PENDING_PAYMENT.value, OrderStatus.PAID.value)
        try:
            await tracker.create_for_order(db, order_id)
            webhooks.notify_order_status_changed(order_id, OrderStatus.PAID.value, OrderStatus.READY_TO_SHIP.value)
        except CarrierError as e:
            logger.error(f"Shipment booking for paid order {order_id} failed, awaiting retry: {e.message}")
        except (ShipmentAlreadyExists, OrderNotPaid) as e:
            logger.warning(f"Shipment booking for order {order_id} skipped: {e.message}")

    return {"message": "Webhook processed successfully", "status": result.payment.status}


@app.post("/payments/{payment_id}/refund", response_model=schemas.Payment)
async def refund_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    adapter: PaymentGatewayAdapter = Depends(get_gateway_adapter),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Record the refund of a settled payment and mark its order REFUNDED (admins only)."""
    existing = crud.get_payment(db, payment_id)
    old_status = existing.order.status if existing is not None else None
    payment = adapter.refund(db, payment_id, user_id=current_user.id)
    webhooks.notify_order_status_changed(payment.order_id, old_status, OrderStatus.REFUNDED.value)
    return payment


@app.post("/webhooks/carrier", response_model=dict)
async def carrier_webhook(
    event: schemas.CarrierEvent,
    db: Session = Depends(get_db),
    tracker: ShipmentTracker = Depends(get_shipment_tracker)
):
    """
    Carrier notification (public). Always answers 200 so the carrier does
    not keep retrying events we cannot use.
    """
    try:
        result = tracker.handle_carrier_event(db, event)
    except InvalidTransition as e:
        logger.warning(f"Carrier event {event.status!r} for {event.order_id} not applied: {e.message}")
        return {"message": "Webhook received", "status": "ignored"}

    if result.order_changed:
        webhooks.notify_order_status_changed(
            result.shipment.order_id, result.old_order_status, result.new_order_status
        )
    if result.status is None:
        return {"message": "Webhook received", "status": "ignored"}
    return {"message": "Webhook processed successfully", "status": result.status.value}


@app.post("/admin/jobs/expire-unpaid", response_model=dict)
async def run_expire_unpaid(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Run the unpaid order sweep once (admins only)."""
    expired = await run_in_threadpool(jobs.expire_unpaid_orders, db)
    jobs.notify_expired(expired)
    order_numbers = [item.order_number for item in expired]
    return {"expired": order_numbers, "count": len(order_numbers)}
