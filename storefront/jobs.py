"""
Background jobs for the storefront service.

The only job expires orders that stayed unpaid past UNPAID_ORDER_TTL_HOURS,
giving their reserved stock back. It runs on an APScheduler interval when
ORDER_EXPIRY_SWEEP_ENABLED is set and can also be triggered by an admin.
Expiry goes through the order state machine like every other transition.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import update
from sqlalchemy.orm import Session

from . import crud, models, state_machine, webhooks
from .config import ORDER_EXPIRY_SWEEP_MINUTES, UNPAID_ORDER_TTL_HOURS
from .database import SessionLocal
from .enums import OrderStatus, PaymentStatus
from .errors import StoreError
from .state_machine import TransitionSource

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 100


@dataclass(frozen=True)
class ExpiredOrder:
    order_id: str
    order_number: str


scheduler = AsyncIOScheduler(
    jobstores={'default': MemoryJobStore()},
    executors={'default': AsyncIOExecutor()},
    job_defaults={
        'coalesce': True,  # Combine multiple pending executions into one
        'max_instances': 1,
        'misfire_grace_time': 60,
    },
)


def _expire_stale_payment(db: Session, order: models.Order, now: datetime) -> bool:
    """
    Mark an order's lapsed pending payment as EXPIRE.

    Returns:
        False when the order still has a live pending payment
    """
    payment = crud.get_pending_payment(db, order.id)
    if payment is None:
        return True
    if payment.expires_at is not None and payment.expires_at > now:
        return False
    db.execute(
        update(models.Payment)
        .where(models.Payment.id == payment.id, models.Payment.status == PaymentStatus.PENDING.value)
        .values(status=PaymentStatus.EXPIRE.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    crud.log_order_event(
        db,
        order_id=order.id,
        event_type="payment",
        description=f"Payment {payment.transaction_id} lapsed without settlement",
        old_value=PaymentStatus.PENDING.value,
        new_value=PaymentStatus.EXPIRE.value,
        source=TransitionSource.SYSTEM.value,
    )
    return True


def expire_unpaid_orders(
    db: Session,
    now: Optional[datetime] = None,
    ttl_hours: int = UNPAID_ORDER_TTL_HOURS,
) -> List[ExpiredOrder]:
    """
    Expire orders left in PENDING_PAYMENT longer than ``ttl_hours``.

    Orders with a pending payment that has not lapsed yet are left alone.
    Each order is committed on its own; one failure does not stop the sweep.

    Args:
        db: Database session
        now: Reference time (defaults to utcnow)
        ttl_hours: Age after which an unpaid order expires

    Returns:
        The orders that were expired, in sweep order
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(hours=ttl_hours)
    candidates = (
        db.query(models.Order)
        .filter(
            models.Order.status == OrderStatus.PENDING_PAYMENT.value,
            models.Order.created_at < cutoff,
        )
        .order_by(models.Order.created_at.asc())
        .limit(SWEEP_BATCH_SIZE)
        .all()
    )

    expired = []
    for order in candidates:
        try:
            if not _expire_stale_payment(db, order, now):
                db.rollback()
                continue
            changed = state_machine.apply_transition(
                db, order, OrderStatus.EXPIRED, TransitionSource.SYSTEM,
                reason=f"unpaid for more than {ttl_hours} hours",
            )
            db.commit()
        except StoreError as e:
            db.rollback()
            logger.warning(f"Could not expire order {order.order_number}: {e.message}")
            continue
        if changed:
            expired.append(ExpiredOrder(order_id=order.id, order_number=order.order_number))

    if expired:
        logger.info(f"Expired {len(expired)} unpaid orders: {', '.join(e.order_number for e in expired)}")
    return expired


def notify_expired(expired: List[ExpiredOrder]) -> None:
    """Send ``order.status_changed`` for each expired order; needs a running loop."""
    for item in expired:
        webhooks.notify_order_status_changed(
            item.order_id, OrderStatus.PENDING_PAYMENT.value, OrderStatus.EXPIRED.value
        )


def _sweep_in_own_session() -> List[ExpiredOrder]:
    db = SessionLocal()
    try:
        return expire_unpaid_orders(db)
    finally:
        db.close()


async def run_expiry_sweep() -> None:
    """Scheduler entry point: one sweep on a worker thread, then notifications."""
    try:
        expired = await run_in_threadpool(_sweep_in_own_session)
    except Exception as e:
        logger.error(f"Unpaid order sweep failed: {e}", exc_info=True)
        return
    notify_expired(expired)


def start_scheduler() -> None:
    """Start the background scheduler with the unpaid order sweep."""
    if not scheduler.running:
        scheduler.add_job(
            run_expiry_sweep,
            'interval',
            minutes=ORDER_EXPIRY_SWEEP_MINUTES,
            id='expire_unpaid_orders',
            name='Expire Unpaid Orders',
            replace_existing=True,
        )
        scheduler.start()
        logger.info(f"Scheduler started, unpaid order sweep every {ORDER_EXPIRY_SWEEP_MINUTES} minutes")


def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
