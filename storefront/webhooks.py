"""
Outbound notifications for order events.

Subscribers listed in ORDER_WEBHOOK_URLS receive ``order.created`` and
``order.status_changed`` events. Delivery is fire-and-forget: failures are
logged and never affect the request that produced the event.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from .config import ORDER_WEBHOOK_URLS

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 5.0  # seconds


async def send_webhook(event_type: str, data: Dict[str, Any], urls: Optional[List[str]] = None) -> None:
    """
    Send webhook notifications to all registered URLs.

    Args:
        event_type: Type of event (e.g., "order.created", "order.status_changed")
        data: Event data payload
        urls: Subscribers; defaults to ORDER_WEBHOOK_URLS
    """
    urls = ORDER_WEBHOOK_URLS if urls is None else urls
    if not urls:
        return

    payload = {
        "event": event_type,
        "data": data,
        "timestamp": datetime.utcnow().isoformat(),
    }

    async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as client:
        await asyncio.gather(*(send_single_webhook(client, url, payload) for url in urls))


async def send_single_webhook(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> None:
    try:
        response = await client.post(
            url,
            json=payload,
            headers={"Content-Type": "application/json"}
        )
        if response.status_code >= 400:
            logger.warning(f"Webhook {payload['event']} failed for {url}: HTTP {response.status_code}")
    except httpx.HTTPError as e:
        logger.warning(f"Webhook {payload['event']} error for {url}: {e}")


# Strong references to in-flight deliveries; the loop only keeps weak ones
_pending_deliveries = set()


def _schedule(event_type: str, data: Dict[str, Any]) -> None:
    if not ORDER_WEBHOOK_URLS:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        # Synchronous callers have no loop to deliver on
        logger.debug(f"No running event loop, dropping {event_type} notification")
        return
    task = loop.create_task(send_webhook(event_type, data))
    _pending_deliveries.add(task)
    task.add_done_callback(_pending_deliveries.discard)


def notify_order_created(order_id: str, order_number: str, total: str) -> None:
    _schedule("order.created", {
        "order_id": order_id,
        "order_number": order_number,
        "total": total,
    })


def notify_order_status_changed(order_id: str, old_status: str, new_status: str) -> None:
    """
    Notify that an order status changed.

    Args:
        order_id: Order ID
        old_status: Previous status
        new_status: New status
    """
    _schedule("order.status_changed", {
        "order_id": order_id,
        "old_status": old_status,
        "new_status": new_status,
    })
