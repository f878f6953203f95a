"""
HTTP client for the hosted-payment gateway (Snap-style API).

Every call has a bounded timeout. Timeouts, transport failures and non-2xx
answers all surface as ``GatewayError`` so callers only deal with one
retryable failure.
"""
import logging
from typing import Callable, Optional

import httpx

from ..config import GatewayConfig
from ..errors import GatewayError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], httpx.AsyncClient]

SNAP_TRANSACTIONS_PATH = "/snap/v1/transactions"


def default_client_factory(config: GatewayConfig) -> ClientFactory:
    return lambda: httpx.AsyncClient(timeout=config.timeout)


async def create_transaction(
    config: GatewayConfig,
    payload: dict,
    client_factory: Optional[ClientFactory] = None,
) -> dict:
    """
    Create a hosted-payment transaction.

    Args:
        config: Gateway credentials and limits
        payload: Transaction request body
        client_factory: Builds the AsyncClient to use (tests inject a mock transport)

    Returns:
        Gateway response with ``token`` and ``redirect_url``

    Raises:
        GatewayError: timeout, network failure or non-2xx response; ``detail``
            carries the raw response text
    """
    factory = client_factory or default_client_factory(config)
    transaction_id = payload.get("transaction_details", {}).get("order_id")
    try:
        async with factory() as client:
            response = await client.post(
                f"{config.base_url.rstrip('/')}{SNAP_TRANSACTIONS_PATH}",
                json=payload,
                auth=(config.server_key, ""),
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            return response.json()
    except httpx.TimeoutException as e:
        logger.error(f"Gateway timed out creating transaction {transaction_id}: {e}")
        raise GatewayError("Payment gateway tidak merespons, silakan coba lagi") from e
    except httpx.HTTPStatusError as e:
        logger.error(
            f"Gateway rejected transaction {transaction_id} "
            f"with {e.response.status_code}: {e.response.text}"
        )
        raise GatewayError(
            "Gagal membuat pembayaran di payment gateway",
            detail=e.response.text,
            status=e.response.status_code,
        ) from e
    except httpx.HTTPError as e:
        logger.error(f"Gateway unreachable creating transaction {transaction_id}: {e}")
        raise GatewayError("Payment gateway tidak dapat dihubungi, silakan coba lagi") from e
