"""
HTTP client for the carrier aggregator API.
"""
import logging
from typing import Callable, Optional

import httpx

from ..config import CarrierConfig
from ..errors import CarrierError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], httpx.AsyncClient]


def default_client_factory(config: CarrierConfig) -> ClientFactory:
    return lambda: httpx.AsyncClient(timeout=config.timeout)


async def create_order(
    config: CarrierConfig,
    payload: dict,
    client_factory: Optional[ClientFactory] = None,
) -> dict:
    """
    Book a pickup with the carrier.

    Returns:
        Carrier order with ``id`` and a ``courier`` block (tracking id, waybill, link)

    Raises:
        CarrierError: timeout, network failure or non-2xx response
    """
    factory = client_factory or default_client_factory(config)
    reference = payload.get("reference_id")
    try:
        async with factory() as client:
            response = await client.post(
                f"{config.base_url.rstrip('/')}/v1/orders",
                json=payload,
                headers={
                    "Authorization": f"Bearer {config.api_key}",
                    "Content-Type": "application/json",
                },
            )
            response.raise_for_status()
            return response.json()
    except httpx.TimeoutException as e:
        logger.error(f"Carrier timed out creating order for {reference}: {e}")
        raise CarrierError("Layanan kurir tidak merespons, silakan coba lagi") from e
    except httpx.HTTPStatusError as e:
        logger.error(
            f"Carrier rejected order for {reference} "
            f"with {e.response.status_code}: {e.response.text}"
        )
        raise CarrierError(
            "Gagal membuat pengiriman di layanan kurir",
            detail=e.response.text,
            status=e.response.status_code,
        ) from e
    except httpx.HTTPError as e:
        logger.error(f"Carrier unreachable creating order for {reference}: {e}")
        raise CarrierError("Layanan kurir tidak dapat dihubungi, silakan coba lagi") from e
