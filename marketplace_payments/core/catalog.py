"""
Price lookup seam.

The product catalog is owned by another service. Checkout only needs the
current unit price of a product to reject stale carts.
"""
from typing import Dict, Optional, Protocol

import httpx
import structlog

from marketplace_payments.domain.errors import GatewayUnavailableError

logger = structlog.get_logger(__name__)


class PriceCatalog(Protocol):
    async def current_price(self, product_id: str) -> Optional[int]:
        """Current unit price in minor units, or None for an unknown product."""
        ...


class StaticPriceCatalog:
    """In-memory catalog, for tests and single-node deployments."""

    def __init__(self, prices: Optional[Dict[str, int]] = None):
        self.prices = dict(prices or {})

    async def current_price(self, product_id: str) -> Optional[int]:
        return self.prices.get(product_id)


class HttpPriceCatalog:
    """Catalog backed by the catalog service's ``GET /products/{id}`` endpoint."""

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def current_price(self, product_id: str) -> Optional[int]:
        try:
            response = await self.client.get(f"/products/{product_id}")
        except httpx.HTTPError as e:
            logger.error("catalog_request_failed", product_id=product_id, error=str(e))
            raise GatewayUnavailableError("Product catalog unavailable") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 500:
            raise GatewayUnavailableError("Product catalog unavailable")
        response.raise_for_status()
        return int(response.json()["price"])

    async def close(self) -> None:
        await self.client.aclose()
