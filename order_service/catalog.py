"""
Catalog collaborator: unit price lookups guarded by a circuit breaker.

When the breaker rejects a call or the catalog fails, PriceLookup falls back
to the last price it saw for that product, provided it is younger than
``cache_ttl``. With no usable cached price the lookup raises
DependencyUnavailableError and the saga aborts before persisting anything.
"""

import logging
import time
from collections.abc import Callable
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Protocol

import httpx

from order_service.circuit_breaker import CircuitBreaker
from shared.errors import DependencyUnavailableError, ProductNotFoundError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class CatalogClient(Protocol):
    async def get_price(self, product_id: str) -> Decimal: ...


class StaticCatalog:
    """In-process catalog used for local runs and tests."""

    def __init__(self, prices: dict[str, Decimal]) -> None:
        self._prices = dict(prices)

    def set_price(self, product_id: str, price: Decimal) -> None:
        self._prices[product_id] = price

    async def get_price(self, product_id: str) -> Decimal:
        try:
            return self._prices[product_id]
        except KeyError:
            raise ProductNotFoundError(product_id) from None


class HttpCatalogClient:
    """Talks to the catalog service: GET /products/{id} -> {"price": "12.99", ...}."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def get_price(self, product_id: str) -> Decimal:
        try:
            response = await self._client.get(f"/products/{product_id}")
        except httpx.HTTPError as exc:
            raise DependencyUnavailableError(f"Catalog request failed: {exc}") from exc

        if response.status_code == httpx.codes.NOT_FOUND:
            raise ProductNotFoundError(product_id)
        if response.is_error:
            raise DependencyUnavailableError(f"Catalog returned HTTP {response.status_code}")

        try:
            return Decimal(str(response.json()["price"]))
        except (KeyError, ValueError, InvalidOperation) as exc:
            raise DependencyUnavailableError(f"Malformed catalog response for {product_id}") from exc


class PriceLookup:
    def __init__(
        self,
        catalog: CatalogClient,
        breaker: CircuitBreaker,
        *,
        cache_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._catalog = catalog
        self._breaker = breaker
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._last_known: dict[str, tuple[Decimal, float]] = {}
        breaker.fallback = self._fallback
        breaker.excluded_exceptions = (ProductNotFoundError,)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def get_price(self, product_id: str) -> Decimal:
        price = await self._breaker.call(self._fetch, product_id)
        if price <= 0:
            raise DependencyUnavailableError(f"Catalog returned non-positive price for {product_id}")
        return price

    async def _fetch(self, product_id: str) -> Decimal:
        price = (await self._catalog.get_price(product_id)).quantize(CENT, rounding=ROUND_HALF_UP)
        self._last_known[product_id] = (price, self._clock())
        return price

    async def _fallback(self, error: BaseException, args: tuple, kwargs: dict) -> Decimal:
        product_id = args[0]
        cached = self._last_known.get(product_id)
        if cached is not None and self._clock() - cached[1] <= self._cache_ttl:
            logger.warning(
                "Using cached price after catalog failure",
                extra={"product_id": product_id, "error": str(error)},
            )
            return cached[0]
        if isinstance(error, DependencyUnavailableError):
            raise error
        raise DependencyUnavailableError(f"Price lookup failed for {product_id}: {error}") from error
