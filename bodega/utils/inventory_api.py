import httpx
import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from pydantic import ValidationError

from bodega import config
from bodega.errors import MalformedResponseError, RemoteUnavailableError
from bodega.models import Product, TransactionResult

logger = logging.getLogger(__name__)


async def get_api_url(store) -> str:
    """Saved endpoint override, else the compiled-in default."""
    override = await store.get(config.API_URL_KEY)
    return override or config.DEFAULT_API_URL


async def set_api_url(store, url: str | None):
    """Persists an endpoint override. An empty value goes back to the default."""
    url = (url or "").strip()
    if not url:
        await store.delete(config.API_URL_KEY)
        logger.info("API endpoint override cleared, using default.")
        return
    await store.set(config.API_URL_KEY, url)
    logger.info(f"API endpoint override saved: {url}")


@asynccontextmanager
async def _client_scope(client: httpx.AsyncClient | None):
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT, follow_redirects=True) as own_client:
        yield own_client


async def send_raw(url: str, payload: dict[str, Any], client: httpx.AsyncClient | None = None) -> httpx.Response:
    """POSTs the payload and returns the response once it is known to be a 2xx.

    Network errors and non-success statuses both come out as RemoteUnavailableError.
    """
    try:
        async with _client_scope(client) as c:
            response = await c.post(
                url,
                content=json.dumps(payload),
                headers={"Content-Type": "text/plain;charset=utf-8"},
            )
            response.raise_for_status()
            return response
    except httpx.HTTPStatusError as e:
        logger.warning(f"Inventory service answered {e.response.status_code} for {payload.get('action')} {payload.get('id')}")
        raise RemoteUnavailableError(f"HTTP Error: {e.response.status_code}", e.response.status_code) from e
    except httpx.RequestError as e:
        logger.warning(f"Network error reaching inventory service: {e}")
        raise RemoteUnavailableError(f"Network Error: {e}") from e


async def post_transaction(url: str, payload: dict[str, Any], client: httpx.AsyncClient | None = None) -> TransactionResult:
    """Applies one transaction on the remote service."""
    response = await send_raw(url, payload, client)
    try:
        return TransactionResult.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        logger.error(f"Invalid response format from inventory service: {response.text[:200]}")
        raise MalformedResponseError("Invalid API response format", response.status_code) from e


async def fetch_products(url: str, client: httpx.AsyncClient | None = None) -> list[Product]:
    """Gets the full product list."""
    try:
        async with _client_scope(client) as c:
            response = await c.get(url)
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.error(f"HTTP error fetching products: {e.response.status_code}")
        raise RemoteUnavailableError(f"HTTP Error: {e.response.status_code}", e.response.status_code) from e
    except httpx.RequestError as e:
        logger.error(f"Network error fetching products: {e}")
        raise RemoteUnavailableError(f"Network Error: {e}") from e

    try:
        data = response.json()
    except ValueError as e:
        raise MalformedResponseError("Product list is not JSON", response.status_code) from e
    if not isinstance(data, list):
        raise MalformedResponseError(f"Expected a product list, got {type(data).__name__}", response.status_code)
    try:
        products = [Product.model_validate(row) for row in data]
    except ValidationError as e:
        raise MalformedResponseError(f"Invalid product record: {e}", response.status_code) from e
    logger.info(f"Fetched {len(products)} products from inventory service.")
    return products
