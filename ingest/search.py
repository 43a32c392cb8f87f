"""Fetch ordered search results from a site's product API."""

import logging
from typing import List, Optional

import httpx

from config.scoring_config import SEARCH_TIMEOUT_SECONDS
from relevancy_types import ResultItem, SearchError, SiteConfig

logger = logging.getLogger(__name__)

USER_AGENT = "relevancy-tool/0.1"
PRODUCTS_PATH = "/v1/products"


def build_search_params(query_text: str, site_config: SiteConfig) -> dict:
    """Query string parameters for a product search.

    Args:
        query_text: Query as typed by the user
        site_config: Target site

    Returns:
        Parameter dict for httpx
    """
    return {
        "q": query_text,
        "site": site_config.site_code,
        "fields": site_config.field_list,
        "metadata": "found",
        "preview": "false",
        "limit": site_config.result_limit,
    }


def parse_products(products: list) -> List[ResultItem]:
    """Turn API products into ranked ResultItems, keeping the first SKU only."""
    items = []
    for rank, product in enumerate(products):
        if not isinstance(product, dict) or "id" not in product:
            logger.debug("Skipping product without id at position %d", rank)
            continue
        fields = {k: v for k, v in product.items() if k != "id"}
        skus = fields.get("skus")
        if isinstance(skus, list) and skus:
            fields["skus"] = [skus[0]]
        items.append(ResultItem(product_id=str(product["id"]), rank=len(items), fields=fields))
    return items


class ProductSearchProvider:
    """SearchProvider backed by the product API over HTTP."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = SEARCH_TIMEOUT_SECONDS):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            )
        return self._client

    async def search(self, query_text: str, site_config: SiteConfig) -> List[ResultItem]:
        """Search a site's product API.

        Args:
            query_text: Query text
            site_config: Target site

        Returns:
            ResultItems in response order

        Raises:
            SearchError: On transport/HTTP errors or when nothing is found
        """
        if not query_text:
            raise SearchError("Empty query")

        url = site_config.endpoint + PRODUCTS_PATH
        try:
            response = await self._get_client().get(url, params=build_search_params(query_text, site_config))
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error("Search for '%s' on site '%s' failed: %s", query_text, site_config.site_code, e)
            raise SearchError(f"Error getting results from the API: {e}") from e
        except ValueError as e:
            raise SearchError(f"Invalid JSON from the API: {e}") from e

        metadata = data.get("metadata") if isinstance(data, dict) else None
        products = data.get("products") if isinstance(data, dict) else None
        if not (metadata and metadata.get("found") and products):
            logger.warning("No items were found for the query '%s'", query_text)
            raise SearchError(f"No products found for '{query_text}'")

        items = parse_products(products)
        logger.info("Search for '%s' on site '%s' returned %d results", query_text, site_config.site_code, len(items))
        return items

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
