"""Shopify Admin API client (remote source adapter).

WHAT:
    Wrapper for the Shopify Admin API with:
    - Authentication handling
    - REST page_info pagination for orders, GraphQL cursors for products
    - Typed failures: RateLimitedError, TransientError, FatalError

WHY:
    Encapsulates all Shopify API interaction for the sync service. The sync
    service decides what to do with each failure type (the circuit breaker
    trips faster on rate limiting), so this client never sleeps through a 429.
    Orders and refunds use REST because REST orders inline `refunds`; products
    and variant costs use GraphQL for inventoryItem.unitCost.

REFERENCES:
    - Shopify REST Admin API (orders, refunds): https://shopify.dev/docs/api/admin-rest/2024-07/resources/order
    - Shopify GraphQL Admin API: https://shopify.dev/docs/api/admin-graphql
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - Pagination: https://shopify.dev/docs/api/usage/pagination-rest
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse, parse_qs

import httpx

logger = logging.getLogger(__name__)

# Default API version
DEFAULT_API_VERSION = "2024-07"

# Shopify caps REST page size at 250
MAX_PAGE_SIZE = 250

PRODUCT_GID_PREFIX = "gid://shopify/Product/"


# =============================================================================
# ERRORS
# =============================================================================

class ShopifyAPIError(Exception):
    """Base exception for Shopify API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class RateLimitedError(ShopifyAPIError):
    """Upstream throttling (HTTP 429 or GraphQL THROTTLED)."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TransientError(ShopifyAPIError):
    """Network failure or 5xx; retried by the next scheduled run."""


class FatalError(ShopifyAPIError):
    """Auth/config/request errors (401, 403, 404, 4xx); never retried automatically."""


# =============================================================================
# ID / VALUE HELPERS
# =============================================================================

def gid_to_id(value: Optional[Any]) -> Optional[str]:
    """Strip a GraphQL gid down to the numeric id used by REST payloads.

    "gid://shopify/Product/123" -> "123", 123 -> "123".
    """
    if value is None:
        return None
    text = str(value)
    return text.rsplit("/", 1)[-1] if text.startswith("gid://") else text


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a Shopify money string; None when missing or unparseable."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class ShopifyClient:
    """Client for the Shopify Admin API.

    Usage:
        client = ShopifyClient(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        orders, next_page = await client.get_orders(created_at_min=start, created_at_max=end)
        refunds = await client.get_order_refunds("450789469")
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Shopify client.

        Args:
            shop_domain: Shopify store domain (e.g., "mystore.myshopify.com")
            access_token: Shopify Admin API access token
            api_version: API version to use (default: 2024-07)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not shop_domain.endswith(".myshopify.com") and "." not in shop_domain:
            shop_domain = f"{shop_domain}.myshopify.com"

        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"

        logger.info(f"[SHOPIFY_CLIENT] Initialized for {shop_domain} (API version: {api_version})")

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        retries: int = 3,
    ) -> httpx.Response:
        """Send one request and map failures onto the error taxonomy.

        Transient failures (network errors, 5xx) are retried with linear
        backoff up to `retries` attempts. Rate limiting is raised immediately
        so the caller's circuit breaker sees it.

        Raises:
            RateLimitedError: HTTP 429
            FatalError: 401/403/404 and other 4xx
            TransientError: 5xx or network failure after all retries
        """
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }

        last_error: Optional[str] = None

        for attempt in range(retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.request(method, url, params=params, json=json, headers=headers)
            except httpx.RequestError as e:
                last_error = f"Request error: {e}"
                logger.warning(f"[SHOPIFY_CLIENT] {last_error} (attempt {attempt + 1}/{retries})")
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))
                continue

            if response.status_code == 429:
                retry_after = _parse_retry_after(response)
                logger.warning(f"[SHOPIFY_CLIENT] Rate limited on {url} (Retry-After={retry_after})")
                raise RateLimitedError(
                    "Shopify API rate limit exceeded",
                    retry_after=retry_after,
                    status_code=429,
                )

            if response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    f"[SHOPIFY_CLIENT] HTTP error {response.status_code} (attempt {attempt + 1}/{retries})"
                )
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))
                continue

            if response.status_code >= 400:
                raise FatalError(
                    f"Shopify API returned {response.status_code} for {url}: {response.text[:200]}",
                    status_code=response.status_code,
                )

            return response

        raise TransientError(f"Failed after {retries} attempts: {last_error}")

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Execute a GraphQL query against the Admin API.

        Raises:
            RateLimitedError: If Shopify reports THROTTLED
            FatalError: For any other GraphQL error
        """
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        response = await self._request("POST", f"{self.base_url}/graphql.json", json=payload)
        data = response.json()

        if "errors" in data:
            errors = data["errors"]
            if isinstance(errors, str):
                errors = [{"message": errors}]
            error_messages = [e.get("message", str(e)) for e in errors]

            throttled = any(
                "throttled" in msg.lower() or (e.get("extensions") or {}).get("code") == "THROTTLED"
                for msg, e in zip(error_messages, errors)
            )
            if throttled:
                logger.warning("[SHOPIFY_CLIENT] GraphQL query throttled")
                raise RateLimitedError("GraphQL query throttled", errors=errors)

            logger.error(f"[SHOPIFY_CLIENT] GraphQL errors: {error_messages}")
            raise FatalError(f"GraphQL errors: {', '.join(error_messages)}", errors=errors)

        return data.get("data", {})

    # =========================================================================
    # ORDER QUERIES (REST)
    # =========================================================================

    async def get_orders(
        self,
        created_at_min: Optional[datetime] = None,
        created_at_max: Optional[datetime] = None,
        page_info: Optional[str] = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Fetch one page of orders created inside the window.

        Args:
            created_at_min: Inclusive window start (UTC)
            created_at_max: Inclusive window end (UTC)
            page_info: Cursor from the previous page's Link header
            limit: Page size (max 250)

        Returns:
            Tuple of (normalized orders, next page_info or None if last page)
        """
        if page_info:
            # Shopify rejects filter params alongside page_info
            params: Dict[str, Any] = {"limit": min(limit, MAX_PAGE_SIZE), "page_info": page_info}
        else:
            params = {"status": "any", "limit": min(limit, MAX_PAGE_SIZE)}
            if created_at_min:
                params["created_at_min"] = created_at_min.strftime("%Y-%m-%dT%H:%M:%SZ")
            if created_at_max:
                params["created_at_max"] = created_at_max.strftime("%Y-%m-%dT%H:%M:%SZ")

        response = await self._request("GET", f"{self.base_url}/orders.json", params=params)
        raw_orders = response.json().get("orders", [])
        orders = [self._normalize_order(o) for o in raw_orders]

        next_page_info = None
        next_url = response.links.get("next", {}).get("url")
        if next_url:
            next_page_info = parse_qs(urlparse(next_url).query).get("page_info", [None])[0]

        logger.info(f"[SHOPIFY_CLIENT] Fetched {len(orders)} orders (has_next: {bool(next_page_info)})")
        return orders, next_page_info

    async def count_orders(
        self,
        created_at_min: Optional[datetime] = None,
        created_at_max: Optional[datetime] = None,
    ) -> int:
        """Count remote orders in the window (used for progress reporting)."""
        params: Dict[str, Any] = {"status": "any"}
        if created_at_min:
            params["created_at_min"] = created_at_min.strftime("%Y-%m-%dT%H:%M:%SZ")
        if created_at_max:
            params["created_at_max"] = created_at_max.strftime("%Y-%m-%dT%H:%M:%SZ")

        response = await self._request("GET", f"{self.base_url}/orders/count.json", params=params)
        return int(response.json().get("count", 0))

    async def get_order_refunds(self, order_id: str) -> List[Dict[str, Any]]:
        """Fetch the raw refund records for one order.

        Each refund carries `transactions[]`, optional `shipping`, and
        `order_adjustments[]`; the sync service sums them.
        """
        response = await self._request("GET", f"{self.base_url}/orders/{order_id}/refunds.json")
        return response.json().get("refunds", [])

    def _normalize_order(self, node: Dict[str, Any]) -> Dict[str, Any]:
        """Convert a REST order payload into the flat dict the sync service stores."""
        customer = node.get("customer") or {}
        shipping_set = (node.get("total_shipping_price_set") or {}).get("shop_money") or {}
        gateways = node.get("payment_gateway_names") or []

        line_items = []
        for li in node.get("line_items") or []:
            line_items.append({
                "external_line_item_id": str(li.get("id")),
                "external_product_id": gid_to_id(li.get("product_id")),
                "external_variant_id": gid_to_id(li.get("variant_id")),
                "title": li.get("title") or "",
                "variant_title": li.get("variant_title"),
                "sku": li.get("sku"),
                "quantity": li.get("quantity") or 1,
                "price": to_decimal(li.get("price")) or Decimal("0"),
                "total_discount": to_decimal(li.get("total_discount")) or Decimal("0"),
            })

        return {
            "external_order_id": str(node.get("id")),
            "order_number": node.get("order_number"),
            "name": node.get("name"),
            "subtotal_price": to_decimal(node.get("subtotal_price")),
            "total_price": to_decimal(node.get("total_price")) or Decimal("0"),
            "total_shipping": to_decimal(shipping_set.get("amount")),
            "total_tax": to_decimal(node.get("total_tax")),
            "total_discounts": to_decimal(node.get("total_discounts")),
            "currency": node.get("currency") or "USD",
            "financial_status": self._normalize_status(node.get("financial_status")),
            "fulfillment_status": self._normalize_status(node.get("fulfillment_status")) or "unfulfilled",
            "customer_first_name": customer.get("first_name"),
            "customer_last_name": customer.get("last_name"),
            "customer_email": node.get("email") or customer.get("email"),
            "payment_gateway": gateways[0] if gateways else None,
            "processing_method": node.get("processing_method"),
            "order_created_at": node.get("created_at"),
            "order_updated_at": node.get("updated_at"),
            # None = not inlined; the sync service then calls get_order_refunds
            "refunds": node.get("refunds"),
            "line_items": line_items,
        }

    def _normalize_status(self, status: Optional[str]) -> Optional[str]:
        """Normalize Shopify status values to our enum values (PARTIALLY_PAID -> partially_paid)."""
        if not status:
            return None
        return status.lower().replace(" ", "_")

    # =========================================================================
    # PRODUCT QUERIES (GraphQL)
    # =========================================================================

    async def get_products(
        self,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Fetch one page of products with their variants and unit costs.

        Returns:
            Tuple of (products list, next_cursor or None if last page)
        """
        query = """
        query GetProducts($cursor: String, $limit: Int!) {
            products(first: $limit, after: $cursor) {
                edges {
                    node {
                        id
                        title
                        handle
                        status
                        vendor
                        productType
                        variants(first: 100) {
                            edges {
                                node {
                                    id
                                    title
                                    sku
                                    price
                                    compareAtPrice
                                    inventoryQuantity
                                    inventoryItem {
                                        unitCost {
                                            amount
                                        }
                                    }
                                }
                            }
                        }
                    }
                }
                pageInfo {
                    hasNextPage
                    endCursor
                }
            }
        }
        """

        data = await self.execute(query, {"cursor": cursor, "limit": limit})
        products_data = data.get("products", {})
        page_info = products_data.get("pageInfo", {})

        products = []
        for edge in products_data.get("edges", []):
            node = edge.get("node", {})
            variants = []
            for v_edge in node.get("variants", {}).get("edges", []):
                v_node = v_edge.get("node", {})
                variants.append({
                    "external_variant_id": gid_to_id(v_node.get("id")),
                    "title": v_node.get("title"),
                    "sku": v_node.get("sku"),
                    "price": to_decimal(v_node.get("price")),
                    "compare_at_price": to_decimal(v_node.get("compareAtPrice")),
                    "inventory_quantity": v_node.get("inventoryQuantity"),
                    "cost_per_item": self._unit_cost(v_node),
                })

            products.append({
                "external_product_id": gid_to_id(node.get("id")),
                "title": node.get("title") or "",
                "handle": node.get("handle"),
                "status": (node.get("status") or "active").lower(),
                "vendor": node.get("vendor"),
                "product_type": node.get("productType"),
                "variants": variants,
            })

        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None

        logger.info(f"[SHOPIFY_CLIENT] Fetched {len(products)} products (has_next: {page_info.get('hasNextPage')})")
        return products, next_cursor

    async def get_variant_costs(self, product_ids: List[str]) -> Dict[str, Dict[str, Optional[Decimal]]]:
        """Fetch current unit costs for the variants of the given products.

        Returns:
            {product_id: {variant_id: cost or None}}
        """
        if not product_ids:
            return {}

        query = """
        query GetVariantCosts($ids: [ID!]!) {
            nodes(ids: $ids) {
                ... on Product {
                    id
                    variants(first: 100) {
                        edges {
                            node {
                                id
                                inventoryItem {
                                    unitCost {
                                        amount
                                    }
                                }
                            }
                        }
                    }
                }
            }
        }
        """

        ids = [f"{PRODUCT_GID_PREFIX}{gid_to_id(pid)}" for pid in product_ids]
        data = await self.execute(query, {"ids": ids})

        costs: Dict[str, Dict[str, Optional[Decimal]]] = {}
        for node in data.get("nodes") or []:
            if not node:
                continue
            product_costs = {}
            for v_edge in node.get("variants", {}).get("edges", []):
                v_node = v_edge.get("node", {})
                product_costs[gid_to_id(v_node.get("id"))] = self._unit_cost(v_node)
            costs[gid_to_id(node.get("id"))] = product_costs

        return costs

    def _unit_cost(self, variant_node: Dict[str, Any]) -> Optional[Decimal]:
        inventory_item = variant_node.get("inventoryItem") or {}
        unit_cost = inventory_item.get("unitCost") or {}
        return to_decimal(unit_cost.get("amount"))
