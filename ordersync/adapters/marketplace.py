"""
Marketplace API client for the ordersync service.

Read-only access to the marketplace order search, order detail, price detail,
package detail and order tracking endpoints. Handles per-shop credentials,
shared rate limiting, retries and response envelope unwrapping. Request
signing is left to the API gateway in front of the marketplace.
"""

import logging
import os
from typing import Any

import requests
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..common.etl import field, nested, nested_list
from ..common.http import safe_json
from ..config.loader import shop_env_key
from ..utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://open-api.marketplace.example.com"

# Order detail lookups accept at most this many ids
MAX_ORDER_IDS_PER_REQUEST = 50


class MarketplaceConfig(BaseModel):
    """Marketplace API configuration from environment variables."""

    base_url: str = Field(default=DEFAULT_BASE_URL, description="Marketplace API base URL")
    app_key: str = Field(..., description="Application key issued by the marketplace")
    app_secret: str = Field(..., description="Application secret issued by the marketplace")
    timeout_seconds: float = Field(default=30, description="Per-request timeout")

    @classmethod
    def from_env(cls) -> "MarketplaceConfig":
        """Load configuration from environment variables."""
        app_key = os.getenv("MARKETPLACE_APP_KEY", "")
        app_secret = os.getenv("MARKETPLACE_APP_SECRET", "")

        if not app_key or not app_secret:
            raise ValueError(
                "MARKETPLACE_APP_KEY and MARKETPLACE_APP_SECRET environment variables are required"
            )

        return cls(
            base_url=os.getenv("MARKETPLACE_BASE_URL", DEFAULT_BASE_URL),
            app_key=app_key,
            app_secret=app_secret,
        )


class ShopCredentials(BaseModel):
    """Per-shop access token and shop cipher."""

    shop_id: str
    access_token: str
    shop_cipher: str

    @classmethod
    def from_env(cls, shop_id: str) -> "ShopCredentials":
        """
        Load credentials for one shop.

        Reads MARKETPLACE_ACCESS_TOKEN_<SHOP> and MARKETPLACE_SHOP_CIPHER_<SHOP>.
        """
        token_key = shop_env_key("MARKETPLACE_ACCESS_TOKEN", shop_id)
        cipher_key = shop_env_key("MARKETPLACE_SHOP_CIPHER", shop_id)
        access_token = os.getenv(token_key, "")
        shop_cipher = os.getenv(cipher_key, "")

        if not access_token or not shop_cipher:
            raise ValueError(f"{token_key} and {cipher_key} environment variables are required")

        return cls(shop_id=shop_id, access_token=access_token, shop_cipher=shop_cipher)


class MarketplaceError(Exception):
    """Marketplace API call failed."""

    def __init__(self, message: str, status_code: int | None = None, code: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class MarketplaceRetryableError(MarketplaceError):
    """Throttled (429) or server-side (5xx) failure, safe to retry."""


class MarketplaceAuthError(MarketplaceError):
    """Access token rejected. Never retried."""


class MarketplaceClient:
    """Marketplace API client with pagination support and shared rate limiting."""

    def __init__(
        self,
        config: MarketplaceConfig | None = None,
        credentials: ShopCredentials | None = None,
        rate_limiter: RateLimiter | None = None,
        shop_id: str | None = None,
    ):
        """Initialize the client for one shop."""
        self.config = config or MarketplaceConfig.from_env()
        if credentials is None:
            if not shop_id:
                raise ValueError("shop_id is required when credentials are not given")
            credentials = ShopCredentials.from_env(shop_id)
        self.credentials = credentials
        self.rate_limiter = rate_limiter or RateLimiter("marketplace")
        self.session = requests.Session()

        self.session.headers.update(
            {
                "x-access-token": self.credentials.access_token,
                "Content-Type": "application/json",
                "User-Agent": "ordersync/1.0",
            }
        )

    def _check_response(self, response: requests.Response, endpoint: str) -> dict:
        """Raise the matching error for a failed response, return the ``data`` envelope otherwise."""
        if response.status_code == 429:
            logger.warning(f"Marketplace rate limit hit on {endpoint}")
            raise MarketplaceRetryableError("Rate limit exceeded", status_code=429)
        if 500 <= response.status_code < 600:
            logger.error(f"Marketplace server error {response.status_code}: {response.text}")
            raise MarketplaceRetryableError(
                f"Server error: {response.status_code}", status_code=response.status_code
            )
        if response.status_code == 401:
            raise MarketplaceAuthError(
                f"Marketplace authentication failed for shop {self.credentials.shop_id}",
                status_code=401,
            )
        if response.status_code >= 400:
            logger.error(f"Marketplace API error: {response.status_code} - {response.text}")
            raise MarketplaceError(
                f"Client error: {response.status_code}", status_code=response.status_code
            )

        body = safe_json(response)
        if not isinstance(body, dict):
            raise MarketplaceError(f"Malformed response from {endpoint}")

        code = body.get("code", 0)
        if code not in (0, "0", None):
            raise MarketplaceError(
                f"Marketplace API error {code}: {body.get('message')}",
                status_code=response.status_code,
                code=code,
            )

        data = body.get("data")
        return data if isinstance(data, dict) else {}

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        retry=retry_if_exception_type(
            (
                MarketplaceRetryableError,
                requests.exceptions.ConnectionError,
                requests.exceptions.Timeout,
            )
        ),
        reraise=True,
    )
    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict:
        """Make authenticated request to the marketplace API with retry logic."""
        url = f"{self.config.base_url}{endpoint}"
        query = {
            "app_key": self.config.app_key,
            "shop_cipher": self.credentials.shop_cipher,
            **(params or {}),
        }

        self.rate_limiter.wait_if_needed()
        logger.debug(f"Marketplace API request: {method} {url}")

        response = self.session.request(
            method, url, params=query, json=json, timeout=self.config.timeout_seconds
        )
        self.rate_limiter.process_response(response)

        return self._check_response(response, endpoint)

    def list_orders(
        self,
        page_size: int = 50,
        sort_by: str = "update_time",
        sort_direction: str = "DESC",
        page_token: str | None = None,
        filters: dict | None = None,
    ) -> dict:
        """
        Fetch one page of orders.

        Args:
            page_size: Orders per page (1-100)
            sort_by: Sort field (create_time or update_time)
            sort_direction: ASC or DESC
            page_token: Token from the previous page, None for the first page
            filters: Search body (see OrderFilters.to_search_body)

        Returns:
            Dict with ``orders`` (list), ``next_page_token`` (None on the last page)
            and ``raw`` (the unwrapped response data)
        """
        params = {
            "page_size": page_size,
            "sort_field": sort_by,
            "sort_order": sort_direction,
        }
        if page_token:
            params["page_token"] = page_token

        data = self._make_request(
            "POST", "/order/202309/orders/search", params=params, json=filters or {}
        )

        orders = nested_list(data, "orders")
        next_page_token = field(data, "next_page_token") or None
        logger.debug(f"Fetched {len(orders)} orders, next page: {bool(next_page_token)}")

        return {"orders": orders, "next_page_token": next_page_token, "raw": data}

    def get_orders(self, order_ids: list[str]) -> list[dict]:
        """
        Fetch orders by id.

        Args:
            order_ids: Up to MAX_ORDER_IDS_PER_REQUEST external order ids

        Returns:
            Order payloads in the same shape as the search results. Unknown ids
            are missing from the list.
        """
        if not order_ids:
            return []
        if len(order_ids) > MAX_ORDER_IDS_PER_REQUEST:
            raise ValueError(
                f"At most {MAX_ORDER_IDS_PER_REQUEST} order ids per request, got {len(order_ids)}"
            )

        data = self._make_request("GET", "/order/202309/orders", params={"ids": ",".join(order_ids)})
        orders = nested_list(data, "orders")
        logger.debug(f"Fetched {len(orders)} of {len(order_ids)} requested orders")
        return orders

    def get_price_detail(self, order_id: str) -> dict | None:
        """Fetch the price breakdown of an order. None if empty."""
        data = self._make_request("GET", f"/order/202407/orders/{order_id}/price_detail")
        return data or None

    def get_package_detail(self, package_id: str) -> dict | None:
        """Fetch package detail (tracking number, provider, line item ids). None if empty."""
        data = self._make_request("GET", f"/fulfillment/202309/packages/{package_id}")
        return data or None

    def get_order_tracking(self, order_id: str) -> dict:
        """
        Fetch the tracking events of an order.

        Returns:
            Dict with ``events``: the raw tracking event list (possibly empty)
        """
        data = self._make_request("GET", f"/fulfillment/202309/orders/{order_id}/tracking")
        events = field(data, "tracking")
        if isinstance(events, dict):
            events = nested_list(events, "events") or [events]
        if not isinstance(events, list):
            events = nested_list(nested(data, "tracking_info"), "events")
        return {"events": [event for event in events if isinstance(event, dict)]}

    def close(self) -> None:
        self.session.close()
