"""
Upstream Order API Client

Outbound HTTP calls to the order-management system:

    GET {base_url}/orders/ChangeList?timestamp=<value>   → {"orderList": [{"orderNumber": ...}]}
    GET {base_url}/orders/<orderNumber>                  → {"orderHeader": {...}, "orderDetails": [...]}

Both calls use bearer-token auth. Any non-200 status, transport error or
undecodable body is an UpstreamUnavailable failure; it is logged and turned
into an empty result here, so it never propagates past this client.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from src.shared.exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)


class OrderApiClient:
    """
    Stateless wrapper around the upstream order API.

    fetch_order_details() is the detail fetcher used by the fetch consumer;
    fetch_change_list() feeds the change-list producer.

    Example:
        with OrderApiClient("https://orders.example.com", token) as client:
            numbers = client.fetch_change_list("2024-01-01")
            detail = client.fetch_order_details(numbers[0])
    """

    CHANGE_LIST_PATH = "/orders/ChangeList"
    ORDER_DETAIL_PATH = "/orders/{order_number}"

    def __init__(
        self,
        base_url: str,
        api_token: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        """GET a path and decode the JSON body.

        Raises:
            UpstreamUnavailable: Transport error, non-200 status or invalid JSON
        """
        try:
            response = self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Request to {path} failed: {e}") from e

        if response.status_code != 200:
            raise UpstreamUnavailable(
                f"Upstream returned HTTP {response.status_code} for {path}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"Upstream returned invalid JSON for {path}") from e

    def fetch_change_list(self, timestamp: str) -> List[str]:
        """Order numbers changed since timestamp, in response order.

        Returns:
            Order numbers (empty on any upstream failure; entries without
            an orderNumber are skipped)
        """
        try:
            data = self._get_json(self.CHANGE_LIST_PATH, params={"timestamp": timestamp})
        except UpstreamUnavailable as e:
            logger.error(
                "Error fetching order numbers",
                extra={"timestamp": timestamp, "status_code": e.status_code, "error": str(e)},
            )
            return []

        order_list = data.get("orderList") if isinstance(data, dict) else None
        if not isinstance(order_list, list):
            logger.warning("Change list response has no orderList", extra={"timestamp": timestamp})
            return []

        order_numbers = []
        for entry in order_list:
            if isinstance(entry, dict) and entry.get("orderNumber") not in (None, ""):
                order_numbers.append(str(entry["orderNumber"]))

        logger.info(
            "Fetched change list",
            extra={"timestamp": timestamp, "order_count": len(order_numbers)},
        )
        return order_numbers

    def fetch_order_details(self, order_number: str) -> Optional[Dict[str, Any]]:
        """Full order detail, or None when the upstream call fails or is empty."""
        path = self.ORDER_DETAIL_PATH.format(order_number=quote(order_number, safe=""))
        try:
            data = self._get_json(path)
        except UpstreamUnavailable as e:
            logger.error(
                "Error fetching details for order",
                extra={
                    "correlation_id": order_number,
                    "status_code": e.status_code,
                    "error": str(e),
                },
            )
            return None

        if not data or not isinstance(data, dict):
            return None
        return data

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "OrderApiClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
