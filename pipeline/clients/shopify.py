"""
Shopify Admin REST source client.

Features:
- ``X-Shopify-Access-Token`` authentication from the source credentials
- Cursor pagination through the ``Link`` response header
- Server-side field projection (``fields=``) plus client-side filtering
- Retry with exponential backoff on 429/5xx/timeouts
- Status codes mapped onto the pipeline exception hierarchy
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from core.config import settings
from core.exceptions import ExtractionError, ProviderError
from core.retry import RetryPolicy, exponential_backoff
from pipeline.base import SourceClient

logger = logging.getLogger(__name__)

PAGE_LIMIT = 250


def _next_page_url(link_header: Optional[str]) -> Optional[str]:
    """Pull the rel="next" URL out of a Link header."""
    if not link_header:
        return None
    for part in link_header.split(","):
        section = part.strip().split(";")
        if len(section) < 2:
            continue
        url = section[0].strip().strip("<>")
        if any(p.strip() == 'rel="next"' for p in section[1:]):
            return url
    return None


class ShopifySourceClient(SourceClient):
    """
    Attributes:
        api_version: Admin API version (default: settings.SHOPIFY_API_VERSION)
        timeout: Request timeout in seconds (default: 30.0)
        retry_policy: Applied per page request
    """

    def __init__(
        self,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.timeout = timeout if timeout is not None else settings.SOURCE_HTTP_TIMEOUT
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=3, backoff=exponential_backoff(1.0)
        )
        self._transport = transport

    def _base_url(self, credentials: Dict[str, Any]) -> str:
        shop = credentials.get("shopName") or credentials.get("shop_name")
        if not shop:
            raise ExtractionError("Source credentials are missing shopName")
        host = shop if "." in shop else f"{shop}.myshopify.com"
        return f"https://{host}/admin/api/{self.api_version}"

    async def _get_page(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: Dict[str, str],
        params: Optional[Dict[str, Any]]
    ) -> httpx.Response:
        context = {"url": url}

        async def attempt() -> httpx.Response:
            try:
                response = await client.get(url, headers=headers, params=params)
            except httpx.TimeoutException as e:
                raise ProviderError("Shopify request timed out", context=dict(context), original_exception=e)
            except httpx.TransportError as e:
                raise ProviderError("Shopify unreachable", context=dict(context), original_exception=e)

            status = response.status_code
            if status in (401, 403):
                raise ExtractionError(
                    "Shopify rejected the source credentials",
                    context={**context, "status_code": status}
                )
            if status == 404:
                raise ExtractionError(
                    "Shopify resource not found", context={**context, "status_code": status}
                )
            if status == 429 or status >= 500:
                raise ProviderError("Shopify request failed", context=dict(context), status_code=status)
            if status >= 400:
                raise ExtractionError(
                    "Shopify request failed",
                    context={**context, "status_code": status, "response_body": response.text[:500]}
                )
            return response

        return await self.retry_policy.run(attempt, f"Shopify GET {url}")

    async def fetch(
        self,
        credentials: Dict[str, Any],
        endpoint: str,
        selected_fields: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        access_token = credentials.get("accessToken") or credentials.get("access_token")
        if not access_token:
            raise ExtractionError("Source credentials are missing accessToken")

        resource = endpoint.strip("/").split("/")[-1].removesuffix(".json")
        url: Optional[str] = f"{self._base_url(credentials)}/{resource}.json"
        headers = {
            "X-Shopify-Access-Token": access_token,
            "Accept": "application/json",
        }
        params: Optional[Dict[str, Any]] = {"limit": PAGE_LIMIT}
        if selected_fields:
            params["fields"] = ",".join(selected_fields)

        records: List[Dict[str, Any]] = []
        page = 0

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            while url:
                page += 1
                response = await self._get_page(client, url, headers, params)

                try:
                    payload = response.json()
                except ValueError as e:
                    raise ExtractionError(
                        "Failed to parse Shopify response",
                        context={"url": url, "page": page},
                        original_exception=e
                    )

                batch = payload.get(resource, []) if isinstance(payload, dict) else []
                if selected_fields:
                    batch = [{f: r.get(f) for f in selected_fields if f in r} for r in batch]
                records.extend(batch)
                logger.debug(f"Fetched {len(batch)} {resource} from page {page}")

                # page_info cursors carry their own query string
                url = _next_page_url(response.headers.get("Link"))
                params = None

        logger.info(f"Fetched {len(records)} {resource} from Shopify ({page} pages)")
        return records
