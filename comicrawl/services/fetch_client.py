"""
HTTP fetch client for source pages, API documents and images.

httpx AsyncClient (HTTP/2, redirects, granular timeouts, logging event
hooks) with Tenacity retries for transient failures. ``fetch_binary``
never raises for a failed request: it logs and returns None, for
optional downloads such as thumbnails.
``fetch_or_raise`` keeps the failure (and its status code) as a
FetchError for callers that need it.
"""

import random
from collections.abc import Mapping
from typing import Any

import httpx

from comicrawl.core.config import Settings, get_settings
from comicrawl.utils.exceptions import FetchError
from comicrawl.utils.logging import get_logger
from comicrawl.utils.retry import create_retry_decorator

logger = get_logger(__name__)

HTML_ACCEPT = (
    "text/html,application/json,application/xhtml+xml,application/xml;q=0.9,"
    "image/webp,image/jpeg,*/*;q=0.8"
)
IMAGE_ACCEPT = "image/webp,image/apng,image/*,*/*;q=0.8"

# Blocking and overload answers are worth another attempt; 404 and friends are not
TRANSIENT_STATUS_CODES = frozenset({403, 408, 425, 429, 500, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    if not isinstance(exc, FetchError):
        return False
    return exc.status_code is None or exc.status_code in TRANSIENT_STATUS_CODES


class FetchClient:
    """
    Shared HTTP client used by extractors and the IMAGE handler.

    Usage:
        client = FetchClient()
        response = await client.fetch_or_raise(url, client.build_headers("example.com"))
        await client.close()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        self._request = create_retry_decorator(
            max_attempts=self._settings.fetch_max_retries,
            max_delay=self._settings.request_timeout * self._settings.fetch_max_retries,
            min_wait=self._settings.fetch_retry_delay,
            max_wait=max(self._settings.fetch_retry_delay * 4, 1),
            retry_when=is_transient,
        )(self._request_once)

    async def _log_request(self, request: httpx.Request) -> None:
        """Event hook to log outgoing requests."""
        logger.debug("HTTP request", method=request.method, url=str(request.url))

    async def _log_response(self, response: httpx.Response) -> None:
        """Event hook to log incoming responses."""
        logger.debug("HTTP response", status_code=response.status_code, url=str(response.url))

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            kwargs: dict[str, Any] = {}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(
                http2=True,
                follow_redirects=True,
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=float(self._settings.request_timeout),
                    write=10.0,
                    pool=5.0,
                ),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
                event_hooks={
                    "request": [self._log_request],
                    "response": [self._log_response],
                },
                **kwargs,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def random_user_agent(self) -> str:
        return random.choice(self._settings.user_agents)

    def build_headers(
        self,
        referer_domain: str | None = None,
        extra: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """
        Browser-like headers for a source site.

        Args:
            referer_domain: Domain (or origin) sent as the Referer
            extra: Job custom headers, applied last
        """
        headers = {
            "Connection": "keep-alive",
            "Cache-Control": "max-age=0",
            "Upgrade-Insecure-Requests": "1",
            "User-Agent": self.random_user_agent(),
            "Accept": HTML_ACCEPT,
            "Accept-Language": "en-US,en;q=0.9,vi;q=0.8",
        }
        if referer_domain:
            origin = referer_domain if "://" in referer_domain else f"https://{referer_domain}"
            headers["Referer"] = origin.rstrip("/") + "/"
        if extra:
            headers.update(extra)
        return headers

    async def _request_once(self, url: str, headers: Mapping[str, str] | None) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.get(url, headers=dict(headers or {}))
        except httpx.TimeoutException as e:
            raise FetchError(f"Request timed out: {e}", url=url) from e
        except httpx.HTTPError as e:
            raise FetchError(f"Request failed: {e}", url=url) from e

        if response.status_code >= 400:
            raise FetchError(
                f"HTTP {response.status_code} for {url}",
                url=url,
                status_code=response.status_code,
            )
        if not response.content:
            raise FetchError(f"Empty response body for {url}", url=url)
        return response

    async def fetch_or_raise(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """
        GET ``url`` with retries.

        Raises:
            FetchError: When every attempt failed or the status is not retryable
        """
        return await self._request(url, headers)

    def _image_headers(self, headers: Mapping[str, str] | None) -> dict[str, str]:
        request_headers = dict(headers or {})
        request_headers["Accept"] = IMAGE_ACCEPT
        request_headers.setdefault("User-Agent", self.random_user_agent())
        return request_headers

    async def fetch_image(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """
        GET an image with retries, keeping the failure for classification.

        Raises:
            FetchError: When every attempt failed or the status is not retryable
        """
        return await self.fetch_or_raise(url, self._image_headers(headers))

    async def fetch_binary(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
    ) -> bytes | None:
        try:
            response = await self.fetch_or_raise(url, self._image_headers(headers))
        except FetchError as e:
            logger.warning("Binary fetch failed", url=url, status_code=e.status_code, error=e.message)
            return None
        return response.content
