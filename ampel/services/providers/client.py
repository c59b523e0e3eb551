"""Async HTTP client shared by the provider adapters."""

import time
from datetime import datetime
from logging import getLogger
from typing import Any

import httpx

from ampel.conf.providers import ProviderSettings
from ampel.errors import (
    AuthError,
    ConflictError,
    NetworkError,
    NotFoundError,
    ProviderAPIError,
    ProviderError,
    RateLimitedError,
)

logger = getLogger(__name__)


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp from a provider payload, returning None when absent or malformed."""
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Could not parse timestamp {value!r}")
        return None


def retry_after_seconds(response: httpx.Response) -> float | None:
    """Work out how long a provider asked us to wait before trying again.

    The hint is returned as sent; callers apply their own cap.
    """
    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            pass

    reset_time = response.headers.get("X-RateLimit-Reset") or response.headers.get("RateLimit-Reset")
    if reset_time:
        try:
            wait_time = int(reset_time) - int(time.time())
        except ValueError:
            return None
        return float(max(wait_time, 1))
    return None


class ProviderAPIClient:
    """Async API client translating provider HTTP failures into Ampel errors.

    The client never retries by itself. Rate limits surface as
    :class:`~ampel.errors.RateLimitedError` so the caller owns the backoff policy.
    """

    display_name = "Provider"

    def __init__(
        self,
        base_url: str,
        settings: ProviderSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Base URL for the provider API
            settings: Provider settings (timeouts, page size); defaults are used when omitted
            transport: Optional httpx transport, used by tests to serve canned responses
        """
        self.base_url = base_url.rstrip("/")
        self.settings = settings or ProviderSettings()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self.settings.provider_user_agent}

    def _auth(self) -> httpx.Auth | None:
        return None

    async def __aenter__(self) -> "ProviderAPIClient":
        """Enter async context manager."""
        self._client = httpx.AsyncClient(
            headers=self._headers(),
            auth=self._auth(),
            timeout=httpx.Timeout(
                self.settings.provider_request_timeout,
                connect=self.settings.provider_connect_timeout,
            ),
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def api_url(self, path: str) -> str:
        # Pagination links from the provider are already absolute
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        resource: str | None = None,
        error_overrides: dict[int, ProviderError] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make an HTTP request and map failures onto the error taxonomy.

        Args:
            method: HTTP method (GET, POST, etc.)
            path: API path relative to the base URL, or an absolute URL
            resource: Human readable name of the requested resource, used in error messages
            error_overrides: Endpoint specific errors keyed by HTTP status code
            **kwargs: Additional arguments to pass to httpx request

        Returns:
            httpx.Response object for a successful (2xx) response

        Raises:
            ProviderError: A subclass describing the failure
        """
        if not self._client:
            raise RuntimeError("Client not initialized - use async with context manager")

        url = self.api_url(path)
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout on {method} {url}")
            raise NetworkError(f"{self.display_name} did not respond in time") from e
        except httpx.TransportError as e:
            logger.warning(f"Transport error on {method} {url}: {type(e).__name__}")
            raise NetworkError(f"Could not reach {self.display_name}") from e

        if response.is_success:
            return response

        logger.warning(f"{method} {url} failed with status {response.status_code}")
        if error_overrides and response.status_code in error_overrides:
            raise error_overrides[response.status_code]
        raise self._error_for_response(response, resource or "Resource")

    def _error_for_response(self, response: httpx.Response, resource: str) -> ProviderError:
        status = response.status_code
        name = self.display_name

        if status == 401:
            return AuthError(f"{name} rejected the credentials; reconnect the account")

        if status == 429 or (status == 403 and response.headers.get("X-RateLimit-Remaining") == "0"):
            wait_time = retry_after_seconds(response)
            logger.warning(f"Rate limit hit on {name}, retry after {wait_time} seconds")
            return RateLimitedError(f"{name} rate limit exceeded", retry_after=wait_time)

        if status == 403:
            return AuthError(f"Permission denied by {name} for {resource}", account_fatal=False)
        if status == 404:
            return NotFoundError(f"{resource} was not found on {name}")
        if status == 409:
            return ConflictError(f"{resource} changed on {name}; refresh and try again")
        if status >= 500:
            return NetworkError(f"{name} returned a server error ({status})")
        return ProviderAPIError(f"{name} returned an unexpected response ({status})", status_code=status)

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProviderAPIError("Provider returned a malformed response", status_code=response.status_code) from e

    async def _get_json(self, path: str, resource: str | None = None, **kwargs: Any) -> Any:
        response = await self._request("GET", path, resource=resource, **kwargs)
        return self._json(response)

    async def _get_paginated(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        resource: str | None = None,
    ) -> list[dict[str, Any]]:
        """Collect every item from a page-numbered list endpoint.

        Stops at the first short page or after ``provider_max_pages`` pages.
        """
        items: list[dict[str, Any]] = []
        per_page = self.settings.provider_page_size
        page = 1

        while page <= self.settings.provider_max_pages:
            page_params = {**(params or {}), "per_page": per_page, "page": page}
            data = await self._get_json(path, resource=resource, params=page_params)
            if not isinstance(data, list) or not data:
                break

            items.extend(entry for entry in data if isinstance(entry, dict))
            if len(data) < per_page:
                break
            page += 1
        else:
            logger.warning(f"Stopped paginating {path} after {self.settings.provider_max_pages} pages")

        return items
