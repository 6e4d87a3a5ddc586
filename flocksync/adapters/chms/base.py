"""Shared HTTP plumbing for ChMS provider adapters.

Holds the httpx client lifecycle, lazy authentication and call counting.
Each concrete adapter owns its wire format and normalization.
"""

import logging
from typing import Any

import httpx

from flocksync.core.errors import ChmsApiError
from flocksync.core.ports import ChmsProviderPort

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class HttpChmsAdapter(ChmsProviderPort):
    """Base class for adapters that talk to a provider over HTTP."""

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the HTTP client.

        Args:
            base_url: Provider API root.
            headers: Default headers sent with every request.
            auth: httpx auth (e.g. BasicAuth) applied to every request.
            timeout: Per-request timeout in seconds.
            transport: Optional transport override, used by tests.
        """
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers or {},
            auth=auth,
            timeout=timeout,
            transport=transport,
        )
        self._authenticated = False
        self.calls_made = 0

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.client.aclose()

    async def close(self) -> None:
        """Close the httpx client and clean up resources.

        Must be called when done using the adapter if not using it as a context manager.
        """
        await self.client.aclose()

    async def _ensure_authenticated(self) -> None:
        if not self._authenticated:
            await self.authenticate()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one request, raising ChmsApiError on transport or status failure."""
        self.calls_made += 1
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{self.provider.display_name} {method} {url} failed: {e}")
            raise ChmsApiError(self.provider.display_name, None, str(e)) from e
        if response.is_error:
            raise ChmsApiError(
                self.provider.display_name,
                response.status_code,
                response.text[:200],
            )
        return response

    def _json(self, response: httpx.Response) -> Any:
        """Decode a JSON body, treating empty bodies as None.

        Raises:
            ChmsApiError: If the body is not valid JSON, such as an HTML
                login page served with a 200.
        """
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ChmsApiError(
                self.provider.display_name, response.status_code, "invalid JSON"
            ) from e
