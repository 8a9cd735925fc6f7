"""
Core Sentry - HTTP Client
=========================

Async HTTP client shared by the advisory transport and the webhook action
handlers. Propagates the correlation ID of the current decision cycle.

Usage:
    from coresentry.utils.http_client import ServiceClient

    async with ServiceClient() as client:
        response = await client.post("http://localhost:11434/api/generate", data=payload)
"""

import httpx
from typing import Any, Optional
from dataclasses import dataclass

from coresentry.utils.logging import get_logger, get_correlation_id

logger = get_logger(__name__)


@dataclass
class ServiceClientConfig:
    """Configuration for the HTTP client."""
    timeout_seconds: float = 30.0
    user_agent: str = "CoreSentry/0.1"


class ServiceClient:
    """
    Thin wrapper around ``httpx.AsyncClient``.

    Targets are absolute URLs because the advisory endpoint can be changed
    at runtime. The underlying client is created lazily and reused until
    ``close()``.
    """

    def __init__(self, config: Optional[ServiceClientConfig] = None):
        self.config = config or ServiceClientConfig()
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds),
                follow_redirects=True
            )
        return self._client

    def _build_headers(self, extra_headers: Optional[dict] = None) -> dict:
        """Build request headers with correlation ID."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.config.user_agent,
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        if extra_headers:
            headers.update(extra_headers)

        return headers

    async def post(
        self,
        url: str,
        data: Optional[dict[str, Any]] = None,
        headers: Optional[dict] = None
    ) -> httpx.Response:
        """
        POST a JSON payload.

        Args:
            url: Absolute target URL
            data: JSON payload to send
            headers: Optional additional headers

        Returns:
            httpx.Response object
        """
        client = await self._get_client()

        logger.debug(
            f"POST {url}",
            extra={"payload_keys": list(data.keys()) if data else []}
        )

        response = await client.post(
            url,
            json=data,
            headers=self._build_headers(headers)
        )

        logger.debug(
            f"Response: {response.status_code}",
            extra={"url": url, "status": response.status_code}
        )

        return response

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ServiceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
