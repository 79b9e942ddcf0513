"""Base HTTP client for record store adapters."""

import logging
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class BaseServiceClient:
    """Base class for HTTP clients talking to backing services.

    Usage:
        class CaseStore(BaseServiceClient):
            async def get(self, case_id: str) -> dict:
                async with self._get_client() as client:
                    response = await client.get(
                        f"{self.base_url}/cases",
                        params={"id": f"eq.{case_id}"},
                        headers=self._headers(),
                    )
                    response.raise_for_status()
                    return response.json()[0]
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize service client.

        Args:
            base_url: Service base URL (e.g., http://localhost:3000)
            timeout: Request timeout in seconds (default: 30.0)
            api_key: Optional API key sent as `apikey` and bearer token
            transport: Optional httpx transport (e.g. httpx.MockTransport in tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._api_key = api_key
        self._transport = transport

        logger.info(f"Initialized {self.__class__.__name__} with base_url={base_url}")

    def _headers(
        self,
        correlation_id: Optional[str] = None,
        prefer: Optional[str] = None,
    ) -> Dict[str, str]:
        """Generate request headers.

        Args:
            correlation_id: Optional correlation ID for request tracing
            prefer: Optional `Prefer` header value

        Returns:
            Headers dict
        """
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"

        if prefer:
            headers["Prefer"] = prefer

        # Add correlation ID if provided
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        return headers

    def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client instance with configured timeout.

        Returns:
            Configured AsyncClient ready for use with async context manager
        """
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def close(self):
        """Close any persistent connections.

        Override this if your client maintains a persistent httpx.AsyncClient.
        """
        pass
