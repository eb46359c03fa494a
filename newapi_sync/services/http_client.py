"""Shared async HTTP client base with transport-level retries."""

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from newapi_sync.config import settings

logger = logging.getLogger(__name__)


def is_retriable_error(exc: BaseException) -> bool:
    """Timeouts, network failures and 5xx responses are worth retrying."""
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class BaseApiClient:
    """Base for the JSON REST clients (upstream gateways and the target).

    Must be used as an async context manager; subclasses supply the auth
    headers and the envelope handling of their API.
    """

    client_name = "api"

    def __init__(self, base_url: str, name: Optional[str] = None, timeout: Optional[float] = None):
        """Initialize the client.

        Args:
            base_url: API base URL.
            name: Label used in log messages.
            timeout: Per-request timeout in seconds (defaults to settings.request_timeout).
        """
        self.base_url = base_url.rstrip('/')
        self.name = name or self.client_name
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self._client: Optional[httpx.AsyncClient] = None

    def _default_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def __aenter__(self):
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self._default_headers(),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client.

        Raises:
            RuntimeError: If client is not initialized (use async context manager).
        """
        if self._client is None:
            raise RuntimeError(f"{type(self).__name__} must be used as async context manager")
        return self._client

    def _unwrap(self, data: Any, method: str, endpoint: str) -> Any:
        """Strip the API envelope from a decoded body. Identity by default."""
        return data

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=10),
        retry=retry_if_exception(is_retriable_error),
        reraise=True
    )
    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        raw: bool = False,
    ) -> Any:
        """Make an HTTP request with retry logic.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE).
            endpoint: API endpoint path.
            json_data: JSON request body (optional).
            params: Query parameters (optional).
            headers: Extra headers for this request (optional).
            raw: Return the decoded body without unwrapping the envelope.

        Returns:
            Response data.

        Raises:
            httpx.HTTPError: If the request fails after retries.
            ApiResponseError: If the API reports a failure in its envelope.
        """
        client = self._get_client()

        try:
            response = await client.request(
                method=method,
                url=endpoint,
                json=json_data,
                params=params,
                headers=headers,
            )
            response.raise_for_status()
            data = response.json() if response.content else None

        except httpx.HTTPStatusError as e:
            logger.error(f"[{self.name}] HTTP error {e.response.status_code} for {method} {endpoint}: {e.response.text[:200]}")
            raise
        except httpx.TimeoutException:
            logger.error(f"[{self.name}] Timeout for {method} {endpoint}")
            raise
        except httpx.NetworkError as e:
            logger.error(f"[{self.name}] Network error for {method} {endpoint}: {e}")
            raise

        if raw:
            return data
        return self._unwrap(data, method, endpoint)
