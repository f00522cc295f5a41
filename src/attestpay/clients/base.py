"""Base async HTTP client for the attestation network's off-chain services.

The verifier (request preparation) and the data-availability layer (proof
retrieval) are plain JSON-over-HTTP services. Both clients inherit from this
base so they share:
- A pooled httpx.AsyncClient opened by `async with`
- Token-bucket rate limiting
- Retries with exponential backoff on 429/5xx, timeouts and network errors
- One error type (APIProviderError) carrying status code and body

Usage:
    class MyServiceClient(BaseAsyncClient):
        def __init__(self, base_url: str):
            super().__init__(base_url=base_url, rate_limit=5)

        async def lookup(self, key: str) -> dict:
            return await self.post("/lookup", json_data={"key": key})
"""

import asyncio
import logging
from typing import Any

import httpx


logger = logging.getLogger(__name__)

# Retry configuration
_RETRYABLE_STATUS_CODES = {429, 502, 503, 504}
_MAX_RETRIES = 3
_BASE_BACKOFF = 1.0  # seconds


class RateLimiter:
    """Token bucket rate limiter for async operations.

    Args:
        rate: Maximum requests per second
    """

    def __init__(self, rate: int) -> None:
        self.rate = rate
        self.tokens = rate
        self.updated_at: float = 0.0
        self._initialized: bool = False
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Acquire a token, waiting if necessary."""
        async with self._lock:
            loop = asyncio.get_running_loop()

            if not self._initialized:
                self.updated_at = loop.time()
                self._initialized = True

            while self.tokens < 1:
                now = loop.time()
                self.tokens = min(self.rate, self.tokens + (now - self.updated_at) * self.rate)
                self.updated_at = now

                if self.tokens < 1:
                    await asyncio.sleep((1 - self.tokens) / self.rate)

            self.tokens -= 1
            self.updated_at = loop.time()


class APIProviderError(Exception):
    """Base exception for off-chain service errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def is_client_error(self) -> bool:
        """True for 4xx responses (the request itself was refused)."""
        return self.status_code is not None and 400 <= self.status_code < 500


def _backoff(attempt: int) -> float:
    return _BASE_BACKOFF * (2 ** attempt)


class BaseAsyncClient:
    """Base async HTTP client with rate limiting and connection pooling.

    Args:
        base_url: Base URL for all requests
        headers: Default headers for all requests
        rate_limit: Maximum requests per second (default: 10)
        timeout: Request timeout in seconds (default: 30)
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        rate_limit: int = 10,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout = timeout
        self._rate_limiter = RateLimiter(rate=rate_limit)
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "BaseAsyncClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        """Make an HTTP request with rate limiting, retries, and error handling.

        Transient failures (429, 502, 503, 504, timeouts, network errors) are
        retried with exponential backoff. Other HTTP errors raise immediately.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: Path relative to base_url
            params: Query parameters
            json_data: JSON body for POST/PUT requests

        Returns:
            Parsed JSON response

        Raises:
            APIProviderError: If the request fails after all retries
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use async with context manager.")

        if not endpoint.startswith("/"):
            endpoint = f"/{endpoint}"

        last_error: APIProviderError | None = None

        for attempt in range(_MAX_RETRIES + 1):
            await self._rate_limiter.acquire()

            logger.debug(
                "%s %s%s (attempt %d/%d)",
                method, self.base_url, endpoint, attempt + 1, _MAX_RETRIES + 1,
            )

            try:
                response = await self._client.request(
                    method=method,
                    url=endpoint,
                    params=params,
                    json=json_data,
                )
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                kind = "Request timeout" if isinstance(e, httpx.TimeoutException) else "Network error"
                last_error = APIProviderError(f"{kind}: {e}")
                if attempt < _MAX_RETRIES:
                    logger.warning(
                        "%s for %s, retrying in %.1fs (attempt %d/%d)",
                        kind, endpoint, _backoff(attempt), attempt + 1, _MAX_RETRIES + 1,
                    )
                    await asyncio.sleep(_backoff(attempt))
                    continue
                logger.error("%s for %s: %s", kind, endpoint, e)
                raise last_error from e

            logger.debug("Response: %d for %s", response.status_code, endpoint)

            if response.status_code >= 400:
                last_error = APIProviderError(
                    message=f"API request failed: {response.status_code}",
                    status_code=response.status_code,
                    response_body=response.text[:500],
                )
                if response.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRIES:
                    logger.warning(
                        "Retryable %d for %s, retrying in %.1fs (attempt %d/%d)",
                        response.status_code, endpoint, _backoff(attempt),
                        attempt + 1, _MAX_RETRIES + 1,
                    )
                    await asyncio.sleep(_backoff(attempt))
                    continue
                logger.error(
                    "API error: %d %s - %s",
                    response.status_code, endpoint, last_error.response_body,
                )
                raise last_error

            try:
                return response.json()
            except ValueError as e:
                logger.error("Failed to parse JSON response: %s", e)
                raise APIProviderError(
                    message=f"Invalid JSON response: {e}",
                    status_code=response.status_code,
                    response_body=response.text[:500],
                ) from e

        raise last_error or APIProviderError("Request failed after retries")

    async def get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Convenience method for GET requests."""
        return await self._request("GET", endpoint, params=params)

    async def post(
        self,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Convenience method for POST requests."""
        return await self._request("POST", endpoint, params=params, json_data=json_data)
