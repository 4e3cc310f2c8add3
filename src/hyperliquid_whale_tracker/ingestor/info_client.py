"""Async client for the Hyperliquid info endpoint with rate limiting and retries."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from hyperliquid_whale_tracker.ingestor.models import Position

logger = logging.getLogger(__name__)

# Constants
DEFAULT_INFO_URL = "https://api.hyperliquid.xyz/info"
DEFAULT_TIMEOUT_SECONDS = 10.0
MAX_REQUESTS_PER_SECOND = 10

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY = 0.5
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class RateLimiter:
    """Minimum-interval rate limiter for data requests."""

    def __init__(self, max_requests_per_second: float = MAX_REQUESTS_PER_SECOND) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests_per_second: Maximum requests allowed per second.
        """
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                wait_time = self._min_interval - elapsed
                await asyncio.sleep(wait_time)
            self._last_request_time = time.monotonic()


class InfoClientError(Exception):
    """Base exception for info endpoint errors."""


class InfoClientTransientError(InfoClientError):
    """Raised for retryable errors (429/5xx, timeouts, network issues)."""


class AddressFetchError(InfoClientError):
    """Raised when the position snapshot for one address cannot be fetched.

    Non-fatal: the caller logs it and skips the address for this cycle.
    """

    def __init__(self, address: str, message: str) -> None:
        super().__init__(f"{address}: {message}")
        self.address = address


class HyperliquidInfoClient:
    """Point-in-time reads against the Hyperliquid ``/info`` endpoint.

    Every request carries an explicit timeout and passes through a shared
    rate limiter. Transient failures are retried with exponential backoff.

    Example:
        >>> async with HyperliquidInfoClient() as client:
        ...     positions = await client.fetch_positions("0xabc...")
    """

    def __init__(
        self,
        base_url: str = DEFAULT_INFO_URL,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        requests_per_second: float = MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the info client.

        Args:
            base_url: Full URL of the info endpoint.
            timeout_seconds: Per-request timeout.
            requests_per_second: Rate limit for info requests.
            max_retries: Maximum retry attempts for transient failures.
            retry_base_delay: Base delay in seconds (doubles with each retry).
            client: Optional pre-built httpx client (not closed by this class).
        """
        self._base_url = base_url
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._rate_limiter = RateLimiter(requests_per_second)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout_seconds,
            headers={"Content-Type": "application/json"},
        )

        logger.info(
            "Initialized HyperliquidInfoClient with url=%s, rate_limit=%.1f req/s",
            base_url,
            requests_per_second,
        )

    async def __aenter__(self) -> HyperliquidInfoClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post_once(self, payload: dict[str, Any]) -> Any:
        await self._rate_limiter.acquire()
        try:
            response = await self._client.post(self._base_url, json=payload, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise InfoClientTransientError(f"timeout after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise InfoClientTransientError(f"transport error: {e}") from e

        if response.status_code in RETRY_STATUS_CODES:
            raise InfoClientTransientError(f"HTTP {response.status_code}")
        if response.status_code != 200:
            raise InfoClientError(f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise InfoClientError("invalid JSON response") from e

    async def _post(self, payload: dict[str, Any]) -> Any:
        last_exception: InfoClientTransientError | None = None

        for attempt in range(self._max_retries + 1):
            try:
                return await self._post_once(payload)
            except InfoClientTransientError as e:
                last_exception = e
                if attempt == self._max_retries:
                    break

                delay = self._retry_base_delay * (2**attempt)
                logger.warning(
                    "Info request %s attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                    payload.get("type"),
                    attempt + 1,
                    self._max_retries + 1,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)

        raise InfoClientError(
            f"All {self._max_retries + 1} attempts failed: {last_exception}"
        ) from last_exception

    async def fetch_positions(self, address: str) -> list[Position]:
        """Fetch all open positions for one address.

        Args:
            address: Trader address.

        Returns:
            Open positions; empty if the address holds none.

        Raises:
            AddressFetchError: On timeout, transport failure or malformed payload.
        """
        try:
            data = await self._post({"type": "clearinghouseState", "user": address})
        except InfoClientError as e:
            raise AddressFetchError(address, str(e)) from e

        if not isinstance(data, dict) or "assetPositions" not in data:
            raise AddressFetchError(address, "response has no assetPositions")

        raw_positions = data["assetPositions"] or []
        if not isinstance(raw_positions, list):
            raise AddressFetchError(address, "assetPositions is not a list")

        positions = []
        for raw in raw_positions:
            try:
                position = Position.from_api(raw)
            except ValueError as e:
                raise AddressFetchError(address, f"malformed position: {e}") from e
            if position.is_open:
                positions.append(position)

        logger.debug("Fetched %d open positions for %s", len(positions), address)
        return positions

    async def ping(self) -> bool:
        """Check that the info endpoint answers a metadata request."""
        try:
            data = await self._post({"type": "meta"})
        except InfoClientError as e:
            logger.error("Hyperliquid info endpoint check failed: %s", e)
            return False
        return bool(data)
