"""Shared aiohttp plumbing for upstream JSON APIs: rate limiting and retry."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

import aiohttp

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Constants
DEFAULT_MAX_REQUESTS_PER_SECOND = 5
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY = 1.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


class UpstreamFetchError(Exception):
    """Raised on a non-2xx, malformed or provider-level error response."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class UpstreamTransientError(UpstreamFetchError):
    """Raised for retryable errors (429/5xx, timeouts, connection resets)."""


class RetryError(UpstreamFetchError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        status = getattr(last_exception, "status", None)
        super().__init__(message, status=status)
        self.last_exception = last_exception


class RateLimiter:
    """Minimum-interval rate limiter for API requests."""

    def __init__(self, max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND) -> None:
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
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


def with_retry(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    retry_on: tuple[type[Exception], ...] = (UpstreamTransientError,),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator adding retry with exponential backoff to a coroutine.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Base delay in seconds (doubles with each retry).
        retry_on: Tuple of exception types to retry on.

    Returns:
        Decorated coroutine function with retry logic.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt == max_retries:
                        break

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                        attempt + 1,
                        max_retries + 1,
                        str(e),
                        delay,
                    )
                    await asyncio.sleep(delay)

            raise RetryError(
                f"All {max_retries + 1} attempts failed for {func.__name__}",
                last_exception=last_exception,
            )

        return wrapper

    return decorator


class JsonHttpClient:
    """Base class for aiohttp JSON clients with a lazily created session."""

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._rate_limiter = RateLimiter(requests_per_second)
        self._headers = dict(headers or DEFAULT_HEADERS)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._headers)
            self._owns_session = True
        return self._session

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: Any = None,
    ) -> Any:
        """Send one request and decode a JSON body.

        Raises:
            UpstreamTransientError: On 429/5xx or network failures.
            UpstreamFetchError: On other non-2xx statuses or a non-JSON body.
        """
        await self._rate_limiter.acquire()
        session = await self._get_session()
        try:
            async with session.request(method, url, params=params, json=json, data=data) as resp:
                if resp.status in RETRY_STATUS_CODES:
                    raise UpstreamTransientError(f"HTTP {resp.status} from {url}", status=resp.status)
                if resp.status >= 400:
                    raise UpstreamFetchError(f"HTTP {resp.status} from {url}", status=resp.status)
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise UpstreamFetchError(f"Malformed JSON from {url}: {e}", status=resp.status) from e
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise UpstreamTransientError(f"Network error for {url}: {e}") from e

    async def aclose(self) -> None:
        """Close the underlying HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
