"""Retry policy for the public Polymarket HTTP APIs.

Gamma, CLOB and Data API reads are idempotent GETs, so transport errors,
throttling and 5xx responses are retried with capped exponential backoff.
Anything else (404, 400, bad JSON) surfaces to the caller immediately.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Optional

import httpx

from utils.logger import get_logger

logger = get_logger("retry")

TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    ConnectionError,
    asyncio.TimeoutError,
)
TRANSIENT_STATUS_CODES: tuple[int, ...] = (429, 500, 502, 503, 504)


@dataclass
class RetryConfig:
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True

    def __post_init__(self):
        self.max_attempts = max(1, int(self.max_attempts))

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        from config import settings

        return cls(
            max_attempts=settings.MAX_RETRY_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (0-based attempt)."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay


def is_retryable_error(error: Exception, config: Optional[RetryConfig] = None) -> bool:
    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in TRANSIENT_STATUS_CODES
    return False


def _retry_after(error: Exception) -> Optional[float]:
    """Seconds asked for by a 429 ``Retry-After`` header, if parseable."""
    if not isinstance(error, httpx.HTTPStatusError) or error.response.status_code != 429:
        return None
    header = error.response.headers.get("Retry-After")
    if not header:
        return None
    try:
        return float(header)
    except ValueError:
        return None


class RetryableClient:
    """Shared ``httpx.AsyncClient`` whose requests retry transient failures.

    The underlying client is created on first use and recreated if closed,
    so one instance can serve every loop for the life of the process.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[RetryConfig] = None,
        timeout: float = 30.0,
    ):
        self._client = client
        self._timeout = timeout
        self.config = config or RetryConfig()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        attempts = self.config.max_attempts
        for attempt in range(attempts):
            try:
                response = await self.client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except Exception as e:
                if not is_retryable_error(e, self.config):
                    raise
                if attempt == attempts - 1:
                    logger.error(
                        "Giving up on HTTP request",
                        method=method,
                        url=url,
                        attempts=attempts,
                        error=str(e),
                    )
                    raise

                delay = self.config.backoff(attempt)
                hinted = _retry_after(e)
                if hinted is not None:
                    delay = max(delay, hinted)
                logger.warning(
                    "Transient HTTP failure, retrying",
                    method=method,
                    url=url,
                    attempt=attempt + 1,
                    delay=round(delay, 2),
                    error=str(e),
                )
                await asyncio.sleep(delay)

        raise RuntimeError("retry loop exited without a response")

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
