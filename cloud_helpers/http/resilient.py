"""HTTP client wrapper with timeout, bounded retry and fixed backoff.

A ``ResilientClient`` owns one ``httpx.AsyncClient`` bound to a base URL.
Each request is replayed unchanged while it fails with no response or with a
status in the policy's retryable range, up to ``max_retries`` extra attempts.
4xx responses are never retried. When attempts run out the last failure is
raised.
"""

import asyncio
from collections.abc import Awaitable, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_never,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from cloud_helpers.errors import RemoteCallError, RemoteError, RemoteTimeoutError, TransportError
from cloud_helpers.http.policy import RetryPolicy
from cloud_helpers.logging.json_log import get_logger

logger = get_logger("http")

RetryHook = Callable[[int, RemoteCallError], None]
Sleep = Callable[[float], Awaitable[None]]


class ResilientClient:
    """Sends requests to one service under a RetryPolicy."""

    def __init__(
        self,
        base_url: str,
        policy: RetryPolicy,
        *,
        service_name: str = "remote service",
        headers: dict | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_retry: RetryHook | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.base_url = base_url
        self.policy = policy
        self.service_name = service_name
        self._on_retry = on_retry or self._log_retry
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            auth=auth,
            timeout=httpx.Timeout(policy.timeout or None),
            transport=transport,
        )

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()

    @property
    def headers(self) -> httpx.Headers:
        return self._client.headers

    async def request(self, method: str, path: str = "", **kwargs) -> httpx.Response:
        """Send a request, retrying per policy. Returns a 2xx/3xx response."""
        method = method.upper()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=self._wait(),
            retry=retry_if_exception(self._should_retry) if self.policy.allows_method(method) else retry_never,
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(self._send, method, path, **kwargs)

    async def get(self, path: str = "", **kwargs) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str = "", **kwargs) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str = "", **kwargs) -> httpx.Response:
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path: str = "", **kwargs) -> httpx.Response:
        return await self.request("DELETE", path, **kwargs)

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        timeout = self.policy.timeout or None
        # An empty path addresses the base URL itself, without a trailing slash.
        url = path or self.base_url
        try:
            response = await asyncio.wait_for(
                self._client.request(method, url, **kwargs), timeout=timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise RemoteTimeoutError(
                type(e).__name__,
                f"Request timed out after {self.policy.timeout_ms} ms",
            ) from e
        except httpx.TransportError as e:
            raise TransportError(type(e).__name__, str(e) or type(e).__name__) from e

        if response.is_error:
            raise RemoteError.from_response(response)
        return response

    def _wait(self):
        if self.policy.backoff == "exponential":
            return wait_exponential(multiplier=self.policy.retry_delay)
        return wait_fixed(self.policy.retry_delay)

    def _should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, TransportError):
            return self.policy.no_response_retries
        if isinstance(exc, RemoteError):
            return exc.status in self.policy.retryable_statuses
        return False

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        self._on_retry(retry_state.attempt_number, retry_state.outcome.exception())

    def _log_retry(self, attempt: int, error: RemoteCallError) -> None:
        if isinstance(error, TransportError):
            message = f"No response received from {self.service_name}, retrying request: {error}"
        else:
            message = f"{self.service_name} answered with status {error.status}, retrying request: {error}"
        logger.warning(
            message,
            extra={"context": {"service": self.service_name, "base_url": self.base_url, "status": error.status}},
        )
        logger.warning(f"Retry attempt #{attempt}")
