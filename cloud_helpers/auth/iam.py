"""IBM Cloud IAM bearer tokens for the service clients.

Every helper takes a ``TokenProvider``: an async callable turning an API key
into a bearer token. ``IAMTokenProvider`` asks IAM for a new token on each
call; wrap it in ``CachedTokenProvider`` to reuse tokens for a short while.
"""

import time
from collections.abc import Awaitable, Callable

import httpx

from cloud_helpers.http.policy import RetryPolicy
from cloud_helpers.http.resilient import ResilientClient
from cloud_helpers.logging.json_log import get_logger

IAM_TOKEN_URL = "https://iam.cloud.ibm.com/identity/token"
APIKEY_GRANT_TYPE = "urn:ibm:params:oauth:grant-type:apikey"

TokenProvider = Callable[[str], Awaitable[str]]

logger = get_logger("iam")


class IAMTokenProvider:
    """Exchanges an IBM Cloud API key for an IAM access token."""

    def __init__(
        self,
        token_url: str = IAM_TOKEN_URL,
        policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token_url = token_url
        # Token requests are safe to replay, so POST is retried here.
        self._policy = policy or RetryPolicy(retry_methods=frozenset({"POST"}))
        self._transport = transport

    async def __call__(self, api_key: str) -> str:
        async with ResilientClient(
            self._token_url,
            self._policy,
            service_name="IAM",
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            transport=self._transport,
        ) as client:
            logger.debug("Requesting IAM token")
            response = await client.post(
                "",
                data={"grant_type": APIKEY_GRANT_TYPE, "apikey": api_key},
            )
        return response.json()["access_token"]


class CachedTokenProvider:
    """Reuses tokens from another provider for ``ttl`` seconds."""

    def __init__(self, provider: TokenProvider, ttl: float = 300):
        self._provider = provider
        self._ttl = ttl
        self._cache: dict[str, tuple[str, float]] = {}

    async def __call__(self, api_key: str) -> str:
        if api_key in self._cache:
            token, expires_at = self._cache[api_key]
            if time.monotonic() < expires_at:
                return token
            del self._cache[api_key]

        token = await self._provider(api_key)
        self._cache[api_key] = (token, time.monotonic() + self._ttl)
        return token

    def clear(self) -> None:
        self._cache.clear()
