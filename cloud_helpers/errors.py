"""Error types shared by the service helpers.

Remote failures all carry the same shape: an HTTP status (500 for transport
failures that never produced a response), a short reason code, a human
message and the raw remote payload when one was returned.
"""

import json
import logging
from collections.abc import Awaitable
from typing import TypeVar

import httpx

T = TypeVar("T")


class CloudHelperError(Exception):
    """Base class for every error raised by cloud_helpers."""


class ConfigurationError(CloudHelperError):
    """A required configuration value is missing. Raised before any network call."""

    def __init__(self, message: str, variable: str = ""):
        super().__init__(message)
        self.variable = variable


class RemoteCallError(CloudHelperError):
    """A call to a remote service failed."""

    retryable = False

    def __init__(self, status: int, reason: str, message: str, payload=None):
        super().__init__(message)
        self.status = status
        self.reason = reason
        self.message = message
        self.payload = payload

    def __str__(self) -> str:
        return f"[{self.status} {self.reason}] {self.message}"

    def failure_reasons(self) -> str:
        """Most specific description of the failure available.

        IBM key-management responses carry their error details in
        ``resources``; prefer those over the generic message.
        """
        if isinstance(self.payload, dict) and self.payload.get("resources"):
            return json.dumps(self.payload["resources"])
        return self.message


class TransportError(RemoteCallError):
    """No response was received (connection refused, reset, DNS...)."""

    retryable = True

    def __init__(self, reason: str, message: str):
        super().__init__(500, reason, message)


class RemoteTimeoutError(TransportError):
    """No response arrived within the configured timeout."""


class RemoteError(RemoteCallError):
    """The remote service answered with a 4xx or 5xx status."""

    def __init__(self, status: int, reason: str, message: str, payload=None):
        super().__init__(status, reason, message, payload)
        self.retryable = 500 <= status <= 599

    @classmethod
    def from_response(cls, response: httpx.Response) -> "RemoteError":
        try:
            payload = response.json()
        except ValueError:
            payload = response.text or None

        message = ""
        if isinstance(payload, dict):
            message = (
                payload.get("error_description")
                or payload.get("message")
                or payload.get("error")
                or ""
            )
        if not message:
            message = f"Request to {response.request.url} failed with status {response.status_code}"
        return cls(response.status_code, response.reason_phrase, str(message), payload)

    @classmethod
    def invalid_body(cls, response: httpx.Response, detail: str) -> "RemoteError":
        """A response that arrived but cannot be read."""
        return cls(
            response.status_code,
            "InvalidBody",
            f"Unexpected response from {response.request.url}: {detail}",
            response.text or None,
        )


def json_body(response: httpx.Response) -> dict:
    """Body of a response as a JSON object. Anything else raises RemoteError."""
    try:
        body = response.json()
    except ValueError as e:
        raise RemoteError.invalid_body(response, "body is not JSON") from e
    if not isinstance(body, dict):
        raise RemoteError.invalid_body(response, "body is not a JSON object")
    return body


class KeyProtectError(RemoteCallError):
    """A key-management mutation (create or delete) failed."""

    @classmethod
    def wrap(cls, message: str, cause: Exception) -> "KeyProtectError":
        if isinstance(cause, RemoteCallError):
            return cls(cause.status, cause.reason, message, cause.payload)
        return cls(500, type(cause).__name__, message)

    def failure_reasons(self) -> str:
        # The message already embeds the remote reasons.
        return self.message


async def degrade(
    call: Awaitable[T],
    default: T,
    logger: logging.Logger,
    message: str,
    enabled: bool = True,
) -> T:
    """Await a read call, degrading remote failures to ``default``.

    With ``enabled`` the failure is logged as a warning and ``default`` is
    returned, so "not found" and "temporarily unreachable" look the same to
    the caller. Without it the failure propagates.
    """
    try:
        return await call
    except RemoteCallError as exc:
        if not enabled:
            raise
        logger.warning(
            f"{message}: {exc.failure_reasons()}",
            extra={"context": {"status": exc.status, "reason": exc.reason}},
        )
        return default
