"""Retry policy attached to every service client."""

from dataclasses import dataclass

# Methods replayed on failure when the caller does not say otherwise.
DEFAULT_RETRY_METHODS = frozenset({"GET", "HEAD", "PUT", "OPTIONS", "DELETE"})


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 1
    retry_delay_ms: int = 3000
    timeout_ms: int = 10000
    backoff: str = "static"  # "static" | "exponential"
    retryable_statuses: range = range(500, 600)
    retry_methods: frozenset[str] = DEFAULT_RETRY_METHODS
    no_response_retries: bool = True  # retry when nothing came back (timeouts, resets)

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff not in ("static", "exponential"):
            raise ValueError(f"Unknown backoff type: {self.backoff}")

    @property
    def retry_delay(self) -> float:
        return self.retry_delay_ms / 1000

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def allows_method(self, method: str) -> bool:
        return method.upper() in self.retry_methods
