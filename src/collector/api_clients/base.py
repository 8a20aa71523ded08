"""Transport errors and retry policy shared by API clients."""

import random
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class RetryPolicy:
    """Retry schedule for transient failures.

    ``max_retries`` counts retries after the first attempt, so a request is
    tried at most ``max_retries + 1`` times.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        if retry_after is not None:
            return min(self.max_delay, max(0.0, retry_after))

        delay = min(self.max_delay, self.base_delay * (2 ** attempt))
        if self.jitter > 0 and delay > 0:
            delay += random.uniform(0, delay * self.jitter)
        return min(self.max_delay, delay)


NO_RETRY = RetryPolicy(max_retries=0, base_delay=0.0, max_delay=0.0, jitter=0.0)


class APIError(Exception):
    """Raised when the server answers with a non-success status."""

    def __init__(self, status: int, message: str, body: Any = None):
        super().__init__(f"API Error {status}: {message}")
        self.status = status
        self.message = message
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status == 429 or self.status >= 500


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded."""

    def __init__(self, message: str, retry_after: Optional[float] = None, body: Any = None):
        super().__init__(429, message, body)
        self.retry_after = retry_after


class AuthenticationError(APIError):
    """Raised when the API key is rejected."""
    pass


class APIConnectionError(Exception):
    """Raised when API connection fails."""
    pass


class ResponseValidationError(Exception):
    """Raised when a response body does not match its schema."""

    def __init__(self, operation: str, errors: list):
        summary = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
            for error in errors
        )
        super().__init__(f"Invalid {operation} response: {summary}")
        self.operation = operation
        self.errors = errors


class RetryExhaustedError(Exception):
    """Raised when a transient failure persists past the retry budget."""

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
