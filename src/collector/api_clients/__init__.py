"""API clients package for archive server communication."""

from .base import (
    RetryPolicy,
    NO_RETRY,
    APIError,
    RateLimitError,
    AuthenticationError,
    APIConnectionError,
    ResponseValidationError,
    RetryExhaustedError,
)

from .archive import ArchiveAPIClient

__all__ = [
    # Retry policy and exceptions
    "RetryPolicy",
    "NO_RETRY",
    "APIError",
    "RateLimitError",
    "AuthenticationError",
    "APIConnectionError",
    "ResponseValidationError",
    "RetryExhaustedError",

    # Client implementation
    "ArchiveAPIClient",
]
