"""Utility helpers shared across services."""

from .retry import RetryConfig, RetryState, async_retry, exponential_backoff

__all__ = [
    "async_retry",
    "RetryConfig",
    "RetryState",
    "exponential_backoff",
]
