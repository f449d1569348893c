"""
Resilience infrastructure - handles retry policy and transport error classification.
"""

from .retry_service import (
    TransportError,
    RetryPolicy,
    RetryStatus,
    RETRIABLE_ERRORS,
    NON_RETRIABLE_ERRORS,
    is_retriable,
    linear_backoff_delay
)

__all__ = [
    'TransportError',
    'RetryPolicy',
    'RetryStatus',
    'RETRIABLE_ERRORS',
    'NON_RETRIABLE_ERRORS',
    'is_retriable',
    'linear_backoff_delay'
]
