"""
Resilience service for streaming retry policy and transport error classification.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx
import openai

from infrastructure.monitoring.logging_service import get_logger

logger = get_logger(__name__)


class TransportError(Exception):
    """Network failure or non-success status while talking to the streaming gateway"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# Define which errors should trigger retries (transient errors)
RETRIABLE_ERRORS = (
    TransportError,
    httpx.TransportError,
    httpx.HTTPStatusError,
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.InternalServerError,
    asyncio.TimeoutError,
)

# Define which errors should NOT be retried (permanent errors)
NON_RETRIABLE_ERRORS = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
)


def is_retriable(error: BaseException) -> bool:
    """Check whether an error is a transient transport failure"""
    if isinstance(error, NON_RETRIABLE_ERRORS):
        return False
    return isinstance(error, RETRIABLE_ERRORS)


def linear_backoff_delay(attempt: int, base_delay: float = 1.0) -> float:
    """
    Calculate the delay before retrying a stream

    Args:
        attempt: Number of failed attempts so far (1-indexed)
        base_delay: Base delay in seconds

    Returns:
        Delay in seconds (base_delay, 2 * base_delay, ...)
    """
    return base_delay * max(attempt, 1)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry budget for one generation"""
    max_attempts: int = 3
    base_delay: float = 1.0

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_attempts

    def delay_for(self, retry_count: int) -> float:
        return linear_backoff_delay(retry_count, self.base_delay)

    def exhausted_message(self, error_message: str) -> str:
        return f"Error after {self.max_attempts} attempts: {error_message}"


class RetryStatus:
    """Helper class to track retry status for UI feedback"""

    def __init__(self):
        self.is_retrying = False
        self.current_attempt = 0
        self.max_attempts = 0
        self.last_error: Optional[str] = None
        self.next_delay = 0.0

    def start_retry(self, max_attempts: int):
        """Start a new retry sequence"""
        self.is_retrying = False
        self.current_attempt = 0
        self.max_attempts = max_attempts
        self.last_error = None
        self.next_delay = 0.0

    def on_retry_attempt(self, attempt: int, error: str, next_delay: float = 0.0):
        """Update status for a retry attempt"""
        self.is_retrying = True
        self.current_attempt = attempt
        self.last_error = error
        self.next_delay = next_delay

    def finish_retry(self, success: bool = True):
        """Finish the retry sequence"""
        self.is_retrying = False
        if success:
            self.last_error = None

    def get_status_message(self) -> str:
        """Get a user-friendly status message"""
        if not self.is_retrying:
            return ""

        if self.next_delay > 0:
            return f"Retrying ({self.last_error}) - attempt {self.current_attempt + 1}/{self.max_attempts} in {self.next_delay:.1f}s"
        return f"Retrying ({self.last_error}) - attempt {self.current_attempt + 1}/{self.max_attempts}"
