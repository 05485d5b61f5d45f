"""
Retry decisions for requests against the remote API.

Classification, backoff and timeout escalation are pure functions of the
error/status and the RetryConfig, so callers never match on error text
themselves.
"""
import asyncio
import random
from typing import Callable, Optional

import aiohttp

from remote_job_client.errors import ErrorCategory, OperationCancelled
from remote_job_client.models import RetryConfig

JITTER_RATIO = 0.25

# Substrings that mark an error message as a transient network condition
TRANSIENT_PATTERNS = (
    "network",
    "fetch",
    "failed to fetch",
    "net::err_",
    "network_changed",
    "connection",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "enotfound",
    "socket",
    "dns",
    "502",
    "503",
    "504",
    "service unavailable",
    "temporarily unavailable",
)

TIMEOUT_PATTERNS = ("timeout", "timed out", "abort")

REMEDIATION_HINTS = {
    ErrorCategory.timeout: (
        "The request timed out. Try again when your connection is more stable, "
        "or the server may be under heavy load."
    ),
    ErrorCategory.network: (
        "Network connection failed. Please check your internet connection and try again."
    ),
    ErrorCategory.rate_limited: (
        "Rate limited: too many requests. Please wait a moment before trying again."
    ),
    ErrorCategory.server_error: (
        "The server is busy or experiencing issues. Please try again later."
    ),
    ErrorCategory.gateway_timeout: (
        "The server took too long to respond. Please try again later."
    ),
    ErrorCategory.auth_required: (
        "Authentication required. Please check your API key and credentials in settings."
    ),
    ErrorCategory.not_found: (
        "API endpoint not found. Please check that the API server is running and the URL is correct."
    ),
    ErrorCategory.client_fatal: (
        "The server rejected the request. Please review the input and try again."
    ),
    ErrorCategory.cancelled: "The operation was cancelled.",
    ErrorCategory.unknown: (
        "This may be a temporary network issue. Please try again in a moment."
    ),
}


def is_transient_message(message: str) -> bool:
    """Check whether an error message looks like a transient network failure"""
    lowered = message.lower()
    return any(pattern in lowered for pattern in TRANSIENT_PATTERNS)


def classify_status(status_code: int) -> ErrorCategory:
    if status_code == 429:
        return ErrorCategory.rate_limited
    if status_code == 504:
        return ErrorCategory.gateway_timeout
    if 500 <= status_code < 600:
        return ErrorCategory.server_error
    if status_code in (401, 403):
        return ErrorCategory.auth_required
    if status_code == 404:
        return ErrorCategory.not_found
    if 400 <= status_code < 500:
        return ErrorCategory.client_fatal
    return ErrorCategory.unknown


class RetryPolicy:
    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        random_source: Callable[[], float] = random.random,
    ):
        self.config = config or RetryConfig()
        self._random = random_source

    def classify(
        self, error: Optional[BaseException] = None, status_code: Optional[int] = None
    ) -> ErrorCategory:
        """Map an error and/or HTTP status to an ErrorCategory"""
        if isinstance(error, (OperationCancelled, asyncio.CancelledError)):
            return ErrorCategory.cancelled
        if status_code is not None and status_code >= 400:
            return classify_status(status_code)
        if error is None:
            return ErrorCategory.unknown
        if isinstance(error, (asyncio.TimeoutError, TimeoutError, aiohttp.ServerTimeoutError)):
            return ErrorCategory.timeout
        if isinstance(error, (aiohttp.ClientConnectionError, ConnectionError, OSError)):
            return ErrorCategory.network

        message = str(error).lower()
        if any(pattern in message for pattern in TIMEOUT_PATTERNS):
            return ErrorCategory.timeout
        if is_transient_message(message):
            return ErrorCategory.network
        return ErrorCategory.unknown

    def compute_delay(self, attempt: int) -> float:
        """Exponential backoff for the given 1-based attempt with +/-25% jitter, capped"""
        exponential = self.config.base_delay * (2 ** (attempt - 1))
        jitter = JITTER_RATIO * (self._random() * 2 - 1)
        return min(exponential * (1 + jitter), self.config.max_delay)

    def compute_timeout(self, current: float, had_timeout: bool) -> float:
        if not had_timeout:
            return current
        return min(current * self.config.timeout_multiplier_on_timeout, self.config.max_timeout)

    @staticmethod
    def remediation(category: ErrorCategory) -> str:
        return REMEDIATION_HINTS.get(category, REMEDIATION_HINTS[ErrorCategory.unknown])

    @staticmethod
    def describe(
        category: ErrorCategory,
        status_code: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> str:
        """Short user-facing description of what went wrong"""
        if category == ErrorCategory.timeout:
            return "Request timed out. The server may be busy or your connection is slow."
        if category == ErrorCategory.network:
            return "Network connection failed. Please check your internet connection."
        if category == ErrorCategory.rate_limited:
            return "Too many requests. Please wait a moment before trying again."
        if category == ErrorCategory.gateway_timeout:
            return "Gateway timeout. The server took too long to respond."
        if category == ErrorCategory.server_error:
            if status_code == 503:
                return "Service temporarily unavailable. The server is overloaded or under maintenance."
            return f"Server error ({status_code}). The service is temporarily unavailable."
        if category == ErrorCategory.auth_required:
            return "Authentication required."
        if category == ErrorCategory.not_found:
            return "API endpoint not found."
        if category == ErrorCategory.cancelled:
            return "Request was cancelled."
        if category == ErrorCategory.client_fatal and status_code is not None:
            detail = f": {error}" if error else ""
            return f"API error ({status_code}){detail}"
        return str(error) if error else "Unknown error"
