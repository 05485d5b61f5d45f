"""Exceptions raised by the remote job client.

Every error carries a machine-readable category and a remediation hint that
can be shown to the user as-is.
"""
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    timeout = "timeout"
    network = "network"
    rate_limited = "rate_limited"
    server_error = "server_error"
    gateway_timeout = "gateway_timeout"
    client_fatal = "client_fatal"
    auth_required = "auth_required"
    not_found = "not_found"
    cancelled = "cancelled"
    unknown = "unknown"

    @property
    def retryable(self) -> bool:
        return self not in _NON_RETRYABLE


_NON_RETRYABLE = frozenset(
    {
        ErrorCategory.client_fatal,
        ErrorCategory.auth_required,
        ErrorCategory.not_found,
        ErrorCategory.cancelled,
    }
)


class RemoteJobError(Exception):
    """Base for all client errors"""

    default_category = ErrorCategory.unknown

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        remediation: str = "",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.remediation = remediation
        self.status_code = status_code

    def user_message(self) -> str:
        if self.remediation:
            return f"{self.message}\n\n{self.remediation}"
        return self.message


class RequestFailed(RemoteJobError):
    """A request failed fatally or exhausted its retries"""

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        remediation: str = "",
        status_code: Optional[int] = None,
        attempts: int = 1,
    ):
        super().__init__(message, category, remediation, status_code)
        self.attempts = attempts


class OperationCancelled(RemoteJobError):
    default_category = ErrorCategory.cancelled

    def __init__(self, message: str = "Operation was cancelled."):
        super().__init__(message, ErrorCategory.cancelled)


class ProtocolError(RemoteJobError):
    """The server answered with a payload we cannot interpret"""

    default_category = ErrorCategory.unknown


class NoJobId(ProtocolError):
    def __init__(self, message: str = "No job_id received from server"):
        super().__init__(
            message,
            ErrorCategory.client_fatal,
            "The server accepted the request but did not start a job. Please try again.",
        )


class JobFailed(RemoteJobError):
    """The server reported the job as failed"""

    def __init__(self, message: str, remediation: str = "", job_id: str = ""):
        super().__init__(message, ErrorCategory.server_error, remediation)
        self.job_id = job_id


class JobTimedOut(RemoteJobError):
    """The client-side polling budget ran out; the job may still be running"""

    def __init__(self, message: str, remediation: str = "", job_id: str = ""):
        super().__init__(message, ErrorCategory.timeout, remediation)
        self.job_id = job_id


class ExtractionEmpty(RemoteJobError):
    """Every chunk failed or no entities were produced"""

    def __init__(self, message: str, category: Optional[ErrorCategory] = None, remediation: str = ""):
        super().__init__(message, category or ErrorCategory.unknown, remediation)
