"""
Directory API exception hierarchy.

This module defines the errors raised by the throttle-aware directory client,
plus the helpers the retry manager uses to decide whether a failure is
transient.
"""

from typing import Optional

import httpx

from migrationkit.exceptions.base_exceptions import BaseApplicationError


RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class DirectoryError(BaseApplicationError):
    """
    Base exception for directory API operations.

    Non-retryable 4xx responses (other than 429) surface as this type
    immediately.
    """

    def __init__(
        self,
        message: str = "Directory API request failed",
        status_code: Optional[int] = None,
        service_error_code: Optional[str] = None,
        retry_after: Optional[float] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault('error_code', 'DIRECTORY_ERROR')
        kwargs.setdefault('severity', 'high')

        super().__init__(message=message, **kwargs)
        self.status_code = status_code
        self.service_error_code = service_error_code
        self.retry_after = retry_after
        self.operation = operation
        self.details.update({
            "status_code": status_code,
            "service_error_code": service_error_code,
            "retry_after": retry_after,
            "operation": operation,
        })


class DirectoryThrottledError(DirectoryError):
    """The directory API answered 429 Too Many Requests."""

    def __init__(self, message: str = "Directory API throttled the request", **kwargs):
        kwargs.setdefault('error_code', 'DIRECTORY_THROTTLED')
        kwargs.setdefault('status_code', 429)
        kwargs.setdefault('severity', 'low')
        kwargs.setdefault('retryable', True)
        super().__init__(message=message, **kwargs)


class DirectoryServiceError(DirectoryError):
    """The directory API answered with a transient 5xx status."""

    def __init__(self, message: str = "Directory API service error", **kwargs):
        kwargs.setdefault('error_code', 'DIRECTORY_SERVICE_ERROR')
        kwargs.setdefault('severity', 'medium')
        kwargs.setdefault('retryable', True)
        super().__init__(message=message, **kwargs)


class DirectoryTransportError(DirectoryError):
    """Network-level failure talking to the directory API."""

    def __init__(self, message: str = "Directory API transport failure", **kwargs):
        kwargs.setdefault('error_code', 'DIRECTORY_TRANSPORT_ERROR')
        kwargs.setdefault('severity', 'low')
        kwargs.setdefault('retryable', True)
        super().__init__(message=message, **kwargs)


class DirectoryTimeoutError(DirectoryError):
    """A single directory operation exceeded its time budget."""

    def __init__(
        self,
        message: str = "Directory API operation timed out",
        timeout_seconds: Optional[float] = None,
        **kwargs
    ):
        kwargs.setdefault('error_code', 'DIRECTORY_TIMEOUT')
        kwargs.setdefault('severity', 'medium')
        super().__init__(message=message, **kwargs)
        self.timeout_seconds = timeout_seconds
        self.details["timeout_seconds"] = timeout_seconds


class DirectoryRetryExhaustedError(DirectoryError):
    """Every attempt allowed by the retry policy failed."""

    def __init__(
        self,
        message: str = "Directory API retry budget exhausted",
        attempts: int = 0,
        last_exception: Optional[Exception] = None,
        **kwargs
    ):
        kwargs.setdefault('error_code', 'DIRECTORY_RETRY_EXHAUSTED')
        if last_exception is not None:
            kwargs.setdefault('original_exception', last_exception)
            for attr in ("status_code", "retry_after"):
                value = getattr(last_exception, attr, None)
                if value is not None:
                    kwargs.setdefault(attr, value)
        super().__init__(message=message, **kwargs)
        self.attempts = attempts
        self.last_exception = last_exception
        self.details["attempts"] = attempts


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception is retryable.

    Args:
        exception: Exception to check.

    Returns:
        True if the exception is retryable, False otherwise.
    """
    if isinstance(exception, DirectoryRetryExhaustedError):
        return False

    if isinstance(exception, (DirectoryThrottledError, DirectoryServiceError, DirectoryTransportError)):
        return True

    if isinstance(exception, DirectoryError):
        return exception.status_code in RETRYABLE_STATUS_CODES

    if isinstance(exception, (httpx.TransportError, ConnectionError)):
        return True

    return False


def get_error_severity(exception: Exception) -> str:
    """
    Get the severity level of an error.

    Returns:
        Severity level: 'low', 'medium', 'high', or 'critical'.
    """
    if isinstance(exception, BaseApplicationError):
        return exception.severity
    if isinstance(exception, httpx.TransportError):
        return "low"
    return "high"


def error_for_status(
    status_code: int,
    message: str,
    service_error_code: Optional[str] = None,
    retry_after: Optional[float] = None,
    operation: Optional[str] = None,
) -> DirectoryError:
    """Map an HTTP status to the matching directory exception."""
    kwargs = dict(
        status_code=status_code,
        service_error_code=service_error_code,
        retry_after=retry_after,
        operation=operation,
    )
    if status_code == 429:
        return DirectoryThrottledError(message, **kwargs)
    if status_code in RETRYABLE_STATUS_CODES:
        return DirectoryServiceError(message, **kwargs)
    return DirectoryError(message, **kwargs)
