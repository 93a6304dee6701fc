"""
Base exception classes for the migration engine.

Every engine error carries an error code, a severity and a retryable flag so
the retry manager and the run summaries can treat failures uniformly.
"""

from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


class BaseApplicationError(Exception):
    """
    Root of the engine's exception hierarchy.

    Subclasses set their defaults with ``kwargs.setdefault`` and pass the
    rest through; unknown keyword arguments end up in ``details``.
    """

    def __init__(self, message: str, **kwargs):
        error_code = kwargs.pop('error_code', None)
        details = kwargs.pop('details', None) or {}
        original_exception = kwargs.pop('original_exception', None)
        user_message = kwargs.pop('user_message', None)
        severity = kwargs.pop('severity', 'medium')
        retryable = kwargs.pop('retryable', False)

        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details
        self.original_exception = original_exception
        self.user_message = user_message or message
        self.severity = severity
        self.retryable = retryable
        self.timestamp = datetime.now(timezone.utc)

        self.details.update(kwargs)
        if original_exception is not None:
            self.details["original_exception_type"] = original_exception.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Structured form used for telemetry records; never sent to end users."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "severity": self.severity,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [self.message]
        if self.error_code:
            parts.append(f"Code: {self.error_code}")
        if self.severity:
            parts.append(f"Severity: {self.severity}")
        return " | ".join(parts)


class ConfigurationError(BaseApplicationError):
    """
    Exception raised for configuration errors.

    Configuration errors are fatal at startup: they are never retried and the
    console runner exits non-zero when one reaches it.
    """

    def __init__(
        self,
        message: str = "Configuration error",
        config_key: Optional[str] = None,
        errors: Optional[List[str]] = None,
        **kwargs,
    ):
        kwargs.setdefault('error_code', 'CONFIGURATION_ERROR')
        kwargs.setdefault('user_message', 'The migration engine is misconfigured.')
        kwargs.setdefault('severity', 'critical')

        super().__init__(message=message, **kwargs)
        self.config_key = config_key
        self.errors = errors or []
        self.details.update({"config_key": config_key, "errors": self.errors})


class ExternalServiceError(BaseApplicationError):
    """A storage or secret backend call failed."""

    def __init__(
        self,
        message: str = "External service error",
        service_name: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault('error_code', 'EXTERNAL_SERVICE_ERROR')
        kwargs.setdefault('severity', 'high')

        super().__init__(message=message, **kwargs)
        self.service_name = service_name
        self.details["service_name"] = service_name


class StorageError(ExternalServiceError):
    """Object storage or durable queue operation failed."""

    def __init__(
        self,
        message: str = "Storage operation failed",
        container: Optional[str] = None,
        key: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault('error_code', 'STORAGE_ERROR')
        kwargs.setdefault('service_name', 'object_storage')

        super().__init__(message=message, **kwargs)
        self.container = container
        self.key = key
        self.details.update({"container": container, "key": key})


class SecretStoreError(ExternalServiceError):
    """A secret could not be retrieved from the configured secret store."""

    def __init__(
        self,
        message: str = "Secret retrieval failed",
        secret_name: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault('error_code', 'SECRET_STORE_ERROR')
        kwargs.setdefault('service_name', 'secret_store')
        kwargs.setdefault('severity', 'critical')

        super().__init__(message=message, **kwargs)
        self.secret_name = secret_name
        self.details.update({"secret_name": secret_name})
