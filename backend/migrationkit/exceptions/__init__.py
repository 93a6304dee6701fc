"""
Exception hierarchy for the migration engine.
"""

from migrationkit.exceptions.base_exceptions import (
    BaseApplicationError,
    ConfigurationError,
    ExternalServiceError,
    SecretStoreError,
    StorageError,
)
from migrationkit.exceptions.directory_exceptions import (
    DirectoryError,
    DirectoryRetryExhaustedError,
    DirectoryServiceError,
    DirectoryThrottledError,
    DirectoryTimeoutError,
    DirectoryTransportError,
    get_error_severity,
    is_retryable_error,
)
from migrationkit.exceptions.jit_exceptions import (
    CredentialValidationError,
    DecryptionError,
    JitError,
    PayloadParseError,
)

__all__ = [
    "BaseApplicationError",
    "ConfigurationError",
    "ExternalServiceError",
    "SecretStoreError",
    "StorageError",
    "DirectoryError",
    "DirectoryRetryExhaustedError",
    "DirectoryServiceError",
    "DirectoryThrottledError",
    "DirectoryTimeoutError",
    "DirectoryTransportError",
    "get_error_severity",
    "is_retryable_error",
    "CredentialValidationError",
    "DecryptionError",
    "JitError",
    "PayloadParseError",
]
