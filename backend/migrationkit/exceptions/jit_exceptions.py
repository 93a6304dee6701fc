"""
JIT authentication exceptions.

Every one of these is caught at the JIT boundary and converted into a
``Block`` action; none of them ever reaches the caller as an HTTP error.
"""

from typing import Optional

from migrationkit.exceptions.base_exceptions import BaseApplicationError


class JitError(BaseApplicationError):
    """Base exception for the JIT authentication pipeline."""

    def __init__(
        self,
        message: str = "JIT authentication failed",
        correlation_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault('error_code', 'JIT_ERROR')
        kwargs.setdefault('user_message', 'An error occurred during authentication. Please try again later.')
        super().__init__(message=message, **kwargs)
        self.correlation_id = correlation_id
        self.details["correlation_id"] = correlation_id


class PayloadParseError(JitError):
    """The inbound authentication event could not be parsed."""

    def __init__(self, message: str = "Invalid authentication event payload", **kwargs):
        kwargs.setdefault('error_code', 'JIT_PAYLOAD_INVALID')
        kwargs.setdefault('severity', 'low')
        super().__init__(message=message, **kwargs)


class DecryptionError(JitError):
    """The encrypted password envelope could not be opened."""

    def __init__(self, message: str = "Failed to decrypt password envelope", **kwargs):
        kwargs.setdefault('error_code', 'JIT_DECRYPTION_FAILED')
        kwargs.setdefault('severity', 'high')
        super().__init__(message=message, **kwargs)


class CredentialValidationError(JitError):
    """The legacy directory could not be asked to validate a credential."""

    def __init__(
        self,
        message: str = "Credential validation request failed",
        status_code: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault('error_code', 'JIT_VALIDATION_FAILED')
        kwargs.setdefault('severity', 'medium')
        super().__init__(message=message, **kwargs)
        self.status_code = status_code
        self.details["status_code"] = status_code
