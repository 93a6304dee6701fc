"""
Directory API services package.
"""

from .credential_pool import (
    ClientSecretCredential,
    Credential,
    CredentialPool,
    LeastRecentlyThrottledStrategy,
    ManagedIdentityCredential,
    RoundRobinStrategy,
    SelectionStrategy,
    build_credential_pool,
)
from .graph_client import DirectoryClient, UserPage
from .retry_manager import RetryConfig, RetryManager, RetryStrategy

__all__ = [
    "ClientSecretCredential",
    "Credential",
    "CredentialPool",
    "LeastRecentlyThrottledStrategy",
    "ManagedIdentityCredential",
    "RoundRobinStrategy",
    "SelectionStrategy",
    "build_credential_pool",
    "DirectoryClient",
    "UserPage",
    "RetryConfig",
    "RetryManager",
    "RetryStrategy",
]
