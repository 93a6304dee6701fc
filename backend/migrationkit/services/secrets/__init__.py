"""
Secret store services package.
"""

from .cached_secret import CachedSecret
from .secret_provider import EnvironmentSecretProvider, KeyVaultSecretProvider, SecretProvider

__all__ = [
    "CachedSecret",
    "EnvironmentSecretProvider",
    "KeyVaultSecretProvider",
    "SecretProvider",
]
