"""
Secret store providers.

``KeyVaultSecretProvider`` reads from Azure Key Vault with a time-based
cache; ``EnvironmentSecretProvider`` reads from the process environment
(and ``.env``) for local runs.
"""

import asyncio
import os
import re
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity.aio import DefaultAzureCredential
from azure.keyvault.secrets.aio import SecretClient

from logconfig.logger import get_logger
from migrationkit.exceptions.base_exceptions import SecretStoreError

logger = get_logger()


class SecretProvider(ABC):
    """Abstract base class for secret retrieval."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        ...

    @abstractmethod
    async def get_secret(self, secret_name: str) -> str:
        """Return the secret value or raise ``SecretStoreError``."""

    async def close(self) -> None:
        return None


class EnvironmentSecretProvider(SecretProvider):
    """
    Resolve secrets from environment variables.

    ``JIT-RSA-PrivateKey`` is looked up as ``JIT_RSA_PRIVATEKEY``; an explicit
    mapping may be supplied to override the derived names.
    """

    def __init__(self, overrides: Optional[Dict[str, str]] = None, environ: Optional[Dict[str, str]] = None):
        self._overrides = overrides or {}
        self._environ = environ if environ is not None else os.environ

    @property
    def provider_name(self) -> str:
        return "environment"

    @staticmethod
    def env_name(secret_name: str) -> str:
        return re.sub(r"[^A-Za-z0-9]", "_", secret_name).upper()

    async def get_secret(self, secret_name: str) -> str:
        if secret_name in self._overrides:
            return self._overrides[secret_name]
        value = self._environ.get(self.env_name(secret_name))
        if not value:
            raise SecretStoreError(
                f"Secret '{secret_name}' is not set in the environment",
                secret_name=secret_name,
            )
        return value


class KeyVaultSecretProvider(SecretProvider):
    """Azure Key Vault implementation with an in-memory TTL cache."""

    def __init__(self, vault_url: str, cache_minutes: int = 60, credential=None):
        if not vault_url:
            raise SecretStoreError("Key Vault URI is not configured")
        self._vault_url = vault_url
        self._cache_seconds = cache_minutes * 60
        self._credential = credential
        self._owns_credential = credential is None
        self._client: Optional[SecretClient] = None
        self._cache: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    @property
    def provider_name(self) -> str:
        return "azure_key_vault"

    def _get_client(self) -> SecretClient:
        if self._client is None:
            if self._credential is None:
                self._credential = DefaultAzureCredential()
            self._client = SecretClient(vault_url=self._vault_url, credential=self._credential)
        return self._client

    async def get_secret(self, secret_name: str) -> str:
        cached = self._cache.get(secret_name)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        async with self._lock:
            cached = self._cache.get(secret_name)
            if cached and cached[1] > time.monotonic():
                return cached[0]

            try:
                secret = await self._get_client().get_secret(secret_name)
            except ResourceNotFoundError as e:
                raise SecretStoreError(
                    f"Secret '{secret_name}' was not found in {self._vault_url}",
                    secret_name=secret_name,
                    original_exception=e,
                ) from e
            except AzureError as e:
                raise SecretStoreError(
                    f"Failed to read secret '{secret_name}' from Key Vault",
                    secret_name=secret_name,
                    original_exception=e,
                    retryable=True,
                ) from e

            if not secret.value:
                raise SecretStoreError(f"Secret '{secret_name}' is empty", secret_name=secret_name)

            if self._cache_seconds > 0:
                self._cache[secret_name] = (secret.value, time.monotonic() + self._cache_seconds)
            logger.debug(f"Loaded secret '{secret_name}' from Key Vault")
            return secret.value

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
        if self._owns_credential and self._credential is not None:
            await self._credential.close()
            self._credential = None
