"""
Credential pool for directory API access.

Each configured app registration has its own per-second quota on the
directory API. The pool hands credentials out through a pluggable selection
strategy so load spreads across those independent rate-limit buckets.
"""

import asyncio
import itertools
import threading
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from azure.identity.aio import DefaultAzureCredential
from msal import ConfidentialClientApplication

from logconfig.logger import get_logger
from migrationkit.core.settings import GRAPH_DEFAULT_SCOPE, AppRegistration, TenantOptions
from migrationkit.exceptions.base_exceptions import ConfigurationError, SecretStoreError
from migrationkit.exceptions.directory_exceptions import DirectoryError
from migrationkit.services.secrets.secret_provider import SecretProvider

logger = get_logger()


class Credential(ABC):
    """A single app identity that can produce bearer tokens."""

    client_id: str = ""

    @abstractmethod
    async def get_token(self) -> str:
        ...

    async def close(self) -> None:
        return None


class ClientSecretCredential(Credential):
    """Client-credential flow backed by an MSAL confidential client."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        authority: Optional[str] = None,
        scopes: Optional[Sequence[str]] = None,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret
        self._authority = authority or f"https://login.microsoftonline.com/{tenant_id}"
        self._scopes = list(scopes or [GRAPH_DEFAULT_SCOPE])
        self._msal_app: Optional[ConfidentialClientApplication] = None

    @property
    def msal_app(self) -> ConfidentialClientApplication:
        """Get MSAL confidential client application."""
        if not self._msal_app:
            self._msal_app = ConfidentialClientApplication(
                client_id=self.client_id,
                client_credential=self._client_secret,
                authority=self._authority,
            )
        return self._msal_app

    async def get_token(self) -> str:
        # MSAL is synchronous and serves cached tokens until they near expiry.
        result = await asyncio.to_thread(self.msal_app.acquire_token_for_client, scopes=self._scopes)
        if "access_token" not in result:
            raise DirectoryError(
                f"Token acquisition failed for app {self.client_id}: "
                f"{result.get('error')}: {result.get('error_description')}",
                service_error_code=result.get("error"),
                status_code=401,
            )
        return result["access_token"]


class ManagedIdentityCredential(Credential):
    """Falls back to the ambient Azure identity (managed identity, CLI login)."""

    def __init__(self, scopes: Optional[Sequence[str]] = None):
        self.client_id = "managed-identity"
        self._scopes = list(scopes or [GRAPH_DEFAULT_SCOPE])
        self._credential = DefaultAzureCredential()

    async def get_token(self) -> str:
        token = await self._credential.get_token(*self._scopes)
        return token.token

    async def close(self) -> None:
        await self._credential.close()


class SelectionStrategy(ABC):
    """Chooses the next credential index."""

    @abstractmethod
    def select(self, pool: "CredentialPool") -> int:
        ...


class RoundRobinStrategy(SelectionStrategy):
    def __init__(self):
        self._cursor = itertools.count()

    def select(self, pool: "CredentialPool") -> int:
        return next(self._cursor) % pool.count()


class LeastRecentlyThrottledStrategy(SelectionStrategy):
    """
    Round-robin over credentials that are not cooling down; when all of
    them are, pick the one whose cool-down ends first.
    """

    def __init__(self):
        self._round_robin = RoundRobinStrategy()

    def select(self, pool: "CredentialPool") -> int:
        now = time.monotonic()
        for _ in range(pool.count()):
            index = self._round_robin.select(pool)
            if pool.throttled_until(index) <= now:
                return index
        return min(range(pool.count()), key=pool.throttled_until)


class CredentialPool:
    """
    Process-wide ordered list of credentials plus a cursor.

    Initialized once at pipeline start and read by every directory call.
    """

    def __init__(self, credentials: Sequence[Credential], strategy: Optional[SelectionStrategy] = None):
        if not credentials:
            raise ConfigurationError("Credential pool requires at least one credential")
        self._credentials: List[Credential] = list(credentials)
        self._strategy = strategy or RoundRobinStrategy()
        self._throttled_until: List[float] = [0.0] * len(self._credentials)
        self._lock = threading.Lock()

    def count(self) -> int:
        return len(self._credentials)

    def get(self, index: int) -> Credential:
        if index < 0 or index >= len(self._credentials):
            raise IndexError(f"Credential index {index} out of range (pool size {len(self._credentials)})")
        return self._credentials[index]

    def next_index(self) -> int:
        with self._lock:
            return self._strategy.select(self)

    def next(self) -> Credential:
        return self._credentials[self.next_index()]

    def throttled_until(self, index: int) -> float:
        return self._throttled_until[index]

    def report_throttled(self, index: int, retry_after_seconds: Optional[float] = None) -> None:
        """Advisory: lets a strategy deprioritize a credential for a while."""
        cool_down = retry_after_seconds if retry_after_seconds is not None else 1.0
        logger.warning(
            f"Credential {index} ({self._credentials[index].client_id}) throttled; "
            f"retry after {cool_down:.1f}s"
        )
        if self.count() == 1:
            return
        with self._lock:
            self._throttled_until[index] = max(self._throttled_until[index], time.monotonic() + cool_down)

    async def close(self) -> None:
        for credential in self._credentials:
            await credential.close()


async def _build_credential(
    tenant: TenantOptions,
    app: AppRegistration,
    secret_provider: Optional[SecretProvider],
) -> Credential:
    if app.client_secret:
        logger.info(f"Initialized credential for app {app.client_id} using direct secret")
        return ClientSecretCredential(tenant.tenant_id, app.client_id, app.client_secret, tenant.authority, tenant.scopes)

    if app.client_secret_name:
        if secret_provider is None:
            raise ConfigurationError(
                f"App {app.client_id} names secret '{app.client_secret_name}' but no secret store is configured",
                config_key="client_secret_name",
            )
        try:
            secret = await secret_provider.get_secret(app.client_secret_name)
        except SecretStoreError as e:
            raise ConfigurationError(
                f"Could not load client secret for app {app.client_id}: {e.message}",
                config_key="client_secret_name",
                original_exception=e,
            ) from e
        logger.info(f"Initialized credential for app {app.client_id} using secret store ({secret_provider.provider_name})")
        return ClientSecretCredential(tenant.tenant_id, app.client_id, secret, tenant.authority, tenant.scopes)

    logger.info("Initialized credential using DefaultAzureCredential (managed identity)")
    return ManagedIdentityCredential(tenant.scopes)


async def build_credential_pool(
    tenant: TenantOptions,
    secret_provider: Optional[SecretProvider] = None,
    strategy: Optional[SelectionStrategy] = None,
) -> CredentialPool:
    """
    Build the pool for a tenant. Any identity that cannot produce a
    credential is a fatal startup error.
    """
    if not tenant.tenant_id:
        raise ConfigurationError("Tenant id is not configured", config_key="tenant_id")

    registrations = tenant.enabled_registrations
    if not registrations:
        raise ConfigurationError(
            "No enabled app registration is configured for the tenant",
            config_key="app_registrations",
        )

    credentials = [await _build_credential(tenant, app, secret_provider) for app in registrations]
    logger.info(f"Credential pool ready with {len(credentials)} credential(s) for tenant {tenant.tenant_id}")
    return CredentialPool(credentials, strategy)
