"""
Builds engine components from ``MigrationSettings``.

Used by the console runner and the JIT host so both wire storage, secrets,
credentials and directory clients the same way.
"""

from typing import Optional, Tuple

from logconfig.logger import get_logger
from migrationkit.core.settings import MigrationSettings, TenantOptions
from migrationkit.exceptions.base_exceptions import ConfigurationError, SecretStoreError
from migrationkit.services.directory.credential_pool import build_credential_pool
from migrationkit.services.directory.graph_client import DirectoryClient
from migrationkit.services.directory.retry_manager import RetryConfig, RetryManager
from migrationkit.services.jit.credential_decryptor import CredentialDecryptor, build_private_key_cache
from migrationkit.services.jit.credential_validator import LegacyCredentialValidator
from migrationkit.services.jit.jit_migration_service import JitMigrationService
from migrationkit.services.secrets.secret_provider import (
    EnvironmentSecretProvider,
    KeyVaultSecretProvider,
    SecretProvider,
)
from migrationkit.services.storage.blob_storage import AzureBlobStorage
from migrationkit.services.storage.object_storage import LocalObjectStorage, ObjectStorage
from migrationkit.services.storage.queue_client import AzureQueueClient, InMemoryMessageQueue, MessageQueue
from migrationkit.services.telemetry.telemetry_service import TelemetryService

logger = get_logger()


def create_secret_provider(settings: MigrationSettings) -> SecretProvider:
    if settings.key_vault.enabled:
        if not settings.key_vault.vault_uri:
            raise ConfigurationError("key_vault.vault_uri is required when key_vault.enabled is set",
                                     config_key="key_vault.vault_uri")
        return KeyVaultSecretProvider(settings.key_vault.vault_uri, settings.key_vault.secret_cache_minutes)
    return EnvironmentSecretProvider()


def create_object_storage(settings: MigrationSettings) -> ObjectStorage:
    options = settings.storage
    if options.local_root:
        logger.info(f"Using local object storage at {options.local_root}")
        return LocalObjectStorage(options.local_root)
    if not options.connection_string_or_uri:
        raise ConfigurationError(
            "storage.connection_string_or_uri or storage.local_root must be configured",
            config_key="storage.connection_string_or_uri",
        )
    return AzureBlobStorage(options.connection_string_or_uri, options.use_managed_identity)


def create_message_queue(settings: MigrationSettings) -> MessageQueue:
    options = settings.storage
    if options.local_root or not options.connection_string_or_uri:
        return InMemoryMessageQueue()
    return AzureQueueClient(options.connection_string_or_uri, options.profile_sync_queue, options.use_managed_identity)


async def create_directory_client(
    tenant: TenantOptions,
    settings: MigrationSettings,
    telemetry: TelemetryService,
    secret_provider: Optional[SecretProvider] = None,
    name: str = "directory",
) -> DirectoryClient:
    pool = await build_credential_pool(tenant, secret_provider)
    retry_manager = RetryManager(RetryConfig.from_options(settings.retry), telemetry=telemetry)
    return DirectoryClient(
        pool,
        retry_manager=retry_manager,
        telemetry=telemetry,
        base_url=tenant.graph_base_url,
        name=name,
    )


async def resolve_client_secret(tenant: TenantOptions, secret_provider: Optional[SecretProvider]) -> Tuple[str, str]:
    """``(client_id, client_secret)`` of the tenant's first enabled registration."""
    registrations = tenant.enabled_registrations
    if not registrations:
        raise ConfigurationError("No enabled app registration is configured for the tenant",
                                 config_key="app_registrations")
    app = registrations[0]
    if app.client_secret:
        return app.client_id, app.client_secret
    if app.client_secret_name and secret_provider is not None:
        try:
            return app.client_id, await secret_provider.get_secret(app.client_secret_name)
        except SecretStoreError as e:
            raise ConfigurationError(
                f"Could not load client secret for app {app.client_id}: {e.message}",
                config_key="client_secret_name",
                original_exception=e,
            ) from e
    raise ConfigurationError(
        f"App {app.client_id} needs a client secret for password validation",
        config_key="client_secret",
    )


async def create_jit_service(
    settings: MigrationSettings,
    telemetry: TelemetryService,
    secret_provider: Optional[SecretProvider] = None,
) -> JitMigrationService:
    """
    Wire the JIT pipeline. Missing key or validator configuration raises
    ``ConfigurationError`` here rather than on the first request.
    """
    secret_provider = secret_provider or create_secret_provider(settings)
    decryptor = CredentialDecryptor(build_private_key_cache(settings.jit, secret_provider))

    validator = None
    if settings.source.tenant_id and settings.source.enabled_registrations:
        client_id, client_secret = await resolve_client_secret(settings.source, secret_provider)
        validator = LegacyCredentialValidator(settings.source.tenant_id, client_id, client_secret)
    elif not (settings.jit.test_mode and settings.is_test_environment):
        raise ConfigurationError(
            "Source tenant id and app registration are required to validate legacy credentials",
            config_key="source.tenant_id",
        )

    return JitMigrationService(settings, decryptor, validator, telemetry)
