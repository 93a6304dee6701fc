"""
Migration engine configuration.

Settings are read from the environment (and ``.env``) using ``__`` as the
nested delimiter, e.g. ``MIGRATION_TARGET__EXTENSION_APP_ID``. A JSON file
with the same shape can be loaded with ``MigrationSettings.from_json_file``.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple, List, Dict, Any, Union

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
TEST_ENVIRONMENTS = frozenset({"development", "dev", "local", "test", "testing"})


class AppRegistration(BaseModel):
    """One app identity used to call the directory API."""

    client_id: str = Field(..., description="Application (client) ID")
    client_secret: Optional[str] = Field(None, description="Client secret, for local runs")
    client_secret_name: Optional[str] = Field(
        None, description="Name of the client secret in the secret store"
    )
    name: Optional[str] = None
    enabled: bool = True


class PasswordPolicy(BaseModel):
    """Target tenant password complexity policy."""

    min_length: int = Field(8, ge=1)
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_special: bool = True


class TenantOptions(BaseModel):
    """Directory tenant connection settings."""

    tenant_id: str = ""
    tenant_domain: str = ""
    authority: Optional[str] = None
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    scopes: List[str] = Field(default_factory=lambda: [GRAPH_DEFAULT_SCOPE])
    app_registrations: List[AppRegistration] = Field(default_factory=list)

    @model_validator(mode="after")
    def build_authority_url(self) -> "TenantOptions":
        """Build authority URL if not provided."""
        if not self.authority and self.tenant_id:
            self.authority = f"https://login.microsoftonline.com/{self.tenant_id}"
        return self

    @property
    def enabled_registrations(self) -> List[AppRegistration]:
        return [app for app in self.app_registrations if app.enabled]


class TargetTenantOptions(TenantOptions):
    """Target tenant settings; adds the extension app and password policy."""

    extension_app_id: str = Field("", description="Extension app id without dashes")
    password_policy: PasswordPolicy = Field(default_factory=PasswordPolicy)


class StorageOptions(BaseModel):
    connection_string_or_uri: Optional[str] = None
    use_managed_identity: bool = False
    local_root: Optional[str] = Field(
        None, description="Use a filesystem store rooted here instead of Blob Storage"
    )
    export_container: str = "user-exports"
    import_audit_container: str = "import-audit"
    error_container: str = "migration-errors"
    profile_sync_queue: str = "profile-updates"
    export_blob_prefix: str = "users_"


class KeyVaultOptions(BaseModel):
    enabled: bool = False
    vault_uri: Optional[str] = None
    secret_cache_minutes: int = Field(60, ge=0)


class RetryOptions(BaseModel):
    """Retry policy for directory API calls."""

    max_retries: int = Field(5, ge=0, le=20)
    initial_delay_ms: int = Field(1000, ge=0)
    max_delay_ms: int = Field(30000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    use_retry_after_header: bool = True
    operation_timeout_seconds: float = Field(120, gt=0)
    retryable_status_codes: List[int] = Field(default_factory=lambda: [429, 500, 502, 503, 504])


class ExportOptions(BaseModel):
    select_fields: str = (
        "id,userPrincipalName,displayName,givenName,surname,mail,otherMails,"
        "mobilePhone,streetAddress,city,state,postalCode,country,accountEnabled,identities"
    )
    max_users: Optional[int] = Field(None, ge=1)
    filter_pattern: Optional[str] = None
    overwrite_existing: bool = True


class MigrationAttributeOptions(BaseModel):
    """Migration-tracking attributes written on every imported user."""

    store_source_object_id: bool = True
    source_object_id_target: Optional[str] = None
    set_require_migration: bool = True
    require_migration_target: Optional[str] = None
    overwrite_extension_attributes: bool = False
    use_email_otp: bool = False


class ImportOptions(BaseModel):
    attribute_mappings: Dict[str, str] = Field(default_factory=dict)
    exclude_fields: List[str] = Field(default_factory=list)
    migration_attributes: MigrationAttributeOptions = Field(default_factory=MigrationAttributeOptions)


class JitOptions(BaseModel):
    rsa_key_name: str = "JIT-RSA-PrivateKey"
    use_key_vault: bool = True
    inline_rsa_private_key: Optional[str] = None
    timeout_seconds: float = Field(1.5, gt=0)
    cache_private_key: bool = True
    test_mode: bool = False
    nonce_replay_window_seconds: int = Field(0, ge=0)
    nonce_cache_size: int = Field(10000, ge=1)


class MigrationSettings(BaseSettings):
    # App Settings
    app_env: str = "production"
    verbose_logging: bool = False

    # Tenants
    source: TenantOptions = Field(default_factory=TenantOptions)
    target: TargetTenantOptions = Field(default_factory=TargetTenantOptions)

    # Infrastructure
    storage: StorageOptions = Field(default_factory=StorageOptions)
    key_vault: KeyVaultOptions = Field(default_factory=KeyVaultOptions)
    retry: RetryOptions = Field(default_factory=RetryOptions)

    # Pipelines
    export_options: ExportOptions = Field(default_factory=ExportOptions)
    import_options: ImportOptions = Field(default_factory=ImportOptions)
    jit: JitOptions = Field(default_factory=JitOptions)

    batch_size: int = Field(100, ge=1, le=1000)
    page_size: int = Field(100, ge=1, le=999)
    batch_delay_ms: int = Field(0, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="MIGRATION_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("app_env", mode="before")
    @classmethod
    def normalize_app_env(cls, v: Optional[str]) -> str:
        return (v or "production").strip().lower()

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "MigrationSettings":
        """Load settings from a JSON file; environment values fill the gaps."""
        with open(path, "r", encoding="utf-8") as handle:
            data: Dict[str, Any] = json.load(handle)
        return cls(**data)

    @property
    def is_test_environment(self) -> bool:
        return self.app_env in TEST_ENVIRONMENTS

    def validate_import_config(self) -> Tuple[bool, List[str]]:
        """
        Validate the settings the import pipeline depends on.

        Returns:
            Tuple of (is_valid, error_messages)
        """
        errors = []
        app_id = self.target.extension_app_id

        if not app_id:
            errors.append("target.extension_app_id is required for import")
        elif "-" in app_id:
            errors.append(
                "target.extension_app_id must not contain dashes; "
                "use the application id with '-' removed"
            )

        if not self.target.tenant_domain:
            errors.append("target.tenant_domain is required for import")

        if not self.target.enabled_registrations:
            errors.append("target tenant needs at least one enabled app registration")

        return len(errors) == 0, errors

    def validate_export_config(self) -> Tuple[bool, List[str]]:
        errors = []
        if not self.source.tenant_id:
            errors.append("source.tenant_id is required for export")
        if not self.source.enabled_registrations:
            errors.append("source tenant needs at least one enabled app registration")
        return len(errors) == 0, errors

    def validate_jit_config(self) -> Tuple[bool, List[str]]:
        errors = []
        if not self.source.tenant_id:
            errors.append("source.tenant_id is required to validate legacy credentials")
        if not self.source.tenant_domain:
            errors.append("source.tenant_domain is required to reverse the UPN transform")
        if not self.source.enabled_registrations:
            errors.append("source tenant needs an app registration for password validation")
        if not self.jit.inline_rsa_private_key and not self.jit.use_key_vault:
            errors.append("jit needs either inline_rsa_private_key or use_key_vault")
        if self.jit.use_key_vault and not self.jit.inline_rsa_private_key and not self.jit.rsa_key_name:
            errors.append("jit.rsa_key_name is required when the key comes from the secret store")
        return len(errors) == 0, errors

    def validate_all_configurations(self) -> Tuple[bool, Dict[str, Any]]:
        """
        Validate every pipeline's configuration.

        Returns:
            Tuple of (is_valid, validation_report)
        """
        report: Dict[str, Any] = {"overall_valid": True}
        for name, check in (
            ("export", self.validate_export_config),
            ("import", self.validate_import_config),
            ("jit", self.validate_jit_config),
        ):
            valid, errors = check()
            report[name] = {"valid": valid, "errors": errors}
            if not valid:
                report["overall_valid"] = False
        if self.jit.test_mode and not self.is_test_environment:
            report.setdefault("warnings", []).append(
                f"jit.test_mode is set in '{self.app_env}' and will be refused"
            )
        return report["overall_valid"], report


@lru_cache()
def get_settings() -> MigrationSettings:
    return MigrationSettings()
