import json

import pytest

from conftest import build_settings
from migrationkit.core.factory import (
    create_jit_service,
    create_message_queue,
    create_object_storage,
    create_secret_provider,
    resolve_client_secret,
)
from migrationkit.core.settings import MigrationSettings, TenantOptions
from migrationkit.exceptions.base_exceptions import ConfigurationError
from migrationkit.services.secrets.secret_provider import EnvironmentSecretProvider
from migrationkit.services.storage.object_storage import LocalObjectStorage
from migrationkit.services.storage.queue_client import InMemoryMessageQueue


def test_validation_report_covers_each_pipeline(settings):
    is_valid, report = settings.validate_all_configurations()
    assert report["export"]["valid"]
    assert report["import"]["valid"]
    assert not report["jit"]["valid"]
    assert not is_valid
    assert report["overall_valid"] is False


def test_dashed_extension_app_id_fails_import_validation():
    settings = build_settings(target={"extension_app_id": "abc-123"})
    valid, errors = settings.validate_import_config()
    assert not valid
    assert any("dashes" in error for error in errors)


def test_missing_source_fails_export_validation():
    settings = build_settings(source={"tenant_id": "", "app_registrations": []})
    valid, errors = settings.validate_export_config()
    assert not valid
    assert len(errors) == 2


def test_test_mode_outside_test_environment_is_reported():
    settings = build_settings(app_env="production", jit={"use_key_vault": False, "test_mode": True})
    _, report = settings.validate_all_configurations()
    assert "will be refused" in report["warnings"][0]
    assert not settings.is_test_environment


def test_authority_is_derived_from_tenant_id():
    assert TenantOptions(tenant_id="t1").authority == "https://login.microsoftonline.com/t1"


def test_settings_load_from_json_file(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({
        "app_env": "TEST",
        "target": {"tenant_domain": "t.onmicrosoft.com", "extension_app_id": "abc"},
        "batch_size": 50,
    }))

    settings = MigrationSettings.from_json_file(path)

    assert settings.app_env == "test"
    assert settings.batch_size == 50
    assert settings.target.extension_app_id == "abc"
    assert settings.target.password_policy.min_length == 8


def test_factory_selects_local_backends(tmp_path):
    settings = build_settings(storage={"local_root": str(tmp_path)})
    assert isinstance(create_object_storage(settings), LocalObjectStorage)
    assert isinstance(create_message_queue(settings), InMemoryMessageQueue)
    assert isinstance(create_secret_provider(settings), EnvironmentSecretProvider)


def test_factory_requires_storage_location():
    with pytest.raises(ConfigurationError):
        create_object_storage(build_settings(storage={"local_root": None}))


def test_factory_requires_vault_uri_when_enabled():
    with pytest.raises(ConfigurationError):
        create_secret_provider(build_settings(key_vault={"enabled": True}))


async def test_resolve_client_secret_prefers_direct_secret():
    tenant = TenantOptions(tenant_id="t", app_registrations=[{"client_id": "c", "client_secret": "s"}])
    assert await resolve_client_secret(tenant, None) == ("c", "s")


async def test_resolve_client_secret_requires_a_secret():
    tenant = TenantOptions(tenant_id="t", app_registrations=[{"client_id": "c"}])
    with pytest.raises(ConfigurationError):
        await resolve_client_secret(tenant, None)


async def test_jit_service_wiring(rsa_keys, telemetry):
    settings = build_settings(jit={"use_key_vault": False, "inline_rsa_private_key": rsa_keys[0]})

    service = await create_jit_service(settings, telemetry)
    try:
        assert service.validator.token_endpoint.endswith("/source-tenant-id/oauth2/v2.0/token")
        await service.warm_up()
        assert service.decryptor.private_key.is_loaded
    finally:
        await service.close()


async def test_jit_service_needs_source_tenant_outside_test_mode(rsa_keys, telemetry):
    settings = build_settings(
        source={"tenant_id": ""},
        jit={"use_key_vault": False, "inline_rsa_private_key": rsa_keys[0]},
    )
    with pytest.raises(ConfigurationError):
        await create_jit_service(settings, telemetry)


async def test_jit_service_without_key_source_fails(telemetry):
    with pytest.raises(ConfigurationError):
        await create_jit_service(build_settings(), telemetry)
