import time

import pytest

from conftest import StaticCredential
from migrationkit.core.settings import AppRegistration, TenantOptions
from migrationkit.exceptions.base_exceptions import ConfigurationError
from migrationkit.services.directory.credential_pool import (
    ClientSecretCredential,
    CredentialPool,
    LeastRecentlyThrottledStrategy,
    ManagedIdentityCredential,
    build_credential_pool,
)
from migrationkit.services.secrets.secret_provider import EnvironmentSecretProvider


def _pool(size, strategy=None):
    return CredentialPool([StaticCredential(client_id=f"app-{i}") for i in range(size)], strategy)


def test_round_robin_cycles_in_order():
    pool = _pool(3)
    assert [pool.next_index() for _ in range(7)] == [0, 1, 2, 0, 1, 2, 0]
    assert pool.next().client_id == "app-1"


def test_single_credential_always_returned():
    pool = _pool(1)
    pool.report_throttled(0, 30)
    assert pool.throttled_until(0) == 0.0
    assert {pool.next_index() for _ in range(5)} == {0}


def test_get_rejects_out_of_range_index():
    pool = _pool(2)
    assert pool.get(1).client_id == "app-1"
    with pytest.raises(IndexError):
        pool.get(2)
    with pytest.raises(IndexError):
        pool.get(-1)


def test_empty_pool_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        CredentialPool([])


def test_least_recently_throttled_skips_cooling_credentials():
    pool = _pool(3, LeastRecentlyThrottledStrategy())
    pool.report_throttled(1, 60)
    assert all(pool.next_index() != 1 for _ in range(6))


def test_least_recently_throttled_falls_back_to_earliest_recovery():
    pool = _pool(2, LeastRecentlyThrottledStrategy())
    pool.report_throttled(0, 60)
    pool.report_throttled(1, 5)
    assert pool.throttled_until(1) < pool.throttled_until(0)
    assert pool.throttled_until(1) > time.monotonic()
    assert pool.next_index() == 1


async def test_close_closes_every_credential():
    credentials = [StaticCredential(), StaticCredential()]
    await CredentialPool(credentials).close()
    assert all(c.closed for c in credentials)


async def test_build_pool_uses_direct_and_stored_secrets():
    tenant = TenantOptions(
        tenant_id="tenant",
        app_registrations=[
            AppRegistration(client_id="direct", client_secret="s1"),
            AppRegistration(client_id="stored", client_secret_name="app-secret"),
            AppRegistration(client_id="disabled", client_secret="s3", enabled=False),
        ],
    )
    provider = EnvironmentSecretProvider(overrides={"app-secret": "s2"}, environ={})

    pool = await build_credential_pool(tenant, provider)

    assert pool.count() == 2
    assert all(isinstance(pool.get(i), ClientSecretCredential) for i in range(2))
    assert [pool.get(i).client_id for i in range(2)] == ["direct", "stored"]


async def test_missing_stored_secret_is_a_configuration_error():
    tenant = TenantOptions(
        tenant_id="tenant",
        app_registrations=[AppRegistration(client_id="stored", client_secret_name="absent")],
    )
    with pytest.raises(ConfigurationError):
        await build_credential_pool(tenant, EnvironmentSecretProvider(environ={}))


async def test_registration_without_secret_uses_managed_identity():
    tenant = TenantOptions(tenant_id="tenant", app_registrations=[AppRegistration(client_id="mi")])
    pool = await build_credential_pool(tenant)
    try:
        assert isinstance(pool.get(0), ManagedIdentityCredential)
    finally:
        await pool.close()


async def test_tenant_without_registrations_is_rejected():
    with pytest.raises(ConfigurationError):
        await build_credential_pool(TenantOptions(tenant_id="tenant"))
