import base64
import json
from typing import Callable, Dict, List, Optional

import httpx
import pytest
from jose import jwe

from migrationkit.core.settings import MigrationSettings
from migrationkit.services.directory.credential_pool import Credential, CredentialPool
from migrationkit.services.directory.graph_client import GRAPH_BASE_URL, DirectoryClient
from migrationkit.services.directory.retry_manager import RetryConfig, RetryManager
from migrationkit.services.jit.key_manager import RsaKeyManager
from migrationkit.services.storage.object_storage import LocalObjectStorage
from migrationkit.services.telemetry.telemetry_service import LoggingTelemetryService


class StaticCredential(Credential):
    def __init__(self, client_id: str = "app-1", token: str = "test-token"):
        self.client_id = client_id
        self.token = token
        self.closed = False

    async def get_token(self) -> str:
        return self.token

    async def close(self) -> None:
        self.closed = True


class FlakyTokenCredential(StaticCredential):
    """Raises the queued exceptions from ``get_token`` before handing out tokens."""

    def __init__(self, failures):
        super().__init__()
        self.failures = list(failures)
        self.calls = 0

    async def get_token(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.token


class RecordingSleep:
    """Stands in for asyncio.sleep so back-off delays are recorded, not waited."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def telemetry() -> LoggingTelemetryService:
    return LoggingTelemetryService()


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_directory_client(telemetry, no_sleep) -> Callable[..., DirectoryClient]:
    """Directory client whose HTTP traffic is answered by ``handler``."""

    def factory(handler, max_retries: int = 5, credentials: Optional[List[Credential]] = None, timeout: float = 5.0):
        pool = CredentialPool(credentials or [StaticCredential()])
        retry_manager = RetryManager(
            RetryConfig(max_retries=max_retries, jitter=False, operation_timeout=timeout),
            telemetry=telemetry,
            sleep=no_sleep,
        )
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=GRAPH_BASE_URL)
        return DirectoryClient(pool, retry_manager=retry_manager, telemetry=telemetry, http_client=http_client)

    return factory


@pytest.fixture
def storage(tmp_path) -> LocalObjectStorage:
    return LocalObjectStorage(tmp_path / "storage")


def build_settings(**overrides) -> MigrationSettings:
    data: Dict = {
        "app_env": "test",
        "source": {
            "tenant_id": "source-tenant-id",
            "tenant_domain": "source.onmicrosoft.com",
            "app_registrations": [{"client_id": "source-app", "client_secret": "source-secret"}],
        },
        "target": {
            "tenant_id": "target-tenant-id",
            "tenant_domain": "target.onmicrosoft.com",
            "extension_app_id": "abc123",
            "app_registrations": [{"client_id": "target-app", "client_secret": "target-secret"}],
        },
        "storage": {"local_root": "unused"},
        "jit": {"use_key_vault": False},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return MigrationSettings(_env_file=None, **data)


@pytest.fixture
def settings() -> MigrationSettings:
    return build_settings()


@pytest.fixture(scope="session")
def rsa_keys():
    return RsaKeyManager.generate_key_pair(2048)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def make_envelope(public_pem: str, password: Optional[str], nonce: Optional[str] = "nonce-123") -> str:
    """Encrypted password context as the directory service sends it: JWE around an unsigned JWS."""
    claims = {}
    if password is not None:
        claims["user-password"] = password
    if nonce is not None:
        claims["nonce"] = nonce
    header = _b64url(json.dumps({"alg": "none", "typ": "JWT"}).encode("utf-8"))
    body = _b64url(json.dumps(claims).encode("utf-8"))
    inner = f"{header}.{body}."
    token = jwe.encrypt(inner.encode("ascii"), public_pem, algorithm="RSA-OAEP-256", encryption="A256GCM")
    return token.decode("ascii") if isinstance(token, bytes) else token


def password_submit_event(
    user_id: Optional[str] = "target-user-id",
    upn: Optional[str] = "alice@target.onmicrosoft.com",
    password: Optional[str] = None,
    nonce: Optional[str] = None,
    envelope: Optional[str] = None,
) -> Dict:
    data: Dict = {
        "tenantId": "target-tenant-id",
        "authenticationContext": {
            "correlationId": "corr-1",
            "user": {"id": user_id, "userPrincipalName": upn},
        },
    }
    if envelope is not None:
        data["encryptedPasswordContext"] = envelope
    elif password is not None or nonce is not None:
        data["passwordContext"] = {"userPassword": password, "nonce": nonce}
    return {"type": "microsoft.graph.authenticationEvent.passwordSubmit", "data": data}
