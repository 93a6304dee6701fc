import pytest
from fastapi.testclient import TestClient

from conftest import build_settings, password_submit_event
from migrationkit.api.v1.api import create_app
from migrationkit.services.jit.jit_migration_service import JitMigrationService

ENDPOINT = "/api/jit-authentication"


class AcceptingValidator:
    async def validate(self, username, password):
        return True

    async def close(self):
        return None


@pytest.fixture
def client(telemetry):
    settings = build_settings()
    service = JitMigrationService(settings, None, AcceptingValidator(), telemetry)
    with TestClient(create_app(settings, jit_service=service)) as test_client:
        yield test_client


def test_get_reports_ready(client):
    response = client.get(ENDPOINT)
    assert response.status_code == 200
    assert response.text == "JIT Authentication Endpoint - Ready"


def test_post_returns_migrate_password_action(client):
    response = client.post(ENDPOINT, json=password_submit_event(password="Legacy#Pass1", nonce="n-1"))

    assert response.status_code == 200
    assert response.json() == {
        "data": {
            "@odata.type": "microsoft.graph.onPasswordSubmitResponseData",
            "actions": [{"@odata.type": "microsoft.graph.passwordsubmit.MigratePassword"}],
            "nonce": "n-1",
        }
    }


def test_post_block_carries_title_and_message(client):
    response = client.post(ENDPOINT, json=password_submit_event(password="weak", nonce="n-2"))

    action = response.json()["data"]["actions"][0]
    assert response.status_code == 200
    assert action["@odata.type"] == "microsoft.graph.passwordsubmit.Block"
    assert action["title"] == "Password Requirements Not Met"
    assert response.json()["data"]["nonce"] == "n-2"


def test_malformed_body_is_still_http_200(client):
    response = client.post(ENDPOINT, content=b"{broken", headers={"Content-Type": "application/json"})

    data = response.json()["data"]
    assert response.status_code == 200
    assert data["actions"][0]["title"] == "Invalid Request"
    assert "nonce" not in data


def test_encrypted_envelope_without_decryptor_blocks(client):
    response = client.post(ENDPOINT, json=password_submit_event(envelope="a.b.c.d.e"))
    assert response.json()["data"]["actions"][0]["title"] == "Decryption Error"


def test_root_route(client):
    assert client.get("/").status_code == 200
