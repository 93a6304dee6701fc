import json

import httpx
import pytest
from azure.core.exceptions import ClientAuthenticationError

from conftest import FlakyTokenCredential, StaticCredential
from migrationkit.exceptions.directory_exceptions import DirectoryError
from migrationkit.models.user_profile import UserProfile
from migrationkit.services.directory.graph_client import (
    extract_skip_token,
    is_duplicate_conflict,
    parse_retry_after,
)

CONFLICT_BODY = {
    "error": {
        "code": "Request_BadRequest",
        "message": "Another object with the same value for property userPrincipalName already exists.",
        "details": [{"code": "ObjectConflict", "target": "userPrincipalName"}],
    }
}


def _profiles(count):
    return [UserProfile(id=f"src-{i}", user_principal_name=f"user{i}@target.onmicrosoft.com") for i in range(count)]


def _batch_handler(duplicates=(), calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer test-token"
        body = json.loads(request.content)
        if calls is not None:
            calls.append(body)
        responses = []
        for sub in body["requests"]:
            upn = sub["body"]["userPrincipalName"]
            if upn in duplicates:
                responses.append({"id": sub["id"], "status": 400, "body": CONFLICT_BODY})
            else:
                responses.append({"id": sub["id"], "status": 201, "body": {"id": f"new-{upn}"}})
        return httpx.Response(200, json={"responses": responses})

    return handler


async def test_batch_create_counts_duplicates_as_skipped(make_directory_client, telemetry):
    profiles = _profiles(25)
    duplicates = {profiles[i].user_principal_name for i in (2, 17, 23)}
    calls = []
    client = make_directory_client(_batch_handler(duplicates, calls))

    result = await client.create_users_batch(profiles)

    assert [len(call["requests"]) for call in calls] == [20, 5]
    assert calls[0]["requests"][0]["body"]["userType"] == "Member"
    assert "id" not in calls[0]["requests"][0]["body"]
    assert result.total_items == 25
    assert result.success_count == 22
    assert result.skipped_count == 3
    assert result.failure_count == 0
    assert result.success_count + result.skipped_count == 25
    assert [p.user_principal_name for p in result.duplicate_users] == [profiles[i].user_principal_name for i in (2, 17, 23)]
    assert result.created_user_ids[24] == "new-user24@target.onmicrosoft.com"
    assert 23 not in result.created_user_ids
    assert telemetry.get_counter("GraphClient.UserCreatedBatch") == 22


async def test_failed_sub_requests_are_failures(make_directory_client):
    def handler(request):
        requests = json.loads(request.content)["requests"]
        return httpx.Response(
            200,
            json={
                "responses": [
                    {"id": requests[0]["id"], "status": 201, "body": {"id": "a"}},
                    {"id": requests[1]["id"], "status": 400, "body": {"error": {"code": "Request_BadRequest", "message": "bad mail"}}},
                ]
            },
        )

    result = await make_directory_client(handler).create_users_batch(_profiles(2))

    assert result.success_count == 1
    assert result.failure_count == 1
    assert result.failures[0].index == 1
    assert result.failures[0].error_message == "bad mail"
    assert result.failures[0].status_code == 400


async def test_whole_batch_failure_marks_every_profile_failed(make_directory_client):
    client = make_directory_client(lambda request: httpx.Response(403, json={"error": {"message": "Forbidden"}}))

    result = await client.create_users_batch(_profiles(3))

    assert result.failure_count == 3
    assert result.success_count == 0
    assert [f.index for f in result.failures] == [0, 1, 2]


async def test_throttled_batch_is_retried(make_directory_client, telemetry, no_sleep):
    attempts = []
    ok = _batch_handler()

    def handler(request):
        attempts.append(1)
        if len(attempts) <= 2:
            return httpx.Response(429, headers={"Retry-After": "3"}, json={"error": {"code": "TooManyRequests"}})
        return ok(request)

    result = await make_directory_client(handler).create_users_batch(_profiles(2))

    assert result.success_count == 2
    assert len(attempts) == 3
    assert no_sleep.delays == [3.0, 3.0]
    assert telemetry.get_counter("GraphClient.Retries") == 2


async def test_token_network_failure_is_retried(make_directory_client, no_sleep):
    credential = FlakyTokenCredential([OSError("connection reset by token endpoint")])
    client = make_directory_client(_batch_handler(), credentials=[credential])

    result = await client.create_users_batch(_profiles(3))

    assert result.success_count == 3
    assert result.failure_count == 0
    assert credential.calls == 2
    assert len(no_sleep.delays) == 1


async def test_persistent_token_failure_marks_batch_failed(make_directory_client):
    credential = FlakyTokenCredential([OSError("unreachable")] * 3)
    client = make_directory_client(_batch_handler(), max_retries=2, credentials=[credential])

    result = await client.create_users_batch(_profiles(4))

    assert credential.calls == 3
    assert result.total_items == 4
    assert result.failure_count == 4
    assert result.success_count == 0


async def test_rejected_credential_is_not_retried(make_directory_client, no_sleep):
    credential = FlakyTokenCredential([ClientAuthenticationError("invalid_client")])
    client = make_directory_client(_batch_handler(), credentials=[credential])

    with pytest.raises(DirectoryError) as info:
        await client.create_user(_profiles(1)[0])

    assert info.value.status_code == 401
    assert credential.calls == 1
    assert no_sleep.delays == []


async def test_list_users_follows_skip_token(make_directory_client, telemetry):
    seen_params = []

    def handler(request):
        seen_params.append(dict(request.url.params))
        if "$skiptoken" not in request.url.params:
            return httpx.Response(
                200,
                json={
                    "value": [{"id": "1", "userPrincipalName": "a@source.onmicrosoft.com", "extension_x_Tier": "gold"}],
                    "@odata.nextLink": "https://graph.microsoft.com/v1.0/users?$top=1&$skiptoken=abc",
                },
            )
        return httpx.Response(200, json={"value": [{"id": "2", "userPrincipalName": "b@source.onmicrosoft.com"}]})

    client = make_directory_client(handler)
    first = await client.list_users(page_size=1, select="id,userPrincipalName")
    second = await client.list_users(page_size=1, page_token=first.next_page_token)

    assert first.next_page_token == "abc"
    assert first.items[0].extension_attributes == {"extension_x_Tier": "gold"}
    assert second.next_page_token is None
    assert seen_params[0]["$top"] == "1"
    assert seen_params[0]["$select"] == "id,userPrincipalName"
    assert seen_params[1]["$skiptoken"] == "abc"
    assert telemetry.get_counter("GraphClient.GetUsers") == 2


async def test_get_user_by_id_returns_none_on_404(make_directory_client):
    client = make_directory_client(lambda request: httpx.Response(404, json={"error": {"code": "Request_ResourceNotFound"}}))
    assert await client.get_user_by_id("missing") is None


async def test_get_user_by_id_raises_other_errors(make_directory_client):
    client = make_directory_client(lambda request: httpx.Response(401, json={"error": {"message": "nope"}}))
    with pytest.raises(DirectoryError) as excinfo:
        await client.get_user_by_id("x")
    assert excinfo.value.status_code == 401


async def test_find_user_by_upn_escapes_quotes(make_directory_client):
    filters = []

    def handler(request):
        filters.append(request.url.params["$filter"])
        return httpx.Response(200, json={"value": []})

    assert await make_directory_client(handler).find_user_by_upn("o'neil@target.onmicrosoft.com") is None
    assert filters == ["userPrincipalName eq 'o''neil@target.onmicrosoft.com'"]


async def test_find_user_by_extension_attribute(make_directory_client):
    def handler(request):
        assert request.url.params["$filter"] == "extension_abc_B2CObjectId eq 'src-1'"
        return httpx.Response(200, json={"value": [{"id": "t-1"}]})

    user = await make_directory_client(handler).find_user_by_extension_attribute("extension_abc_B2CObjectId", "src-1")
    assert user.id == "t-1"


async def test_set_password_and_update_user(make_directory_client, telemetry):
    requests = []

    def handler(request):
        requests.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(204)

    client = make_directory_client(handler)
    await client.set_password("u1", "N3w!Password")
    await client.update_user("u1", {"extension_abc_RequiresMigration": False})

    assert requests[0] == (
        "PATCH",
        "/v1.0/users/u1",
        {"passwordProfile": {"password": "N3w!Password", "forceChangePasswordNextSignIn": False}},
    )
    assert requests[1][2] == {"extension_abc_RequiresMigration": False}
    assert telemetry.get_counter("GraphClient.PasswordSet") == 1
    assert telemetry.get_counter("GraphClient.UserUpdated") == 1


async def test_throttling_is_reported_to_the_pool(make_directory_client):
    attempts = []

    def handler(request):
        attempts.append(request.headers["Authorization"])
        if len(attempts) == 1:
            return httpx.Response(429, headers={"Retry-After": "30"})
        return httpx.Response(200, json={"value": []})

    client = make_directory_client(handler, credentials=[StaticCredential("a", "t-a"), StaticCredential("b", "t-b")])
    await client.list_users()

    assert attempts == ["Bearer t-a", "Bearer t-b"]
    assert client.credential_pool.throttled_until(0) > 0
    assert client.credential_pool.throttled_until(1) == 0


def test_duplicate_detection_prefers_structured_code():
    assert is_duplicate_conflict(400, CONFLICT_BODY)
    assert is_duplicate_conflict(409, {"error": {"code": "ObjectConflict"}})
    assert not is_duplicate_conflict(500, CONFLICT_BODY)
    assert not is_duplicate_conflict(400, {"error": {"code": "Request_BadRequest", "message": "bad"}})


def test_duplicate_detection_falls_back_to_message_phrases():
    body = "ObjectConflict: userPrincipalName already exists"
    assert is_duplicate_conflict(400, body)
    assert not is_duplicate_conflict(400, "userPrincipalName already exists")


def test_retry_after_parsing():
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


def test_extract_skip_token():
    assert extract_skip_token("https://graph.microsoft.com/v1.0/users?$skiptoken=X%2BY") == "X+Y"
    assert extract_skip_token("https://graph.microsoft.com/v1.0/users?$top=5") is None
    assert extract_skip_token(None) is None
