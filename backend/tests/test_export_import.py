import asyncio
import json

import httpx

from conftest import FlakyTokenCredential, build_settings
from migrationkit.exceptions.base_exceptions import StorageError
from migrationkit.services.migration.export_orchestrator import ExportOrchestrator, page_object_name
from migrationkit.services.migration.import_orchestrator import ImportOrchestrator
from migrationkit.services.storage.object_storage import LocalObjectStorage

SOURCE_ID_ATTR = "extension_abc123_B2CObjectId"
FLAG_ATTR = "extension_abc123_RequiresMigration"

CONFLICT = {"error": {"code": "Request_BadRequest", "details": [{"code": "ObjectConflict"}], "message": "exists"}}


def _source_users(count):
    return [
        {
            "id": f"src-{i}",
            "userPrincipalName": f"user{i}@source.onmicrosoft.com",
            "displayName": f"User {i}" if i % 2 else f"Admin {i}",
            "mail": f"user{i}@example.com",
            "identities": [
                {"signInType": "emailAddress", "issuer": "source.onmicrosoft.com", "issuerAssignedId": f"user{i}@example.com"}
            ],
        }
        for i in range(count)
    ]


def _source_handler(users, page_size):
    def handler(request):
        start = int(request.url.params.get("$skiptoken", "0"))
        body = {"value": users[start:start + page_size]}
        if start + page_size < len(users):
            body["@odata.nextLink"] = f"https://graph.microsoft.com/v1.0/users?$skiptoken={start + page_size}"
        return httpx.Response(200, json=body)

    return handler


class TargetTenant:
    """Records create, lookup and patch traffic against the target tenant."""

    def __init__(self, existing=()):
        self.existing = set(existing)
        self.created = []
        self.patches = []

    def __call__(self, request):
        if request.url.path.endswith("batch"):
            responses = []
            for sub in json.loads(request.content)["requests"]:
                body = sub["body"]
                if body["userPrincipalName"] in self.existing:
                    responses.append({"id": sub["id"], "status": 400, "body": CONFLICT})
                else:
                    self.created.append(body)
                    responses.append({"id": sub["id"], "status": 201, "body": {"id": f"tgt-{len(self.created)}"}})
            return httpx.Response(200, json={"responses": responses})
        if request.method == "GET":
            return httpx.Response(200, json={"value": [{"id": "existing-id"}]})
        if request.method == "PATCH":
            self.patches.append((request.url.path, json.loads(request.content)))
            return httpx.Response(204)
        return httpx.Response(404)


async def _export(make_directory_client, storage, settings, telemetry, users, cancel_event=None):
    client = make_directory_client(_source_handler(users, settings.page_size))
    return await ExportOrchestrator(client, storage, settings, telemetry).execute(cancel_event)


def _read_audits(storage: LocalObjectStorage, settings):
    folder = storage.root / settings.storage.import_audit_container
    return [json.loads(p.read_text()) for p in sorted(folder.glob("*.json"))]


async def test_export_then_import_end_to_end(make_directory_client, storage, telemetry):
    settings = build_settings(page_size=2, batch_size=2)

    exported = await _export(make_directory_client, storage, settings, telemetry, _source_users(5))

    assert exported.success
    assert exported.summary.total_items == 5
    assert await storage.list("user-exports") == [page_object_name("users_", n) for n in range(3)]
    first_page = json.loads(await storage.read("user-exports", "users_000000.json"))
    assert [u["id"] for u in first_page] == ["src-0", "src-1"]

    target = TargetTenant()
    imported = await ImportOrchestrator(make_directory_client(target), storage, settings, telemetry).execute()

    assert imported.success
    assert imported.summary.success_count == 5
    assert len(target.created) == 5
    created = target.created[0]
    assert created["userPrincipalName"] == "user0@target.onmicrosoft.com"
    assert created[SOURCE_ID_ATTR] == "src-0"
    assert created[FLAG_ATTR] is True
    assert created["identities"][0]["issuer"] == "target.onmicrosoft.com"
    assert telemetry.get_counter("Import.BlobsProcessed") == 3

    audits = _read_audits(storage, settings)
    assert len(audits) == 3
    assert audits[0]["successful_users"][0]["target_object_id"] == "tgt-1"
    assert audits[0]["successful_users"][0]["source_object_id"] == "src-0"
    assert telemetry.get_counter("Import.AuditLogsSaved") == 3


async def test_duplicates_are_skipped_and_reconciled(make_directory_client, storage, telemetry):
    settings = build_settings(
        import_options={"migration_attributes": {"overwrite_extension_attributes": True}},
    )
    await _export(make_directory_client, storage, settings, telemetry, _source_users(3))

    target = TargetTenant(existing={"user1@target.onmicrosoft.com"})
    result = await ImportOrchestrator(make_directory_client(target), storage, settings, telemetry).execute()

    assert result.success
    assert result.summary.success_count == 2
    assert result.summary.skipped_count == 1
    assert target.patches == [("/v1.0/users/existing-id", {SOURCE_ID_ATTR: "src-1", FLAG_ATTR: True})]

    audit = _read_audits(storage, settings)[0]
    assert audit["skipped_users"][0]["user_principal_name"] == "user1@target.onmicrosoft.com"
    assert audit["skipped_users"][0]["error_message"] == "Duplicate - user already exists"


async def test_duplicates_left_alone_without_overwrite(make_directory_client, storage, telemetry, settings):
    await _export(make_directory_client, storage, settings, telemetry, _source_users(2))
    target = TargetTenant(existing={"user0@target.onmicrosoft.com"})

    result = await ImportOrchestrator(make_directory_client(target), storage, settings, telemetry).execute()

    assert result.success
    assert target.patches == []


async def test_failed_creates_make_the_run_partial(make_directory_client, storage, telemetry, settings):
    await _export(make_directory_client, storage, settings, telemetry, _source_users(2))

    def handler(request):
        requests = json.loads(request.content)["requests"]
        return httpx.Response(200, json={"responses": [
            {"id": requests[0]["id"], "status": 201, "body": {"id": "ok"}},
            {"id": requests[1]["id"], "status": 400, "body": {"error": {"message": "Property invalid"}}},
        ]})

    result = await ImportOrchestrator(make_directory_client(handler), storage, settings, telemetry).execute()

    assert not result.success
    assert result.exception is None
    assert result.summary.success_count == 1
    assert result.summary.failure_count == 1
    audit = _read_audits(storage, settings)[0]
    assert audit["failed_users"][0]["error_message"] == "Property invalid"
    assert audit["failed_users"][0]["status_code"] == 400


async def test_corrupt_page_is_counted_and_others_continue(make_directory_client, storage, telemetry, settings):
    await _export(make_directory_client, storage, settings, telemetry, _source_users(2))
    await storage.write("user-exports", "users_000001.json", b"{not json")
    target = TargetTenant()

    result = await ImportOrchestrator(make_directory_client(target), storage, settings, telemetry).execute()

    assert not result.success
    assert result.summary.success_count == 2
    assert result.summary.failure_count == 0
    assert result.summary.page_failure_count == 1
    assert len(target.created) == 2

    error_keys = await storage.list(settings.storage.error_container)
    assert len(error_keys) == 1
    assert error_keys[0].startswith("page-error_users_000001_")
    record = json.loads(await storage.read(settings.storage.error_container, error_keys[0]))
    assert record["source_blob_name"] == "users_000001.json"
    assert record["users_in_page"] is None
    assert record["raw_excerpt"] == "{not json"
    assert telemetry.get_counter("Import.PageErrorsSaved") == 1


async def test_unreachable_token_endpoint_fails_users_and_still_audits(make_directory_client, storage, telemetry, settings):
    await _export(make_directory_client, storage, settings, telemetry, _source_users(2))
    credential = FlakyTokenCredential([OSError("token endpoint unreachable")] * 2)
    client = make_directory_client(TargetTenant(), max_retries=1, credentials=[credential])

    result = await ImportOrchestrator(client, storage, settings, telemetry).execute()

    assert not result.success
    assert result.exception is None
    assert result.summary.failure_count == 2
    assert result.summary.page_failure_count == 0
    audit = _read_audits(storage, settings)[0]
    assert audit["failure_count"] == 2
    assert [u["source_object_id"] for u in audit["failed_users"]] == ["src-0", "src-1"]


async def test_empty_page_is_skipped(make_directory_client, storage, telemetry, settings):
    await storage.ensure_container("user-exports")
    await storage.write("user-exports", "users_000000.json", b"[]")

    result = await ImportOrchestrator(make_directory_client(TargetTenant()), storage, settings, telemetry).execute()

    assert result.success
    assert result.summary.total_items == 0


class AuditlessStorage(LocalObjectStorage):
    async def write(self, container, key, data, overwrite=True):
        if container == "import-audit":
            raise StorageError("audit store unavailable", container=container)
        await super().write(container, key, data, overwrite)


async def test_audit_write_failure_does_not_fail_import(make_directory_client, tmp_path, telemetry, settings):
    storage = AuditlessStorage(tmp_path / "auditless")
    await _export(make_directory_client, storage, settings, telemetry, _source_users(2))

    result = await ImportOrchestrator(make_directory_client(TargetTenant()), storage, settings, telemetry).execute()

    assert result.success
    assert result.summary.success_count == 2
    assert telemetry.get_counter("Import.AuditLogsSaved") == 0


async def test_import_stops_when_cancelled(make_directory_client, storage, telemetry):
    settings = build_settings(page_size=1)
    await _export(make_directory_client, storage, settings, telemetry, _source_users(3))
    cancel = asyncio.Event()
    cancel.set()

    result = await ImportOrchestrator(make_directory_client(TargetTenant()), storage, settings, telemetry).execute(cancel)

    assert not result.success
    assert result.cancelled
    assert result.error_message == "Import cancelled"


async def test_export_respects_max_users(make_directory_client, storage, telemetry):
    settings = build_settings(page_size=2, export_options={"max_users": 3})

    result = await _export(make_directory_client, storage, settings, telemetry, _source_users(10))

    assert result.success
    assert result.summary.total_items == 3
    pages = await storage.list("user-exports")
    assert len(pages) == 2
    assert len(json.loads(await storage.read("user-exports", pages[-1]))) == 1
    assert telemetry.get_counter("Export.UsersExported") == 3


async def test_export_filter_matches_display_name(make_directory_client, storage, telemetry):
    settings = build_settings(export_options={"filter_pattern": " ADMIN "})

    result = await _export(make_directory_client, storage, settings, telemetry, _source_users(4))

    assert result.summary.total_items == 2
    page = json.loads(await storage.read("user-exports", "users_000000.json"))
    assert [u["displayName"] for u in page] == ["Admin 0", "Admin 2"]


async def test_export_keeps_existing_pages_without_overwrite(make_directory_client, storage, telemetry):
    settings = build_settings(export_options={"overwrite_existing": False})
    await storage.ensure_container("user-exports")
    await storage.write("user-exports", "users_000000.json", b"[]")

    result = await _export(make_directory_client, storage, settings, telemetry, _source_users(2))

    assert result.success
    assert await storage.read("user-exports", "users_000000.json") == b"[]"


async def test_export_cancel_stops_after_current_page(make_directory_client, storage, telemetry):
    settings = build_settings(page_size=1)
    cancel = asyncio.Event()
    cancel.set()

    result = await _export(make_directory_client, storage, settings, telemetry, _source_users(3), cancel)

    assert not result.success
    assert result.cancelled
    assert await storage.list("user-exports") == ["users_000000.json"]


async def test_export_fetch_failure_fails_the_run(make_directory_client, storage, telemetry, settings):
    client = make_directory_client(lambda request: httpx.Response(403, json={"error": {"message": "denied"}}))

    result = await ExportOrchestrator(client, storage, settings, telemetry).execute()

    assert not result.success
    assert result.exception is not None
    assert result.summary.page_failure_count == 1
    assert result.summary.failure_count == 0
