"""
Import pipeline: read exported pages, transform each user, create them in
the target tenant in batches and write one audit record per batch.
"""

import asyncio
import json
import time
from typing import List, Optional, Sequence, Set

from pydantic import TypeAdapter

from logconfig.logger import get_logger, get_context_filter
from migrationkit.core.settings import MigrationSettings
from migrationkit.models.audit import AuditUserRecord, ImportAuditLog, PageErrorRecord
from migrationkit.models.batch_result import BatchResult
from migrationkit.models.run_summary import ExecutionResult, RunSummary
from migrationkit.models.user_profile import UserProfile
from migrationkit.services.directory.graph_client import DirectoryClient
from migrationkit.services.migration.user_transformer import UserTransformer
from migrationkit.services.storage.object_storage import ObjectStorage
from migrationkit.services.telemetry.telemetry_service import TelemetryService

logger = get_logger()
context_filter = get_context_filter()

_user_list = TypeAdapter(List[UserProfile])
PAGE_ERROR_EXCERPT_BYTES = 2048


def chunked(items: Sequence, size: int):
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class ImportOrchestrator:
    """
    Drives the import run.

    A failing page is counted and skipped so the remaining pages still run;
    a failing audit write is logged and never fails the import. The
    extension app id is validated when the orchestrator is built, so a bad
    value stops the process before any user is touched.
    """

    def __init__(
        self,
        directory_client: DirectoryClient,
        storage: ObjectStorage,
        settings: MigrationSettings,
        telemetry: TelemetryService,
        transformer: Optional[UserTransformer] = None,
    ):
        self.directory_client = directory_client
        self.storage = storage
        self.settings = settings
        self.telemetry = telemetry
        self.transformer = transformer or UserTransformer(
            settings.import_options,
            settings.target.extension_app_id,
            settings.target.tenant_domain,
            verbose=settings.verbose_logging,
        )

    def _log_configuration(self) -> None:
        options = self.settings.import_options
        migration = options.migration_attributes
        logger.info("Import configuration:")
        logger.info(f"  - Attribute mappings: {len(options.attribute_mappings)}")
        logger.info(f"  - Exclude fields: {len(options.exclude_fields)}")
        if migration.store_source_object_id:
            logger.info(f"  - Source object id target: {self.transformer.source_object_id_attribute}")
        if migration.set_require_migration:
            logger.info(f"  - Migration flag target: {self.transformer.require_migration_attribute} (set to true)")
        for source, target in options.attribute_mappings.items():
            logger.info(f"  - {source} -> {target}")
        logger.warning(
            "Target custom attributes must already exist in the target tenant; "
            "creates fail for users carrying unknown extension attributes."
        )

    async def execute(self, cancel_event: Optional[asyncio.Event] = None) -> ExecutionResult:
        summary = RunSummary(operation_name="External ID User Import")
        storage_options = self.settings.storage
        retries_before = self.directory_client.retry_manager.total_retries
        bytes_read = 0
        context_filter.set_context(operation="import")

        try:
            logger.info("Starting user import")
            self.telemetry.track_event("Import.Started")
            self._log_configuration()

            await self.storage.ensure_container(storage_options.import_audit_container)
            logger.info(f"Import audit logs will be saved to container: {storage_options.import_audit_container}")

            pages = sorted(
                await self.storage.list(storage_options.export_container, storage_options.export_blob_prefix)
            )
            logger.info(f"Found {len(pages)} export files to process")

            for page_name in pages:
                if cancel_event is not None and cancel_event.is_set():
                    summary.cancelled = True
                    break
                raw = b""
                users = None
                try:
                    raw = await self.storage.read(storage_options.export_container, page_name)
                    bytes_read += len(raw)
                    users = _user_list.validate_json(raw)
                    if not users:
                        logger.warning(f"Page {page_name} contains no users")
                        continue

                    logger.info(f"Processing {len(users)} users from {page_name}")
                    cancelled = await self._import_page(page_name, users, summary, cancel_event)
                    self.telemetry.increment_counter("Import.BlobsProcessed")
                    if cancelled:
                        summary.cancelled = True
                        break
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception(f"Failed to process page {page_name}: {e}")
                    self.telemetry.track_exception(e, {"page": page_name})
                    summary.page_failure_count += 1
                    await self._save_page_error(page_name, e, raw, users)

            summary.retry_count = self.directory_client.retry_manager.total_retries - retries_before
            summary.finalize()
            logger.info(str(summary))
            self.telemetry.track_metric("import.blob.read.bytes", bytes_read)
            self.telemetry.track_event(
                "Import.Completed",
                {
                    "total_users": summary.total_items,
                    "success_count": summary.success_count,
                    "skipped_count": summary.skipped_count,
                    "failure_count": summary.failure_count,
                    "page_failure_count": summary.page_failure_count,
                },
            )
            await self.telemetry.flush()

            if summary.cancelled:
                return ExecutionResult.failed("Import cancelled", summary=summary)
            if summary.has_failures:
                return ExecutionResult.failed(
                    f"Import completed with {summary.failure_count} failed user(s) "
                    f"and {summary.page_failure_count} failed page(s)",
                    summary=summary,
                )
            return ExecutionResult.succeeded(summary)

        except Exception as e:
            summary.finalize()
            logger.exception(f"Import failed: {e}")
            self.telemetry.track_exception(e, {"operation": "import"})
            return ExecutionResult.failed(str(e), summary=summary, exception=e)
        finally:
            context_filter.clear_context()

    async def _import_page(
        self,
        page_name: str,
        users: List[UserProfile],
        summary: RunSummary,
        cancel_event: Optional[asyncio.Event],
    ) -> bool:
        """Import one page; returns True when cancellation stopped it early."""
        batches = list(chunked(users, self.settings.batch_size))
        for batch_number, source_batch in enumerate(batches):
            batch_start = time.monotonic()
            prepared = [self.transformer.transform(user) for user in source_batch]

            result = await self.directory_client.create_users_batch(prepared)

            summary.total_items += result.total_items
            summary.success_count += result.success_count
            summary.failure_count += result.failure_count
            summary.skipped_count += result.skipped_count
            if result.was_throttled:
                summary.throttle_count += 1

            logger.info(
                f"Batch result: {result.success_count} succeeded, "
                f"{result.skipped_count} skipped (already exist), {result.failure_count} failed"
            )

            if self.settings.import_options.migration_attributes.overwrite_extension_attributes and result.duplicate_users:
                logger.info(f"Updating migration attributes on {len(result.duplicate_users)} existing users")
                updated = await self._update_duplicates(result.duplicate_users)
                logger.info(f"Updated migration attributes for {updated} existing users")

            audit = self._build_audit_log(page_name, batch_number, source_batch, prepared, result, batch_start)
            await self._save_audit_log(audit)

            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Import cancelled after batch {batch_number} of {page_name}")
                return True
            if self.settings.batch_delay_ms > 0 and batch_number < len(batches) - 1:
                await asyncio.sleep(self.settings.batch_delay_ms / 1000.0)
        return False

    async def _update_duplicates(self, duplicates: List[UserProfile]) -> int:
        """Write only the migration-tracking attributes onto users that already exist."""
        attributes = [
            self.transformer.source_object_id_attribute,
            self.transformer.require_migration_attribute,
        ]
        select = ",".join(["id"] + attributes)
        updated = 0
        for user in duplicates:
            try:
                existing = await self.directory_client.find_user_by_upn(user.user_principal_name, select=select)
                if existing is None or not existing.id:
                    logger.warning(f"Could not find existing user {user.user_principal_name} for attribute update")
                    continue
                updates = self.transformer.migration_attribute_updates(user)
                if updates:
                    await self.directory_client.update_user(existing.id, updates)
                    updated += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Failed to update migration attributes for {user.user_principal_name}: {e}")
        return updated

    def _build_audit_log(
        self,
        page_name: str,
        batch_number: int,
        source_batch: List[UserProfile],
        prepared: List[UserProfile],
        result: BatchResult,
        batch_start: float,
    ) -> ImportAuditLog:
        failures = {f.index: f for f in result.failures}
        skipped: Set[str] = set(result.skipped_user_ids)
        successful, skipped_records, failed = [], [], []

        for index, (source, user) in enumerate(zip(source_batch, prepared)):
            record = dict(
                source_object_id=source.id,
                user_principal_name=user.user_principal_name,
                display_name=user.display_name,
            )
            if index in failures:
                failure = failures[index]
                failed.append(AuditUserRecord(
                    status="failed",
                    error_message=failure.error_message,
                    status_code=failure.status_code,
                    **record,
                ))
            elif user.user_principal_name in skipped:
                skipped_records.append(AuditUserRecord(
                    status="skipped", error_message="Duplicate - user already exists", **record
                ))
            else:
                successful.append(AuditUserRecord(
                    status="created", target_object_id=result.created_user_ids.get(index), **record
                ))

        return ImportAuditLog(
            source_blob_name=page_name,
            batch_number=batch_number,
            total_users=len(source_batch),
            success_count=result.success_count,
            skipped_count=result.skipped_count,
            failure_count=result.failure_count,
            successful_users=successful,
            skipped_users=skipped_records,
            failed_users=failed,
            duration_ms=(time.monotonic() - batch_start) * 1000,
        )

    async def _save_audit_log(self, audit: ImportAuditLog) -> None:
        container = self.settings.storage.import_audit_container
        name = audit.object_name(self.settings.storage.export_blob_prefix)
        try:
            payload = json.dumps(audit.model_dump(mode="json"), indent=2).encode("utf-8")
            await self.storage.write(container, name, payload)
            self.telemetry.increment_counter("Import.AuditLogsSaved")
            if self.settings.verbose_logging:
                logger.debug(f"Saved audit log: {name}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                f"Failed to save audit log for batch {audit.batch_number} from {audit.source_blob_name}: {e}"
            )

    async def _save_page_error(
        self,
        page_name: str,
        error: Exception,
        raw: bytes,
        users: Optional[List[UserProfile]],
    ) -> None:
        """Record a page that could not be imported; a failing write is only logged."""
        container = self.settings.storage.error_container
        record = PageErrorRecord(
            source_blob_name=page_name,
            error_type=error.__class__.__name__,
            error_message=str(error),
            users_in_page=len(users) if users is not None else None,
            raw_excerpt=raw[:PAGE_ERROR_EXCERPT_BYTES].decode("utf-8", errors="replace") if raw else None,
        )
        try:
            await self.storage.ensure_container(container)
            payload = json.dumps(record.model_dump(mode="json"), indent=2).encode("utf-8")
            await self.storage.write(container, record.object_name(), payload)
            self.telemetry.increment_counter("Import.PageErrorsSaved")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to save error record for page {page_name}: {e}")
