"""
Export pipeline: stream every source user into numbered object-storage pages.
"""

import asyncio
import json
import time
from datetime import timedelta
from typing import List, Optional, Set

from logconfig.logger import get_logger, get_context_filter
from migrationkit.core.settings import MigrationSettings
from migrationkit.models.run_summary import ExecutionResult, RunSummary
from migrationkit.models.user_profile import UserProfile
from migrationkit.services.directory.graph_client import DirectoryClient
from migrationkit.services.storage.object_storage import ObjectStorage
from migrationkit.services.telemetry.telemetry_service import TelemetryService

logger = get_logger()
context_filter = get_context_filter()

PROJECTION_USERS = 1_000_000


def page_object_name(prefix: str, page_number: int) -> str:
    return f"{prefix}{page_number:06d}.json"


def matches_filter(user: UserProfile, pattern: str) -> bool:
    return pattern in (user.display_name or "").lower() or pattern in (user.user_principal_name or "").lower()


class ExportOrchestrator:
    """
    Pages through the source directory and writes one JSON array per page.

    A fetch or write failure aborts the run: a missing page would break the
    page-number sequence the import relies on. Pages already written stay
    valid, and with ``overwrite_existing`` off a rerun leaves them alone.
    """

    def __init__(
        self,
        directory_client: DirectoryClient,
        storage: ObjectStorage,
        settings: MigrationSettings,
        telemetry: TelemetryService,
    ):
        self.directory_client = directory_client
        self.storage = storage
        self.settings = settings
        self.telemetry = telemetry

    async def execute(self, cancel_event: Optional[asyncio.Event] = None) -> ExecutionResult:
        summary = RunSummary(operation_name="B2C User Export")
        options = self.settings.export_options
        container = self.settings.storage.export_container
        prefix = self.settings.storage.export_blob_prefix
        retries_before = self.directory_client.retry_manager.total_retries
        context_filter.set_context(operation="export")

        try:
            logger.info("Starting user export")
            self.telemetry.track_event("Export.Started")

            await self.storage.ensure_container(container)
            logger.info(f"Export fields: {options.select_fields}")

            pattern = options.filter_pattern.strip().lower() if options.filter_pattern and options.filter_pattern.strip() else None
            exported_ids: Set[str] = set()
            if pattern:
                logger.info(f"Export filter pattern: '{pattern}' (matched client-side on displayName and userPrincipalName)")

            page_number = 0
            pages_written = 0
            page_token: Optional[str] = None
            last_page_bytes = 0

            while True:
                batch_start = time.monotonic()
                page = await self.directory_client.list_users(
                    page_size=self.settings.page_size,
                    select=options.select_fields,
                    page_token=page_token,
                )
                fetch_ms = (time.monotonic() - batch_start) * 1000

                items: List[UserProfile] = page.items
                if pattern:
                    items = [
                        u for u in items
                        if u.id and u.id not in exported_ids and matches_filter(u, pattern)
                    ]
                    exported_ids.update(u.id for u in items)
                    if len(items) != len(page.items):
                        logger.debug(f"Filtered page {page_number}: {len(page.items)} fetched, {len(items)} matched")

                if options.max_users:
                    items = items[: max(options.max_users - summary.total_items, 0)]

                if items:
                    name = page_object_name(prefix, page_number)
                    if not options.overwrite_existing and await self.storage.exists(container, name):
                        logger.info(f"Page {name} already exists, leaving it in place")
                    else:
                        payload = json.dumps([u.to_storage_dict() for u in items], indent=2).encode("utf-8")
                        last_page_bytes = len(payload)
                        upload_start = time.monotonic()
                        await self.storage.write(container, name, payload, overwrite=options.overwrite_existing)
                        upload_ms = (time.monotonic() - upload_start) * 1000
                        pages_written += 1
                        self.telemetry.track_metric("Export.UploadDurationMs", upload_ms)

                    summary.total_items += len(items)
                    summary.success_count += len(items)
                    total_ms = (time.monotonic() - batch_start) * 1000
                    logger.info(
                        f"Batch {page_number}: {len(items)} users | Fetch: {fetch_ms:.0f}ms | "
                        f"Total: {total_ms:.0f}ms | Exported so far: {summary.total_items} "
                        f"({summary.items_per_second:.1f} users/s)"
                    )
                    self.telemetry.increment_counter("Export.UsersExported", len(items))
                    self.telemetry.track_metric("Export.BatchDurationMs", total_ms)
                    self.telemetry.track_metric("Export.FetchDurationMs", fetch_ms)

                page_token = page.next_page_token
                page_number += 1

                if options.max_users and summary.total_items >= options.max_users:
                    logger.info(f"Reached max user limit of {options.max_users}. Stopping export.")
                    break
                if not page_token:
                    break
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Export cancelled after page {page_number - 1}")
                    summary.cancelled = True
                    break
                if self.settings.batch_delay_ms > 0:
                    await asyncio.sleep(self.settings.batch_delay_ms / 1000.0)

            summary.retry_count = self.directory_client.retry_manager.total_retries - retries_before
            summary.finalize()
            self._log_projections(summary, page_number, last_page_bytes)
            logger.info(str(summary))
            self.telemetry.track_event(
                "Export.Completed",
                {"total_users": summary.total_items, "pages": pages_written, "cancelled": summary.cancelled},
            )
            await self.telemetry.flush()

            if summary.cancelled:
                return ExecutionResult.failed("Export cancelled", summary=summary, pages=pages_written)
            return ExecutionResult.succeeded(summary, pages=pages_written)

        except Exception as e:
            summary.retry_count = self.directory_client.retry_manager.total_retries - retries_before
            summary.page_failure_count += 1
            summary.finalize()
            logger.exception(f"Export failed: {e}")
            self.telemetry.track_exception(e, {"operation": "export"})
            return ExecutionResult.failed(str(e), summary=summary, exception=e)
        finally:
            context_filter.clear_context()

    def _log_projections(self, summary: RunSummary, pages: int, last_page_bytes: int) -> None:
        """Observational only: scale the measured rate up to a million users."""
        rate = summary.items_per_second
        if rate <= 0:
            logger.info(f"Export finished with {summary.total_items} users; no throughput to project")
            return

        single = timedelta(seconds=PROJECTION_USERS / rate)
        avg_batch = summary.total_items / pages if pages else 0
        storage_bytes = int((last_page_bytes / avg_batch) * PROJECTION_USERS) if last_page_bytes and avg_batch else 0

        logger.info(
            "=== EXPORT SUMMARY ===\n"
            f"Users Exported: {summary.total_items:,}\n"
            f"Batches: {pages}\n"
            f"Duration: {timedelta(seconds=summary.duration_seconds)}\n"
            f"Throughput: {rate:.2f} users/second\n"
            f"Avg Batch Size: {avg_batch:.0f} users\n"
            "--- PROJECTIONS FOR 1 MILLION USERS ---\n"
            f"Estimated Time (single instance): {single}\n"
            f"Estimated Storage: {storage_bytes:,} bytes (~{storage_bytes / (1024 * 1024):.2f} MB)\n"
            f"With 3 instances (different IPs): ~{single / 3}\n"
            f"With 5 instances (different IPs): ~{single / 5}"
        )
        self.telemetry.track_metric("export.storage.total.bytes", storage_bytes)
        self.telemetry.track_metric("export.throughput.users.per.second", rate)
        self.telemetry.track_metric("export.duration.total.seconds", summary.duration_seconds)
