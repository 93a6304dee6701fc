"""
Import audit records.

One ``ImportAuditLog`` is written per processed batch, whether or not the
batch itself succeeded. Records are frozen once built.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditUserRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_object_id: Optional[str] = None
    user_principal_name: Optional[str] = None
    display_name: Optional[str] = None
    target_object_id: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    status_code: Optional[int] = None


class ImportAuditLog(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source_blob_name: str
    batch_number: int
    total_users: int
    success_count: int
    skipped_count: int
    failure_count: int
    successful_users: List[AuditUserRecord] = Field(default_factory=list)
    skipped_users: List[AuditUserRecord] = Field(default_factory=list)
    failed_users: List[AuditUserRecord] = Field(default_factory=list)
    duration_ms: float = 0.0

    def object_name(self, blob_prefix: str = "") -> str:
        """``import-audit_{page}_batch{nnn}_{yyyyMMddHHmmss}.json``"""
        source_page = self.source_blob_name
        if blob_prefix and source_page.startswith(blob_prefix):
            source_page = source_page[len(blob_prefix):]
        if source_page.endswith(".json"):
            source_page = source_page[: -len(".json")]
        return (
            f"import-audit_{source_page}_batch{self.batch_number:03d}_"
            f"{self.timestamp.strftime('%Y%m%d%H%M%S')}.json"
        )


class PageErrorRecord(BaseModel):
    """Written to the error container when a whole export page cannot be imported."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source_blob_name: str
    error_type: str
    error_message: str
    users_in_page: Optional[int] = None
    raw_excerpt: Optional[str] = None

    def object_name(self) -> str:
        source_page = self.source_blob_name
        if source_page.endswith(".json"):
            source_page = source_page[: -len(".json")]
        return f"page-error_{source_page}_{self.timestamp.strftime('%Y%m%d%H%M%S')}.json"
