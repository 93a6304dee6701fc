"""
Run-level bookkeeping for the export and import pipelines.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunSummary:
    """
    Aggregate counters for one pipeline execution.

    Created at pipeline start, updated after every page or batch and logged
    once the run finishes. Never persisted.
    """
    operation_name: str
    start_time: datetime = field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    total_items: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    page_failure_count: int = 0
    throttle_count: int = 0
    retry_count: int = 0
    cancelled: bool = False
    metrics: Dict[str, float] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or _utcnow()
        return max((end - self.start_time).total_seconds(), 0.0)

    @property
    def items_per_second(self) -> float:
        duration = self.duration_seconds
        return self.total_items / duration if duration > 0 else 0.0

    @property
    def has_failures(self) -> bool:
        return self.failure_count > 0 or self.page_failure_count > 0

    def finalize(self) -> "RunSummary":
        if self.end_time is None:
            self.end_time = _utcnow()
        self.metrics["items_per_second"] = round(self.items_per_second, 2)
        return self

    def __str__(self) -> str:
        status = " (cancelled)" if self.cancelled else ""
        return (
            f"RUN SUMMARY: {self.operation_name}{status} | "
            f"Duration: {self.duration_seconds:.2f}s | "
            f"Total: {self.total_items} | Success: {self.success_count} | "
            f"Failed: {self.failure_count} | Skipped: {self.skipped_count} | "
            f"Failed pages: {self.page_failure_count} | "
            f"Throttled: {self.throttle_count} | Retries: {self.retry_count} | "
            f"Rate: {self.items_per_second:.2f} items/sec"
        )


@dataclass
class ExecutionResult:
    """Final outcome of an export or import invocation."""
    success: bool
    summary: Optional[RunSummary] = None
    error_message: Optional[str] = None
    exception: Optional[BaseException] = None
    start_time: datetime = field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return bool(self.summary and self.summary.cancelled)

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or _utcnow()
        return max((end - self.start_time).total_seconds(), 0.0)

    @classmethod
    def succeeded(cls, summary: RunSummary, **metadata: Any) -> "ExecutionResult":
        return cls(
            success=True,
            summary=summary,
            start_time=summary.start_time,
            end_time=summary.end_time,
            metadata=metadata,
        )

    @classmethod
    def failed(
        cls,
        error_message: str,
        summary: Optional[RunSummary] = None,
        exception: Optional[BaseException] = None,
        **metadata: Any,
    ) -> "ExecutionResult":
        start = summary.start_time if summary else _utcnow()
        return cls(
            success=False,
            summary=summary,
            error_message=error_message,
            exception=exception,
            start_time=start,
            end_time=summary.end_time if summary else _utcnow(),
            metadata=metadata,
        )
