"""
Result of one bounded batch write against the directory API.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from migrationkit.models.user_profile import UserProfile


@dataclass
class BatchItemFailure:
    """A single profile that could not be written."""
    index: int
    item_id: Optional[str]
    error_message: str
    status_code: Optional[int] = None


@dataclass
class BatchResult:
    """
    Outcome of a ``create_users_batch`` call.

    ``success_count + failure_count + skipped_count`` never exceeds
    ``total_items``. Duplicates are skips, not failures, and the source
    profile is kept in ``duplicate_users`` for attribute reconciliation.
    """
    total_items: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    failures: List[BatchItemFailure] = field(default_factory=list)
    skipped_user_ids: List[str] = field(default_factory=list)
    duplicate_users: List[UserProfile] = field(default_factory=list)
    created_user_ids: Dict[int, str] = field(default_factory=dict)
    was_throttled: bool = False
    retry_after_seconds: Optional[float] = None

    @property
    def is_fully_successful(self) -> bool:
        return self.failure_count == 0 and self.success_count + self.skipped_count == self.total_items

    def record_success(self, index: int, created_id: Optional[str] = None) -> None:
        self.success_count += 1
        if created_id:
            self.created_user_ids[index] = created_id

    def record_failure(
        self,
        index: int,
        item_id: Optional[str],
        error_message: str,
        status_code: Optional[int] = None,
    ) -> None:
        self.failure_count += 1
        self.failures.append(BatchItemFailure(index, item_id, error_message, status_code))

    def record_duplicate(self, profile: UserProfile) -> None:
        self.skipped_count += 1
        self.skipped_user_ids.append(profile.user_principal_name or profile.id or "")
        self.duplicate_users.append(profile)

    def merge(self, other: "BatchResult") -> None:
        """Fold a wire-level sub-batch into this result, re-basing indices."""
        offset = self.total_items
        self.total_items += other.total_items
        self.success_count += other.success_count
        self.failure_count += other.failure_count
        self.skipped_count += other.skipped_count
        self.failures.extend(
            BatchItemFailure(f.index + offset, f.item_id, f.error_message, f.status_code)
            for f in other.failures
        )
        self.skipped_user_ids.extend(other.skipped_user_ids)
        self.duplicate_users.extend(other.duplicate_users)
        self.created_user_ids.update({i + offset: v for i, v in other.created_user_ids.items()})
        self.was_throttled = self.was_throttled or other.was_throttled
        if other.retry_after_seconds is not None:
            self.retry_after_seconds = max(self.retry_after_seconds or 0.0, other.retry_after_seconds)
