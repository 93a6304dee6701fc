from .user_profile import ExtensionValue, ObjectIdentity, PasswordProfile, UserProfile
from .batch_result import BatchItemFailure, BatchResult
from .audit import AuditUserRecord, ImportAuditLog
from .run_summary import ExecutionResult, RunSummary
from .jit import JitMigrationResult, ResponseActionType
from .profile_update import ProfileUpdateMessage, ProfileUpdateSource

__all__ = [
    "ExtensionValue",
    "ObjectIdentity",
    "PasswordProfile",
    "UserProfile",
    "BatchItemFailure",
    "BatchResult",
    "AuditUserRecord",
    "ImportAuditLog",
    "ExecutionResult",
    "RunSummary",
    "JitMigrationResult",
    "ResponseActionType",
    "ProfileUpdateMessage",
    "ProfileUpdateSource",
]
