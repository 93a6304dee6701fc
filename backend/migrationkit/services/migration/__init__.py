"""
Export, import and profile-sync pipelines.
"""

from .export_orchestrator import ExportOrchestrator
from .import_orchestrator import ImportOrchestrator
from .profile_sync_service import ProfileSyncService
from .user_transformer import UserTransformer, extension_attribute_name, validate_extension_app_id

__all__ = [
    "ExportOrchestrator",
    "ImportOrchestrator",
    "ProfileSyncService",
    "UserTransformer",
    "extension_attribute_name",
    "validate_extension_app_id",
]
