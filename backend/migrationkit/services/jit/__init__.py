"""
Just-in-time authentication services.
"""

from .credential_decryptor import CredentialDecryptor, PasswordContext, build_private_key_cache
from .credential_validator import LegacyCredentialValidator
from .jit_migration_service import JitMigrationService
from .key_manager import RsaKeyManager
from .nonce_cache import NonceCache

__all__ = [
    "CredentialDecryptor",
    "PasswordContext",
    "build_private_key_cache",
    "LegacyCredentialValidator",
    "JitMigrationService",
    "RsaKeyManager",
    "NonceCache",
]
