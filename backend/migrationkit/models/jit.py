"""
JIT authentication outcome.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ResponseActionType(str, Enum):
    """Actions the authentication event caller understands."""
    MIGRATE_PASSWORD = "MigratePassword"
    BLOCK = "Block"
    UPDATE_PASSWORD = "UpdatePassword"
    RETRY = "Retry"

    @property
    def odata_type(self) -> str:
        return f"microsoft.graph.passwordsubmit.{self.value}"


@dataclass(frozen=True)
class JitMigrationResult:
    """
    One tagged outcome per authentication request.

    ``MigratePassword`` tells the caller to adopt the submitted password and
    clear the migration flag; ``Block`` always carries a title and message.
    """
    action: ResponseActionType
    title: Optional[str] = None
    message: Optional[str] = None
    nonce: Optional[str] = None

    def __post_init__(self):
        if self.action is ResponseActionType.BLOCK and not (self.title and self.message):
            raise ValueError("Block results require a title and a message")

    @classmethod
    def migrate_password(cls, nonce: Optional[str] = None) -> "JitMigrationResult":
        return cls(ResponseActionType.MIGRATE_PASSWORD, nonce=nonce)

    @classmethod
    def block(cls, title: str, message: str, nonce: Optional[str] = None) -> "JitMigrationResult":
        return cls(ResponseActionType.BLOCK, title=title, message=message, nonce=nonce)

    @classmethod
    def update_password(cls, nonce: Optional[str] = None) -> "JitMigrationResult":
        return cls(ResponseActionType.UPDATE_PASSWORD, nonce=nonce)

    @classmethod
    def retry(cls, message: Optional[str] = None, nonce: Optional[str] = None) -> "JitMigrationResult":
        return cls(ResponseActionType.RETRY, message=message, nonce=nonce)

    @property
    def is_blocked(self) -> bool:
        return self.action is ResponseActionType.BLOCK
