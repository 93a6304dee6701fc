"""
JIT authentication event schemas.

This module defines Pydantic models for the password-submit authentication
event sent by the directory service and the action document returned to it.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from migrationkit.models.jit import JitMigrationResult

RESPONSE_DATA_TYPE = "microsoft.graph.onPasswordSubmitResponseData"


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AuthenticationUser(_Wire):
    id: Optional[str] = None
    user_principal_name: Optional[str] = Field(None, alias="userPrincipalName")


class AuthenticationContext(_Wire):
    correlation_id: Optional[str] = Field(None, alias="correlationId")
    user: Optional[AuthenticationUser] = None


class PasswordContext(_Wire):
    user_password: Optional[str] = Field(None, alias="userPassword")
    nonce: Optional[str] = None


class PasswordSubmitData(_Wire):
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    authentication_context: Optional[AuthenticationContext] = Field(None, alias="authenticationContext")
    password_context: Optional[PasswordContext] = Field(None, alias="passwordContext")
    encrypted_password_context: Optional[str] = Field(None, alias="encryptedPasswordContext")


class PasswordSubmitEvent(_Wire):
    """Inbound ``onPasswordSubmit`` event."""

    type: Optional[str] = None
    source: Optional[str] = None
    data: Optional[PasswordSubmitData] = None

    @property
    def user(self) -> Optional[AuthenticationUser]:
        context = self.data.authentication_context if self.data else None
        return context.user if context else None

    @property
    def correlation_id(self) -> Optional[str]:
        context = self.data.authentication_context if self.data else None
        return context.correlation_id if context else None


class ResponseAction(_Wire):
    odata_type: str = Field(..., alias="@odata.type")
    title: Optional[str] = None
    message: Optional[str] = None


class ResponseData(_Wire):
    odata_type: str = Field(RESPONSE_DATA_TYPE, alias="@odata.type")
    actions: List[ResponseAction]
    nonce: Optional[str] = None


class PasswordSubmitResponse(_Wire):
    data: ResponseData

    @classmethod
    def from_result(cls, result: JitMigrationResult) -> "PasswordSubmitResponse":
        action = ResponseAction(
            odata_type=result.action.odata_type,
            title=result.title,
            message=result.message,
        )
        return cls(data=ResponseData(actions=[action], nonce=result.nonce))

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with aliases, omitting null title/message/nonce."""
        return self.model_dump(by_alias=True, exclude_none=True)
