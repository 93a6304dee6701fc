"""
Profile update queue message.

Only the message contract is defined here; consuming the queue is handled
outside the engine.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProfileUpdateSource(str, Enum):
    B2C = "B2C"
    EXTERNAL_ID = "ExternalId"


class ProfileUpdateMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="messageId")
    pop_receipt: Optional[str] = Field(None, alias="popReceipt")
    source: ProfileUpdateSource
    user_id: str = Field(..., alias="userId")
    target_user_id: Optional[str] = Field(None, alias="targetUserId")
    b2c_object_id: Optional[str] = Field(None, alias="b2cObjectId")
    user_principal_name: Optional[str] = Field(None, alias="userPrincipalName")
    updated_properties: Dict[str, Any] = Field(default_factory=dict, alias="updatedProperties")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="correlationId")

    def to_queue_payload(self) -> str:
        return self.model_dump_json(by_alias=True, exclude={"pop_receipt"})
