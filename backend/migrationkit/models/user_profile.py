"""
User profile model shared by the export, import and JIT pipelines.

Field names follow Python conventions; aliases match the directory API's
camelCase wire format so profiles round-trip through exported pages and
directory responses unchanged.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr, model_validator

# Extension attributes are a closed set of scalar kinds.
ExtensionValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]

EXTENSION_PREFIX = "extension_"


class ObjectIdentity(BaseModel):
    """One sign-in method binding on a user object."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sign_in_type: Optional[str] = Field(None, alias="signInType")
    issuer: Optional[str] = None
    issuer_assigned_id: Optional[str] = Field(None, alias="issuerAssignedId")


class PasswordProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    password: str
    force_change_password_next_sign_in: bool = Field(False, alias="forceChangePasswordNextSignIn")


class UserProfile(BaseModel):
    """Canonical identity record moved from the source to the target tenant."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    user_principal_name: Optional[str] = Field(None, alias="userPrincipalName")
    display_name: Optional[str] = Field(None, alias="displayName")
    given_name: Optional[str] = Field(None, alias="givenName")
    surname: Optional[str] = None
    mail: Optional[str] = None
    other_mails: List[str] = Field(default_factory=list, alias="otherMails")
    mobile_phone: Optional[str] = Field(None, alias="mobilePhone")
    street_address: Optional[str] = Field(None, alias="streetAddress")
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = Field(None, alias="postalCode")
    country: Optional[str] = None
    account_enabled: bool = Field(True, alias="accountEnabled")
    user_type: Optional[str] = Field(None, alias="userType")
    password_profile: Optional[PasswordProfile] = Field(None, alias="passwordProfile")
    identities: List[ObjectIdentity] = Field(default_factory=list)
    extension_attributes: Dict[str, ExtensionValue] = Field(
        default_factory=dict, alias="extensionAttributes"
    )
    created_date_time: Optional[datetime] = Field(None, alias="createdDateTime")

    @model_validator(mode="before")
    @classmethod
    def collect_extension_attributes(cls, data: Any) -> Any:
        """Fold top-level ``extension_*`` keys from directory responses into the map."""
        if not isinstance(data, dict):
            return data
        extension_keys = [k for k in data if isinstance(k, str) and k.startswith(EXTENSION_PREFIX)]
        if not extension_keys:
            return data

        data = dict(data)
        existing = data.get("extensionAttributes", data.get("extension_attributes")) or {}
        merged = dict(existing)
        for key in extension_keys:
            value = data.pop(key)
            if value is not None:
                merged[key] = value
        data.pop("extension_attributes", None)
        data["extensionAttributes"] = merged
        return data

    def to_storage_dict(self) -> Dict[str, Any]:
        """Serialize for an exported page."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def to_directory_payload(self) -> Dict[str, Any]:
        """
        Build the request body for a user create call.

        Extension attributes are flattened to top-level keys and the source
        ``id`` / ``createdDateTime`` are never sent.
        """
        payload = self.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"id", "created_date_time", "extension_attributes"},
            mode="json",
        )
        if not payload.get("otherMails"):
            payload.pop("otherMails", None)
        if not payload.get("identities"):
            payload.pop("identities", None)
        payload.update(self.extension_attributes)
        return payload

    def identity_of_type(self, sign_in_type: str, issuer: Optional[str] = None) -> Optional[ObjectIdentity]:
        for identity in self.identities:
            if (identity.sign_in_type or "").lower() != sign_in_type.lower():
                continue
            if issuer is not None and (identity.issuer or "").lower() != issuer.lower():
                continue
            return identity
        return None
