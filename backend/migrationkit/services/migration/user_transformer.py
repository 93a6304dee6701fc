"""
Per-record transformation applied by the import pipeline.
"""

from typing import Dict, Optional

from logconfig.logger import get_logger
from migrationkit.core.security import generate_random_password
from migrationkit.core.settings import ImportOptions
from migrationkit.exceptions.base_exceptions import ConfigurationError
from migrationkit.models.user_profile import ExtensionValue, ObjectIdentity, PasswordProfile, UserProfile
from migrationkit.utils.upn import mask_phone_number, transform_upn_for_target

logger = get_logger()

SOURCE_OBJECT_ID_ATTRIBUTE = "B2CObjectId"
REQUIRE_MIGRATION_ATTRIBUTE = "RequiresMigration"

EMAIL_SIGN_IN_TYPE = "emailAddress"
FEDERATED_SIGN_IN_TYPE = "federated"
OTP_ISSUER = "mail"
UPN_SIGN_IN_TYPE = "userPrincipalName"


def extension_attribute_name(extension_app_id: str, attribute: str) -> str:
    """``extension_{appId}_{attribute}`` with dashes stripped from the app id."""
    return f"extension_{extension_app_id.replace('-', '')}_{attribute}"


def validate_extension_app_id(extension_app_id: Optional[str]) -> str:
    if not extension_app_id:
        raise ConfigurationError(
            "Target extension app id is not configured",
            config_key="target.extension_app_id",
        )
    if "-" in extension_app_id:
        raise ConfigurationError(
            f"Target extension app id '{extension_app_id}' must not contain dashes",
            config_key="target.extension_app_id",
        )
    return extension_app_id


class UserTransformer:
    """
    Turns an exported source profile into a target-tenant create request.

    Steps run in a fixed order: attribute mapping, migration attributes,
    UPN domain rewrite, identity normalization, email identity guarantee,
    and finally a random one-time password.
    """

    def __init__(
        self,
        options: ImportOptions,
        extension_app_id: str,
        target_domain: str,
        verbose: bool = False,
    ):
        self.options = options
        self.migration = options.migration_attributes
        self.extension_app_id = validate_extension_app_id(extension_app_id)
        if not target_domain:
            raise ConfigurationError("Target tenant domain is not configured", config_key="target.tenant_domain")
        self.target_domain = target_domain
        self.verbose = verbose

    @property
    def source_object_id_attribute(self) -> str:
        return self.migration.source_object_id_target or extension_attribute_name(
            self.extension_app_id, SOURCE_OBJECT_ID_ATTRIBUTE
        )

    @property
    def require_migration_attribute(self) -> str:
        return self.migration.require_migration_target or extension_attribute_name(
            self.extension_app_id, REQUIRE_MIGRATION_ATTRIBUTE
        )

    def transform(self, user: UserProfile) -> UserProfile:
        user = user.model_copy(deep=True)
        self.apply_attribute_mappings(user)
        self.apply_migration_attributes(user)

        original_upn = user.user_principal_name
        user.user_principal_name = transform_upn_for_target(original_upn, self.target_domain)
        if self.verbose:
            logger.debug(f"Transformed UPN: {original_upn} -> {user.user_principal_name}")

        self.normalize_identities(user, original_upn)
        self.ensure_email_identity(user)

        user.password_profile = PasswordProfile(
            password=generate_random_password(),
            force_change_password_next_sign_in=False,
        )

        if self.verbose and user.mobile_phone:
            logger.debug(f"User {user.user_principal_name} phone {mask_phone_number(user.mobile_phone)}")
        return user

    def apply_attribute_mappings(self, user: UserProfile) -> None:
        mappings = self.options.attribute_mappings
        excluded = set(self.options.exclude_fields)
        if not mappings and not excluded:
            return

        mapped: Dict[str, ExtensionValue] = {}
        for name, value in user.extension_attributes.items():
            if name in mappings:
                mapped[mappings[name]] = value
                if self.verbose:
                    logger.debug(f"Mapping attribute {name} -> {mappings[name]}")
            elif name not in excluded:
                mapped[name] = value
            elif self.verbose:
                logger.debug(f"Excluding attribute {name}")
        user.extension_attributes = mapped

    def apply_migration_attributes(self, user: UserProfile) -> None:
        if self.migration.store_source_object_id and user.id:
            user.extension_attributes[self.source_object_id_attribute] = user.id
        if self.migration.set_require_migration:
            user.extension_attributes[self.require_migration_attribute] = True

    def normalize_identities(self, user: UserProfile, original_upn: Optional[str]) -> None:
        """
        Point every identity at the target domain. ``userPrincipalName``
        identities get the same UPN rewrite as the profile; ``userName``
        identities keep their type and value.
        """
        for identity in user.identities:
            sign_in_type = (identity.sign_in_type or "").lower()
            if sign_in_type == FEDERATED_SIGN_IN_TYPE and (identity.issuer or "").lower() == OTP_ISSUER:
                continue

            identity.issuer = self.target_domain

            if sign_in_type == UPN_SIGN_IN_TYPE.lower() and identity.issuer_assigned_id:
                if identity.issuer_assigned_id == original_upn:
                    identity.issuer_assigned_id = user.user_principal_name
                else:
                    identity.issuer_assigned_id = transform_upn_for_target(
                        identity.issuer_assigned_id, self.target_domain
                    )

        if self.verbose and user.identities:
            logger.debug(
                f"User has {len(user.identities)} identities: "
                f"{', '.join(i.sign_in_type or '?' for i in user.identities)}"
            )

    def ensure_email_identity(self, user: UserProfile) -> None:
        if self.migration.use_email_otp:
            if user.identity_of_type(FEDERATED_SIGN_IN_TYPE, OTP_ISSUER):
                return
        elif user.identity_of_type(EMAIL_SIGN_IN_TYPE):
            return

        email = user.mail
        if not email:
            email = user.user_principal_name
            if self.verbose:
                logger.warning(f"User {user.user_principal_name} has no mail; using userPrincipalName as email")

        if self.migration.use_email_otp:
            identity = ObjectIdentity(sign_in_type=FEDERATED_SIGN_IN_TYPE, issuer=OTP_ISSUER, issuer_assigned_id=email)
        else:
            identity = ObjectIdentity(sign_in_type=EMAIL_SIGN_IN_TYPE, issuer=self.target_domain, issuer_assigned_id=email)
        user.identities.append(identity)

    def migration_attribute_updates(self, user: UserProfile) -> Dict[str, ExtensionValue]:
        """Only the migration-tracking attributes, for reconciling duplicates."""
        updates: Dict[str, ExtensionValue] = {}
        attrs = user.extension_attributes
        if self.migration.store_source_object_id and self.source_object_id_attribute in attrs:
            updates[self.source_object_id_attribute] = attrs[self.source_object_id_attribute]
        if self.migration.set_require_migration and self.require_migration_attribute in attrs:
            updates[self.require_migration_attribute] = attrs[self.require_migration_attribute]
        return updates
