import re

import pytest

from migrationkit.core.security import validate_password_complexity
from migrationkit.core.settings import ImportOptions, MigrationAttributeOptions
from migrationkit.exceptions.base_exceptions import ConfigurationError
from migrationkit.models.user_profile import ObjectIdentity, UserProfile
from migrationkit.services.migration.user_transformer import (
    UserTransformer,
    extension_attribute_name,
    validate_extension_app_id,
)

TARGET = "target.onmicrosoft.com"
SOURCE_ID_ATTR = "extension_abc123_B2CObjectId"
FLAG_ATTR = "extension_abc123_RequiresMigration"


def _transformer(**migration):
    options = ImportOptions(migration_attributes=MigrationAttributeOptions(**migration))
    return UserTransformer(options, "abc123", TARGET)


def _user(**fields):
    data = {
        "id": "src-1",
        "userPrincipalName": "alice@source.onmicrosoft.com",
        "displayName": "Alice",
        "mail": "alice@example.com",
    }
    data.update(fields)
    return UserProfile.model_validate(data)


def test_transform_rewrites_upn_and_sets_migration_attributes():
    user = _transformer().transform(_user())

    assert user.user_principal_name == f"alice@{TARGET}"
    assert user.extension_attributes[SOURCE_ID_ATTR] == "src-1"
    assert user.extension_attributes[FLAG_ATTR] is True
    assert user.password_profile is not None
    assert user.password_profile.force_change_password_next_sign_in is False
    assert validate_password_complexity(user.password_profile.password).is_valid


def test_transform_leaves_source_profile_untouched():
    source = _user()
    _transformer().transform(source)
    assert source.user_principal_name == "alice@source.onmicrosoft.com"
    assert source.extension_attributes == {}
    assert source.password_profile is None


def test_email_identity_added_from_mail():
    user = _transformer().transform(_user())
    emails = [i for i in user.identities if i.sign_in_type == "emailAddress"]
    assert len(emails) == 1
    assert emails[0].issuer == TARGET
    assert emails[0].issuer_assigned_id == "alice@example.com"


def test_email_identity_falls_back_to_upn():
    user = _transformer().transform(_user(mail=None))
    email = user.identity_of_type("emailAddress")
    assert email.issuer_assigned_id == f"alice@{TARGET}"


def test_existing_email_identity_is_not_duplicated():
    source = _user(identities=[{"signInType": "emailAddress", "issuer": "source.onmicrosoft.com", "issuerAssignedId": "a@x.com"}])
    user = _transformer().transform(source)
    assert len(user.identities) == 1
    assert user.identities[0].issuer == TARGET
    assert user.identities[0].issuer_assigned_id == "a@x.com"


def test_user_name_identity_keeps_type_and_value():
    source = _user(identities=[{"signInType": "userName", "issuer": "source.onmicrosoft.com", "issuerAssignedId": "alice01"}])
    user = _transformer().transform(source)
    username = user.identity_of_type("userName")
    assert username.issuer_assigned_id == "alice01"
    assert username.issuer == TARGET
    assert user.identity_of_type("emailAddress") is not None


def test_upn_identity_follows_profile_upn():
    source = _user(
        identities=[
            {"signInType": "userPrincipalName", "issuer": "source.onmicrosoft.com", "issuerAssignedId": "alice@source.onmicrosoft.com"},
            {"signInType": "userPrincipalName", "issuer": "source.onmicrosoft.com", "issuerAssignedId": "other@source.onmicrosoft.com"},
        ]
    )
    user = _transformer().transform(source)
    values = [i.issuer_assigned_id for i in user.identities if i.sign_in_type == "userPrincipalName"]
    assert values == [f"alice@{TARGET}", f"other@{TARGET}"]


def test_missing_upn_gets_random_local_part():
    user = _transformer().transform(_user(userPrincipalName=None))
    assert re.match(rf"^[0-9a-f]{{8}}@{re.escape(TARGET)}$", user.user_principal_name)


def test_otp_mode_adds_federated_mail_identity():
    user = _transformer(use_email_otp=True).transform(_user())
    otp = user.identity_of_type("federated", "mail")
    assert otp.issuer_assigned_id == "alice@example.com"
    assert user.identity_of_type("emailAddress") is None


def test_otp_identity_keeps_mail_issuer():
    source = _user(identities=[{"signInType": "federated", "issuer": "mail", "issuerAssignedId": "alice@example.com"}])
    user = _transformer(use_email_otp=True).transform(source)
    assert len(user.identities) == 1
    assert user.identities[0].issuer == "mail"


def test_migration_attributes_can_be_disabled_or_retargeted():
    user = _transformer(store_source_object_id=False, require_migration_target="extension_abc123_Pending").transform(_user())
    assert SOURCE_ID_ATTR not in user.extension_attributes
    assert user.extension_attributes["extension_abc123_Pending"] is True


def test_attribute_mappings_and_exclusions():
    options = ImportOptions(
        attribute_mappings={"extension_old_Tier": "extension_abc123_Tier"},
        exclude_fields=["extension_old_Secret"],
    )
    source = _user(extension_old_Tier="gold", extension_old_Secret="x", extension_old_Keep=3)
    user = UserTransformer(options, "abc123", TARGET).transform(source)
    attrs = user.extension_attributes
    assert attrs["extension_abc123_Tier"] == "gold"
    assert "extension_old_Tier" not in attrs
    assert "extension_old_Secret" not in attrs
    assert attrs["extension_old_Keep"] == 3


def test_directory_payload_flattens_extension_attributes():
    payload = _transformer().transform(_user()).to_directory_payload()
    assert payload[FLAG_ATTR] is True
    assert payload[SOURCE_ID_ATTR] == "src-1"
    assert "id" not in payload
    assert "extensionAttributes" not in payload
    assert payload["passwordProfile"]["forceChangePasswordNextSignIn"] is False


def test_migration_attribute_updates_only_returns_tracking_attributes():
    transformer = _transformer()
    user = transformer.transform(_user(extension_old_Tier="gold"))
    assert transformer.migration_attribute_updates(user) == {SOURCE_ID_ATTR: "src-1", FLAG_ATTR: True}


@pytest.mark.parametrize("app_id", ["", None, "abc-123"])
def test_invalid_extension_app_id_is_rejected(app_id):
    with pytest.raises(ConfigurationError):
        validate_extension_app_id(app_id)
    with pytest.raises(ConfigurationError):
        UserTransformer(ImportOptions(), app_id, TARGET)


def test_missing_target_domain_is_rejected():
    with pytest.raises(ConfigurationError):
        UserTransformer(ImportOptions(), "abc123", "")


def test_extension_attribute_name_strips_dashes():
    assert extension_attribute_name("ab-c1-23", "B2CObjectId") == "extension_abc123_B2CObjectId"


def test_identity_lookup_is_case_insensitive():
    user = UserProfile(identities=[ObjectIdentity(sign_in_type="Federated", issuer="MAIL", issuer_assigned_id="x")])
    assert user.identity_of_type("federated", "mail") is not None
