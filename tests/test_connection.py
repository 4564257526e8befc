import pytest

from kqlops.core.connection import (
    REDACTED,
    ConnectionDescriptor,
    IdentityMode,
    descriptor_fields,
    parse_connection_string,
)
from kqlops.core.errors import (
    ConnectionStringError,
    InvalidIdentityConfiguration,
    InvalidServiceUri,
    MalformedConnectionString,
    UnrecognizedKey,
)

APP_KEY_CS = (
    "Data Source=https://cluster.example.com;AAD Federated Security=True;"
    "Application Client Id=abc;Application Key=secret;Authority Id=tenant1"
)


def test_parse_app_key_connection_string():
    d = parse_connection_string(APP_KEY_CS)

    assert d.identity_mode == IdentityMode.APP_KEY
    assert d.service_uri == "https://cluster.example.com"
    assert d.application_id == "abc"
    assert d.application_key == "secret"
    assert d.tenant_id == "tenant1"
    assert d.federated_security is True
    assert d.database is None


def test_round_trip_without_redaction_yields_equal_descriptor():
    d = parse_connection_string(APP_KEY_CS)

    assert parse_connection_string(d.to_connection_string(redact=False)) == d


def test_serialization_redacts_secrets_by_default():
    d = parse_connection_string(APP_KEY_CS)
    text = d.to_connection_string()

    assert "secret" not in text
    assert f"Application Key={REDACTED}" in text
    assert str(d) == text
    assert "secret" not in repr(d)


def test_aliases_are_case_insensitive():
    d = parse_connection_string(
        "server=https://x.example.com;APPCLIENTID=a;appkey=k;Tenant=t;database=db1"
    )

    assert d.identity_mode == IdentityMode.APP_KEY
    assert d.database == "db1"
    assert d.tenant_id == "t"
    assert d.federated_security is False


@pytest.mark.parametrize(
    "key",
    ["Data Source", "addr", "Address", "network address", "Server"],
)
def test_data_source_aliases(key):
    d = parse_connection_string(f"{key}=https://x.example.com")

    assert d.service_uri == "https://x.example.com"
    assert d.identity_mode == IdentityMode.USER_PROMPT


def test_quoted_value_may_contain_semicolons_and_escaped_quotes():
    d = parse_connection_string(
        'Data Source=https://x.example.com;Application Token="abc;def""x"'
    )

    assert d.identity_mode == IdentityMode.APP_TOKEN
    assert d.application_token == 'abc;def"x'
    assert parse_connection_string(d.to_connection_string(redact=False)) == d


def test_single_quoted_value():
    d = parse_connection_string(
        "Data Source=https://x.example.com;Application Client Id=a;"
        "Application Key='k;1';Authority Id=t"
    )

    assert d.application_key == "k;1"


def test_blank_segments_and_trailing_separator_are_skipped():
    d = parse_connection_string(" Data Source = https://x.example.com/ ; ;")

    assert d.service_uri == "https://x.example.com"


def test_unknown_key_is_rejected():
    with pytest.raises(UnrecognizedKey) as exc_info:
        parse_connection_string("Data Source=https://x.example.com;Foo=bar")

    assert exc_info.value.key == "Foo"


@pytest.mark.parametrize(
    "raw, match",
    [
        ("Data Source=https://a.example.com;Server=https://b.example.com", "Duplicate key"),
        ("Data Source=", "Missing value"),
        ("=https://a.example.com", "Empty key"),
        ("Data Source=https://a.example.com;junk", "has no '='"),
        ("junk;Data Source=https://a.example.com", "has no '='"),
        ('Data Source="https://a.example.com', "Unterminated"),
        ('Data Source="https://a.example.com" x', "after quoted value"),
        ("Data Source=https://a.example.com;AAD Federated Security=yes", "Unexpected value"),
        ("Initial Catalog=db", "Missing required key"),
    ],
)
def test_malformed_connection_strings(raw, match):
    with pytest.raises(MalformedConnectionString, match=match):
        parse_connection_string(raw)


@pytest.mark.parametrize(
    "uri",
    ["ftp://cluster.example.com", "cluster.example.com", "https://"],
)
def test_invalid_service_uri(uri):
    with pytest.raises(InvalidServiceUri):
        parse_connection_string(f"Data Source={uri}")


def test_all_errors_are_connection_string_errors():
    with pytest.raises(ConnectionStringError):
        parse_connection_string("Nope=1")
    with pytest.raises(ValueError):
        parse_connection_string("Nope=1")


def test_missing_identity_fields_are_named():
    with pytest.raises(InvalidIdentityConfiguration) as exc_info:
        parse_connection_string(
            "Data Source=https://a.example.com;Application Client Id=abc;Application Key=s"
        )

    assert exc_info.value.fields == ("Authority Id",)


def test_conflicting_identity_modes_are_rejected():
    with pytest.raises(InvalidIdentityConfiguration, match="Conflicting") as exc_info:
        parse_connection_string(
            "Data Source=https://a.example.com;Application Key=s;MSI Authentication=true"
        )

    assert "Application Key" in exc_info.value.fields
    assert "MSI Authentication" in exc_info.value.fields


def test_application_id_without_secret_or_certificate():
    with pytest.raises(InvalidIdentityConfiguration, match="requires"):
        parse_connection_string("Data Source=https://a.example.com;Application Client Id=abc")


def test_field_not_allowed_for_mode():
    with pytest.raises(InvalidIdentityConfiguration, match="cannot be used") as exc_info:
        parse_connection_string("Data Source=https://a.example.com;MSI Params=cid")

    assert exc_info.value.fields == ("MSI Params",)


def test_false_flag_does_not_select_a_mode():
    d = parse_connection_string("Data Source=https://a.example.com;MSI Authentication=false")

    assert d.identity_mode == IdentityMode.USER_PROMPT


def test_user_prompt_with_login_hint():
    d = parse_connection_string("Data Source=https://a.example.com;AAD User ID=me@example.com")

    assert d.identity_mode == IdentityMode.USER_PROMPT
    assert d.user_id == "me@example.com"


def test_managed_identity_with_client_id():
    d = parse_connection_string(
        "Data Source=https://a.example.com;MSI Authentication=True;MSI Params=cid"
    )

    assert d.identity_mode == IdentityMode.MANAGED_IDENTITY
    assert d.msi_client_id == "cid"
    assert parse_connection_string(d.to_connection_string(redact=False)) == d


def test_az_cli_with_tenant():
    d = parse_connection_string("Data Source=https://a.example.com;az cli=TRUE;authority id=t")

    assert d.identity_mode == IdentityMode.AZ_CLI
    assert d.tenant_id == "t"


def test_application_certificate_redacts_thumbprint():
    d = ConnectionDescriptor.with_application_certificate(
        "https://a.example.com", "app", "/certs/app.pem", "THUMB", "t"
    )
    text = d.to_connection_string()

    assert "THUMB" not in text
    assert "Application Certificate=/certs/app.pem" in text
    assert parse_connection_string(d.to_connection_string(redact=False)) == d


def test_builders_default_to_federated_security():
    d = ConnectionDescriptor.with_application_key(
        "https://a.example.com", "app", "key", "t", database="db"
    )

    assert d.federated_security is True
    assert d.database == "db"
    assert parse_connection_string(d.to_connection_string(redact=False)) == d


def test_builders_validate_like_the_parser():
    with pytest.raises(InvalidIdentityConfiguration):
        ConnectionDescriptor.with_application_key("https://a.example.com", "app", "", "t")
    with pytest.raises(InvalidServiceUri):
        ConnectionDescriptor.with_az_cli("not a uri")


def test_token_callback_cannot_be_serialized():
    d = ConnectionDescriptor.with_token_callback("https://a.example.com", lambda r: "tok")

    assert d.identity_mode == IdentityMode.TOKEN_CALLBACK
    with pytest.raises(ConnectionStringError, match="token callback"):
        d.to_connection_string()


def test_redacted_copy_and_display_fields():
    d = parse_connection_string(APP_KEY_CS)

    assert d.redacted().application_key == REDACTED
    assert d.application_key == "secret"

    shown = descriptor_fields(d)
    assert shown["identity_mode"] == "app_key"
    assert shown["application_key"] == REDACTED
    assert "database" not in shown
