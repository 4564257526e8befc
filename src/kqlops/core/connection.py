"""Connection string parsing and the typed ConnectionDescriptor.

A connection string is a series of `Key=Value` segments separated by `;`.
Keys are matched case-insensitively against a fixed set of names and
aliases. Values may be wrapped in single or double quotes so they can
contain `;`; inside quotes a doubled quote character stands for itself.

Parsing is a pure value construction: nothing here touches the network or
acquires credentials. The descriptor is later handed to the auth layer
(kqlops.core.auth) and the transport (kqlops.core.adapters.kusto).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from enum import Enum
from typing import Callable
from urllib.parse import urlsplit

from kqlops.core.errors import (
    ConnectionStringError,
    InvalidIdentityConfiguration,
    InvalidServiceUri,
    MalformedConnectionString,
    UnrecognizedKey,
)

REDACTED = "******"


class IdentityMode(str, Enum):
    """
    How the client authenticates against the service.

    Values:
        USER_PROMPT: Interactive user login (the default when nothing else is set).
        APP_KEY: Application client id + secret + tenant.
        APP_CERTIFICATE: Application client id + certificate + tenant.
        MANAGED_IDENTITY: Azure managed identity, optionally user-assigned.
        TOKEN_CALLBACK: A caller-supplied function returns the token.
        APP_TOKEN: A fixed bearer token.
        AZ_CLI: Token obtained from a logged-in Azure CLI.
    """

    USER_PROMPT = "user_prompt"
    APP_KEY = "app_key"
    APP_CERTIFICATE = "app_certificate"
    MANAGED_IDENTITY = "managed_identity"
    TOKEN_CALLBACK = "token_callback"
    APP_TOKEN = "app_token"
    AZ_CLI = "az_cli"


class ConnectionKey(str, Enum):
    """Canonical connection string keys. Values are the serialized names."""

    DATA_SOURCE = "Data Source"
    INITIAL_CATALOG = "Initial Catalog"
    FEDERATED_SECURITY = "AAD Federated Security"
    USER_ID = "AAD User ID"
    APPLICATION_CLIENT_ID = "Application Client Id"
    APPLICATION_KEY = "Application Key"
    APPLICATION_CERTIFICATE = "Application Certificate"
    APPLICATION_CERTIFICATE_THUMBPRINT = "Application Certificate Thumbprint"
    AUTHORITY_ID = "Authority Id"
    APPLICATION_TOKEN = "Application Token"
    MSI_AUTH = "MSI Authentication"
    MSI_PARAMS = "MSI Params"
    AZ_CLI = "AZ CLI"
    INTERACTIVE_LOGIN = "Interactive Login"


_ALIASES: dict[str, ConnectionKey] = {k.value.lower(): k for k in ConnectionKey}
_ALIASES.update(
    {
        "addr": ConnectionKey.DATA_SOURCE,
        "address": ConnectionKey.DATA_SOURCE,
        "network address": ConnectionKey.DATA_SOURCE,
        "server": ConnectionKey.DATA_SOURCE,
        "database": ConnectionKey.INITIAL_CATALOG,
        "federated security": ConnectionKey.FEDERATED_SECURITY,
        "federated": ConnectionKey.FEDERATED_SECURITY,
        "fed": ConnectionKey.FEDERATED_SECURITY,
        "aadfed": ConnectionKey.FEDERATED_SECURITY,
        "user id": ConnectionKey.USER_ID,
        "uid": ConnectionKey.USER_ID,
        "user": ConnectionKey.USER_ID,
        "appclientid": ConnectionKey.APPLICATION_CLIENT_ID,
        "appkey": ConnectionKey.APPLICATION_KEY,
        "applicationcertificate": ConnectionKey.APPLICATION_CERTIFICATE,
        "appcert": ConnectionKey.APPLICATION_CERTIFICATE_THUMBPRINT,
        "authorityid": ConnectionKey.AUTHORITY_ID,
        "authority": ConnectionKey.AUTHORITY_ID,
        "tenantid": ConnectionKey.AUTHORITY_ID,
        "tenant id": ConnectionKey.AUTHORITY_ID,
        "tenant": ConnectionKey.AUTHORITY_ID,
        "tid": ConnectionKey.AUTHORITY_ID,
        "applicationtoken": ConnectionKey.APPLICATION_TOKEN,
        "apptoken": ConnectionKey.APPLICATION_TOKEN,
        "user token": ConnectionKey.APPLICATION_TOKEN,
        "usertoken": ConnectionKey.APPLICATION_TOKEN,
        "msi auth": ConnectionKey.MSI_AUTH,
        "msi_auth": ConnectionKey.MSI_AUTH,
        "msi": ConnectionKey.MSI_AUTH,
        "msi_params": ConnectionKey.MSI_PARAMS,
        "msi_type": ConnectionKey.MSI_PARAMS,
        "az_cli": ConnectionKey.AZ_CLI,
        "interactive_login": ConnectionKey.INTERACTIVE_LOGIN,
    }
)

# descriptor field -> key it is read from / written to
_FIELD_KEYS: dict[str, ConnectionKey] = {
    "service_uri": ConnectionKey.DATA_SOURCE,
    "database": ConnectionKey.INITIAL_CATALOG,
    "user_id": ConnectionKey.USER_ID,
    "application_id": ConnectionKey.APPLICATION_CLIENT_ID,
    "application_key": ConnectionKey.APPLICATION_KEY,
    "certificate_path": ConnectionKey.APPLICATION_CERTIFICATE,
    "certificate_thumbprint": ConnectionKey.APPLICATION_CERTIFICATE_THUMBPRINT,
    "tenant_id": ConnectionKey.AUTHORITY_ID,
    "application_token": ConnectionKey.APPLICATION_TOKEN,
    "msi_client_id": ConnectionKey.MSI_PARAMS,
}

_IDENTITY_FIELDS = (
    "user_id",
    "application_id",
    "application_key",
    "certificate_path",
    "certificate_thumbprint",
    "tenant_id",
    "application_token",
    "msi_client_id",
    "token_callback",
)

_SECRET_FIELDS = ("application_key", "certificate_thumbprint", "application_token")

_REQUIRED: dict[IdentityMode, tuple[str, ...]] = {
    IdentityMode.USER_PROMPT: (),
    IdentityMode.APP_KEY: ("application_id", "application_key", "tenant_id"),
    IdentityMode.APP_CERTIFICATE: (
        "application_id",
        "certificate_path",
        "certificate_thumbprint",
        "tenant_id",
    ),
    IdentityMode.MANAGED_IDENTITY: (),
    IdentityMode.TOKEN_CALLBACK: ("token_callback",),
    IdentityMode.APP_TOKEN: ("application_token",),
    IdentityMode.AZ_CLI: (),
}

_OPTIONAL: dict[IdentityMode, tuple[str, ...]] = {
    IdentityMode.USER_PROMPT: ("user_id", "tenant_id"),
    IdentityMode.MANAGED_IDENTITY: ("msi_client_id",),
    IdentityMode.AZ_CLI: ("tenant_id",),
}

# keys whose presence selects an identity mode
_MODE_INDICATORS: dict[ConnectionKey, IdentityMode] = {
    ConnectionKey.APPLICATION_KEY: IdentityMode.APP_KEY,
    ConnectionKey.APPLICATION_CERTIFICATE: IdentityMode.APP_CERTIFICATE,
    ConnectionKey.APPLICATION_CERTIFICATE_THUMBPRINT: IdentityMode.APP_CERTIFICATE,
    ConnectionKey.APPLICATION_TOKEN: IdentityMode.APP_TOKEN,
    ConnectionKey.MSI_AUTH: IdentityMode.MANAGED_IDENTITY,
    ConnectionKey.AZ_CLI: IdentityMode.AZ_CLI,
    ConnectionKey.INTERACTIVE_LOGIN: IdentityMode.USER_PROMPT,
}

_BOOLEAN_KEYS = {
    ConnectionKey.FEDERATED_SECURITY,
    ConnectionKey.MSI_AUTH,
    ConnectionKey.AZ_CLI,
    ConnectionKey.INTERACTIVE_LOGIN,
}

_KEY_DELIMITER = re.compile(r"[=;]")


def _label(field_name: str) -> str:
    """Return the user-facing name of a descriptor field."""
    key = _FIELD_KEYS.get(field_name)
    return key.value if key else field_name.replace("_", " ")


def _is_set(value: object) -> bool:
    return value is not None and value != ""


def _sanitize_service_uri(uri: str) -> str:
    """
    Validate and normalize the service URI.

    The URI must be absolute, use http or https, and name a host. A trailing
    slash is removed so request URLs can be built by plain concatenation.
    """
    try:
        parts = urlsplit(uri.strip())
    except ValueError as exc:
        raise InvalidServiceUri(f"Invalid service URI '{uri}': {exc}") from exc
    if parts.scheme.lower() not in ("http", "https"):
        raise InvalidServiceUri(
            f"Invalid service URI '{uri}': scheme must be http or https"
        )
    if not parts.netloc:
        raise InvalidServiceUri(f"Invalid service URI '{uri}': missing host")
    return uri.strip().rstrip("/")


@dataclass(frozen=True)
class ConnectionDescriptor:
    """
    Validated connection settings for one service endpoint.

    Attributes:
        service_uri: Absolute http(s) URI of the service, without trailing slash.
        identity_mode: Which identity the client authenticates as.
        federated_security: Whether AAD federated security was requested.
        database: Default database (Initial Catalog), if any.
        application_id: Application (client) id for app-key/app-certificate modes.
        application_key: Application secret (app-key mode only).
        certificate_path: Path to the application certificate.
        certificate_thumbprint: Thumbprint of the application certificate.
        tenant_id: Authority / tenant id.
        application_token: Fixed bearer token (app-token mode).
        user_id: Login hint for the user-prompt mode.
        msi_client_id: Client id of a user-assigned managed identity.
        token_callback: Function receiving the resource URI and returning a token.
        token_ttl: How long a callback token may be reused.
    """

    service_uri: str
    identity_mode: IdentityMode = IdentityMode.USER_PROMPT
    federated_security: bool = True
    database: str | None = None
    application_id: str | None = None
    application_key: str | None = field(default=None, repr=False)
    certificate_path: str | None = None
    certificate_thumbprint: str | None = field(default=None, repr=False)
    tenant_id: str | None = None
    application_token: str | None = field(default=None, repr=False)
    user_id: str | None = None
    msi_client_id: str | None = None
    token_callback: Callable[[str], str] | None = field(
        default=None, repr=False, compare=False
    )
    token_ttl: timedelta | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "service_uri", _sanitize_service_uri(self.service_uri))
        mode = IdentityMode(self.identity_mode)
        object.__setattr__(self, "identity_mode", mode)

        required = _REQUIRED[mode]
        allowed = set(required) | set(_OPTIONAL.get(mode, ()))

        missing = [f for f in required if not _is_set(getattr(self, f))]
        if missing:
            raise InvalidIdentityConfiguration(
                f"Identity mode '{mode.value}' requires "
                + ", ".join(f"'{_label(f)}'" for f in missing),
                fields=[_label(f) for f in missing],
            )

        extra = [
            f
            for f in _IDENTITY_FIELDS
            if f not in allowed and _is_set(getattr(self, f))
        ]
        if extra:
            raise InvalidIdentityConfiguration(
                ", ".join(f"'{_label(f)}'" for f in extra)
                + f" cannot be used with identity mode '{mode.value}'",
                fields=[_label(f) for f in extra],
            )

    @classmethod
    def with_application_key(
        cls,
        service_uri: str,
        application_id: str,
        application_key: str,
        tenant_id: str,
        *,
        database: str | None = None,
    ) -> ConnectionDescriptor:
        """Descriptor authenticating with an application id and secret."""
        return cls(
            service_uri,
            IdentityMode.APP_KEY,
            database=database,
            application_id=application_id,
            application_key=application_key,
            tenant_id=tenant_id,
        )

    @classmethod
    def with_application_certificate(
        cls,
        service_uri: str,
        application_id: str,
        certificate_path: str,
        certificate_thumbprint: str,
        tenant_id: str,
        *,
        database: str | None = None,
    ) -> ConnectionDescriptor:
        """Descriptor authenticating with an application certificate."""
        return cls(
            service_uri,
            IdentityMode.APP_CERTIFICATE,
            database=database,
            application_id=application_id,
            certificate_path=certificate_path,
            certificate_thumbprint=certificate_thumbprint,
            tenant_id=tenant_id,
        )

    @classmethod
    def with_managed_identity(
        cls,
        service_uri: str,
        msi_client_id: str | None = None,
        *,
        database: str | None = None,
    ) -> ConnectionDescriptor:
        """Descriptor using a system-assigned (or user-assigned) managed identity."""
        return cls(
            service_uri,
            IdentityMode.MANAGED_IDENTITY,
            database=database,
            msi_client_id=msi_client_id,
        )

    @classmethod
    def with_application_token(
        cls, service_uri: str, token: str, *, database: str | None = None
    ) -> ConnectionDescriptor:
        """Descriptor sending a fixed bearer token."""
        return cls(
            service_uri,
            IdentityMode.APP_TOKEN,
            database=database,
            application_token=token,
        )

    @classmethod
    def with_token_callback(
        cls,
        service_uri: str,
        callback: Callable[[str], str],
        ttl: timedelta | None = None,
        *,
        database: str | None = None,
    ) -> ConnectionDescriptor:
        """Descriptor asking `callback(resource)` for a token. Cannot be serialized."""
        return cls(
            service_uri,
            IdentityMode.TOKEN_CALLBACK,
            database=database,
            token_callback=callback,
            token_ttl=ttl,
        )

    @classmethod
    def with_az_cli(
        cls,
        service_uri: str,
        tenant_id: str | None = None,
        *,
        database: str | None = None,
    ) -> ConnectionDescriptor:
        """Descriptor reusing the Azure CLI login."""
        return cls(
            service_uri, IdentityMode.AZ_CLI, database=database, tenant_id=tenant_id
        )

    @classmethod
    def with_user_prompt(
        cls,
        service_uri: str,
        user_id: str | None = None,
        tenant_id: str | None = None,
        *,
        database: str | None = None,
    ) -> ConnectionDescriptor:
        """Descriptor for an interactive user login."""
        return cls(
            service_uri,
            IdentityMode.USER_PROMPT,
            database=database,
            user_id=user_id,
            tenant_id=tenant_id,
        )

    def redacted(self) -> ConnectionDescriptor:
        """Return a copy with every secret replaced by a placeholder."""
        changes = {f: REDACTED for f in _SECRET_FIELDS if _is_set(getattr(self, f))}
        return replace(self, **changes)

    def to_connection_string(self, *, redact: bool = True) -> str:
        """
        Serialize the descriptor back into a connection string.

        Canonical key names are always written. With `redact=True` (the
        default) secrets are replaced by `******`.

        Raises:
            ConnectionStringError: For token-callback descriptors, which have
                no textual representation.
        """
        if self.identity_mode == IdentityMode.TOKEN_CALLBACK:
            raise ConnectionStringError(
                "A token callback identity cannot be written as a connection string"
            )

        source = self.redacted() if redact else self
        pairs: list[tuple[ConnectionKey, str]] = [
            (ConnectionKey.DATA_SOURCE, source.service_uri),
            (ConnectionKey.FEDERATED_SECURITY, _format_bool(source.federated_security)),
        ]
        if source.database:
            pairs.append((ConnectionKey.INITIAL_CATALOG, source.database))

        mode = source.identity_mode
        if mode == IdentityMode.MANAGED_IDENTITY:
            pairs.append((ConnectionKey.MSI_AUTH, _format_bool(True)))
        elif mode == IdentityMode.AZ_CLI:
            pairs.append((ConnectionKey.AZ_CLI, _format_bool(True)))
        elif mode == IdentityMode.USER_PROMPT:
            pairs.append((ConnectionKey.INTERACTIVE_LOGIN, _format_bool(True)))

        for name in _REQUIRED[mode] + _OPTIONAL.get(mode, ()):
            value = getattr(source, name)
            if _is_set(value):
                pairs.append((_FIELD_KEYS[name], value))

        return ";".join(f"{key.value}={_quote(value)}" for key, value in pairs)

    def __str__(self) -> str:
        return self.to_connection_string(redact=True)


def _format_bool(value: bool) -> str:
    return "True" if value else "False"


def _parse_bool(key: ConnectionKey, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise MalformedConnectionString(
        f"Unexpected value for '{key.value}': '{value}'. Use 'true' or 'false'."
    )


def _quote(value: str) -> str:
    """Quote a value when writing it bare would change how it parses back."""
    needs_quotes = (
        ";" in value
        or value != value.strip()
        or value[:1] in ("'", '"')
    )
    if not needs_quotes:
        return value
    return '"' + value.replace('"', '""') + '"'


def _tokenize(raw: str) -> list[tuple[str, str]]:
    """Split a raw connection string into (key, value) pairs."""
    pairs: list[tuple[str, str]] = []
    pos, n = 0, len(raw)

    while pos < n:
        match = _KEY_DELIMITER.search(raw, pos)
        if match is None:
            leftover = raw[pos:].strip()
            if leftover:
                raise MalformedConnectionString(f"Segment '{leftover}' has no '='")
            break
        if match.group() == ";":
            segment = raw[pos : match.start()].strip()
            if segment:
                raise MalformedConnectionString(f"Segment '{segment}' has no '='")
            pos = match.end()
            continue

        key = raw[pos : match.start()].strip()
        if not key:
            raise MalformedConnectionString("Empty key in connection string")
        pos = match.end()

        start = pos
        while start < n and raw[start] in " \t":
            start += 1

        if start < n and raw[start] in ("'", '"'):
            quote = raw[start]
            chars: list[str] = []
            i = start + 1
            while True:
                if i >= n:
                    raise MalformedConnectionString(
                        f"Unterminated quoted value for key '{key}'"
                    )
                if raw[i] == quote:
                    if i + 1 < n and raw[i + 1] == quote:
                        chars.append(quote)
                        i += 2
                        continue
                    i += 1
                    break
                chars.append(raw[i])
                i += 1
            value = "".join(chars)
            end = raw.find(";", i)
            end = n if end == -1 else end
            if raw[i:end].strip():
                raise MalformedConnectionString(
                    f"Unexpected text after quoted value for key '{key}'"
                )
        else:
            end = raw.find(";", pos)
            end = n if end == -1 else end
            value = raw[pos:end].strip()

        if not value:
            raise MalformedConnectionString(f"Missing value for key '{key}'")
        pairs.append((key, value))
        pos = end + 1

    return pairs


def parse_connection_string(raw: str) -> ConnectionDescriptor:
    """
    Parse a connection string into a validated ConnectionDescriptor.

    Args:
        raw: Semicolon separated `Key=Value` pairs.

    Returns:
        The descriptor. Federated security defaults to False when the key is
        absent.

    Raises:
        MalformedConnectionString: Empty/duplicate keys, missing values,
            unparseable booleans or a missing Data Source.
        UnrecognizedKey: A key outside the recognized set.
        InvalidIdentityConfiguration: Missing or conflicting identity fields.
        InvalidServiceUri: Data Source is not an absolute http(s) URI.
    """
    values: dict[ConnectionKey, str] = {}
    for key_text, value in _tokenize(raw):
        key = _ALIASES.get(key_text.lower())
        if key is None:
            raise UnrecognizedKey(key_text)
        if key in values:
            raise MalformedConnectionString(
                f"Duplicate key '{key.value}' (given as '{key_text}')"
            )
        values[key] = value

    if ConnectionKey.DATA_SOURCE not in values:
        raise MalformedConnectionString(
            f"Missing required key '{ConnectionKey.DATA_SOURCE.value}'"
        )

    flags = {k: _parse_bool(k, v) for k, v in values.items() if k in _BOOLEAN_KEYS}

    indicated: dict[IdentityMode, list[ConnectionKey]] = {}
    for key, mode in _MODE_INDICATORS.items():
        if key not in values:
            continue
        if key in _BOOLEAN_KEYS and not flags[key]:
            continue
        indicated.setdefault(mode, []).append(key)

    if len(indicated) > 1:
        conflicting = [k.value for keys in indicated.values() for k in keys]
        raise InvalidIdentityConfiguration(
            "Conflicting identity settings: " + ", ".join(f"'{k}'" for k in conflicting),
            fields=conflicting,
        )

    if indicated:
        mode = next(iter(indicated))
    elif ConnectionKey.APPLICATION_CLIENT_ID in values:
        raise InvalidIdentityConfiguration(
            f"'{ConnectionKey.APPLICATION_CLIENT_ID.value}' requires "
            f"'{ConnectionKey.APPLICATION_KEY.value}' or "
            f"'{ConnectionKey.APPLICATION_CERTIFICATE.value}'",
            fields=[
                ConnectionKey.APPLICATION_KEY.value,
                ConnectionKey.APPLICATION_CERTIFICATE.value,
            ],
        )
    else:
        mode = IdentityMode.USER_PROMPT

    kwargs = {
        name: values[key] for name, key in _FIELD_KEYS.items() if key in values
    }
    return ConnectionDescriptor(
        identity_mode=mode,
        federated_security=flags.get(ConnectionKey.FEDERATED_SECURITY, False),
        **kwargs,
    )


def descriptor_fields(descriptor: ConnectionDescriptor) -> dict[str, object]:
    """Return the displayable fields of a descriptor (secrets redacted, unset omitted)."""
    shown = descriptor.redacted()
    out: dict[str, object] = {}
    for f in fields(shown):
        if f.name in ("token_callback", "token_ttl"):
            continue
        value = getattr(shown, f.name)
        if value is None:
            continue
        out[f.name] = value.value if isinstance(value, Enum) else value
    return out
