"""Bearer token acquisition for each identity mode.

This module turns a ConnectionDescriptor into a token provider. Azure AD
modes are backed by azure-identity credentials; the login endpoint and token
audience come from the endpoint's cloud metadata, which is looked up on the
first token request rather than when the provider is created. Providers
cache their token until shortly before it expires.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from datetime import timedelta
from typing import Callable, Protocol

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import (
    AzureCliCredential,
    CertificateCredential,
    ClientSecretCredential,
    InteractiveBrowserCredential,
    ManagedIdentityCredential,
)

from kqlops.core.cloud import CLOUD_INFO, CloudInfo, CloudInfoCache
from kqlops.core.connection import ConnectionDescriptor, IdentityMode
from kqlops.core.errors import AuthError

log = logging.getLogger(__name__)

# refresh this many seconds before the reported expiry
_REFRESH_MARGIN_SECONDS = 300

CredentialFactory = Callable[[CloudInfo], TokenCredential]


class TokenProvider(Protocol):
    """Interface for anything that can hand out a bearer token."""

    def get_token(self) -> str:
        """Return a valid bearer token."""
        ...


def _format_auth_error(message: str, tenant_id: str | None) -> str:
    """Return a user-friendly auth error message."""
    if re.search(r"az login", message):
        cmd = "az login"
        if tenant_id:
            cmd = f"{cmd} --tenant {tenant_id}"
        return (
            "Azure CLI authentication failed. You are not logged in.\n"
            f"Re-authenticate with:\n  $ {cmd}"
        )
    return f"Authentication failed: {message.strip()}"


class StaticTokenProvider:
    """Returns the same token every time."""

    def __init__(self, token: str):
        self._token = token

    def get_token(self) -> str:
        return self._token


class _CachingTokenProvider:
    """Base class caching a token until shortly before it expires."""

    _margin_seconds: float = _REFRESH_MARGIN_SECONDS

    def __init__(self, endpoint: str, clouds: CloudInfoCache | None = None) -> None:
        self.endpoint = endpoint
        self._clouds = clouds or CLOUD_INFO
        self._lock = threading.Lock()
        self._token: str | None = None
        self._expires_at = 0.0

    def cloud(self) -> CloudInfo:
        return self._clouds.get(self.endpoint)

    def _fetch(self) -> tuple[str, float]:
        """Return (token, expiry as epoch seconds)."""
        raise NotImplementedError

    def get_token(self) -> str:
        with self._lock:
            if self._token is None or time.time() >= self._expires_at - self._margin_seconds:
                self._token, self._expires_at = self._fetch()
                log.debug("Acquired token via %s", type(self).__name__)
            return self._token


class CallbackTokenProvider(_CachingTokenProvider):
    """
    Calls a user function for tokens.

    The callback receives the cloud's token audience. Without a TTL it runs
    on every request; with one the token is reused until the TTL has passed.
    """

    _margin_seconds = 0.0

    def __init__(
        self,
        callback: Callable[[str], str],
        endpoint: str,
        ttl: timedelta | None = None,
        clouds: CloudInfoCache | None = None,
    ):
        super().__init__(endpoint, clouds)
        self._callback = callback
        self._ttl = ttl

    def _fetch(self) -> tuple[str, float]:
        resource = self.cloud().resource_uri
        try:
            token = self._callback(resource)
        except Exception as exc:
            raise AuthError(f"Token callback failed: {exc}") from exc
        if not isinstance(token, str) or not token:
            raise AuthError("Token callback returned no token")
        ttl = self._ttl.total_seconds() if self._ttl else 0.0
        return token, time.time() + ttl


class CredentialTokenProvider(_CachingTokenProvider):
    """
    Adapts an azure-identity credential to the TokenProvider interface.

    The credential is created by `factory` once the cloud metadata is known,
    so creating the provider never touches the network.
    """

    def __init__(
        self,
        factory: CredentialFactory,
        endpoint: str,
        tenant_id: str | None = None,
        clouds: CloudInfoCache | None = None,
    ):
        super().__init__(endpoint, clouds)
        self._factory = factory
        self.tenant_id = tenant_id
        self._credential: TokenCredential | None = None

    def _fetch(self) -> tuple[str, float]:
        cloud = self.cloud()
        if self._credential is None:
            try:
                self._credential = self._factory(cloud)
            except (OSError, ValueError) as exc:
                raise AuthError(f"Could not create credential: {exc}") from exc
        try:
            access = self._credential.get_token(cloud.scope)
        except ClientAuthenticationError as exc:
            raise AuthError(_format_auth_error(str(exc), self.tenant_id)) from exc
        return access.token, float(access.expires_on)


def _credential_factory(descriptor: ConnectionDescriptor) -> CredentialFactory | None:
    mode = descriptor.identity_mode

    if mode == IdentityMode.APP_KEY:
        return lambda cloud: ClientSecretCredential(
            descriptor.tenant_id,
            descriptor.application_id,
            descriptor.application_key,
            authority=cloud.login_endpoint,
        )
    if mode == IdentityMode.APP_CERTIFICATE:
        # azure-identity derives the thumbprint from the certificate itself
        return lambda cloud: CertificateCredential(
            descriptor.tenant_id,
            descriptor.application_id,
            certificate_path=descriptor.certificate_path,
            authority=cloud.login_endpoint,
        )
    if mode == IdentityMode.MANAGED_IDENTITY:
        return lambda cloud: ManagedIdentityCredential(client_id=descriptor.msi_client_id)
    if mode == IdentityMode.AZ_CLI:
        return lambda cloud: AzureCliCredential(tenant_id=descriptor.tenant_id or "")
    if mode == IdentityMode.USER_PROMPT:

        def interactive(cloud: CloudInfo) -> TokenCredential:
            kwargs = {}
            if descriptor.tenant_id:
                kwargs["tenant_id"] = descriptor.tenant_id
            return InteractiveBrowserCredential(
                authority=cloud.login_endpoint,
                client_id=cloud.kusto_client_app_id,
                login_hint=descriptor.user_id,
                **kwargs,
            )

        return interactive
    return None


def get_token_provider(
    descriptor: ConnectionDescriptor, clouds: CloudInfoCache | None = None
) -> TokenProvider:
    """
    Create a token provider for the descriptor's identity mode.

    Args:
        descriptor: Validated connection settings.
        clouds: Cloud metadata cache. Defaults to the process-wide cache.

    Raises:
        AuthError: The identity mode has no token provider.
    """
    mode = descriptor.identity_mode

    if mode == IdentityMode.APP_TOKEN:
        return StaticTokenProvider(descriptor.application_token)
    if mode == IdentityMode.TOKEN_CALLBACK:
        return CallbackTokenProvider(
            descriptor.token_callback, descriptor.service_uri, descriptor.token_ttl, clouds
        )

    factory = _credential_factory(descriptor)
    if factory is None:
        raise AuthError(f"Identity mode '{mode.value}' has no token provider")
    return CredentialTokenProvider(factory, descriptor.service_uri, descriptor.tenant_id, clouds)
