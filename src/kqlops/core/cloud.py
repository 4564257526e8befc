"""Cloud metadata lookup.

Each service endpoint publishes the login endpoint and token audience of the
cloud it lives in at `/v1/rest/auth/metadata`. Sovereign clouds use different
values, so token providers resolve them here instead of assuming the public
cloud. Results are cached per endpoint for the life of the process.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

import httpx

from kqlops.core.errors import AuthError, TransportError

log = logging.getLogger(__name__)

METADATA_PATH = "/v1/rest/auth/metadata"
DEFAULT_LOGIN_ENDPOINT = "https://login.microsoftonline.com"


@dataclass(frozen=True)
class CloudInfo:
    """Login settings for one cloud. Defaults describe the public cloud."""

    login_mfa_required: bool = False
    login_endpoint: str = DEFAULT_LOGIN_ENDPOINT
    kusto_client_app_id: str = "db662dc1-0cfe-4e1c-a843-19a68e65be58"
    kusto_client_redirect_uri: str = "https://microsoft/kustoclient"
    kusto_service_resource_id: str = "https://kusto.kusto.windows.net"
    first_party_authority_url: str = (
        "https://login.microsoftonline.com/f8cdef31-a31e-4b4a-93e4-5f571e91255a"
    )

    @property
    def resource_uri(self) -> str:
        """Token audience; MFA clouds use the `kustomfa` resource."""
        if self.login_mfa_required:
            return self.kusto_service_resource_id.replace(".kusto.", ".kustomfa.")
        return self.kusto_service_resource_id

    @property
    def scope(self) -> str:
        return f"{self.resource_uri}/.default"

    @classmethod
    def from_payload(cls, payload: object) -> CloudInfo:
        """Build from the metadata body, `{"AzureAD": {"LoginEndpoint": ...}}`."""
        section = payload.get("AzureAD") if isinstance(payload, dict) else None
        if not isinstance(section, dict):
            raise AuthError("Cloud metadata response has no 'AzureAD' section")
        defaults = cls()
        return cls(
            login_mfa_required=bool(section.get("LoginMfaRequired", False)),
            login_endpoint=section.get("LoginEndpoint") or defaults.login_endpoint,
            kusto_client_app_id=section.get("KustoClientAppId") or defaults.kusto_client_app_id,
            kusto_client_redirect_uri=(
                section.get("KustoClientRedirectUri") or defaults.kusto_client_redirect_uri
            ),
            kusto_service_resource_id=(
                section.get("KustoServiceResourceId") or defaults.kusto_service_resource_id
            ),
            first_party_authority_url=(
                section.get("FirstPartyAuthorityUrl") or defaults.first_party_authority_url
            ),
        )


def _key(endpoint: str) -> str:
    return endpoint.rstrip("/")


class CloudInfoCache:
    """Per-endpoint cache in front of the metadata endpoint."""

    _TIMEOUT_SECONDS = 30.0

    def __init__(self, http: httpx.Client | None = None):
        self._http = http
        self._lock = threading.Lock()
        self._entries: dict[str, CloudInfo] = {}

    def get(self, endpoint: str) -> CloudInfo:
        """Return the cached entry for `endpoint`, fetching it on first use."""
        key = _key(endpoint)
        with self._lock:
            if key not in self._entries:
                self._entries[key] = self.fetch(key)
            return self._entries[key]

    def add(self, endpoint: str, info: CloudInfo) -> None:
        """Pin settings for an endpoint, e.g. for a private cloud."""
        with self._lock:
            self._entries[_key(endpoint)] = info

    def remove(self, endpoint: str) -> None:
        with self._lock:
            self._entries.pop(_key(endpoint), None)

    def __contains__(self, endpoint: str) -> bool:
        with self._lock:
            return _key(endpoint) in self._entries

    def fetch(self, endpoint: str) -> CloudInfo:
        """
        Query the metadata endpoint without touching the cache.

        A 404 means the service predates the endpoint; the public cloud
        defaults apply.

        Raises:
            AuthError: The endpoint is unreachable or returns an unexpected body.
            TransportError: The endpoint answers with another error status.
        """
        url = f"{_key(endpoint)}{METADATA_PATH}"
        log.debug("GET %s", url)
        try:
            if self._http is not None:
                response = self._http.get(url, headers={"Accept": "application/json"})
            else:
                with httpx.Client(timeout=self._TIMEOUT_SECONDS) as http:
                    response = http.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise AuthError(f"Cloud metadata request failed: {exc}") from exc

        if response.status_code == 404:
            log.debug("No cloud metadata at %s, using public cloud defaults", endpoint)
            return CloudInfo()
        if not response.is_success:
            raise TransportError(response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Cloud metadata response is not valid JSON") from exc
        return CloudInfo.from_payload(payload)


# shared by every provider in the process
CLOUD_INFO = CloudInfoCache()
