"""HTTP transport for the query service.

The adapters post a query or management command to the service and hand the
raw body back to the caller; decoding happens in kqlops.core.decoder. A
non-success status becomes a QueryServiceError when the body carries a
service error object, and a TransportError otherwise.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, Iterator

import httpx

from kqlops.core.auth import TokenProvider, get_token_provider
from kqlops.core.connection import ConnectionDescriptor
from kqlops.core.decoder import parse_query_error
from kqlops.core.errors import MissingDatabase, QueryServiceError, TransportError
from kqlops.core.request import (
    ClientRequestProperties,
    client_version_header,
    default_application,
    default_user,
    new_client_request_id,
)

log = logging.getLogger(__name__)

QUERY_PATH = "/v2/rest/query"
MGMT_PATH = "/v1/rest/mgmt"
# database the service uses for commands that are not scoped to one
DEFAULT_COMMAND_DATABASE = "NetDefaultDB"


def _raise_for_status(status_code: int, body: bytes) -> None:
    """Raise QueryServiceError for OneApi error bodies, TransportError otherwise."""
    if 200 <= status_code < 300:
        return
    text = body.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        raise QueryServiceError([parse_query_error(payload, fatal=True)])
    raise TransportError(status_code, text)


class _KustoHttpBase:
    """Request building shared by the sync and async adapters."""

    _TIMEOUT_ENV = "KQLOPS_TIMEOUT_SECONDS"
    _APP_NAME_ENV = "KQLOPS_APP_NAME"
    _DEFAULT_TIMEOUT_SECONDS = 240.0

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        token_provider: TokenProvider | None = None,
    ):
        self.descriptor = descriptor
        self.token_provider = token_provider or get_token_provider(descriptor)

    @classmethod
    def _timeout_seconds(cls) -> float:
        """Return the request timeout, honoring env override."""
        raw = os.getenv(cls._TIMEOUT_ENV)
        if raw is None:
            return cls._DEFAULT_TIMEOUT_SECONDS
        try:
            value = float(raw)
        except ValueError:
            return cls._DEFAULT_TIMEOUT_SECONDS
        return value if value > 0 else cls._DEFAULT_TIMEOUT_SECONDS

    def _app_name(self, properties: ClientRequestProperties) -> str:
        return properties.application or os.getenv(self._APP_NAME_ENV) or default_application()

    def _resolve_database(self, database: str | None, management: bool) -> str:
        database = database or self.descriptor.database
        if database:
            return database
        if management:
            return DEFAULT_COMMAND_DATABASE
        raise MissingDatabase("No database given and the connection string has no Initial Catalog")

    def _build(
        self,
        database: str | None,
        text: str,
        properties: ClientRequestProperties | None,
        *,
        management: bool,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        properties = properties or ClientRequestProperties()
        path = MGMT_PATH if management else QUERY_PATH
        url = f"{self.descriptor.service_uri}{path}"
        request_id = properties.client_request_id or new_client_request_id(
            "KQLOPS.mgmt" if management else "KQLOPS.query"
        )
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json; charset=utf-8",
            "x-ms-client-request-id": request_id,
            "x-ms-app": self._app_name(properties),
            "x-ms-user": properties.user or default_user(),
            "x-ms-client-version": client_version_header(),
        }
        body: dict[str, Any] = {
            "db": self._resolve_database(database, management),
            "csl": text,
        }
        payload = properties.to_payload()
        if payload:
            body["properties"] = payload
        log.debug("POST %s db=%s request_id=%s", url, body["db"], request_id)
        return url, headers, body


class KustoHttpAdapter(_KustoHttpBase):
    """Synchronous transport over httpx.Client."""

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        token_provider: TokenProvider | None = None,
        client: httpx.Client | None = None,
    ):
        """Create an adapter for one service endpoint."""
        super().__init__(descriptor, token_provider)
        self.client = client or httpx.Client(timeout=self._timeout_seconds())

    def _post(
        self,
        database: str | None,
        text: str,
        properties: ClientRequestProperties | None,
        management: bool,
    ) -> bytes:
        url, headers, body = self._build(database, text, properties, management=management)
        headers["Authorization"] = f"Bearer {self.token_provider.get_token()}"
        response = self.client.post(url, headers=headers, json=body)
        _raise_for_status(response.status_code, response.content)
        return response.content

    def query(
        self,
        database: str | None,
        query: str,
        properties: ClientRequestProperties | None = None,
    ) -> bytes:
        """Run a query against the v2 endpoint and return the raw body."""
        return self._post(database, query, properties, management=False)

    def command(
        self,
        database: str | None,
        command: str,
        properties: ClientRequestProperties | None = None,
    ) -> bytes:
        """Run a management command against the v1 endpoint and return the raw body."""
        return self._post(database, command, properties, management=True)

    @contextmanager
    def stream_query(
        self,
        database: str | None,
        query: str,
        properties: ClientRequestProperties | None = None,
    ) -> Iterator[Iterator[str]]:
        """Post a query and yield the response body as an iterator of lines."""
        url, headers, body = self._build(database, query, properties, management=False)
        headers["Authorization"] = f"Bearer {self.token_provider.get_token()}"
        with self.client.stream("POST", url, headers=headers, json=body) as response:
            if not response.is_success:
                _raise_for_status(response.status_code, response.read())
            yield response.iter_lines()

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> KustoHttpAdapter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class AsyncKustoHttpAdapter(_KustoHttpBase):
    """Asynchronous transport over httpx.AsyncClient."""

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        token_provider: TokenProvider | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(descriptor, token_provider)
        self.client = client or httpx.AsyncClient(timeout=self._timeout_seconds())

    async def _token(self) -> str:
        # providers may block on network or a subprocess
        return await asyncio.to_thread(self.token_provider.get_token)

    async def _post(
        self,
        database: str | None,
        text: str,
        properties: ClientRequestProperties | None,
        management: bool,
    ) -> bytes:
        url, headers, body = self._build(database, text, properties, management=management)
        headers["Authorization"] = f"Bearer {await self._token()}"
        response = await self.client.post(url, headers=headers, json=body)
        _raise_for_status(response.status_code, response.content)
        return response.content

    async def query(
        self,
        database: str | None,
        query: str,
        properties: ClientRequestProperties | None = None,
    ) -> bytes:
        return await self._post(database, query, properties, management=False)

    async def command(
        self,
        database: str | None,
        command: str,
        properties: ClientRequestProperties | None = None,
    ) -> bytes:
        return await self._post(database, command, properties, management=True)

    @asynccontextmanager
    async def stream_query(
        self,
        database: str | None,
        query: str,
        properties: ClientRequestProperties | None = None,
    ) -> AsyncIterator[AsyncIterator[str]]:
        url, headers, body = self._build(database, query, properties, management=False)
        headers["Authorization"] = f"Bearer {await self._token()}"
        async with self.client.stream("POST", url, headers=headers, json=body) as response:
            if not response.is_success:
                _raise_for_status(response.status_code, await response.aread())
            yield response.aiter_lines()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> AsyncKustoHttpAdapter:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
