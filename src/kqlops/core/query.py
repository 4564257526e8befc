"""Query and command execution.

These functions tie the pieces together: an adapter sends the request and
returns the raw body (or a stream of lines), the decoder turns it into
frames and the materializer folds the frames into a QueryResult. They hold
no CLI concerns and work with any adapter that matches the protocols below.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager, AbstractContextManager
from copy import deepcopy
from typing import AsyncIterator, Iterator, Protocol

from kqlops.core.decoder import (
    ResponseVersion,
    aiter_frames_from_lines,
    decode_frames,
    iter_frames_from_lines,
)
from kqlops.core.materializer import amaterialize, materialize
from kqlops.core.request import ClientRequestProperties
from kqlops.core.results import QueryResult


class QueryAdapter(Protocol):
    """Interface for sending queries and commands to the service."""

    def query(
        self, database: str | None, query: str, properties: ClientRequestProperties | None
    ) -> bytes:
        """Return the raw v2 response body for a query."""
        ...

    def command(
        self, database: str | None, command: str, properties: ClientRequestProperties | None
    ) -> bytes:
        """Return the raw v1 response body for a management command."""
        ...

    def stream_query(
        self, database: str | None, query: str, properties: ClientRequestProperties | None
    ) -> AbstractContextManager[Iterator[str]]:
        """Open a streamed query; the context yields response lines."""
        ...


class AsyncQueryAdapter(Protocol):
    """Async counterpart of QueryAdapter."""

    async def query(
        self, database: str | None, query: str, properties: ClientRequestProperties | None
    ) -> bytes:
        ...

    def stream_query(
        self, database: str | None, query: str, properties: ClientRequestProperties | None
    ) -> AbstractAsyncContextManager[AsyncIterator[str]]:
        ...


def _progressive(properties: ClientRequestProperties | None) -> ClientRequestProperties:
    props = deepcopy(properties) if properties else ClientRequestProperties()
    props.results_progressive_enabled = True
    return props


def execute_query(
    adapter: QueryAdapter,
    query: str,
    database: str | None = None,
    properties: ClientRequestProperties | None = None,
) -> QueryResult:
    """
    Run a query and materialize the whole response.

    Args:
        adapter: Transport adapter.
        query: Query text.
        database: Target database; the adapter falls back to the connection's
            Initial Catalog when None.
        properties: Optional request options and parameters.

    Returns:
        The QueryResult. Fatal service errors are carried on the result
        (`fatal_error`); call `raise_for_errors()` to turn them into exceptions.
    """
    body = adapter.query(database, query, properties)
    return materialize(decode_frames(body, ResponseVersion.V2))


def execute_command(
    adapter: QueryAdapter,
    command: str,
    database: str | None = None,
    properties: ClientRequestProperties | None = None,
) -> QueryResult:
    """Run a management command (v1 response) and materialize it."""
    body = adapter.command(database, command, properties)
    return materialize(decode_frames(body, ResponseVersion.V1))


def stream_query(
    adapter: QueryAdapter,
    query: str,
    database: str | None = None,
    properties: ClientRequestProperties | None = None,
) -> QueryResult:
    """
    Run a query with progressive results, materializing frames as lines arrive.

    A fatal error stops reading the stream; tables received so far are kept.
    """
    with adapter.stream_query(database, query, _progressive(properties)) as lines:
        return materialize(iter_frames_from_lines(lines))


async def aexecute_query(
    adapter: AsyncQueryAdapter,
    query: str,
    database: str | None = None,
    properties: ClientRequestProperties | None = None,
) -> QueryResult:
    """Async variant of execute_query."""
    body = await adapter.query(database, query, properties)
    return materialize(decode_frames(body, ResponseVersion.V2))


async def astream_query(
    adapter: AsyncQueryAdapter,
    query: str,
    database: str | None = None,
    properties: ClientRequestProperties | None = None,
) -> QueryResult:
    """Async variant of stream_query."""
    async with adapter.stream_query(database, query, _progressive(properties)) as lines:
        return await amaterialize(aiter_frames_from_lines(lines))
