"""Application context management for the CLI."""

from dataclasses import dataclass

from rich.markup import escape

from kqlops.cli.common.exits import die
from kqlops.core.adapters.kusto import KustoHttpAdapter
from kqlops.core.connection import ConnectionDescriptor, parse_connection_string
from kqlops.core.errors import AuthError, ConnectionStringError


@dataclass
class QueryAppContext:
    """Application context holding the parsed connection and transport adapter."""

    descriptor: ConnectionDescriptor
    adapter: KustoHttpAdapter


def load_descriptor(connection: str | None) -> ConnectionDescriptor:
    """Parse the connection string or exit with a readable error."""
    if not connection:
        die("No connection string. Pass --connection or set KQLOPS_CONNECTION_STRING.")
    try:
        return parse_connection_string(connection)
    except ConnectionStringError as exc:
        die(f"Invalid connection string: {escape(str(exc))}", code=1)


def build_query_context(connection: str | None) -> QueryAppContext:
    """Build and return the application context for query commands.

    Args:
        connection: Raw connection string.

    Returns:
        QueryAppContext: Parsed descriptor plus an adapter with a token provider.
    """
    descriptor = load_descriptor(connection)
    try:
        adapter = KustoHttpAdapter(descriptor)
    except AuthError as exc:
        die(escape(str(exc)), code=1)
    return QueryAppContext(descriptor=descriptor, adapter=adapter)
