"""Commands for inspecting connection strings."""

import typer

from kqlops.cli.common.context import load_descriptor
from kqlops.cli.common.output import out
from kqlops.core.connection import descriptor_fields

conn_app = typer.Typer(help="Inspect connection strings", no_args_is_help=True)


@conn_app.command()
def show(
    connection: str | None = typer.Argument(
        None,
        envvar="KQLOPS_CONNECTION_STRING",
        help="Connection string (defaults to KQLOPS_CONNECTION_STRING)",
        show_default=False,
    ),
):
    """
    Parse a connection string and print it with secrets redacted.
    """
    descriptor = load_descriptor(connection)

    out.header("Connection")
    out.kv(descriptor_fields(descriptor))
    out.info(descriptor.to_connection_string(redact=True))
