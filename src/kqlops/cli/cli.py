"""CLI application for querying Kusto-style analytics services."""

import logging

import typer
from rich.logging import RichHandler

from kqlops.cli.commands import query as query_commands
from kqlops.cli.commands.conn import conn_app
from kqlops.cli.common.output import console

app = typer.Typer(
    help="kqlops - query an analytics service and inspect its responses",
    no_args_is_help=True,
)


@app.callback()
def _init(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Log requests and frame handling"
    ),
):
    """Configure logging for the invocation."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
            force=True,
        )


app.command(name="query")(query_commands.query)
app.command(name="command")(query_commands.command)
app.command(name="decode")(query_commands.decode)
app.add_typer(conn_app, name="conn")


if __name__ == "__main__":
    app()
