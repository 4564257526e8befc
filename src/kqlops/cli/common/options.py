"""Common CLI options for the CLI."""

import typer

ConnectionOpt = typer.Option(
    None,
    "--connection",
    "-c",
    envvar="KQLOPS_CONNECTION_STRING",
    help="Connection string (Data Source=...;...)",
    show_default=False,
)

DatabaseOpt = typer.Option(
    None,
    "--db",
    "-d",
    envvar="KQLOPS_DATABASE",
    help="Database name (defaults to the connection's Initial Catalog)",
)

StreamOpt = typer.Option(
    False,
    "--stream",
    help="Request progressive results and materialize them as they arrive",
)

PickOpt = typer.Option(
    False,
    "--pick",
    help="Choose which tables to print",
)

AllTablesOpt = typer.Option(
    False,
    "--all-tables",
    help="Print metadata tables as well as primary results",
)

MaxRowsOpt = typer.Option(
    None,
    "--max-rows",
    "-n",
    help="Print at most this many rows per table",
)

LinesOpt = typer.Option(
    False,
    "--lines",
    help="Input holds one progressive frame per line",
)
