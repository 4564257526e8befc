"""Commands for running queries and decoding saved responses."""

from pathlib import Path

import httpx
import typer
from rich.markup import escape

from kqlops.cli.common.context import build_query_context
from kqlops.cli.common.exits import die, exit_from_exc, warn_exit
from kqlops.cli.common.options import (
    AllTablesOpt,
    ConnectionOpt,
    DatabaseOpt,
    LinesOpt,
    MaxRowsOpt,
    PickOpt,
    StreamOpt,
)
from kqlops.cli.common.output import out
from kqlops.cli.tui import select_tables
from kqlops.core.decoder import decode_frames, iter_frames_from_lines
from kqlops.core.errors import KqlopsError
from kqlops.core.materializer import materialize
from kqlops.core.query import execute_command, execute_query, stream_query
from kqlops.core.results import QueryResult


def render_result(
    result: QueryResult,
    *,
    all_tables: bool = False,
    pick: bool = False,
    max_rows: int | None = None,
) -> None:
    """Print tables, then warnings and errors; exit 1 on a fatal service error."""
    tables = list(result.tables) if all_tables else result.primary_results

    if pick and tables:
        tables = select_tables(tables)
        if not tables:
            warn_exit("No tables selected", code=0)

    for table in tables:
        out.result_table(table, max_rows=max_rows)

    if not result.tables:
        out.info("Response contained no tables")

    out.warnings_list(result.warnings)
    if result.errors:
        out.errors_table(result.errors)
    if result.cancelled:
        out.warn("Query was cancelled by the service")
    if result.fatal_error is not None:
        die(f"Query failed: {escape(str(result.fatal_error))}", code=1)


def query(
    text: str = typer.Argument(..., help="Query text"),
    connection: str | None = ConnectionOpt,
    database: str | None = DatabaseOpt,
    stream: bool = StreamOpt,
    pick: bool = PickOpt,
    all_tables: bool = AllTablesOpt,
    max_rows: int | None = MaxRowsOpt,
):
    """
    Run a query and print its result tables.
    """
    appctx = build_query_context(connection)
    run = stream_query if stream else execute_query

    try:
        with out.status("Running query..."):
            result = run(appctx.adapter, text, database)
    except KqlopsError as exc:
        exit_from_exc(exc, message=escape(str(exc)))
    except httpx.HTTPError as exc:
        exit_from_exc(exc, message=f"Request failed: {exc}")
    finally:
        appctx.adapter.close()

    render_result(result, all_tables=all_tables, pick=pick, max_rows=max_rows)


def command(
    text: str = typer.Argument(..., help="Management command, e.g. '.show tables'"),
    connection: str | None = ConnectionOpt,
    database: str | None = DatabaseOpt,
    max_rows: int | None = MaxRowsOpt,
):
    """
    Run a management command and print its tables.
    """
    appctx = build_query_context(connection)

    try:
        with out.status("Running command..."):
            result = execute_command(appctx.adapter, text, database)
    except KqlopsError as exc:
        exit_from_exc(exc, message=escape(str(exc)))
    except httpx.HTTPError as exc:
        exit_from_exc(exc, message=f"Request failed: {exc}")
    finally:
        appctx.adapter.close()

    render_result(result, all_tables=True, max_rows=max_rows)


def decode(
    path: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="Saved response body"
    ),
    lines: bool = LinesOpt,
    pick: bool = PickOpt,
    all_tables: bool = AllTablesOpt,
    max_rows: int | None = MaxRowsOpt,
):
    """
    Decode a saved v1 or v2 response without contacting the service.
    """
    try:
        if lines:
            with path.open("r", encoding="utf-8") as fh:
                result = materialize(iter_frames_from_lines(fh))
        else:
            result = materialize(decode_frames(path.read_bytes()))
    except KqlopsError as exc:
        exit_from_exc(exc, message=escape(f"Could not decode {path}: {exc}"))

    render_result(result, all_tables=all_tables, pick=pick, max_rows=max_rows)
