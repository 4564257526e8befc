"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from kqlops.core.frames import QueryError
from kqlops.core.results import DecodeWarning, ResultTable

_THEME = Theme(
    {
        "ok": "bold green",
        "warn": "yellow",
        "err": "bold red",
        "title": "bold cyan",
        "meta": "dim",
    }
)

console = Console(theme=_THEME)


def format_cell(value: Any) -> Text:
    """Render one typed cell as plain (markup-free) text."""
    if value is None:
        return Text("null", style="meta")
    if isinstance(value, bool):
        return Text("true" if value else "false")
    if isinstance(value, datetime):
        return Text(value.isoformat())
    if isinstance(value, timedelta):
        return Text(str(value))
    if isinstance(value, (dict, list)):
        return Text(json.dumps(value, default=str))
    return Text(str(value))


@dataclass(frozen=True)
class Out:
    """Output formatter for CLI messages and tables."""

    def info(self, msg: str) -> None:
        """Print an info message."""
        console.print(f"[title]›[/] {msg}")

    @contextmanager
    def status(self, msg: str):
        """Show a transient status spinner while work is in progress."""
        with console.status(msg, spinner="dots"):
            yield

    def success(self, msg: str) -> None:
        """Print a success message."""
        console.print(f"[ok]✓[/] {msg}")

    def warn(self, msg: str) -> None:
        """Print a warning message."""
        console.print(f"[warn]⚠[/] {msg}")

    def error(self, msg: str) -> None:
        """Print an error message."""
        console.print(f"[err]✗[/] {msg}")

    def header(self, title: str) -> None:
        """Print a header message."""
        console.print(f"[title]{title}[/]")

    def kv(self, items: Mapping[str, Any]) -> None:
        """Print key-value pairs."""
        for k, v in items.items():
            console.print(f"[meta]{k}[/]: {v}")

    def result_table(self, table: ResultTable, *, max_rows: int | None = None) -> None:
        """
        Render one result table.

        The title carries the table name and kind; column headers show the
        resolved type. With `max_rows`, only the first rows are printed.
        """
        title = f"{table.name} [meta]({table.kind.value})[/]"
        if not table.complete:
            title += " [warn]incomplete[/]"
        t = Table(title=title, show_lines=False)
        for column in table.columns:
            t.add_column(f"{column.name}\n[meta]{column.column_type.value}[/]")

        rows = table.rows if max_rows is None else table.rows[:max_rows]
        for row in rows:
            t.add_row(*(format_cell(v) for v in row))

        console.print(t)
        if max_rows is not None and len(table.rows) > max_rows:
            console.print(f"[meta]{len(table.rows) - max_rows} more rows not shown[/]")

    def warnings_list(self, warnings: Iterable[DecodeWarning]) -> None:
        """Print decode warnings, one per line."""
        for w in warnings:
            self.warn(escape(str(w)))

    def errors_table(self, errors: Iterable[QueryError], title: str = "Service errors") -> None:
        """Render service errors with their code and fatality."""
        t = Table(title=title, show_lines=False)
        t.add_column("Code", style="err", no_wrap=True)
        t.add_column("Message")
        t.add_column("Fatal", style="meta")

        for e in errors:
            t.add_row(e.code or "", Text(e.message), "yes" if e.is_fatal else "no")

        console.print(t)


out = Out()
