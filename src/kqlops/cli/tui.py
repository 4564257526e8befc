"""Terminal UI utilities for kqlops."""

from __future__ import annotations

import questionary

from kqlops.cli.common.tui_style import QUESTIONARY_STYLE_SELECT
from kqlops.core.results import ResultTable

_MAX_TABLE_NAME_WIDTH = 64


def _truncate(text: str, max_len: int) -> str:
    """Return text capped at max_len characters using an ASCII ellipsis."""
    if max_len <= 3 or len(text) <= max_len:
        return text[:max_len]
    return f"{text[: max_len - 3]}..."


def _table_choice_title(table: ResultTable, *, name_width: int) -> str:
    """Format one table choice as `<name>  (<kind>, <n> rows)` with aligned details."""
    short_name = _truncate(table.name or f"#{table.table_id}", _MAX_TABLE_NAME_WIDTH)
    return f"{short_name.ljust(name_width)}  ({table.kind.value}, {len(table.rows)} rows)"


def select_tables(tables: list[ResultTable]) -> list[ResultTable]:
    """Display a checkbox prompt to select result tables.

    Args:
        tables: Tables to choose from.

    Returns:
        The selected tables, or an empty list if none selected.
    """
    shown_names = [
        _truncate(t.name or f"#{t.table_id}", _MAX_TABLE_NAME_WIDTH) for t in tables
    ]
    name_width = max((len(name) for name in shown_names), default=0)

    choices = [
        questionary.Choice(
            title=_table_choice_title(table, name_width=name_width),
            value=table,
        )
        for table in tables
    ]

    return (
        questionary.checkbox(
            "Select tables:",
            choices=choices,
            style=QUESTIONARY_STYLE_SELECT,
        ).ask()
        or []
    )
