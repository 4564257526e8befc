"""Materialized query results.

These are the read-only values handed back to callers once a response has
been fully consumed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from kqlops.core import arrow
from kqlops.core.coercion import ColumnType
from kqlops.core.errors import QueryServiceError
from kqlops.core.frames import DatasetHeader, QueryError, TableKind

if TYPE_CHECKING:
    import pyarrow as pa


@dataclass(frozen=True)
class ResultColumn:
    """
    A typed result column.

    Attributes:
        name: Column name.
        column_type: Resolved type. Unknown wire tags resolve to DYNAMIC.
        declared_type: The tag exactly as the service sent it.
    """

    name: str
    column_type: ColumnType
    declared_type: str


@dataclass(frozen=True)
class DecodeWarning:
    """A non-fatal content problem noticed while materializing."""

    message: str
    table_id: int | None = None
    row: int | None = None
    column: str | None = None

    def __str__(self) -> str:
        where = []
        if self.table_id is not None:
            where.append(f"table {self.table_id}")
        if self.row is not None:
            where.append(f"row {self.row}")
        if self.column is not None:
            where.append(f"column '{self.column}'")
        return f"{self.message} ({', '.join(where)})" if where else self.message


@dataclass(frozen=True)
class ResultTable:
    """
    One materialized table.

    Every row has exactly one cell per column. `complete` is False for
    tables that were still open when a fatal error or a cancellation ended
    the response.
    """

    table_id: int
    name: str
    kind: TableKind
    columns: tuple[ResultColumn, ...]
    rows: tuple[tuple[Any, ...], ...]
    complete: bool = True

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def to_dicts(self) -> list[dict[str, Any]]:
        """Return rows as dicts keyed by column name."""
        names = self.column_names
        return [dict(zip(names, row)) for row in self.rows]

    def column(self, name: str) -> list[Any]:
        """Return all values of one column. Raises KeyError for unknown names."""
        try:
            position = self.column_names.index(name)
        except ValueError:
            raise KeyError(name) from None
        return [row[position] for row in self.rows]

    def to_record_batch(self) -> pa.RecordBatch:
        """Project the table into a pyarrow RecordBatch."""
        return arrow.to_record_batch(self)

    def __len__(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class QueryResult:
    """
    Everything a response produced.

    Attributes:
        tables: Tables in the order they were opened.
        errors: Service errors in arrival order (non-fatal ones plus the
            fatal one, if any).
        warnings: Content-level problems found while coercing cells.
        cancelled: The service reported the query as cancelled.
        fatal_error: The error that ended the response early, if any.
        header: The v2 dataset header, None for v1 responses.
    """

    tables: tuple[ResultTable, ...] = ()
    errors: tuple[QueryError, ...] = ()
    warnings: tuple[DecodeWarning, ...] = ()
    cancelled: bool = False
    fatal_error: QueryError | None = None
    header: DatasetHeader | None = field(default=None, compare=False)

    @property
    def primary_results(self) -> list[ResultTable]:
        return [t for t in self.tables if t.kind == TableKind.PRIMARY_RESULT]

    @property
    def metadata_tables(self) -> list[ResultTable]:
        return [t for t in self.tables if t.kind != TableKind.PRIMARY_RESULT]

    @property
    def query_properties(self) -> ResultTable | None:
        return self._first_of_kind(TableKind.QUERY_PROPERTIES)

    @property
    def completion_information(self) -> ResultTable | None:
        return self._first_of_kind(TableKind.QUERY_COMPLETION_INFORMATION)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def _first_of_kind(self, kind: TableKind) -> ResultTable | None:
        return next((t for t in self.tables if t.kind == kind), None)

    def table(self, name: str) -> ResultTable:
        """Return the first table with this name. Raises KeyError if absent."""
        for table in self.tables:
            if table.name == name:
                return table
        raise KeyError(name)

    def raise_for_errors(self, *, include_non_fatal: bool = False) -> None:
        """
        Raise QueryServiceError when the service reported errors.

        By default only a fatal error raises; with `include_non_fatal=True`
        any collected error does.
        """
        if include_non_fatal and self.errors:
            raise QueryServiceError(self.errors)
        if self.fatal_error is not None:
            raise QueryServiceError([self.fatal_error])

    def to_record_batches(self) -> list[pa.RecordBatch]:
        """Record batches for the primary result tables."""
        return [t.to_record_batch() for t in self.primary_results]
