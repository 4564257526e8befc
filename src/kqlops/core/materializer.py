"""Folding frames into result tables.

The materializer owns the in-flight table map for exactly one response. Each
table id moves through UNOPENED -> OPEN -> CLOSED; frames that would break
that order raise a MaterializationError subclass. Cell values that do not fit
their column become None and a DecodeWarning; they never abort a table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, Iterable

from kqlops.core.coercion import ColumnType, coerce_value
from kqlops.core.errors import (
    DuplicateTableHeader,
    FragmentAfterCompletion,
    FragmentBeforeHeader,
    IncompleteDataset,
    MaterializationError,
    RowArityMismatch,
    UnexpectedEndOfStream,
)
from kqlops.core.frames import (
    ColumnSchema,
    DatasetCompletion,
    DatasetHeader,
    DataTable,
    Frame,
    FragmentType,
    QueryError,
    TableCompletion,
    TableFragment,
    TableHeader,
    TableKind,
    TableProgress,
    TableProperties,
)
from kqlops.core.results import DecodeWarning, QueryResult, ResultColumn, ResultTable

log = logging.getLogger(__name__)


class TableState(str, Enum):
    UNOPENED = "unopened"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class _TableBuffer:
    table_id: int
    name: str
    kind: TableKind
    columns: tuple[ResultColumn, ...]
    rows: list[tuple[Any, ...]] = field(default_factory=list)
    state: TableState = TableState.OPEN


class TableMaterializer:
    """
    Stateful fold over the frames of a single response.

    Feed frames in wire order with `feed()`, then call `finish()` to get the
    QueryResult. Once a fatal QueryError has been fed, `done` is True and the
    caller should stop feeding.
    """

    def __init__(self) -> None:
        self._tables: dict[int, _TableBuffer] = {}
        self._properties: dict[int, TableProperties] = {}
        self._errors: list[QueryError] = []
        self._warnings: list[DecodeWarning] = []
        self._header: DatasetHeader | None = None
        self._completed = False
        self._cancelled = False
        self._fatal: QueryError | None = None

    @property
    def done(self) -> bool:
        return self._fatal is not None

    def state(self, table_id: int) -> TableState:
        buffer = self._tables.get(table_id)
        return buffer.state if buffer else TableState.UNOPENED

    def feed(self, frame: Frame) -> None:
        """Apply one frame."""
        if self._fatal is not None:
            raise MaterializationError("frame received after a fatal error")
        if self._completed:
            raise MaterializationError(
                f"{type(frame).__name__} received after DataSetCompletion"
            )

        if isinstance(frame, DatasetHeader):
            self._on_dataset_header(frame)
        elif isinstance(frame, TableHeader):
            self._open(frame.table_id, frame.table_name, frame.table_kind, frame.columns)
        elif isinstance(frame, TableFragment):
            self._on_fragment(frame)
        elif isinstance(frame, TableProgress):
            self._require_open(frame.table_id)
            log.debug("Table %s progress %.1f%%", frame.table_id, frame.progress)
        elif isinstance(frame, TableCompletion):
            self._on_table_completion(frame)
        elif isinstance(frame, DatasetCompletion):
            self._on_dataset_completion(frame)
        elif isinstance(frame, TableProperties):
            self._properties[frame.table_id] = frame
        elif isinstance(frame, DataTable):
            buffer = self._open(
                frame.table_id, frame.table_name, frame.table_kind, frame.columns
            )
            self._append_rows(buffer, frame.rows)
            self._close(buffer, row_count=None)
        elif isinstance(frame, QueryError):
            self._on_error(frame)
        else:
            raise TypeError(f"not a frame: {frame!r}")

    def _on_dataset_header(self, frame: DatasetHeader) -> None:
        if self._header is not None:
            raise MaterializationError("second DataSetHeader in one response")
        self._header = frame
        log.debug(
            "Dataset header version=%s progressive=%s", frame.version, frame.is_progressive
        )

    def _resolve_columns(
        self, table_id: int, schema: tuple[ColumnSchema, ...]
    ) -> tuple[ResultColumn, ...]:
        columns = []
        for col in schema:
            column_type = ColumnType.from_tag(col.declared_type)
            if column_type is None:
                column_type = ColumnType.DYNAMIC
                self._warnings.append(
                    DecodeWarning(
                        f"unknown column type '{col.declared_type}', treated as dynamic",
                        table_id=table_id,
                        column=col.name,
                    )
                )
            columns.append(ResultColumn(col.name, column_type, col.declared_type))
        return tuple(columns)

    def _open(
        self,
        table_id: int,
        name: str,
        kind: TableKind,
        schema: tuple[ColumnSchema, ...],
    ) -> _TableBuffer:
        if table_id in self._tables:
            raise DuplicateTableHeader(
                f"table {table_id} was already opened", table_id=table_id
            )
        buffer = _TableBuffer(
            table_id=table_id,
            name=name,
            kind=kind,
            columns=self._resolve_columns(table_id, schema),
        )
        self._tables[table_id] = buffer
        log.debug("Opened table %s '%s' (%s)", table_id, name, kind.value)
        return buffer

    def _require_open(self, table_id: int) -> _TableBuffer:
        buffer = self._tables.get(table_id)
        if buffer is None:
            raise FragmentBeforeHeader(
                f"table {table_id} has no header", table_id=table_id
            )
        if buffer.state == TableState.CLOSED:
            raise FragmentAfterCompletion(
                f"table {table_id} is already complete", table_id=table_id
            )
        return buffer

    def _on_fragment(self, frame: TableFragment) -> None:
        buffer = self._require_open(frame.table_id)
        if frame.field_count is not None and frame.field_count != len(buffer.columns):
            raise RowArityMismatch(
                f"fragment for table {frame.table_id} declares {frame.field_count} "
                f"fields, table has {len(buffer.columns)} columns",
                table_id=frame.table_id,
            )
        if frame.fragment_type == FragmentType.DATA_REPLACE:
            buffer.rows.clear()
        self._append_rows(buffer, frame.rows)

    def _append_rows(
        self, buffer: _TableBuffer, rows: Iterable[tuple[Any, ...]]
    ) -> None:
        width = len(buffer.columns)
        for raw in rows:
            row_index = len(buffer.rows)
            if len(raw) != width:
                raise RowArityMismatch(
                    f"row {row_index} of table {buffer.table_id} has {len(raw)} "
                    f"cells, expected {width}",
                    table_id=buffer.table_id,
                )
            cells = []
            for column, value in zip(buffer.columns, raw):
                cell, warning = coerce_value(column.column_type, value)
                if warning:
                    self._warnings.append(
                        DecodeWarning(
                            warning,
                            table_id=buffer.table_id,
                            row=row_index,
                            column=column.name,
                        )
                    )
                cells.append(cell)
            buffer.rows.append(tuple(cells))

    def _close(self, buffer: _TableBuffer, row_count: int | None) -> None:
        if row_count is not None and row_count != len(buffer.rows):
            self._warnings.append(
                DecodeWarning(
                    f"row count mismatch: declared {row_count}, "
                    f"received {len(buffer.rows)}",
                    table_id=buffer.table_id,
                )
            )
        buffer.state = TableState.CLOSED
        log.debug("Closed table %s with %d rows", buffer.table_id, len(buffer.rows))

    def _on_table_completion(self, frame: TableCompletion) -> None:
        buffer = self._require_open(frame.table_id)
        self._close(buffer, frame.row_count)
        self._errors.extend(frame.errors)

    def _on_dataset_completion(self, frame: DatasetCompletion) -> None:
        self._errors.extend(frame.errors)
        self._cancelled = frame.cancelled
        self._completed = True
        still_open = self._open_table_ids()
        if still_open and not frame.cancelled:
            raise IncompleteDataset(
                f"dataset completed with open tables {still_open}",
                table_id=still_open[0],
            )

    def _on_error(self, error: QueryError) -> None:
        self._errors.append(error)
        if error.is_fatal:
            self._fatal = error
            log.debug("Fatal service error: %s", error)

    def _open_table_ids(self) -> list[int]:
        return [t.table_id for t in self._tables.values() if t.state == TableState.OPEN]

    def finish(self) -> QueryResult:
        """
        Close the fold and build the QueryResult.

        Raises:
            UnexpectedEndOfStream: A v2 response ended before DataSetCompletion.
            IncompleteDataset: A v1 response ended with tables still open.
        """
        if not self._completed and self._fatal is None:
            if self._header is not None:
                raise UnexpectedEndOfStream("response ended before DataSetCompletion")
            still_open = self._open_table_ids()
            if still_open:
                raise IncompleteDataset(
                    f"response ended with open tables {still_open}",
                    table_id=still_open[0],
                )

        tables = []
        for buffer in self._tables.values():
            name, kind = buffer.name, buffer.kind
            props = self._properties.get(buffer.table_id)
            if props is not None:
                name = props.table_name or name
                kind = props.table_kind or kind
            tables.append(
                ResultTable(
                    table_id=buffer.table_id,
                    name=name,
                    kind=kind,
                    columns=buffer.columns,
                    rows=tuple(buffer.rows),
                    complete=buffer.state == TableState.CLOSED,
                )
            )
        for table_id in self._properties.keys() - self._tables.keys():
            log.debug("Ignoring properties for unknown table %s", table_id)

        return QueryResult(
            tables=tuple(tables),
            errors=tuple(self._errors),
            warnings=tuple(self._warnings),
            cancelled=self._cancelled,
            fatal_error=self._fatal,
            header=self._header,
        )


def materialize(frames: Iterable[Frame]) -> QueryResult:
    """Fold a whole frame sequence, stopping early at a fatal error."""
    materializer = TableMaterializer()
    for frame in frames:
        materializer.feed(frame)
        if materializer.done:
            break
    return materializer.finish()


async def amaterialize(frames: AsyncIterable[Frame]) -> QueryResult:
    """Async variant of materialize, resuming as each frame arrives."""
    materializer = TableMaterializer()
    async for frame in frames:
        materializer.feed(frame)
        if materializer.done:
            break
    return materializer.finish()
