"""Columnar projection of result tables into pyarrow."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Callable

import pyarrow as pa

from kqlops.core.coercion import ColumnType

if TYPE_CHECKING:
    from kqlops.core.results import ResultTable

ARROW_TYPES: dict[ColumnType, pa.DataType] = {
    ColumnType.BOOL: pa.bool_(),
    ColumnType.INT: pa.int32(),
    ColumnType.LONG: pa.int64(),
    ColumnType.REAL: pa.float64(),
    ColumnType.DECIMAL: pa.string(),
    ColumnType.DATETIME: pa.timestamp("us", tz="UTC"),
    ColumnType.TIMESPAN: pa.duration("us"),
    ColumnType.GUID: pa.string(),
    ColumnType.STRING: pa.string(),
    ColumnType.DYNAMIC: pa.string(),
}


def _as_text(value: Any) -> str:
    return str(value)


def _as_json(value: Any) -> str:
    return json.dumps(value, default=str)


_CONVERTERS: dict[ColumnType, Callable[[Any], Any]] = {
    ColumnType.DECIMAL: _as_text,
    ColumnType.GUID: _as_text,
    ColumnType.DYNAMIC: _as_json,
}


def arrow_schema(table: ResultTable) -> pa.Schema:
    return pa.schema(
        [
            pa.field(
                c.name,
                ARROW_TYPES[c.column_type],
                metadata={"declared_type": c.declared_type},
            )
            for c in table.columns
        ]
    )


def to_record_batch(table: ResultTable) -> pa.RecordBatch:
    """
    Build a RecordBatch with one array per column.

    Decimals and guids are carried as strings and dynamic values as JSON
    text. Nulls stay nulls.
    """
    schema = arrow_schema(table)
    arrays = []
    for position, column in enumerate(table.columns):
        convert = _CONVERTERS.get(column.column_type)
        values = [row[position] for row in table.rows]
        if convert is not None:
            values = [None if v is None else convert(v) for v in values]
        arrays.append(pa.array(values, type=ARROW_TYPES[column.column_type]))
    return pa.RecordBatch.from_arrays(arrays, schema=schema)
