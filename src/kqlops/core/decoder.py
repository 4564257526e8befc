"""Response decoding: raw JSON into frames.

Two wire shapes are supported. The v2 shape is a JSON array of frame objects
tagged by `FrameType`; the v1 shape is a single object holding a `Tables`
list. Both are normalized into the frame types of kqlops.core.frames so the
materializer has a single code path.

Decoding only checks JSON shape. It does not look at column types or at the
order of frames; that is the materializer's job.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Iterator

from kqlops.core.errors import MalformedFrame, UnknownFrameKind
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

log = logging.getLogger(__name__)

_TOC_COLUMNS = ("Ordinal", "Kind", "Name", "Id", "PrettyName")
_TOC_KINDS = {
    "QueryResult": TableKind.PRIMARY_RESULT,
    "QueryProperties": TableKind.QUERY_PROPERTIES,
    "QueryStatus": TableKind.QUERY_COMPLETION_INFORMATION,
}


class ResponseVersion(str, Enum):
    V1 = "v1"
    V2 = "v2"


def _require(element: dict, key: str, kind: type | tuple[type, ...], index: int | None):
    if key not in element:
        raise MalformedFrame(f"{element.get('FrameType', 'element')} missing '{key}'", index)
    value = element[key]
    if isinstance(value, bool) and kind is int:
        raise MalformedFrame(f"'{key}' must be {kind.__name__}", index)
    if not isinstance(value, kind):
        expected = kind.__name__ if isinstance(kind, type) else "/".join(k.__name__ for k in kind)
        raise MalformedFrame(f"'{key}' must be {expected}, got {type(value).__name__}", index)
    return value


def _optional(element: dict, key: str, kind: type | tuple[type, ...], default, index: int | None):
    if element.get(key) is None:
        return default
    return _require(element, key, kind, index)


def parse_query_error(payload: Any, *, fatal: bool, index: int | None = None) -> QueryError:
    """
    Build a QueryError from a OneApi error object.

    Accepts either `{"error": {...}}` or the inner error mapping itself.
    """
    if not isinstance(payload, dict):
        raise MalformedFrame("error entry must be an object", index)
    inner = payload.get("error", payload)
    if not isinstance(inner, dict):
        raise MalformedFrame("'error' must be an object", index)
    context = inner.get("@context")
    return QueryError(
        code=inner.get("code"),
        message=str(inner.get("message") or inner.get("@message") or "unknown error"),
        error_type=inner.get("@type"),
        description=inner.get("@message") or inner.get("description"),
        is_permanent=bool(inner.get("@permanent", False)),
        is_fatal=fatal,
        context=context if isinstance(context, dict) else {},
    )


def _parse_error_list(element: dict, index: int) -> tuple[QueryError, ...]:
    entries = _optional(element, "OneApiErrors", list, [], index)
    return tuple(parse_query_error(e, fatal=False, index=index) for e in entries)


def _parse_columns(element: dict, index: int | None) -> tuple[ColumnSchema, ...]:
    columns = []
    for raw in _require(element, "Columns", list, index):
        if not isinstance(raw, dict):
            raise MalformedFrame("column entries must be objects", index)
        name = _require(raw, "ColumnName", str, index)
        tag = raw.get("ColumnType") or raw.get("DataType")
        if not isinstance(tag, str):
            raise MalformedFrame(f"column '{name}' has no type", index)
        columns.append(ColumnSchema(name=name, declared_type=tag))
    return tuple(columns)


def _split_rows(
    element: dict, index: int | None
) -> tuple[tuple[tuple[Any, ...], ...], list[QueryError]]:
    """Separate data rows from in-band error rows."""
    rows: list[tuple[Any, ...]] = []
    errors: list[QueryError] = []
    for row in _require(element, "Rows", list, index):
        if isinstance(row, list):
            rows.append(tuple(row))
        elif isinstance(row, dict) and "OneApiErrors" in row:
            for entry in row["OneApiErrors"] or []:
                errors.append(parse_query_error(entry, fatal=False, index=index))
        else:
            raise MalformedFrame("rows must be arrays", index)
    return tuple(rows), errors


def _decode_v2_element(element: Any, index: int) -> Iterator[Frame]:
    if not isinstance(element, dict):
        raise MalformedFrame("frame must be an object", index)

    frame_type = element.get("FrameType")
    if frame_type is None:
        if "error" in element:
            yield parse_query_error(element, fatal=True, index=index)
            return
        raise MalformedFrame("frame has no 'FrameType'", index)

    if frame_type == "DataSetHeader":
        yield DatasetHeader(
            version=_require(element, "Version", str, index),
            is_progressive=_optional(element, "IsProgressive", bool, False, index),
            is_fragmented=_optional(element, "IsFragmented", bool, False, index),
            error_reporting_placement=_optional(
                element, "ErrorReportingPlacement", str, None, index
            ),
        )
    elif frame_type == "TableHeader":
        yield TableHeader(
            table_id=_require(element, "TableId", int, index),
            table_name=_optional(element, "TableName", str, "", index),
            table_kind=TableKind.parse(_optional(element, "TableKind", str, None, index)),
            columns=_parse_columns(element, index),
        )
    elif frame_type == "TableFragment":
        rows, errors = _split_rows(element, index)
        raw_type = _optional(element, "TableFragmentType", str, "DataAppend", index)
        try:
            fragment_type = FragmentType(raw_type)
        except ValueError:
            raise MalformedFrame(f"unknown TableFragmentType '{raw_type}'", index) from None
        yield TableFragment(
            table_id=_require(element, "TableId", int, index),
            rows=rows,
            field_count=_optional(element, "FieldCount", int, None, index),
            fragment_type=fragment_type,
        )
        yield from errors
    elif frame_type == "TableProgress":
        yield TableProgress(
            table_id=_require(element, "TableId", int, index),
            progress=float(_require(element, "TableProgress", (int, float), index)),
        )
    elif frame_type == "TableCompletion":
        yield TableCompletion(
            table_id=_require(element, "TableId", int, index),
            row_count=_optional(element, "RowCount", int, None, index),
            errors=_parse_error_list(element, index),
        )
    elif frame_type == "DataSetCompletion":
        yield DatasetCompletion(
            has_errors=_optional(element, "HasErrors", bool, False, index),
            cancelled=_optional(element, "Cancelled", bool, False, index),
            errors=_parse_error_list(element, index),
        )
    elif frame_type == "TableProperties":
        kind = _optional(element, "TableKind", str, None, index)
        yield TableProperties(
            table_id=_require(element, "TableId", int, index),
            table_name=_optional(element, "TableName", str, None, index),
            table_kind=TableKind.parse(kind) if kind else None,
        )
    elif frame_type == "DataTable":
        rows, errors = _split_rows(element, index)
        yield DataTable(
            table_id=_require(element, "TableId", int, index),
            table_name=_optional(element, "TableName", str, "", index),
            table_kind=TableKind.parse(_optional(element, "TableKind", str, None, index)),
            columns=_parse_columns(element, index),
            rows=rows,
        )
        yield from errors
    else:
        raise UnknownFrameKind(f"unknown FrameType '{frame_type}'", index)


def _is_table_of_contents(columns: tuple[ColumnSchema, ...]) -> bool:
    return tuple(c.name for c in columns) == _TOC_COLUMNS


def _decode_v1(document: Any) -> Iterator[Frame]:
    if not isinstance(document, dict):
        raise MalformedFrame("v1 response must be an object")
    if "error" in document:
        yield parse_query_error(document, fatal=True)
        return

    tables = document.get("Tables", document.get("Table"))
    if not isinstance(tables, list):
        raise MalformedFrame("v1 response has no 'Tables' list")

    parsed = []
    for table_id, table in enumerate(tables):
        if not isinstance(table, dict):
            raise MalformedFrame("table must be an object", table_id)
        columns = _parse_columns(table, table_id)
        rows, errors = _split_rows(table, table_id)
        name = _optional(table, "TableName", str, f"Table_{table_id}", table_id)
        parsed.append((table_id, name, columns, rows, errors))

    toc_id = None
    if len(parsed) > 1 and _is_table_of_contents(parsed[-1][2]):
        toc_id = parsed[-1][0]

    for table_id, name, columns, rows, errors in parsed:
        kind = TableKind.TABLE_OF_CONTENTS if table_id == toc_id else TableKind.PRIMARY_RESULT
        yield DataTable(
            table_id=table_id, table_name=name, table_kind=kind, columns=columns, rows=rows
        )
        yield from errors

    if toc_id is not None:
        for row in parsed[-1][3]:
            if len(row) < 3:
                raise MalformedFrame(
                    f"table of contents row has {len(row)} cells, expected at least 3", toc_id
                )
            ordinal, kind, name = row[0], row[1], row[2]
            if not isinstance(ordinal, int) or isinstance(ordinal, bool):
                raise MalformedFrame("table of contents 'Ordinal' must be an integer", toc_id)
            yield TableProperties(
                table_id=ordinal,
                table_name=name if isinstance(name, str) else None,
                table_kind=_TOC_KINDS.get(kind, TableKind.UNKNOWN),
            )


def _decode_utf8(data: bytes | bytearray, index: int | None = None) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedFrame(f"response is not valid UTF-8: {exc}", index) from exc


def _load(payload: bytes | str | Any) -> Any:
    if isinstance(payload, (bytes, bytearray)):
        payload = _decode_utf8(payload)
    if isinstance(payload, str):
        try:
            return json.loads(payload)
        # integers past the int digit limit raise a plain ValueError
        except ValueError as exc:
            raise MalformedFrame(f"response is not valid JSON: {exc}") from exc
    return payload


def detect_version(document: Any) -> ResponseVersion:
    """Array responses are v2, object responses are v1."""
    if isinstance(document, list):
        return ResponseVersion.V2
    if isinstance(document, dict):
        return ResponseVersion.V1
    raise MalformedFrame(f"unexpected top-level JSON {type(document).__name__}")


def decode_frames(
    payload: bytes | str | Any, version: ResponseVersion | None = None
) -> Iterator[Frame]:
    """
    Decode a complete response into frames, lazily and in wire order.

    Args:
        payload: Raw response body (bytes or str) or already parsed JSON.
        version: Wire shape. Detected from the JSON when omitted.

    Yields:
        Frame values in the order the service emitted them.

    Raises:
        UnknownFrameKind: An element has an unknown `FrameType`.
        MalformedFrame: An element does not have the expected shape.
    """
    document = _load(payload)
    version = ResponseVersion(version) if version else detect_version(document)
    log.debug("Decoding %s response", version.value)

    if version == ResponseVersion.V1:
        yield from _decode_v1(document)
        return

    if not isinstance(document, list):
        raise MalformedFrame("v2 response must be an array")
    for index, element in enumerate(document):
        yield from _decode_v2_element(element, index)


def _strip_stream_line(line: str | bytes, index: int) -> str:
    """Remove the array punctuation around one progressive frame line."""
    if isinstance(line, (bytes, bytearray)):
        line = _decode_utf8(line, index)
    text = line.strip()
    if text[:1] in ("[", ","):
        text = text[1:].lstrip()
    if text.endswith("]"):
        text = text[:-1].rstrip()
    return text


def _decode_stream_line(line: str | bytes, index: int) -> Iterator[Frame]:
    text = _strip_stream_line(line, index)
    if not text:
        return
    try:
        element = json.loads(text)
    except ValueError as exc:
        raise MalformedFrame(f"frame is not valid JSON: {exc}", index) from exc
    yield from _decode_v2_element(element, index)


def iter_frames_from_lines(lines: Iterable[str | bytes]) -> Iterator[Frame]:
    """
    Decode a progressive v2 response delivered one frame per line.

    The service writes `[` + first frame, then `,` + frame per line and a
    closing `]`. Blank lines are ignored.
    """
    index = 0
    for line in lines:
        frames = list(_decode_stream_line(line, index))
        if frames:
            index += 1
        yield from frames


async def aiter_frames_from_lines(
    lines: AsyncIterable[str | bytes],
) -> AsyncIterator[Frame]:
    """Async variant of iter_frames_from_lines for streamed transports."""
    index = 0
    async for line in lines:
        frames = list(_decode_stream_line(line, index))
        if frames:
            index += 1
        for frame in frames:
            yield frame
