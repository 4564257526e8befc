"""Frame model.

Every element of a service response is normalized into one of the frame
dataclasses below, whatever the wire version. The `Frame` union is closed:
the decoder only produces these types and the materializer handles each one
explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union


class TableKind(str, Enum):
    """
    Role the service assigns to a table.

    Values:
        PRIMARY_RESULT: Rows produced by the query itself.
        QUERY_COMPLETION_INFORMATION: Execution statistics and status.
        QUERY_TRACE_LOG: Trace output.
        QUERY_PERF_LOG: Performance log.
        TABLE_OF_CONTENTS: v1 index of the other tables.
        QUERY_PROPERTIES: Visualization and other query properties.
        QUERY_PLAN: Query plan output.
        UNKNOWN: Any kind this client does not recognize.
    """

    PRIMARY_RESULT = "PrimaryResult"
    QUERY_COMPLETION_INFORMATION = "QueryCompletionInformation"
    QUERY_TRACE_LOG = "QueryTraceLog"
    QUERY_PERF_LOG = "QueryPerfLog"
    TABLE_OF_CONTENTS = "TableOfContents"
    QUERY_PROPERTIES = "QueryProperties"
    QUERY_PLAN = "QueryPlan"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: str | None) -> TableKind:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class FragmentType(str, Enum):
    """How a fragment's rows combine with rows already received."""

    DATA_APPEND = "DataAppend"
    DATA_REPLACE = "DataReplace"


@dataclass(frozen=True)
class ColumnSchema:
    """A column as declared on the wire: name plus raw type tag."""

    name: str
    declared_type: str


@dataclass(frozen=True)
class QueryError:
    """
    An error reported by the service.

    Attributes:
        code: Service error code, for example `LimitsExceeded`.
        message: Short message.
        error_type: The `@type` of the error, if given.
        description: Longer `@message` / description text, if given.
        is_permanent: Whether retrying the same request is pointless.
        is_fatal: True when the error ends the response (top-level error);
            False for errors carried inside the data.
        context: The raw `@context` mapping, if any.
    """

    code: str | None
    message: str
    error_type: str | None = None
    description: str | None = None
    is_permanent: bool = False
    is_fatal: bool = False
    context: Mapping[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}" if self.code else self.message


@dataclass(frozen=True)
class DatasetHeader:
    version: str
    is_progressive: bool = False
    is_fragmented: bool = False
    error_reporting_placement: str | None = None


@dataclass(frozen=True)
class TableHeader:
    table_id: int
    table_name: str
    table_kind: TableKind
    columns: tuple[ColumnSchema, ...]


@dataclass(frozen=True)
class TableFragment:
    table_id: int
    rows: tuple[tuple[Any, ...], ...]
    field_count: int | None = None
    fragment_type: FragmentType = FragmentType.DATA_APPEND


@dataclass(frozen=True)
class TableProgress:
    table_id: int
    progress: float


@dataclass(frozen=True)
class TableCompletion:
    table_id: int
    row_count: int | None = None
    errors: tuple[QueryError, ...] = ()


@dataclass(frozen=True)
class DatasetCompletion:
    has_errors: bool = False
    cancelled: bool = False
    errors: tuple[QueryError, ...] = ()


@dataclass(frozen=True)
class TableProperties:
    """Names and classifies a table, possibly after it was materialized."""

    table_id: int
    table_name: str | None = None
    table_kind: TableKind | None = None


@dataclass(frozen=True)
class DataTable:
    """A self-contained table: header, rows and completion in one frame."""

    table_id: int
    table_name: str
    table_kind: TableKind
    columns: tuple[ColumnSchema, ...]
    rows: tuple[tuple[Any, ...], ...]


Frame = Union[
    DatasetHeader,
    TableHeader,
    TableFragment,
    TableProgress,
    TableCompletion,
    DatasetCompletion,
    TableProperties,
    DataTable,
    QueryError,
]
