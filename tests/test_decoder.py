import asyncio
import json

import pytest

from kqlops.core import decoder
from kqlops.core.decoder import (
    ResponseVersion,
    aiter_frames_from_lines,
    decode_frames,
    iter_frames_from_lines,
)
from kqlops.core.errors import MalformedFrame, UnknownFrameKind
from kqlops.core.frames import (
    ColumnSchema,
    DatasetCompletion,
    DatasetHeader,
    DataTable,
    FragmentType,
    QueryError,
    TableCompletion,
    TableFragment,
    TableHeader,
    TableKind,
    TableProperties,
)

SINGLE_TABLE_V2 = [
    {"FrameType": "DataSetHeader", "IsProgressive": True, "Version": "v2.0"},
    {
        "FrameType": "TableHeader",
        "TableId": 0,
        "TableName": "PrimaryResult",
        "TableKind": "PrimaryResult",
        "Columns": [{"ColumnName": "n", "ColumnType": "string"}],
    },
    {"FrameType": "TableFragment", "TableId": 0, "FieldCount": 1, "Rows": [["a"]]},
    {"FrameType": "TableCompletion", "TableId": 0, "RowCount": 1},
    {"FrameType": "DataSetCompletion", "HasErrors": False, "Cancelled": False},
]


def test_decodes_v2_stream_in_wire_order():
    frames = list(decode_frames(json.dumps(SINGLE_TABLE_V2)))

    assert frames == [
        DatasetHeader(version="v2.0", is_progressive=True),
        TableHeader(
            table_id=0,
            table_name="PrimaryResult",
            table_kind=TableKind.PRIMARY_RESULT,
            columns=(ColumnSchema("n", "string"),),
        ),
        TableFragment(table_id=0, rows=(("a",),), field_count=1),
        TableCompletion(table_id=0, row_count=1),
        DatasetCompletion(),
    ]


def test_accepts_bytes_and_parsed_json():
    as_bytes = list(decode_frames(json.dumps(SINGLE_TABLE_V2).encode()))
    as_value = list(decode_frames(SINGLE_TABLE_V2, ResponseVersion.V2))

    assert as_bytes == as_value


def test_unknown_frame_kind_fails_after_earlier_frames_were_yielded():
    payload = [SINGLE_TABLE_V2[0], {"FrameType": "Mystery"}]
    frames = decode_frames(payload)

    assert isinstance(next(frames), DatasetHeader)
    with pytest.raises(UnknownFrameKind, match="frame #1") as exc_info:
        next(frames)
    assert exc_info.value.index == 1


@pytest.mark.parametrize(
    "element",
    [
        {"FrameType": "TableHeader", "TableId": 0, "TableName": "t"},
        {"FrameType": "TableFragment", "TableId": "zero", "Rows": []},
        {"FrameType": "TableFragment", "TableId": 0, "Rows": ["not-a-row"]},
        {"FrameType": "DataSetHeader"},
        {"NoFrameType": True},
        "just a string",
    ],
)
def test_malformed_frames(element):
    with pytest.raises(MalformedFrame):
        list(decode_frames([element]))


def test_error_rows_are_split_out_as_non_fatal_errors():
    fragment = {
        "FrameType": "TableFragment",
        "TableId": 0,
        "Rows": [
            [1],
            {
                "OneApiErrors": [
                    {"error": {"code": "LimitsExceeded", "message": "Too many rows"}}
                ]
            },
        ],
    }
    frames = list(decode_frames([fragment]))

    assert frames[0] == TableFragment(table_id=0, rows=((1,),))
    assert isinstance(frames[1], QueryError)
    assert frames[1].code == "LimitsExceeded"
    assert frames[1].is_fatal is False


def test_completion_errors_are_attached():
    completion = {
        "FrameType": "DataSetCompletion",
        "HasErrors": True,
        "Cancelled": False,
        "OneApiErrors": [
            {
                "error": {
                    "code": "LimitsExceeded",
                    "message": "Request is invalid",
                    "@type": "Kusto.Data.Exceptions.KustoServicePartialQueryFailure",
                    "@message": "Query result set has exceeded the internal record count limit",
                    "@permanent": True,
                    "@context": {"clientRequestId": "abc"},
                }
            }
        ],
    }
    (frame,) = decode_frames([completion])

    assert frame.has_errors is True
    (error,) = frame.errors
    assert error.error_type.endswith("PartialQueryFailure")
    assert error.is_permanent is True
    assert error.context == {"clientRequestId": "abc"}
    assert error.description.startswith("Query result set")


def test_top_level_error_object_is_fatal():
    payload = [{"error": {"code": "BadRequest_SyntaxError", "message": "Syntax error"}}]
    (frame,) = decode_frames(payload)

    assert frame.is_fatal is True
    assert frame.code == "BadRequest_SyntaxError"


def test_replace_fragment_type():
    fragment = {
        "FrameType": "TableFragment",
        "TableId": 0,
        "TableFragmentType": "DataReplace",
        "Rows": [],
    }
    (frame,) = decode_frames([fragment])

    assert frame.fragment_type == FragmentType.DATA_REPLACE


def test_v1_single_table():
    payload = {
        "Tables": [
            {
                "Columns": [{"ColumnName": "x", "DataType": "Int64"}],
                "Rows": [[1], [2], [None]],
            }
        ]
    }
    (frame,) = decode_frames(payload)

    assert frame == DataTable(
        table_id=0,
        table_name="Table_0",
        table_kind=TableKind.PRIMARY_RESULT,
        columns=(ColumnSchema("x", "Int64"),),
        rows=((1,), (2,), (None,)),
    )


TOC_COLUMNS = [
    {"ColumnName": name, "DataType": tag}
    for name, tag in [
        ("Ordinal", "Int64"),
        ("Kind", "String"),
        ("Name", "String"),
        ("Id", "String"),
        ("PrettyName", "String"),
    ]
]


def test_v1_table_of_contents_names_and_classifies_tables():
    payload = {
        "Tables": [
            {"TableName": "Table_0", "Columns": [{"ColumnName": "a", "DataType": "Int32"}], "Rows": [[1]]},
            {"TableName": "Table_1", "Columns": [{"ColumnName": "Value", "DataType": "String"}], "Rows": []},
            {
                "TableName": "Table_2",
                "Columns": TOC_COLUMNS,
                "Rows": [
                    [0, "QueryResult", "PrimaryResult", "id0", ""],
                    [1, "QueryProperties", "@ExtendedProperties", "id1", ""],
                ],
            },
        ]
    }
    frames = list(decode_frames(payload))

    tables = [f for f in frames if isinstance(f, DataTable)]
    props = [f for f in frames if isinstance(f, TableProperties)]
    assert [t.table_kind for t in tables] == [
        TableKind.PRIMARY_RESULT,
        TableKind.PRIMARY_RESULT,
        TableKind.TABLE_OF_CONTENTS,
    ]
    assert props == [
        TableProperties(0, "PrimaryResult", TableKind.PRIMARY_RESULT),
        TableProperties(1, "@ExtendedProperties", TableKind.QUERY_PROPERTIES),
    ]


def test_v1_short_table_of_contents_row_is_malformed():
    payload = {
        "Tables": [
            {"Columns": [{"ColumnName": "a", "DataType": "Int32"}], "Rows": [[1]]},
            {"Columns": TOC_COLUMNS, "Rows": [[0]]},
        ]
    }

    with pytest.raises(MalformedFrame, match="table of contents row") as exc_info:
        list(decode_frames(payload))
    assert exc_info.value.index == 1


def test_v1_top_level_error():
    (frame,) = decode_frames({"error": {"code": "Forbidden", "message": "denied"}})

    assert frame.is_fatal is True
    assert str(frame) == "Forbidden: denied"


def test_invalid_json_and_unexpected_top_level():
    with pytest.raises(MalformedFrame, match="not valid JSON"):
        list(decode_frames(b"[{"))
    with pytest.raises(MalformedFrame):
        list(decode_frames("42"))


def test_invalid_utf8_is_malformed():
    with pytest.raises(MalformedFrame, match="not valid UTF-8"):
        list(decode_frames(b'[{"FrameType":"\xff"}]'))


def test_invalid_utf8_line_reports_line_index():
    lines = [("[" + json.dumps(SINGLE_TABLE_V2[0])).encode(), b',{"FrameType":"\xff"}']

    with pytest.raises(MalformedFrame) as exc_info:
        list(iter_frames_from_lines(lines))
    assert exc_info.value.index == 1


def test_json_value_error_is_malformed(monkeypatch):
    def refuse(text):
        raise ValueError("Exceeds the limit (4300 digits) for integer string conversion")

    monkeypatch.setattr(decoder.json, "loads", refuse)

    with pytest.raises(MalformedFrame, match="not valid JSON"):
        list(decode_frames("[]"))


def _stream_lines(elements):
    lines = ["[" + json.dumps(elements[0])]
    lines += ["," + json.dumps(e) for e in elements[1:]]
    lines.append("]")
    return lines


def test_iter_frames_from_lines_matches_whole_document_decode():
    from_lines = list(iter_frames_from_lines(_stream_lines(SINGLE_TABLE_V2)))

    assert from_lines == list(decode_frames(SINGLE_TABLE_V2))


def test_iter_frames_from_lines_reports_line_index():
    lines = _stream_lines([SINGLE_TABLE_V2[0], {"FrameType": "Mystery"}])

    with pytest.raises(UnknownFrameKind) as exc_info:
        list(iter_frames_from_lines(lines))
    assert exc_info.value.index == 1


def test_aiter_frames_from_lines():
    async def lines():
        for line in _stream_lines(SINGLE_TABLE_V2):
            yield line

    async def collect():
        return [frame async for frame in aiter_frames_from_lines(lines())]

    assert asyncio.run(collect()) == list(decode_frames(SINGLE_TABLE_V2))
