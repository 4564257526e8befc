import json

import pytest
from typer.testing import CliRunner

from kqlops.cli import cli
from kqlops.cli.commands import query as query_commands
from kqlops.core.coercion import ColumnType
from kqlops.core.frames import QueryError, TableKind
from kqlops.core.results import DecodeWarning, QueryResult, ResultColumn, ResultTable

runner = CliRunner()

APP_KEY_CS = (
    "Data Source=https://cluster.example.com;AAD Federated Security=True;"
    "Application Client Id=abc;Application Key=secret;Authority Id=tenant1"
)

V1_BODY = {
    "Tables": [
        {
            "Columns": [{"ColumnName": "x", "DataType": "Int64"}],
            "Rows": [[1], [2], [None]],
        }
    ]
}


@pytest.fixture(autouse=True)
def _no_env_connection(monkeypatch):
    monkeypatch.delenv("KQLOPS_CONNECTION_STRING", raising=False)
    monkeypatch.delenv("KQLOPS_DATABASE", raising=False)


def _result(**kwargs) -> QueryResult:
    table = ResultTable(
        table_id=0,
        name="PrimaryResult",
        kind=TableKind.PRIMARY_RESULT,
        columns=(ResultColumn("city", ColumnType.STRING, "string"),),
        rows=(("Amsterdam",), ("Utrecht",)),
    )
    return QueryResult(tables=(table,), **kwargs)


def test_decode_v1_file(tmp_path):
    path = tmp_path / "response.json"
    path.write_text(json.dumps(V1_BODY))

    result = runner.invoke(cli.app, ["decode", str(path)])

    assert result.exit_code == 0, result.output
    assert "Table_0" in result.output
    assert "null" in result.output


def test_decode_progressive_lines(tmp_path):
    frames = [
        {"FrameType": "DataSetHeader", "IsProgressive": True, "Version": "v2.0"},
        {
            "FrameType": "TableHeader",
            "TableId": 0,
            "TableName": "PrimaryResult",
            "TableKind": "PrimaryResult",
            "Columns": [{"ColumnName": "n", "ColumnType": "string"}],
        },
        {"FrameType": "TableFragment", "TableId": 0, "Rows": [["hello"]]},
        {"FrameType": "TableCompletion", "TableId": 0, "RowCount": 1},
        {"FrameType": "DataSetCompletion", "HasErrors": False, "Cancelled": False},
    ]
    lines = ["[" + json.dumps(frames[0])] + ["," + json.dumps(f) for f in frames[1:]] + ["]"]
    path = tmp_path / "stream.txt"
    path.write_text("\n".join(lines))

    result = runner.invoke(cli.app, ["decode", "--lines", str(path)])

    assert result.exit_code == 0, result.output
    assert "hello" in result.output


def test_decode_fatal_error_exits_non_zero(tmp_path):
    path = tmp_path / "error.json"
    path.write_text(json.dumps([{"error": {"code": "Boom", "message": "bad query"}}]))

    result = runner.invoke(cli.app, ["decode", str(path)])

    assert result.exit_code == 1
    assert "Query failed" in result.output


def test_decode_malformed_file(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text('[{"FrameType": "Mystery"}]')

    result = runner.invoke(cli.app, ["decode", str(path)])

    assert result.exit_code == 1
    assert "Could not decode" in result.output


def test_conn_show_redacts_secrets():
    result = runner.invoke(cli.app, ["conn", "show", APP_KEY_CS])

    assert result.exit_code == 0, result.output
    assert "app_key" in result.output
    assert "******" in result.output
    assert "secret" not in result.output


def test_conn_show_invalid():
    result = runner.invoke(cli.app, ["conn", "show", "Data Source=ftp://x"])

    assert result.exit_code == 1
    assert "Invalid connection string" in result.output


def test_query_requires_connection():
    result = runner.invoke(cli.app, ["query", "T | take 1"])

    assert result.exit_code == 1
    assert "No connection string" in result.output


def test_query_renders_tables_warnings_and_errors(monkeypatch):
    seen = {}

    def fake_execute(adapter, text, database):
        seen["args"] = (adapter.descriptor.service_uri, text, database)
        return _result(
            warnings=(DecodeWarning("row count mismatch: declared 5, received 2", table_id=0),),
            errors=(QueryError(code="Partial", message="partial result"),),
        )

    monkeypatch.setattr(query_commands, "execute_query", fake_execute)

    result = runner.invoke(
        cli.app, ["query", "T | take 2", "--connection", APP_KEY_CS, "--db", "Samples"]
    )

    assert result.exit_code == 0, result.output
    assert seen["args"] == ("https://cluster.example.com", "T | take 2", "Samples")
    assert "Amsterdam" in result.output
    assert "row count mismatch" in result.output
    assert "Partial" in result.output


def test_query_uses_env_connection_and_stream(monkeypatch):
    monkeypatch.setenv("KQLOPS_CONNECTION_STRING", APP_KEY_CS)
    monkeypatch.setattr(query_commands, "stream_query", lambda adapter, text, database: _result())

    result = runner.invoke(cli.app, ["query", "T", "--stream"])

    assert result.exit_code == 0, result.output
    assert "Utrecht" in result.output


def test_query_pick_with_nothing_selected(monkeypatch):
    monkeypatch.setattr(query_commands, "execute_query", lambda adapter, text, database: _result())
    monkeypatch.setattr(query_commands, "select_tables", lambda tables: [])

    result = runner.invoke(cli.app, ["query", "T", "-c", APP_KEY_CS, "--pick"])

    assert result.exit_code == 0
    assert "No tables selected" in result.output
    assert "Amsterdam" not in result.output


def test_query_without_database_fails_before_authenticating():
    result = runner.invoke(cli.app, ["query", "T", "-c", "Data Source=https://cluster.example.com"])

    assert result.exit_code == 1
    assert "No database given" in result.output
