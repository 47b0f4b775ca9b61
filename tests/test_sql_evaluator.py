import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from query_engine.services.models import SQLErrorCode
from query_engine.services.sql_evaluator import SQLEvaluator, cap_row_limit, classify_error
from trace_store.db_utils import StorageConnectionError, StorageQueryError


class _RecordingStorage:
    def __init__(self, rows=None, error=None):
        self.rows = rows if rows is not None else [{"service_name": "frontend", "request_count": 3}]
        self.error = error
        self.queries = []

    def query_raw(self, sql):
        self.queries.append(sql)
        if self.error is not None:
            raise self.error
        return list(self.rows)


VALID_SQL = """SELECT service_name, count() AS request_count
FROM traces
WHERE start_time >= now() - INTERVAL 15 MINUTE
GROUP BY service_name
ORDER BY request_count DESC
LIMIT 100"""


def test_valid_query_runs_capped_and_reports_time():
    storage = _RecordingStorage()
    result = SQLEvaluator(storage).validate_execution(VALID_SQL + ";")

    assert result.is_valid
    assert result.error is None
    assert result.execution_time_ms > 0
    assert result.mode == "execution"
    assert result.row_count == 1
    assert storage.queries[0].rstrip().endswith("LIMIT 1")
    assert "LIMIT 100" not in storage.queries[0]


def test_semantic_validation_uses_explain():
    storage = _RecordingStorage(rows=[{"explain": "ReadFromMergeTree"}])
    result = SQLEvaluator(storage).validate_semantics(VALID_SQL)

    assert result.is_valid
    assert result.mode == "semantic"
    assert storage.queries[0].startswith("EXPLAIN PLAN SELECT")


def test_static_fault_skips_the_store():
    storage = _RecordingStorage()
    sql = "SELECT service_name, count() AS c FROM traces WHERE count() > 10 GROUP BY service_name"
    result = SQLEvaluator(storage).validate_execution(sql)

    assert not result.is_valid
    assert result.error.code == SQLErrorCode.ILLEGAL_AGGREGATION
    assert result.error.code_number == 184
    assert storage.queries == []


def test_both_modes_report_static_faults_identically():
    sql = "SELECT service_name, operation_name, count() FROM traces GROUP BY service_name"
    evaluator = SQLEvaluator(_RecordingStorage())
    by_execution = evaluator.validate_execution(sql)
    by_semantics = evaluator.validate_semantics(sql)

    assert by_execution.error.code == by_semantics.error.code == SQLErrorCode.NOT_AN_AGGREGATE
    assert by_execution.error.position_hint == by_semantics.error.position_hint == "operation_name"


def test_engine_rejection_is_classified():
    message = (
        "Code: 47. DB::Exception: Missing columns: 'latency_ms' while processing query: "
        "'SELECT latency_ms FROM traces', required columns: 'latency_ms'. (UNKNOWN_IDENTIFIER)"
    )
    storage = _RecordingStorage(error=StorageQueryError(message, "SELECT latency_ms FROM traces"))
    result = SQLEvaluator(storage, static_checks=False).validate_execution("SELECT latency_ms FROM traces")

    assert not result.is_valid
    assert result.error.code == SQLErrorCode.UNKNOWN_IDENTIFIER
    assert result.error.message == message
    assert result.error.position_hint == "latency_ms"


def test_transport_errors_propagate():
    storage = _RecordingStorage(error=StorageConnectionError("connection refused"))
    with pytest.raises(StorageConnectionError):
        SQLEvaluator(storage).validate_execution(VALID_SQL)


def test_unknown_mode_is_rejected():
    with pytest.raises(ValueError):
        SQLEvaluator(_RecordingStorage()).evaluate(VALID_SQL, "dry-run")


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Code: 62. DB::Exception: Syntax error: failed at position 8 ('FORM'). (SYNTAX_ERROR)", SQLErrorCode.SYNTAX_ERROR),
        ("Code: 60. DB::Exception: Table otel.spans does not exist. (UNKNOWN_TABLE)", SQLErrorCode.UNKNOWN_TABLE),
        ("Code: 53. DB::Exception: Type mismatch in IN or VALUES section. (TYPE_MISMATCH)", SQLErrorCode.TYPE_MISMATCH),
        ("Code: 43. DB::Exception: Illegal type String of argument of function plus. (ILLEGAL_TYPE_OF_ARGUMENT)", SQLErrorCode.ILLEGAL_TYPE_OF_ARGUMENT),
        ("Code: 207. DB::Exception: JOIN ON inequalities are not supported. (INVALID_JOIN_ON_EXPRESSION)", SQLErrorCode.SEMANTIC_ERROR),
        ("DB::Exception: Ambiguous column `service_name`. (AMBIGUOUS_COLUMN_NAME)", SQLErrorCode.SEMANTIC_ERROR),
        ("Aggregate function count() is found in WHERE in query", SQLErrorCode.ILLEGAL_AGGREGATION),
        ("Column `x` is not under aggregate function and not in GROUP BY", SQLErrorCode.NOT_AN_AGGREGATE),
        ("no such table: spans", SQLErrorCode.UNKNOWN_TABLE),
        ("no such column: latency", SQLErrorCode.UNKNOWN_IDENTIFIER),
        ("Table otel.spans doesn't exist", SQLErrorCode.UNKNOWN_TABLE),
        ("Code: 999. DB::Exception: Something odd happened", SQLErrorCode.UNKNOWN),
        ("", SQLErrorCode.UNKNOWN),
    ],
)
def test_classify_error(message, expected):
    error = classify_error(message)
    assert error.code == expected
    assert error.message == message


def test_classify_error_hints():
    assert classify_error("Code: 47. Unknown expression identifier `p50_ms` in scope").position_hint == "p50_ms"
    assert classify_error("no such table: spans").position_hint == "spans"
    sql = "SELECT service_name FORM traces"
    hint = classify_error("Code: 62. DB::Exception: Syntax error: at position 21", sql).position_hint
    assert hint.startswith("FORM")


def test_cap_row_limit():
    assert cap_row_limit("SELECT 1 FROM traces LIMIT 500") == "SELECT 1 FROM traces LIMIT 1"
    assert cap_row_limit("SELECT 1 FROM traces LIMIT 10, 20") == "SELECT 1 FROM traces LIMIT 1"
    assert cap_row_limit("SELECT 1 FROM traces") == "SELECT 1 FROM traces\nLIMIT 1"
    assert cap_row_limit("SELECT 1 FROM traces -- trailing") == "SELECT 1 FROM traces -- trailing\nLIMIT 1"
    assert cap_row_limit("SELECT * FROM (SELECT 1 FROM traces LIMIT 5)").endswith(")\nLIMIT 1")


def test_cap_row_limit_goes_before_settings_and_format():
    assert cap_row_limit("SELECT service_name FROM traces LIMIT 10 SETTINGS max_threads = 2") == (
        "SELECT service_name FROM traces LIMIT 1 SETTINGS max_threads = 2"
    )
    assert cap_row_limit("SELECT service_name FROM traces FORMAT JSON") == (
        "SELECT service_name FROM traces\nLIMIT 1\nFORMAT JSON"
    )
    assert cap_row_limit("SELECT service_name FROM traces SETTINGS max_threads = 2 FORMAT JSON") == (
        "SELECT service_name FROM traces\nLIMIT 1\nSETTINGS max_threads = 2 FORMAT JSON"
    )
    assert cap_row_limit("SELECT format('{}', service_name) AS label FROM traces") == (
        "SELECT format('{}', service_name) AS label FROM traces\nLIMIT 1"
    )
