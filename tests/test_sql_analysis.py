import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from query_engine.services import sql_analysis


def _flat(sql):
    return " ".join(sql.split())


def test_cte_missing_column_is_unknown_identifier():
    sql = """WITH stats AS (
  SELECT service_name, quantile(0.95)(duration_ns/1000000) AS p95_latency_ms
  FROM traces
  GROUP BY service_name
)
SELECT service_name, p50_latency_ms, p95_latency_ms
FROM stats"""
    message = sql_analysis.find_static_error(sql)
    assert message.startswith("Code: 47.")
    assert "`p50_latency_ms`" in message
    assert message.endswith("(UNKNOWN_IDENTIFIER)")


def test_count_times_column_is_not_an_aggregate():
    sql = """SELECT service_name, count() * (duration_ns/1000000) AS total_ms
FROM traces
GROUP BY service_name"""
    message = sql_analysis.find_static_error(sql)
    assert message.startswith("Code: 215.")
    assert "`duration_ns`" in message


def test_aggregate_in_where_is_illegal_aggregation():
    sql = "SELECT service_name, count() AS c FROM traces WHERE count() > 10 GROUP BY service_name"
    message = sql_analysis.find_static_error(sql)
    assert message.startswith("Code: 184.")
    assert "WHERE" in message


def test_ungrouped_column_is_named():
    sql = "SELECT service_name, operation_name, count() FROM traces GROUP BY service_name"
    message = sql_analysis.find_static_error(sql)
    assert message.startswith("Code: 215.")
    assert "`operation_name`" in message


def test_valid_queries_have_no_static_error():
    queries = [
        "SELECT 1",
        "SELECT service_name, count() AS c FROM traces GROUP BY service_name HAVING c > 10 ORDER BY c DESC",
        "SELECT t.service_name, t.duration_ns FROM otel.traces AS t WHERE t.status_code != 'OK' LIMIT 10",
        """WITH per_service AS (
  SELECT service_name, count() AS requests FROM traces GROUP BY service_name
)
SELECT p.service_name, p.requests FROM per_service p ORDER BY p.requests DESC""",
        "SELECT service_name, countIf(status_code != 'OK') AS errors FROM traces GROUP BY ALL",
    ]
    for sql in queries:
        assert sql_analysis.find_static_error(sql) is None, sql


def test_unknown_table_is_reported():
    message = sql_analysis.find_static_error("SELECT service_name FROM spans")
    assert message.startswith("Code: 60.")
    assert "'spans'" in message


def test_missing_comma_between_select_items():
    message = sql_analysis.find_static_error("SELECT service_name count() FROM traces GROUP BY service_name")
    assert message.startswith("Code: 62.")
    assert "('count')" in message


def test_keyword_typo_is_syntax_error():
    message = sql_analysis.find_static_error("SELECT service_name FORM traces")
    assert message.startswith("Code: 62.")
    assert "FROM" in message


def test_statement_level_faults():
    assert "Empty query" in sql_analysis.find_static_error("   ")
    assert sql_analysis.find_static_error("DROP TABLE traces").startswith("Code: 164.")
    assert "Multi-statements" in sql_analysis.find_static_error("SELECT 1; SELECT 2")
    assert "Unmatched parentheses" in sql_analysis.find_static_error("SELECT count( FROM traces")
    assert "unterminated" in sql_analysis.find_static_error("SELECT 'abc FROM traces")


def test_literals_and_comments_are_ignored():
    sql = """SELECT service_name -- count() * duration_ns
FROM traces
WHERE status_message = 'WHERE count() > 1; DROP TABLE x'"""
    assert sql_analysis.find_static_error(sql) is None


def test_mask_sql_keeps_offsets():
    sql = "SELECT 'a;b' AS x -- note\nFROM traces"
    masked, unterminated = sql_analysis.mask_sql(sql)
    assert unterminated is None
    assert len(masked) == len(sql)
    assert ";" not in masked
    assert "note" not in masked


def test_cte_names_keep_case_and_order():
    sql = "WITH SlowSpans AS (SELECT * FROM traces), fast AS (SELECT 1 AS one) SELECT * FROM SlowSpans"
    assert sql_analysis.cte_names(sql) == ["SlowSpans", "fast"]
    assert sql_analysis.is_cte_without_select(sql) is False


def test_cte_without_main_select_is_detected():
    sql = "WITH slow AS (SELECT service_name FROM traces WHERE duration_ns > 1000000000)"
    assert sql_analysis.is_cte_without_select(sql) is True
    assert sql_analysis.is_cte_without_select("SELECT 1") is False


def test_move_where_aggregates_to_new_having():
    sql = "SELECT service_name, count() AS c\nFROM traces\nWHERE service_name = 'a' AND count() > 10\nGROUP BY service_name"
    rewritten = sql_analysis.move_where_aggregates_to_having(sql)
    assert _flat(rewritten) == (
        "SELECT service_name, count() AS c FROM traces WHERE service_name = 'a' "
        "GROUP BY service_name HAVING count() > 10"
    )
    assert sql_analysis.find_static_error(rewritten) is None


def test_move_where_aggregates_drops_empty_where_and_extends_having():
    sql = "SELECT service_name FROM traces WHERE count() > 10 GROUP BY service_name HAVING max(duration_ns) > 5"
    rewritten = sql_analysis.move_where_aggregates_to_having(sql)
    assert "WHERE" not in rewritten
    assert _flat(rewritten) == (
        "SELECT service_name FROM traces GROUP BY service_name "
        "HAVING (max(duration_ns) > 5) AND count() > 10"
    )


def test_move_where_aggregates_returns_none_without_aggregates():
    assert sql_analysis.move_where_aggregates_to_having("SELECT 1 FROM traces WHERE duration_ns > 5") is None


def test_is_aggregate_function_handles_combinators():
    assert sql_analysis.is_aggregate_function("countIf")
    assert sql_analysis.is_aggregate_function("quantileState")
    assert sql_analysis.is_aggregate_function("sumIf")
    assert not sql_analysis.is_aggregate_function("toStartOfMinute")
