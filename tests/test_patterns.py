import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from query_engine.services import patterns
from query_engine.services.models import CriticalPath, QueryPattern
from query_engine.services.sql_analysis import find_static_error


def _path(*services):
    return CriticalPath(id="checkout", name="Checkout Flow", services=services or ("frontend", "cart", "payment"))


def test_all_pattern_queries_returns_five_in_order_with_stable_ids():
    queries = patterns.generate_all_pattern_queries(_path())

    assert [q.id for q in queries] == [
        "checkout_latency",
        "checkout_errors",
        "checkout_bottleneck",
        "checkout_volume",
        "checkout_comparison",
    ]
    assert [q.pattern for q in queries] == list(QueryPattern)
    assert all(q.expected_schema for q in queries)
    assert all(q.name.endswith("Checkout Flow") for q in queries)


def test_every_query_mentions_every_service():
    path = _path("frontend", "cart", "payment", "shipping")
    for query in patterns.generate_all_pattern_queries(path):
        for service in path.services:
            assert f"'{service}'" in query.sql


def test_service_names_are_escaped():
    path = _path("o'brien-svc", "x'); DROP TABLE traces; --")
    for query in patterns.generate_all_pattern_queries(path):
        assert "'o''brien-svc'" in query.sql
        assert "'x''); DROP TABLE traces; --'" in query.sql
        assert "'o'brien-svc'" not in query.sql
        assert find_static_error(query.sql) is None


def test_templates_pass_static_checks():
    for query in patterns.generate_all_pattern_queries(_path()):
        assert find_static_error(query.sql) is None, query.id


def test_interval_clause_prefers_hours():
    assert patterns.interval_clause(15) == "INTERVAL 15 MINUTE"
    assert patterns.interval_clause(60) == "INTERVAL 1 HOUR"
    assert patterns.interval_clause(180) == "INTERVAL 3 HOUR"
    assert patterns.interval_clause(90) == "INTERVAL 90 MINUTE"


def test_interval_clause_rejects_non_positive_windows():
    with pytest.raises(ValueError):
        patterns.interval_clause(0)
    with pytest.raises(ValueError):
        patterns.generate_service_latency_query(_path(), time_range_minutes=-5)


def test_default_window_is_fifteen_minutes():
    sql = patterns.generate_service_latency_query(_path()).sql
    assert "INTERVAL 15 MINUTE" in sql


def test_time_comparison_uses_preceding_window_of_equal_length():
    sql = patterns.generate_time_comparison_query(_path(), time_range_minutes=60).sql
    assert "start_time >= now() - INTERVAL 2 HOUR" in sql
    assert "start_time < now() - INTERVAL 1 HOUR" in sql
    assert "current_period" in sql and "previous_period" in sql


def test_generate_pattern_query_dispatches_by_pattern():
    query = patterns.generate_pattern_query(_path(), QueryPattern.BOTTLENECK_DETECTION, 30)
    assert query.id == "checkout_bottleneck"
    assert "INTERVAL 30 MINUTE" in query.sql
    assert patterns.generate_pattern_query(_path(), "error_distribution").id == "checkout_errors"


def test_critical_path_dedupes_services_and_defaults_endpoints():
    path = CriticalPath(id="p", name="P", services=("a", "b", "a", "c"))
    assert path.services == ("a", "b", "c")
    assert path.start_service == "a"
    assert path.end_service == "c"


def test_critical_path_requires_services():
    with pytest.raises(ValueError):
        CriticalPath(id="empty", name="Empty", services=())


def test_critical_path_metadata_is_read_only():
    source = {"owner": "payments-team"}
    path = CriticalPath(id="p", name="P", services=("a",), metadata=source)
    source["owner"] = "someone-else"

    assert path.metadata["owner"] == "payments-team"
    with pytest.raises(TypeError):
        path.metadata["owner"] = "x"
    assert hash(path) == hash(CriticalPath(id="p", name="P", services=("a",)))
