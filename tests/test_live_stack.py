import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from query_engine.services.models import CriticalPath
from query_engine.services.query_service import build_query_service_from_env
from query_engine.services.sql_evaluator import SQLEvaluator
from trace_store.db_utils import build_trace_storage_from_env

PATH = CriticalPath(id="checkout", name="Checkout Flow", services=("frontend", "cart", "payment"))

needs_clickhouse = pytest.mark.skipif(
    not os.environ.get("CLICKHOUSE_HOST"), reason="CLICKHOUSE_HOST not set"
)
needs_llm = pytest.mark.skipif(
    not (os.environ.get("CLICKHOUSE_HOST") and os.environ.get("OPENAI_API_KEY")),
    reason="CLICKHOUSE_HOST and OPENAI_API_KEY not set",
)


@needs_clickhouse
def test_templates_execute_against_clickhouse():
    service = build_query_service_from_env()
    service.strategy = "template"
    for query in service.generate_queries(PATH):
        result = query.execute()
        assert result.error is None, f"{query.id}: {result.error}"


@needs_clickhouse
def test_engine_rejects_unknown_column():
    evaluator = SQLEvaluator(build_trace_storage_from_env(), static_checks=False)
    result = evaluator.evaluate("SELECT latency_ms FROM traces")
    assert not result.is_valid
    assert result.error.code_number == 47


@needs_llm
def test_ai_queries_are_valid_after_optimization():
    service = build_query_service_from_env()
    service.strategy = "ai"
    queries = service.generate_queries(PATH, timeout_s=120)
    assert queries
    assert all(q.optimization is None or q.optimization.is_valid for q in queries)
