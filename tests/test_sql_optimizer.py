import json
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from query_engine.services.llm_client import LLMResponse
from query_engine.services.models import LLMNetworkError, SQLError, SQLErrorCode
from query_engine.services.sql_evaluator import SQLEvaluator, classify_error
from query_engine.services.sql_optimizer import (
    RepairContext,
    SQLOptimizer,
    apply_rule_based_repair,
    build_repair_prompt,
    parse_repair_response,
)
from trace_store.db_utils import StorageQueryError


class _FakeStorage:
    """Accepts everything the static checks let through."""

    def __init__(self):
        self.queries = []

    def query_raw(self, sql):
        self.queries.append(sql)
        return [{"ok": 1}]


class _RejectingStorage:
    def __init__(self, message):
        self.message = message
        self.queries = []

    def query_raw(self, sql):
        self.queries.append(sql)
        raise StorageQueryError(self.message, sql)


class _ScriptedLLM:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests = []

    def generate(self, request):
        self.requests.append(request)
        reply = self.replies.pop(0) if self.replies else "nothing useful"
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(content=reply)


COUNT_PRODUCT_SQL = """SELECT service_name, count() * (duration_ns/1000000) AS total_ms
FROM traces
GROUP BY service_name"""

VALID_SQL = "SELECT service_name, count() AS c FROM traces GROUP BY service_name"


def test_count_product_is_repaired_to_sum():
    outcome = SQLOptimizer(SQLEvaluator(_FakeStorage())).optimize(COUNT_PRODUCT_SQL)

    assert outcome.is_valid
    assert "sum(duration_ns/1000000)" in outcome.final_sql
    assert "count() *" not in outcome.final_sql
    assert outcome.attempts[0].sql == COUNT_PRODUCT_SQL
    assert outcome.attempts[0].error.code == SQLErrorCode.NOT_AN_AGGREGATE
    assert outcome.optimizations[0].source == "rule"
    assert len(outcome.attempts) == 2


def test_where_aggregate_is_moved_to_having():
    sql = "SELECT service_name, count() AS c FROM traces WHERE count() > 10 GROUP BY service_name"
    outcome = SQLOptimizer(SQLEvaluator(_FakeStorage())).optimize(sql)

    assert outcome.is_valid
    assert "HAVING count() > 10" in outcome.final_sql
    assert outcome.attempts[0].error.code == SQLErrorCode.ILLEGAL_AGGREGATION


def test_valid_sql_needs_a_single_attempt():
    storage = _FakeStorage()
    outcome = SQLOptimizer(SQLEvaluator(storage)).optimize(VALID_SQL)

    assert outcome.is_valid
    assert outcome.final_sql == VALID_SQL
    assert len(outcome.attempts) == 1
    assert outcome.optimizations == []


def test_loop_is_bounded_by_max_attempts():
    broken = "SELECT service_name, operation_name, count() FROM traces GROUP BY service_name"
    llm = _ScriptedLLM(
        json.dumps({"optimizedSql": broken.replace("count()", "count() AS n"), "explanation": "x", "changes": []}),
        json.dumps({"optimizedSql": broken.replace("count()", "count() AS m"), "explanation": "y", "changes": []}),
        json.dumps({"optimizedSql": broken.replace("count()", "count() AS k"), "explanation": "z", "changes": []}),
    )
    outcome = SQLOptimizer(SQLEvaluator(_FakeStorage()), llm, max_attempts=3).optimize(broken)

    assert not outcome.is_valid
    assert len(outcome.attempts) == 3
    assert outcome.attempts[0].sql == broken
    assert len(llm.requests) == 2
    assert outcome.final_error.code == SQLErrorCode.NOT_AN_AGGREGATE


def test_no_repair_available_stops_without_raising():
    broken = "SELECT service_name, operation_name, count() FROM traces GROUP BY service_name"
    outcome = SQLOptimizer(SQLEvaluator(_FakeStorage())).optimize(broken)

    assert not outcome.is_valid
    assert outcome.final_sql == broken
    assert len(outcome.attempts) == 1


def test_llm_failure_ends_loop_with_best_candidate():
    broken = "SELECT service_name, operation_name, count() FROM traces GROUP BY service_name"
    llm = _ScriptedLLM(LLMNetworkError("connection reset"))
    outcome = SQLOptimizer(SQLEvaluator(_FakeStorage()), llm).optimize(broken)

    assert not outcome.is_valid
    assert outcome.final_sql == broken
    assert len(llm.requests) == 1


def test_llm_repair_is_used_when_no_rule_applies():
    broken = "SELECT service_name, operation_name, count() FROM traces GROUP BY service_name"
    fixed = "SELECT service_name, operation_name, count() FROM traces GROUP BY service_name, operation_name"
    llm = _ScriptedLLM(json.dumps({"optimizedSql": fixed, "explanation": "group by both", "changes": "added operation_name"}))
    outcome = SQLOptimizer(SQLEvaluator(_FakeStorage()), llm).optimize(
        broken, RepairContext(services=("frontend",), analysis_goal="latency")
    )

    assert outcome.is_valid
    assert outcome.final_sql == fixed
    assert outcome.optimizations[0].source == "llm"
    assert outcome.optimizations[0].change_summary == ["added operation_name"]
    prompt = llm.requests[0].prompt
    assert "NOT_AN_AGGREGATE" in prompt
    assert "frontend" in prompt
    assert "operation_name" in prompt


def test_prefer_llm_falls_back_to_rules():
    llm = _ScriptedLLM(LLMNetworkError("down"))
    outcome = SQLOptimizer(SQLEvaluator(_FakeStorage()), llm, prefer_llm=True).optimize(COUNT_PRODUCT_SQL)

    assert outcome.is_valid
    assert len(llm.requests) == 1
    assert outcome.optimizations[0].source == "rule"


def test_identical_repair_stops_the_loop():
    broken = "SELECT service_name, operation_name, count() FROM traces GROUP BY service_name"
    llm = _ScriptedLLM("```sql\n" + broken + "\n```")
    outcome = SQLOptimizer(SQLEvaluator(_FakeStorage()), llm, max_attempts=5).optimize(broken)

    assert len(outcome.attempts) == 1
    assert outcome.final_sql == broken


def test_cancellation_stops_further_attempts():
    cancel = threading.Event()
    cancel.set()
    outcome = SQLOptimizer(SQLEvaluator(_FakeStorage())).optimize(COUNT_PRODUCT_SQL, cancel_event=cancel)

    assert len(outcome.attempts) == 1
    assert not outcome.is_valid


def test_engine_errors_drive_rules():
    storage = _RejectingStorage("Code: 60. DB::Exception: Table analytics.traces doesn't exist. (UNKNOWN_TABLE)")
    optimizer = SQLOptimizer(SQLEvaluator(storage, static_checks=False), max_attempts=2)
    outcome = optimizer.optimize("SELECT service_name FROM analytics.traces")

    assert outcome.attempts[1].sql == "SELECT service_name FROM traces"
    assert len(storage.queries) == 2


def test_rule_renames_known_column_aliases():
    error = classify_error("Code: 47. DB::Exception: Unknown expression identifier `timestamp` in scope x. (UNKNOWN_IDENTIFIER)")
    repair = apply_rule_based_repair(
        "SELECT toStartOfMinute(timestamp) AS minute, count() AS c FROM traces GROUP BY minute", error
    )
    assert repair.rule == "trace_column_names"
    assert repair.sql == "SELECT toStartOfMinute(start_time) AS minute, count() AS c FROM traces GROUP BY minute"


def test_rule_fixes_keyword_typos():
    error = SQLError(code=SQLErrorCode.SYNTAX_ERROR, message="Syntax error")
    repair = apply_rule_based_repair("SELECT service_name FORM traces WEHRE duration_ns > 5", error)
    assert repair.sql == "SELECT service_name FROM traces WHERE duration_ns > 5"


def test_rule_miss_is_silent():
    error = SQLError(code=SQLErrorCode.TYPE_MISMATCH, message="Type mismatch")
    assert apply_rule_based_repair(VALID_SQL, error) is None
    assert apply_rule_based_repair(VALID_SQL, None) is None


def test_count_times_avg_and_bare_column():
    error = SQLError(code=SQLErrorCode.NOT_AN_AGGREGATE, message="not under aggregate function")
    repair = apply_rule_based_repair("SELECT count() * avg(duration_ns) AS a, count() * duration_ns AS b FROM traces", error)
    assert repair.sql == "SELECT sum(duration_ns) AS a, sum(duration_ns) AS b FROM traces"
    assert len(repair.changes) == 2


def test_parse_repair_response_shapes():
    parsed = parse_repair_response('```json\n{"sql": "SELECT 1;", "explanation": "e"}\n```')
    assert parsed.optimized_sql == "SELECT 1"
    assert parse_repair_response("Here's the corrected SQL query:\nSELECT 2").optimized_sql == "SELECT 2"
    assert parse_repair_response("I cannot help with that.") is None


def test_repair_prompt_carries_full_message_and_guidance():
    error = classify_error("Code: 184. DB::Exception: Aggregate function count() is found in WHERE. (ILLEGAL_AGGREGATION)")
    prompt = build_repair_prompt("SELECT 1", error, RepairContext(services=("a", "b"), analysis_goal="errors"))
    assert error.message in prompt
    assert "HAVING" in prompt
    assert "a, b" in prompt
    assert '"optimizedSql"' in prompt


JOIN_MISMATCH_SQL = """WITH svc AS (
  SELECT service_name, count() AS calls FROM traces GROUP BY service_name
),
ops AS (
  SELECT operation_name, avg(duration_ns) AS avg_ns FROM traces GROUP BY operation_name
)
SELECT s.service_name, o.avg_ns
FROM svc s JOIN ops o ON s.operation_name = o.operation_name"""

UNKNOWN_OPERATION = (
    "Code: 47. DB::Exception: Unknown expression identifier `operation_name` in scope "
    "s.operation_name = o.operation_name. (UNKNOWN_IDENTIFIER)"
)


def test_join_on_mismatched_cte_keys_ends_after_max_attempts():
    variants = [
        JOIN_MISMATCH_SQL.replace("s.service_name, o.avg_ns", "s.service_name, s.calls, o.avg_ns"),
        JOIN_MISMATCH_SQL.replace("JOIN ops o", "INNER JOIN ops o"),
    ]
    llm = _ScriptedLLM(
        *[json.dumps({"optimizedSql": v, "explanation": "join on operation", "changes": ["join"]}) for v in variants]
    )
    storage = _RejectingStorage(UNKNOWN_OPERATION)
    optimizer = SQLOptimizer(SQLEvaluator(storage, static_checks=False), llm, max_attempts=3, prefer_llm=False)

    outcome = optimizer.optimize(JOIN_MISMATCH_SQL)

    assert not outcome.is_valid
    assert len(outcome.attempts) == 3
    assert outcome.attempts[0].sql == JOIN_MISMATCH_SQL
    assert [a.sql for a in outcome.attempts[1:]] == variants
    for attempt in outcome.attempts:
        assert attempt.error.code == SQLErrorCode.UNKNOWN_IDENTIFIER
        assert attempt.error.position_hint == "operation_name"
    assert len(llm.requests) == 2
    assert outcome.final_error.code == SQLErrorCode.UNKNOWN_IDENTIFIER
