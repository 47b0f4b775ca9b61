import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from query_engine.services import diagnostic_instructions as di
from query_engine.services.models import CriticalPath, DiagnosticQueryRequirements
from query_engine.services.sql_analysis import find_static_error
from query_engine.services.trace_schema import render_schema_definition

PATH = CriticalPath(id="checkout", name="Checkout Flow", services=("frontend", "o'reilly-cart", "payment"))


def test_both_flavours_embed_services_and_schema():
    schema = render_schema_definition()
    for prompt in (
        di.generate_sql_model_prompt(PATH, "Analyze latency"),
        di.generate_general_llm_prompt(PATH, "Analyze latency"),
    ):
        assert "'frontend', 'o''reilly-cart', 'payment'" in prompt
        assert schema in prompt


def test_sql_model_prompt_picks_branch_from_goal():
    latency = di.generate_sql_model_prompt(PATH, "Investigate latency percentiles")
    errors = di.generate_sql_model_prompt(PATH, "Find reliability problems and error spikes")
    bottleneck = di.generate_sql_model_prompt(PATH, "Find the bottleneck")
    throughput = di.generate_sql_model_prompt(PATH, "Measure throughput", time_range_minutes=60)

    assert "p95_ms DESC" in latency and "quantile(0.5)" in latency
    assert "error_rate_pct DESC" in errors
    assert "total_time_impact_ms" in bottleneck
    assert "requests_per_second" in throughput and "/ 3600" in throughput
    assert throughput.rstrip().endswith("NO explanations or examples:")


def test_sql_model_skeletons_are_valid_sql():
    for goal in ("latency", "error rates", "bottleneck impact", "volume", "something else"):
        ins = di.create_sql_model_instructions(PATH, goal)
        skeleton = ins.sql_requirements.split("\n\nDESCRIPTION:")[0]
        assert find_static_error(skeleton) is None, goal


def test_general_prompt_lists_eight_requirements_and_disables_flags():
    reqs = DiagnosticQueryRequirements(health_scoring=False)
    prompt = di.generate_general_llm_prompt(PATH, "Understand errors", reqs)

    for n in range(1, 9):
        assert f"{n}. " in prompt
    assert "6. HEALTH SCORING: DISABLED" in prompt
    assert "8. ANOMALY DETECTION: DISABLED" in prompt
    assert "Health scoring:" not in prompt
    assert "problematic_traces" in prompt
    assert prompt.rstrip().endswith("without explanation or markdown blocks.")


def test_trace_filtering_pattern_is_valid_cte():
    pattern = di.trace_filtering_pattern(PATH, 30)
    assert "INTERVAL 30 MINUTE" in pattern
    assert "HAVING count() > 20" in pattern
    assert find_static_error(pattern + "\nSELECT trace_id FROM problematic_traces") is None


def test_validate_diagnostic_query_reports_missing_requirements():
    bare = "SELECT service_name FROM traces"
    result = di.validate_diagnostic_query(bare)
    assert not result.is_valid
    assert "Error analysis" in result.missing_requirements
    assert "Real-time focus" in result.missing_requirements

    full = """WITH problematic_traces AS (SELECT trace_id FROM traces WHERE start_time >= now() - INTERVAL 15 MINUTE)
SELECT service_name, operation_name, count() AS request_count,
  countIf(status_code != 'OK') AS error_count,
  sum(duration_ns/1000000) AS total_time_impact_ms,
  CASE WHEN error_count > 5 THEN 'CRITICAL' ELSE 'HEALTHY' END AS health_status
FROM traces
GROUP BY service_name, operation_name"""
    assert di.validate_diagnostic_query(full).is_valid


def test_validation_honours_disabled_requirements():
    reqs = DiagnosticQueryRequirements(
        trace_filtering=False,
        error_analysis=False,
        volume_context=False,
        bottleneck_detection=False,
        operation_breakdown=False,
        health_scoring=False,
        real_time_focus=False,
    )
    assert di.validate_diagnostic_query("SELECT 1 FROM traces", reqs).is_valid
