"""
Prompt construction for diagnostic ClickHouse queries.

Two flavours are produced from the same DiagnosticQueryRequirements:
- SQL-specialised models get a terse prompt built around an exact skeleton
  chosen from keywords in the analysis goal.
- General models get the full requirement list, the trace-filtering CTE,
  schema documentation and validation rules.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from query_engine.services.models import (
    CORE_DIAGNOSTIC_REQUIREMENTS,
    CriticalPath,
    DiagnosticQueryRequirements,
)
from query_engine.services.patterns import DEFAULT_TIME_RANGE_MINUTES, interval_clause, service_list_literal
from query_engine.services.trace_schema import render_schema_definition


@dataclass
class DiagnosticQueryInstructions:
    base_prompt: str
    sql_requirements: str
    diagnostic_patterns: str
    trace_filtering_pattern: str
    schema_definition: str
    validation_rules: List[str] = field(default_factory=list)


@dataclass
class DiagnosticValidation:
    is_valid: bool
    missing_requirements: List[str]


TRACE_FILTERING_SQL = """WITH problematic_traces AS (
  SELECT DISTINCT trace_id
  FROM traces
  WHERE service_name IN ({services})
    AND start_time >= now() - {window}
    AND (
      duration_ns/1000000 > 1000
      OR status_code != 'OK'
      OR trace_id IN (
        SELECT trace_id
        FROM traces
        WHERE start_time >= now() - {window}
        GROUP BY trace_id
        HAVING count() > 20
      )
    )
)"""

ERROR_ANALYSIS_SNIPPET = """countIf(status_code != 'OK') AS error_count,
  round(countIf(status_code != 'OK') * 100.0 / count(), 2) AS error_rate_pct"""

LATENCY_METRICS_SNIPPET = """quantile(0.5)(duration_ns/1000000) AS p50_ms,
  quantile(0.95)(duration_ns/1000000) AS p95_ms,
  quantile(0.99)(duration_ns/1000000) AS p99_ms"""

BOTTLENECK_SNIPPET = """count() AS request_count,
  quantile(0.95)(duration_ns/1000000) AS p95_ms,
  sum(duration_ns/1000000) AS total_time_impact_ms"""

HEALTH_SCORING_SNIPPET = """CASE
    WHEN error_rate_pct > 5 THEN 'CRITICAL'
    WHEN error_rate_pct > 1 OR p95_ms > 1000 THEN 'WARNING'
    ELSE 'HEALTHY'
  END AS health_status"""

TRIAGE_ORDERING_SNIPPET = """ORDER BY
    CASE health_status
      WHEN 'CRITICAL' THEN 1
      WHEN 'WARNING' THEN 2
      ELSE 3
    END,
    error_rate_pct DESC,
    total_time_impact_ms DESC"""

_SKELETON_HEAD = """SELECT service_name, operation_name,
  {metrics}
FROM traces
WHERE service_name IN ({services})
  AND start_time >= now() - {window}
GROUP BY service_name, operation_name
HAVING count() > 5
ORDER BY {order_by}"""

# (goal keywords, focus label, description, metric list, order by)
_SQL_MODEL_BRANCHES = [
    (
        ("latency", "performance"),
        "latency percentiles",
        "Latency analysis with percentiles",
        LATENCY_METRICS_SNIPPET,
        "p95_ms DESC",
    ),
    (
        ("error", "reliability"),
        "error rates",
        "Error analysis with rates",
        ERROR_ANALYSIS_SNIPPET,
        "error_rate_pct DESC, error_count DESC",
    ),
    (
        ("bottleneck", "impact"),
        "performance impact",
        "Bottleneck analysis with time impact",
        BOTTLENECK_SNIPPET,
        "total_time_impact_ms DESC",
    ),
    (
        ("throughput", "volume"),
        "request volume",
        "Throughput analysis with volume",
        "count() AS request_count,\n  round(count() / {seconds}, 3) AS requests_per_second",
        "request_count DESC",
    ),
]

_DEFAULT_BRANCH = (
    (),
    "general analysis",
    "General diagnostic analysis",
    "count() AS request_count,\n  " + ERROR_ANALYSIS_SNIPPET + ",\n  quantile(0.95)(duration_ns/1000000) AS p95_ms",
    "error_rate_pct DESC, p95_ms DESC",
)

SQL_MODEL_PROMPT = """{base_prompt}

REQUIRED SQL STRUCTURE:
{sql_requirements}

FOCUS: {diagnostic_patterns}

{schema_definition}

RULES: {rules}

Write the complete ClickHouse SQL query only - NO explanations or examples:"""

GENERAL_MODEL_PROMPT = """{base_prompt}

{sql_requirements}

{diagnostic_patterns}
{trace_filtering}
{schema_definition}

{rules}

Return ONLY the SQL query without explanation or markdown blocks."""


def trace_filtering_pattern(path: CriticalPath, time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES) -> str:
    return TRACE_FILTERING_SQL.format(
        services=service_list_literal(path),
        window=interval_clause(time_range_minutes),
    )


def _select_branch(analysis_goal: str):
    goal = (analysis_goal or "").lower()
    for branch in _SQL_MODEL_BRANCHES:
        if any(word in goal for word in branch[0]):
            return branch
    return _DEFAULT_BRANCH


def create_sql_model_instructions(
    path: CriticalPath,
    analysis_goal: str,
    requirements: Optional[DiagnosticQueryRequirements] = None,
    time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES,
) -> DiagnosticQueryInstructions:
    _, focus, description, metrics, order_by = _select_branch(analysis_goal)
    services = service_list_literal(path)
    window = interval_clause(time_range_minutes)
    skeleton = _SKELETON_HEAD.format(
        metrics=metrics.format(seconds=int(time_range_minutes) * 60),
        services=services,
        window=window,
        order_by=order_by,
    )
    return DiagnosticQueryInstructions(
        base_prompt=(
            f"Generate a ClickHouse SQL query for diagnostic analysis: {analysis_goal}\n\n"
            f"Services: {services}\n"
            f"Focus: {focus}"
        ),
        sql_requirements=f"{skeleton}\n\nDESCRIPTION: {description}",
        diagnostic_patterns=f"{analysis_goal}. Recent data ({window}). Group by service/operation.",
        trace_filtering_pattern="",
        schema_definition=render_schema_definition(),
        validation_rules=[
            "Filter services with service_name IN (...)",
            f"Use start_time >= now() - {window}",
            "Group by service/operation",
            "Never put aggregate functions in WHERE",
            f"Focus: {analysis_goal}",
        ],
    )


def _flag(enabled: bool, text: str) -> str:
    return text if enabled else "DISABLED"


def create_general_llm_instructions(
    path: CriticalPath,
    analysis_goal: str,
    requirements: Optional[DiagnosticQueryRequirements] = None,
    time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES,
) -> DiagnosticQueryInstructions:
    req = requirements or CORE_DIAGNOSTIC_REQUIREMENTS
    window = interval_clause(time_range_minutes)
    sql_requirements = "\n".join([
        "1. TRACE-LEVEL ANALYSIS: " + _flag(req.trace_filtering, "Identify problematic traces first using a CTE"),
        "2. ERROR ANALYSIS: " + _flag(req.error_analysis, "Include error rates (countIf(status_code != 'OK')) and failure patterns"),
        "3. VOLUME CONTEXT: " + _flag(req.volume_context, "Include request counts (count() AS request_count) to contextualize performance metrics"),
        "4. BOTTLENECK DETECTION: " + _flag(req.bottleneck_detection, "Calculate total time impact as sum(duration_ns/1000000) AS total_time_impact_ms"),
        "5. OPERATION BREAKDOWN: " + _flag(req.operation_breakdown, "Group by operation_name within services for specific diagnosis"),
        "6. HEALTH SCORING: " + _flag(req.health_scoring, "Categorize services as CRITICAL/WARNING/HEALTHY with a CASE expression"),
        "7. REAL-TIME FOCUS: " + _flag(req.real_time_focus, f"Use recent windows (start_time >= now() - {window})"),
        "8. ANOMALY DETECTION: " + _flag(req.anomaly_detection, "Use statistical methods to flag performance regressions when appropriate"),
    ])
    patterns = [
        "QUERY STRUCTURE REQUIREMENTS:",
        "- Use CTEs (WITH clauses) for multi-level analysis",
        "- Every CTE column used later must be selected (with an alias) inside that CTE",
        "- Order results by severity/impact for immediate action",
        "- Filter out low-volume noise (request_count > 5)",
        f"- MUST filter by services: service_name IN ({service_list_literal(path)})",
    ]
    if req.error_analysis:
        patterns.append("\nError analysis columns:\n  " + ERROR_ANALYSIS_SNIPPET)
    if req.health_scoring:
        patterns.append("\nHealth scoring:\n  " + HEALTH_SCORING_SNIPPET)
        patterns.append("\nTriage ordering:\n  " + TRIAGE_ORDERING_SNIPPET)
    return DiagnosticQueryInstructions(
        base_prompt=(
            "You are a ClickHouse expert specializing in DIAGNOSTIC queries for critical path analysis.\n\n"
            f"Critical Path: {path.name}\n"
            f"Services: {service_list_literal(path)}\n"
            f"Analysis Goal: {analysis_goal}\n\n"
            "DIAGNOSTIC REQUIREMENTS (ALL ENABLED ITEMS MUST BE INCLUDED):"
        ),
        sql_requirements=sql_requirements,
        diagnostic_patterns="\n".join(patterns),
        trace_filtering_pattern=trace_filtering_pattern(path, time_range_minutes) if req.trace_filtering else "",
        schema_definition=render_schema_definition(),
        validation_rules=[
            "Query MUST help diagnose WHY this path is critical and WHAT to do about it",
            "Never use aggregate functions in WHERE; filter aggregates in HAVING",
            "Never multiply count() by another column or aggregate; use sum() for totals",
            "Every non-aggregated selected column must appear in GROUP BY",
            "Use only columns listed in the schema or defined as aliases",
        ],
    )


def generate_sql_model_prompt(
    path: CriticalPath,
    analysis_goal: str,
    requirements: Optional[DiagnosticQueryRequirements] = None,
    time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES,
) -> str:
    ins = create_sql_model_instructions(path, analysis_goal, requirements, time_range_minutes)
    return SQL_MODEL_PROMPT.format(
        base_prompt=ins.base_prompt,
        sql_requirements=ins.sql_requirements,
        diagnostic_patterns=ins.diagnostic_patterns,
        schema_definition=ins.schema_definition,
        rules=", ".join(ins.validation_rules),
    )


def generate_general_llm_prompt(
    path: CriticalPath,
    analysis_goal: str,
    requirements: Optional[DiagnosticQueryRequirements] = None,
    time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES,
) -> str:
    ins = create_general_llm_instructions(path, analysis_goal, requirements, time_range_minutes)
    trace_filtering = ""
    if ins.trace_filtering_pattern:
        trace_filtering = f"\nExample trace filtering pattern:\n{ins.trace_filtering_pattern}\n"
    return GENERAL_MODEL_PROMPT.format(
        base_prompt=ins.base_prompt,
        sql_requirements=ins.sql_requirements,
        diagnostic_patterns=ins.diagnostic_patterns,
        trace_filtering=trace_filtering,
        schema_definition=ins.schema_definition,
        rules="\n".join(f"- {rule}" for rule in ins.validation_rules),
    )


def validate_diagnostic_query(sql: str, requirements: Optional[DiagnosticQueryRequirements] = None) -> DiagnosticValidation:
    """Keyword-level check that a query covers the enabled diagnostic requirements."""
    req = requirements or CORE_DIAGNOSTIC_REQUIREMENTS
    upper = " ".join((sql or "").upper().split())
    missing: List[str] = []

    if "SELECT" not in upper or "FROM TRACES" not in upper:
        missing.append("Basic SQL structure (SELECT FROM traces)")
    if req.trace_filtering and "WITH" not in upper and "PROBLEMATIC_TRACES" not in upper:
        missing.append("Trace-level filtering")
    if req.error_analysis and "STATUS_CODE" not in upper:
        missing.append("Error analysis")
    if req.volume_context and "COUNT()" not in upper:
        missing.append("Volume context")
    if req.bottleneck_detection and "QUANTILE" not in upper and "SUM(" not in upper:
        missing.append("Bottleneck detection")
    if req.operation_breakdown and "OPERATION_NAME" not in upper:
        missing.append("Operation breakdown")
    if req.health_scoring and "CASE" not in upper and "CRITICAL" not in upper:
        missing.append("Health scoring")
    if req.real_time_focus and "INTERVAL" not in upper:
        missing.append("Real-time focus")

    return DiagnosticValidation(is_valid=not missing, missing_requirements=missing)
