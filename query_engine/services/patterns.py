"""
Deterministic ClickHouse query templates for critical-path analysis.

Every template filters ``traces`` to the path's services inside a trailing
time window and returns a GeneratedQuery with a stable id and expected schema.
"""
from typing import Callable, Dict, List

from query_engine.services.models import CriticalPath, GeneratedQuery, QueryPattern

DEFAULT_TIME_RANGE_MINUTES = 15

SERVICE_LATENCY_SQL = """SELECT
  service_name,
  toStartOfMinute(start_time) AS minute,
  quantile(0.5)(duration_ns/1000000) AS p50_ms,
  quantile(0.95)(duration_ns/1000000) AS p95_ms,
  quantile(0.99)(duration_ns/1000000) AS p99_ms,
  count() AS request_count
FROM traces
WHERE
  service_name IN ({services})
  AND start_time >= now() - {window}
GROUP BY service_name, minute
ORDER BY minute DESC, service_name
LIMIT 1000"""

ERROR_DISTRIBUTION_SQL = """SELECT
  service_name,
  status_code,
  status_message,
  count() AS error_count,
  round(count() * 100.0 / sum(count()) OVER (), 2) AS error_percentage
FROM traces
WHERE
  service_name IN ({services})
  AND status_code != 'OK'
  AND start_time >= now() - {window}
GROUP BY service_name, status_code, status_message
ORDER BY error_count DESC
LIMIT 100"""

BOTTLENECK_SQL = """SELECT
  service_name,
  operation_name,
  quantile(0.95)(duration_ns/1000000) AS p95_ms,
  quantile(0.99)(duration_ns/1000000) AS p99_ms,
  max(duration_ns/1000000) AS max_ms,
  count() AS operation_count,
  sum(duration_ns/1000000) AS total_time_ms
FROM traces
WHERE
  service_name IN ({services})
  AND start_time >= now() - {window}
GROUP BY service_name, operation_name
HAVING p95_ms > 100
ORDER BY p95_ms DESC
LIMIT 50"""

VOLUME_THROUGHPUT_SQL = """SELECT
  service_name,
  toStartOfMinute(start_time) AS minute,
  count() AS requests_per_minute,
  count() / 60.0 AS requests_per_second,
  sum(CASE WHEN status_code = 'OK' THEN 1 ELSE 0 END) AS successful_requests,
  round(sum(CASE WHEN status_code = 'OK' THEN 1 ELSE 0 END) * 100.0 / count(), 2) AS success_rate
FROM traces
WHERE
  service_name IN ({services})
  AND start_time >= now() - {window}
GROUP BY service_name, minute
ORDER BY minute DESC, service_name
LIMIT 500"""

TIME_COMPARISON_SQL = """WITH current_period AS (
  SELECT
    service_name,
    quantile(0.95)(duration_ns/1000000) AS p95_ms,
    count() AS request_count
  FROM traces
  WHERE
    service_name IN ({services})
    AND start_time >= now() - {window}
  GROUP BY service_name
),
previous_period AS (
  SELECT
    service_name,
    quantile(0.95)(duration_ns/1000000) AS p95_ms,
    count() AS request_count
  FROM traces
  WHERE
    service_name IN ({services})
    AND start_time >= now() - {double_window}
    AND start_time < now() - {window}
  GROUP BY service_name
)
SELECT
  c.service_name,
  c.p95_ms AS current_p95_ms,
  p.p95_ms AS previous_p95_ms,
  round((c.p95_ms - p.p95_ms) / p.p95_ms * 100, 2) AS p95_change_percent,
  c.request_count AS current_requests,
  p.request_count AS previous_requests,
  round((c.request_count - p.request_count) * 100.0 / p.request_count, 2) AS request_change_percent
FROM current_period c
LEFT JOIN previous_period p ON c.service_name = p.service_name
ORDER BY abs(p95_change_percent) DESC"""


def escape_sql_string(value: str) -> str:
    return (value or "").replace("'", "''")


def service_list_literal(path: CriticalPath) -> str:
    return ", ".join(f"'{escape_sql_string(s)}'" for s in path.services)


def interval_clause(minutes: int) -> str:
    """Render a trailing window, using HOUR when it is a whole number of hours."""
    minutes = int(minutes)
    if minutes <= 0:
        raise ValueError(f"time range must be positive, got {minutes}")
    if minutes % 60 == 0:
        return f"INTERVAL {minutes // 60} HOUR"
    return f"INTERVAL {minutes} MINUTE"


def _render(template: str, path: CriticalPath, minutes: int) -> str:
    return template.format(
        services=service_list_literal(path),
        window=interval_clause(minutes),
        double_window=interval_clause(minutes * 2),
    )


def generate_service_latency_query(path: CriticalPath, time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES) -> GeneratedQuery:
    return GeneratedQuery(
        id=f"{path.id}_latency",
        name=f"Service Latency Analysis - {path.name}",
        description="Analyzes p50, p95, p99 latencies for services in the critical path",
        pattern=QueryPattern.SERVICE_LATENCY,
        sql=_render(SERVICE_LATENCY_SQL, path, time_range_minutes),
        expected_schema={
            "service_name": "String",
            "minute": "DateTime",
            "p50_ms": "Float64",
            "p95_ms": "Float64",
            "p99_ms": "Float64",
            "request_count": "UInt64",
        },
    )


def generate_error_distribution_query(path: CriticalPath, time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES) -> GeneratedQuery:
    return GeneratedQuery(
        id=f"{path.id}_errors",
        name=f"Error Distribution - {path.name}",
        description="Analyzes error distribution across services in the critical path",
        pattern=QueryPattern.ERROR_DISTRIBUTION,
        sql=_render(ERROR_DISTRIBUTION_SQL, path, time_range_minutes),
        expected_schema={
            "service_name": "String",
            "status_code": "String",
            "status_message": "String",
            "error_count": "UInt64",
            "error_percentage": "Float64",
        },
    )


def generate_bottleneck_query(path: CriticalPath, time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES) -> GeneratedQuery:
    return GeneratedQuery(
        id=f"{path.id}_bottleneck",
        name=f"Bottleneck Detection - {path.name}",
        description="Identifies the slowest operations in the critical path",
        pattern=QueryPattern.BOTTLENECK_DETECTION,
        sql=_render(BOTTLENECK_SQL, path, time_range_minutes),
        expected_schema={
            "service_name": "String",
            "operation_name": "String",
            "p95_ms": "Float64",
            "p99_ms": "Float64",
            "max_ms": "Float64",
            "operation_count": "UInt64",
            "total_time_ms": "Float64",
        },
    )


def generate_volume_throughput_query(path: CriticalPath, time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES) -> GeneratedQuery:
    return GeneratedQuery(
        id=f"{path.id}_volume",
        name=f"Volume & Throughput - {path.name}",
        description="Analyzes request rates and throughput for services",
        pattern=QueryPattern.VOLUME_THROUGHPUT,
        sql=_render(VOLUME_THROUGHPUT_SQL, path, time_range_minutes),
        expected_schema={
            "service_name": "String",
            "minute": "DateTime",
            "requests_per_minute": "UInt64",
            "requests_per_second": "Float64",
            "successful_requests": "UInt64",
            "success_rate": "Float64",
        },
    )


def generate_time_comparison_query(path: CriticalPath, time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES) -> GeneratedQuery:
    return GeneratedQuery(
        id=f"{path.id}_comparison",
        name=f"Time Comparison - {path.name}",
        description="Compares the current window with the preceding window of equal length",
        pattern=QueryPattern.TIME_COMPARISON,
        sql=_render(TIME_COMPARISON_SQL, path, time_range_minutes),
        expected_schema={
            "service_name": "String",
            "current_p95_ms": "Float64",
            "previous_p95_ms": "Float64",
            "p95_change_percent": "Float64",
            "current_requests": "UInt64",
            "previous_requests": "UInt64",
            "request_change_percent": "Float64",
        },
    )


_GENERATORS: Dict[QueryPattern, Callable[[CriticalPath, int], GeneratedQuery]] = {
    QueryPattern.SERVICE_LATENCY: generate_service_latency_query,
    QueryPattern.ERROR_DISTRIBUTION: generate_error_distribution_query,
    QueryPattern.BOTTLENECK_DETECTION: generate_bottleneck_query,
    QueryPattern.VOLUME_THROUGHPUT: generate_volume_throughput_query,
    QueryPattern.TIME_COMPARISON: generate_time_comparison_query,
}


def generate_pattern_query(
    path: CriticalPath,
    pattern: QueryPattern,
    time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES,
) -> GeneratedQuery:
    return _GENERATORS[QueryPattern(pattern)](path, time_range_minutes)


def generate_all_pattern_queries(
    path: CriticalPath,
    time_range_minutes: int = DEFAULT_TIME_RANGE_MINUTES,
) -> List[GeneratedQuery]:
    return [gen(path, time_range_minutes) for gen in _GENERATORS.values()]
