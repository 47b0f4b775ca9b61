"""
Schema contract for the ``traces`` span table.

Prompts embed ``render_schema_definition()`` verbatim and the static SQL checks
treat ``TRACE_COLUMNS`` as ground truth, so both must change together.
"""
from typing import Dict

TRACE_TABLE = "traces"

TRACE_COLUMNS: Dict[str, str] = {
    "trace_id": "String",
    "span_id": "String",
    "parent_span_id": "String",
    "service_name": "LowCardinality(String)",
    "operation_name": "LowCardinality(String)",
    "start_time": "DateTime64(9)",
    "end_time": "DateTime64(9)",
    "duration_ns": "UInt64",
    "status_code": "LowCardinality(String)",
    "status_message": "String",
    "span_kind": "LowCardinality(String)",
    "span_attributes": "Map(String, String)",
    "resource_attributes": "Map(String, String)",
}

_COLUMN_NOTES: Dict[str, str] = {
    "trace_id": "Unique trace identifier",
    "span_id": "Unique span identifier",
    "parent_span_id": "Parent span ID (empty for root spans)",
    "service_name": "Service that generated the span",
    "operation_name": "Operation/endpoint name",
    "start_time": "Span start timestamp",
    "end_time": "Span end timestamp",
    "duration_ns": "Duration in NANOSECONDS (divide by 1000000 for milliseconds)",
    "status_code": "'OK', 'ERROR' or 'UNSET'",
    "status_message": "Error message when status_code != 'OK'",
    "span_kind": "'SERVER', 'CLIENT', 'INTERNAL', 'PRODUCER' or 'CONSUMER'",
    "span_attributes": "Span attributes (access with span_attributes['key'])",
    "resource_attributes": "Resource attributes (access with resource_attributes['key'])",
}

SCHEMA_NOTES = (
    "- Table name is exactly: traces (no database prefix)\n"
    "- Use duration_ns/1000000 for milliseconds\n"
    "- Use start_time for all time filtering, e.g. start_time >= now() - INTERVAL 15 MINUTE\n"
    "- Use status_code != 'OK' to find errors\n"
    "- There is NO column named timestamp, duration, latency_ms or service"
)


def is_trace_table(name: str) -> bool:
    return (name or "").lower() == TRACE_TABLE


def render_schema_definition() -> str:
    width = max(len(c) for c in TRACE_COLUMNS)
    lines = [f"ClickHouse table `{TRACE_TABLE}` (one row per span):"]
    for column, col_type in TRACE_COLUMNS.items():
        lines.append(f"  {column.ljust(width)}  {col_type:<24} -- {_COLUMN_NOTES[column]}")
    return "\n".join(lines) + "\n\nIMPORTANT:\n" + SCHEMA_NOTES
