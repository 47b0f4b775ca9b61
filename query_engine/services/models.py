"""
Data model shared by generation, evaluation and repair.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import pandas as pd


@dataclass(frozen=True)
class CriticalPath:
    """Ordered set of cooperating services under investigation."""
    id: str
    name: str
    services: Tuple[str, ...]
    start_service: str = ""
    end_service: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        ordered: List[str] = []
        for svc in self.services or ():
            if svc and svc not in ordered:
                ordered.append(svc)
        if not ordered:
            raise ValueError(f"critical path {self.id!r} has no services")
        object.__setattr__(self, "services", tuple(ordered))
        if not self.start_service:
            object.__setattr__(self, "start_service", ordered[0])
        if not self.end_service:
            object.__setattr__(self, "end_service", ordered[-1])
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata or {})))


class QueryPattern(str, Enum):
    SERVICE_LATENCY = "service_latency"
    ERROR_DISTRIBUTION = "error_distribution"
    BOTTLENECK_DETECTION = "bottleneck_detection"
    VOLUME_THROUGHPUT = "volume_throughput"
    TIME_COMPARISON = "time_comparison"


@dataclass
class QueryResult:
    query_id: str
    data: List[Dict[str, Any]]
    row_count: int
    execution_time_ms: float
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_frame(self) -> pd.DataFrame:
        if not self.data:
            return pd.DataFrame()
        return pd.DataFrame(self.data)


QueryThunk = Callable[[], QueryResult]


@dataclass
class GeneratedQuery:
    id: str
    name: str
    description: str
    pattern: QueryPattern
    sql: str
    expected_schema: Optional[Dict[str, str]] = None


class SQLErrorCode(str, Enum):
    SYNTAX_ERROR = "SYNTAX_ERROR"
    UNKNOWN_IDENTIFIER = "UNKNOWN_IDENTIFIER"
    UNKNOWN_TABLE = "UNKNOWN_TABLE"
    UNKNOWN = "UNKNOWN"
    ILLEGAL_AGGREGATION = "ILLEGAL_AGGREGATION"
    NOT_AN_AGGREGATE = "NOT_AN_AGGREGATE"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    ILLEGAL_TYPE_OF_ARGUMENT = "ILLEGAL_TYPE_OF_ARGUMENT"
    SEMANTIC_ERROR = "SEMANTIC_ERROR"


@dataclass
class SQLError:
    code: SQLErrorCode
    message: str
    position_hint: Optional[str] = None
    code_number: Optional[int] = None


@dataclass
class SQLEvaluationResult:
    is_valid: bool
    execution_time_ms: float
    sql: str
    mode: str = "execution"
    error: Optional[SQLError] = None
    row_count: Optional[int] = None


@dataclass
class OptimizationAttempt:
    sql: str
    is_valid: bool
    error: Optional[SQLError] = None


@dataclass
class Optimization:
    explanation: str
    change_summary: List[str]
    source: str = "rule"


@dataclass
class OptimizationOutcome:
    final_sql: str
    attempts: List[OptimizationAttempt]
    optimizations: List[Optimization] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return bool(self.attempts) and self.attempts[-1].is_valid

    @property
    def final_error(self) -> Optional[SQLError]:
        return self.attempts[-1].error if self.attempts else None


@dataclass
class GeneratedQueryWithThunk(GeneratedQuery):
    execute_thunk: Optional[QueryThunk] = None
    optimization: Optional[OptimizationOutcome] = None

    def execute(self) -> QueryResult:
        if self.execute_thunk is None:
            raise RuntimeError(f"query {self.id} has no execution thunk")
        return self.execute_thunk()


@dataclass(frozen=True)
class DiagnosticQueryRequirements:
    trace_filtering: bool = True
    error_analysis: bool = True
    volume_context: bool = True
    bottleneck_detection: bool = True
    operation_breakdown: bool = True
    health_scoring: bool = True
    real_time_focus: bool = True
    anomaly_detection: bool = False


CORE_DIAGNOSTIC_REQUIREMENTS = DiagnosticQueryRequirements()


# Generation / transport faults raised to callers. SQL faults are data (SQLError).

class QueryGenerationError(Exception):
    tag = "QueryGenerationError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ModelUnavailableError(QueryGenerationError):
    tag = "ModelUnavailable"


class LLMNetworkError(QueryGenerationError):
    tag = "NetworkError"


class AnalysisCancelledError(QueryGenerationError):
    tag = "Cancelled"
