"""
LLM-backed diagnostic query generation.

One call per analysis scenario: build the diagnostic prompt, ask the model at
temperature 0, clean the reply down to a single statement, optionally run the
evaluator-optimizer over it and wrap the final SQL in an execution thunk.
"""
import logging
import re
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from query_engine.services import settings
from query_engine.services.diagnostic_instructions import (
    generate_general_llm_prompt,
    generate_sql_model_prompt,
    validate_diagnostic_query,
)
from query_engine.services.llm_client import LLMClient, LLMRequest
from query_engine.services.models import (
    CORE_DIAGNOSTIC_REQUIREMENTS,
    AnalysisCancelledError,
    CriticalPath,
    DiagnosticQueryRequirements,
    GeneratedQueryWithThunk,
    QueryPattern,
)
from query_engine.services.query_thunk import make_query_thunk
from query_engine.services.runtime import log_event
from query_engine.services.sql_analysis import mask_sql
from query_engine.services.sql_optimizer import RepairContext, SQLOptimizer
from query_engine.services.sql_text import complete_truncated_cte, extract_sql_from_response
from trace_store.db_utils import TraceStorage

logger = logging.getLogger("ai_generator")

PROMPT_FLAVORS = ("sql", "general")
_SQL_MODEL_HINTS = ("sqlcoder", "codellama", "sql")
_SIGNATURE_CLAUSES = {
    "SELECT": re.compile(r"\bSELECT\b", re.IGNORECASE),
    "FROM": re.compile(r"\bFROM\b", re.IGNORECASE),
    "WHERE": re.compile(r"\bWHERE\b", re.IGNORECASE),
    "GROUP BY": re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE),
}


@dataclass(frozen=True)
class AnalysisScenario:
    key: str
    name: str
    goal: str
    pattern: QueryPattern


ANALYSIS_SCENARIOS = (
    AnalysisScenario(
        "latency",
        "End-to-End Latency Analysis",
        "Analyze the complete latency distribution across the critical path",
        QueryPattern.SERVICE_LATENCY,
    ),
    AnalysisScenario(
        "bottleneck",
        "Service Bottleneck Detection",
        "Identify which services are causing the most delays",
        QueryPattern.BOTTLENECK_DETECTION,
    ),
    AnalysisScenario(
        "errors",
        "Error Impact Analysis",
        "Understand how errors in different services affect the critical path",
        QueryPattern.ERROR_DISTRIBUTION,
    ),
    AnalysisScenario(
        "timeseries",
        "Time Series Performance",
        "Analyze performance trends over time",
        QueryPattern.TIME_COMPARISON,
    ),
    AnalysisScenario(
        "resources",
        "Resource Utilization Correlation",
        "Correlate performance with resource metrics",
        QueryPattern.VOLUME_THROUGHPUT,
    ),
)


def prompt_flavor_for_model(model_name: Optional[str]) -> str:
    """SQL-specialised models get the terse skeleton prompt; everything else the enumerated one."""
    low = (model_name or "").lower()
    return "sql" if any(hint in low for hint in _SQL_MODEL_HINTS) else "general"


def sql_clause_signature(sql: str) -> Dict[str, int]:
    masked, _ = mask_sql(sql or "")
    return {clause: len(pattern.findall(masked)) for clause, pattern in _SIGNATURE_CLAUSES.items()}


def _custom_scenario(goal: str) -> AnalysisScenario:
    low = goal.lower()
    pattern = QueryPattern.SERVICE_LATENCY
    if "bottleneck" in low:
        pattern = QueryPattern.BOTTLENECK_DETECTION
    elif "error" in low:
        pattern = QueryPattern.ERROR_DISTRIBUTION
    elif "trend" in low or "compar" in low:
        pattern = QueryPattern.TIME_COMPARISON
    elif "throughput" in low or "volume" in low:
        pattern = QueryPattern.VOLUME_THROUGHPUT
    return AnalysisScenario("custom", goal[:50], goal, pattern)


class AIQueryGenerator:
    def __init__(
        self,
        llm: LLMClient,
        storage: TraceStorage,
        prompt_flavor: str = settings.QUERY_GENERATOR_PROMPT_FLAVOR,
        environment: str = settings.QUERY_GENERATOR_ENV,
        max_tokens: int = settings.LLM_MAX_TOKENS,
        requirements: Optional[DiagnosticQueryRequirements] = None,
        time_range_minutes: int = settings.QUERY_TIME_RANGE_MINUTES,
    ):
        self.llm = llm
        self.storage = storage
        if prompt_flavor not in PROMPT_FLAVORS:
            prompt_flavor = prompt_flavor_for_model(getattr(llm, "model_name", None))
        self.prompt_flavor = prompt_flavor
        self.environment = environment
        self.max_tokens = max_tokens
        self.requirements = requirements or CORE_DIAGNOSTIC_REQUIREMENTS
        self.time_range_minutes = time_range_minutes

    def scenarios_for_environment(self) -> List[AnalysisScenario]:
        if self.environment == "test":
            return list(ANALYSIS_SCENARIOS[:2])
        return list(ANALYSIS_SCENARIOS)

    def build_prompt(self, path: CriticalPath, analysis_goal: str) -> str:
        if self.prompt_flavor == "sql":
            return generate_sql_model_prompt(path, analysis_goal, self.requirements, self.time_range_minutes)
        return generate_general_llm_prompt(path, analysis_goal, self.requirements, self.time_range_minutes)

    def generate_query(
        self,
        path: CriticalPath,
        scenario: Union[AnalysisScenario, str],
        optimizer: Optional[SQLOptimizer] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GeneratedQueryWithThunk:
        """
        Generate one diagnostic query for ``scenario`` (or a free-form goal).

        LLM failures propagate as QueryGenerationError subclasses and are not
        retried here. Raises AnalysisCancelledError if cancelled before the
        model is called.
        """
        if isinstance(scenario, str):
            scenario = _custom_scenario(scenario)
        if cancel_event is not None and cancel_event.is_set():
            raise AnalysisCancelledError(f"generation of {scenario.key} for {path.id} was cancelled")

        request = LLMRequest(
            prompt=self.build_prompt(path, scenario.goal),
            task_type="general",
            max_tokens=self.max_tokens,
            temperature=0.0,
        )
        response = self.llm.generate(request)
        sql = complete_truncated_cte(extract_sql_from_response(response.content))

        validation = validate_diagnostic_query(sql, self.requirements)
        if not validation.is_valid:
            log_event(
                logger,
                logging.INFO,
                "diagnostic_requirements_missing",
                scenario=scenario.key,
                missing=validation.missing_requirements,
            )

        outcome = None
        if optimizer is not None:
            context = RepairContext(services=path.services, analysis_goal=scenario.goal)
            outcome = optimizer.optimize(sql, context, cancel_event=cancel_event)
            sql = outcome.final_sql

        query_id = f"{path.id}_ai_{scenario.key}"
        log_event(
            logger,
            logging.INFO,
            "ai_query_generated",
            query_id=query_id,
            flavor=self.prompt_flavor,
            valid=outcome.is_valid if outcome else None,
            attempts=len(outcome.attempts) if outcome else 0,
        )
        return GeneratedQueryWithThunk(
            id=query_id,
            name=f"{scenario.name} - {path.name}",
            description=scenario.goal,
            pattern=scenario.pattern,
            sql=sql,
            execute_thunk=make_query_thunk(query_id, sql, self.storage),
            optimization=outcome,
        )
