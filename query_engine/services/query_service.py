"""
Critical-path query service: the entry point callers use.

Template strategy renders the five pattern queries; AI strategy fans the
analysis scenarios out over a bounded pool, each one generated, validated and
repaired independently.
"""
import logging
import threading
from typing import List, Optional

from query_engine.services import settings
from query_engine.services.ai_generator import AIQueryGenerator
from query_engine.services.llm_client import LLMClient, LLMRequest, build_llm_client_from_env
from query_engine.services.models import (
    AnalysisCancelledError,
    CriticalPath,
    GeneratedQuery,
    GeneratedQueryWithThunk,
    ModelUnavailableError,
    QueryPattern,
)
from query_engine.services.patterns import generate_all_pattern_queries, generate_pattern_query
from query_engine.services.query_thunk import make_query_thunk
from query_engine.services.runtime import LinkedCancelEvent, configure_logging, log_event, map_bounded, set_path_id
from query_engine.services.sql_evaluator import SQLEvaluator
from query_engine.services.sql_optimizer import RepairContext, SQLOptimizer
from query_engine.services.sql_text import complete_truncated_cte, extract_sql_from_response
from query_engine.services.trace_schema import render_schema_definition
from trace_store.db_utils import TraceStorage, build_trace_storage_from_env

logger = logging.getLogger("query_service")

STRATEGIES = ("template", "ai")

OPTIMIZE_PROMPT = """You are a ClickHouse optimization expert. Optimize the following query for better performance.

Original Query:
{sql}

Analysis Goal: {goal}

Apply these optimization techniques where they help:
1. Filter on start_time and service_name as early as possible
2. Replace subqueries with JOINs when more efficient
3. Use ClickHouse-specific functions (quantile, countIf, arrayJoin)
4. Consider PREWHERE for selective filters
5. Apply sampling for large datasets if appropriate

Keep the same output columns and meaning. Use only these columns:
{schema}

Return ONLY the optimized SQL query without explanation."""

EXPLAIN_PROMPT = """You are a ClickHouse expert. Explain what the following query does in simple terms.

Query:
{sql}

Provide:
1. A brief summary of what the query analyzes
2. The main aggregations and calculations
3. Any performance considerations
4. Suggested improvements if applicable

Keep the explanation concise and technical but understandable."""


class CriticalPathQueryService:
    def __init__(
        self,
        storage: TraceStorage,
        llm: Optional[LLMClient] = None,
        strategy: str = settings.QUERY_GENERATOR_STRATEGY,
        evaluator: Optional[SQLEvaluator] = None,
        optimizer: Optional[SQLOptimizer] = None,
        ai_generator: Optional[AIQueryGenerator] = None,
        time_range_minutes: int = settings.QUERY_TIME_RANGE_MINUTES,
        max_concurrency: int = settings.QUERY_GENERATOR_MAX_CONCURRENCY,
    ):
        if strategy not in STRATEGIES:
            raise ValueError(f"unknown generation strategy: {strategy!r}")
        if strategy == "ai" and llm is None and ai_generator is None:
            raise ValueError("the ai strategy needs an LLM client")
        self.storage = storage
        self.llm = llm
        self.strategy = strategy
        self.time_range_minutes = time_range_minutes
        self.max_concurrency = max(1, int(max_concurrency))
        self.evaluator = evaluator or SQLEvaluator(storage)
        self.optimizer = optimizer or SQLOptimizer(self.evaluator, llm)
        if ai_generator is None and llm is not None:
            ai_generator = AIQueryGenerator(llm, storage, time_range_minutes=time_range_minutes)
        self.ai_generator = ai_generator

    def _with_thunk(self, query: GeneratedQuery) -> GeneratedQueryWithThunk:
        return GeneratedQueryWithThunk(
            id=query.id,
            name=query.name,
            description=query.description,
            pattern=query.pattern,
            sql=query.sql,
            expected_schema=query.expected_schema,
            execute_thunk=make_query_thunk(query.id, query.sql, self.storage),
        )

    def generate_queries(
        self,
        path: CriticalPath,
        cancel_event: Optional[threading.Event] = None,
        timeout_s: Optional[float] = None,
    ) -> List[GeneratedQueryWithThunk]:
        """
        Produce the ordered diagnostic queries for ``path``.

        With the AI strategy a timeout (or an external cancel event) stops
        further scenarios; the queries finished so far are returned in order.
        Generation errors from any scenario propagate.
        """
        set_path_id(path.id)
        if self.strategy == "template":
            return [self._with_thunk(q) for q in generate_all_pattern_queries(path, self.time_range_minutes)]

        cancel = LinkedCancelEvent(cancel_event)
        scenarios = self.ai_generator.scenarios_for_environment()

        def _generate(scenario) -> Optional[GeneratedQueryWithThunk]:
            try:
                return self.ai_generator.generate_query(path, scenario, optimizer=self.optimizer, cancel_event=cancel)
            except AnalysisCancelledError:
                return None

        timer = None
        if timeout_s is not None:
            timer = threading.Timer(timeout_s, cancel.set)
            timer.daemon = True
            timer.start()
        try:
            results = map_bounded(_generate, scenarios, self.max_concurrency, cancel)
        finally:
            if timer is not None:
                timer.cancel()

        queries = [q for q in results if q is not None]
        if len(queries) < len(scenarios):
            log_event(
                logger,
                logging.WARNING,
                "query_generation_cancelled",
                completed=len(queries),
                total=len(scenarios),
            )
        return queries

    def generate_query_thunk(self, path: CriticalPath, pattern: QueryPattern) -> GeneratedQueryWithThunk:
        return self._with_thunk(generate_pattern_query(path, pattern, self.time_range_minutes))

    def _require_llm(self, action: str) -> LLMClient:
        if self.llm is None:
            raise ModelUnavailableError(f"cannot {action}: no LLM client configured")
        return self.llm

    def optimize_query(self, sql: str, analysis_goal: str) -> str:
        """
        Ask the model for a faster equivalent, then validate and repair it.

        Falls back to the input SQL when the rewrite cannot be made valid.
        """
        llm = self._require_llm("optimize query")
        request = LLMRequest(
            prompt=OPTIMIZE_PROMPT.format(sql=sql, goal=analysis_goal, schema=render_schema_definition()),
            task_type="sql_optimization",
            max_tokens=settings.LLM_MAX_TOKENS,
            temperature=0.0,
        )
        response = llm.generate(request)
        candidate = complete_truncated_cte(extract_sql_from_response(response.content)) or sql
        outcome = self.optimizer.optimize(candidate, RepairContext(analysis_goal=analysis_goal))
        if outcome.is_valid:
            return outcome.final_sql
        log_event(
            logger,
            logging.WARNING,
            "optimized_query_rejected",
            code=outcome.final_error.code.value if outcome.final_error else None,
            attempts=len(outcome.attempts),
        )
        return sql

    def explain_query(self, sql: str) -> str:
        llm = self._require_llm("explain query")
        request = LLMRequest(
            prompt=EXPLAIN_PROMPT.format(sql=sql),
            task_type="sql_explanation",
            max_tokens=500,
            temperature=0.3,
        )
        return llm.generate(request).content.strip()


def build_query_service_from_env() -> CriticalPathQueryService:
    configure_logging(settings.LOG_LEVEL)
    storage = build_trace_storage_from_env()
    llm = None
    if settings.OPENAI_API_KEY or settings.LLM_BASE_URL:
        llm = build_llm_client_from_env()
    return CriticalPathQueryService(storage, llm, strategy=settings.QUERY_GENERATOR_STRATEGY)
