"""
Evaluator-optimizer loop for generated SQL.

Each round evaluates the current candidate; on failure a repair is produced
(deterministic rewrite rules first, LLM repair as fallback, or the reverse when
``prefer_llm`` is set). The loop stops when the SQL validates or when
``max_attempts`` is reached; it also stops early once no new repair can be
produced. Rejected SQL and LLM failures never escape ``optimize`` (the best
candidate so far is returned). Storage transport errors do propagate.
"""
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from query_engine.services import settings
from query_engine.services.llm_client import LLMClient, LLMRequest
from query_engine.services.models import (
    Optimization,
    OptimizationAttempt,
    OptimizationOutcome,
    QueryGenerationError,
    SQLError,
    SQLErrorCode,
)
from query_engine.services.runtime import log_event
from query_engine.services.sql_analysis import (
    KEYWORD_TYPOS,
    find_matching_paren,
    mask_sql,
    move_where_aggregates_to_having,
)
from query_engine.services.sql_evaluator import SQLEvaluator
from query_engine.services.sql_text import complete_truncated_cte, extract_sql_from_response, normalize_sql
from query_engine.services.trace_schema import TRACE_TABLE, render_schema_definition

logger = logging.getLogger("sql_optimizer")

Rewrite = Callable[[str, SQLError], Optional[Tuple[str, List[str]]]]

# Names LLMs reach for that do not exist on the traces table.
COLUMN_CORRECTIONS = {
    "timestamp": "start_time",
    "time": "start_time",
    "start_timestamp": "start_time",
    "end_timestamp": "end_time",
    "duration": "duration_ns",
    "duration_nano": "duration_ns",
    "service": "service_name",
    "servicename": "service_name",
    "operation": "operation_name",
    "span_name": "operation_name",
    "spanname": "operation_name",
    "status": "status_code",
    "statuscode": "status_code",
    "attributes": "span_attributes",
    "spanattributes": "span_attributes",
    "resourceattributes": "resource_attributes",
    "parent_id": "parent_span_id",
    "traceid": "trace_id",
    "spanid": "span_id",
}

_COUNT_TIMES_RE = re.compile(r"\bcount\s*\(\s*\*?\s*\)\s*\*\s*", re.IGNORECASE)
_AVG_CALL_RE = re.compile(r"avg\s*\(", re.IGNORECASE)
_BARE_OPERAND_RE = re.compile(r"[A-Za-z_][\w.]*")
_QUALIFIED_TRACES_RE = re.compile(
    r"\b(FROM|JOIN)(\s+)([A-Za-z_]\w*)\s*\.\s*(" + TRACE_TABLE + r")\b", re.IGNORECASE
)
_TYPO_WORD_RE = re.compile(r"(?<![\w.])(" + "|".join(sorted(KEYWORD_TYPOS)) + r")\b(?!\s*\()", re.IGNORECASE)

REPAIR_GUIDANCE = {
    SQLErrorCode.NOT_AN_AGGREGATE: (
        "Every selected, HAVING or ORDER BY column must be in GROUP BY or inside an aggregate. "
        "Never multiply count() by a raw column; use sum(column) instead."
    ),
    SQLErrorCode.ILLEGAL_AGGREGATION: (
        "Aggregate functions are not allowed in WHERE or PREWHERE. Move those conditions to HAVING "
        "and never nest one aggregate inside another."
    ),
    SQLErrorCode.UNKNOWN_IDENTIFIER: (
        "Use only columns from the schema below. Every CTE must expose each column that a later "
        "SELECT references; add the missing column or alias to the CTE that should produce it."
    ),
    SQLErrorCode.UNKNOWN_TABLE: (
        f"Query only the {TRACE_TABLE} table or CTEs defined in the query, without a database prefix."
    ),
    SQLErrorCode.SYNTAX_ERROR: (
        "Fix the ClickHouse syntax: commas between select items, balanced parentheses, "
        "correctly spelled keywords and a single statement."
    ),
    SQLErrorCode.TYPE_MISMATCH: (
        "Compare values of the same type. status_code is a String ('OK', 'ERROR', 'UNSET'); "
        "durations are UInt64 nanoseconds."
    ),
    SQLErrorCode.ILLEGAL_TYPE_OF_ARGUMENT: (
        "Pass arguments of the type each function expects; convert with toFloat64, toString or "
        "toDateTime where needed."
    ),
    SQLErrorCode.SEMANTIC_ERROR: "Use ClickHouse functions only and keep the query a single read-only SELECT.",
    SQLErrorCode.UNKNOWN: "Fix the error while keeping the query's intent.",
}

REPAIR_PROMPT = """You are a ClickHouse SQL expert fixing a query that the database rejected.

FAILING SQL:
```sql
{sql}
```

ERROR ({code}):
{message}

HOW TO FIX:
{guidance}

CONTEXT:
Services on the critical path: {services}
Analysis goal: {goal}

{schema}

Fix only what the error requires. Keep the selected metrics, filters and ordering otherwise unchanged.

Respond with JSON only, no markdown:
{{"optimizedSql": "<corrected SQL>", "explanation": "<what was wrong>", "changes": ["<change>", "..."]}}"""


@dataclass
class RepairContext:
    services: Sequence[str] = ()
    analysis_goal: str = ""


@dataclass(frozen=True)
class RepairRule:
    name: str
    codes: Tuple[SQLErrorCode, ...]
    explanation: str
    rewrite: Rewrite


@dataclass
class RuleRepair:
    sql: str
    rule: str
    explanation: str
    changes: List[str] = field(default_factory=list)


class RepairResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    optimized_sql: str = Field(default="", validation_alias=AliasChoices("optimizedSql", "optimized_sql", "sql"))
    explanation: str = ""
    changes: List[str] = Field(default_factory=list)

    @field_validator("changes", mode="before")
    @classmethod
    def _coerce_changes(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]


def _replace_spans(sql: str, edits: List[Tuple[int, int, str]]) -> str:
    out = sql
    for start, end, replacement in sorted(edits, key=lambda e: e[0], reverse=True):
        out = out[:start] + replacement + out[end:]
    return out


def _rewrite_count_product(sql: str, error: SQLError) -> Optional[Tuple[str, List[str]]]:
    """count() * (expr), count() * avg(expr) and count() * col become sum(expr)."""
    masked, _ = mask_sql(sql)
    edits: List[Tuple[int, int, str]] = []
    changes: List[str] = []
    for m in _COUNT_TIMES_RE.finditer(masked):
        pos = m.end()
        avg = _AVG_CALL_RE.match(masked, pos)
        if masked.startswith("(", pos) or avg:
            open_idx = pos if not avg else avg.end() - 1
            close = find_matching_paren(masked, open_idx)
            if close == -1:
                continue
            inner = sql[open_idx + 1:close].strip()
            end = close + 1
        else:
            bare = _BARE_OPERAND_RE.match(masked, pos)
            if not bare or masked[bare.end():].lstrip().startswith("("):
                continue
            inner = sql[pos:bare.end()]
            end = bare.end()
        replacement = f"sum({inner})"
        edits.append((m.start(), end, replacement))
        changes.append(f"{' '.join(sql[m.start():end].split())} -> {replacement}")
    if not edits:
        return None
    return _replace_spans(sql, edits), changes


def _rewrite_where_aggregates(sql: str, error: SQLError) -> Optional[Tuple[str, List[str]]]:
    rewritten = move_where_aggregates_to_having(sql)
    if rewritten is None:
        return None
    return rewritten, ["Moved aggregate conditions from WHERE to HAVING"]


def _rewrite_qualified_table(sql: str, error: SQLError) -> Optional[Tuple[str, List[str]]]:
    masked, _ = mask_sql(sql)
    edits = []
    changes = []
    for m in _QUALIFIED_TRACES_RE.finditer(masked):
        edits.append((m.start(3), m.end(4), TRACE_TABLE))
        changes.append(f"{sql[m.start(3):m.end(4)]} -> {TRACE_TABLE}")
    if not edits:
        return None
    return _replace_spans(sql, edits), changes


def _rewrite_column_names(sql: str, error: SQLError) -> Optional[Tuple[str, List[str]]]:
    hint = (error.position_hint or "").split(".")[-1]
    target = COLUMN_CORRECTIONS.get(hint.lower())
    if not target:
        return None
    masked, _ = mask_sql(sql)
    pattern = re.compile(r"(?<![\w])" + re.escape(hint) + r"(?![\w])(?!\s*\()")
    edits = []
    for m in pattern.finditer(masked):
        if re.search(r"\bAS\s*$", masked[:m.start()], re.IGNORECASE):
            continue
        edits.append((m.start(), m.end(), target))
    if not edits:
        return None
    return _replace_spans(sql, edits), [f"{hint} -> {target}"]


def _rewrite_keyword_typos(sql: str, error: SQLError) -> Optional[Tuple[str, List[str]]]:
    masked, _ = mask_sql(sql)
    edits = []
    changes = []
    for m in _TYPO_WORD_RE.finditer(masked):
        if re.search(r"\bAS\s*$", masked[:m.start()], re.IGNORECASE):
            continue
        fixed = KEYWORD_TYPOS[m.group(1).lower()]
        edits.append((m.start(), m.end(), fixed))
        changes.append(f"{m.group(1)} -> {fixed}")
    if not edits:
        return None
    return _replace_spans(sql, edits), changes


RULES: Tuple[RepairRule, ...] = (
    RepairRule(
        "count_product_to_sum",
        (SQLErrorCode.NOT_AN_AGGREGATE, SQLErrorCode.ILLEGAL_AGGREGATION),
        "count() multiplied by a per-row value is not an aggregate; sum() the value instead",
        _rewrite_count_product,
    ),
    RepairRule(
        "where_aggregates_to_having",
        (SQLErrorCode.ILLEGAL_AGGREGATION,),
        "Aggregate conditions cannot be evaluated in WHERE",
        _rewrite_where_aggregates,
    ),
    RepairRule(
        "unqualified_trace_table",
        (SQLErrorCode.UNKNOWN_TABLE,),
        f"The {TRACE_TABLE} table is addressed without a database prefix",
        _rewrite_qualified_table,
    ),
    RepairRule(
        "trace_column_names",
        (SQLErrorCode.UNKNOWN_IDENTIFIER,),
        "Replaced a column name that does not exist on the traces table",
        _rewrite_column_names,
    ),
    RepairRule(
        "keyword_typos",
        (SQLErrorCode.SYNTAX_ERROR,),
        "Corrected misspelled SQL keywords",
        _rewrite_keyword_typos,
    ),
)


def apply_rule_based_repair(sql: str, error: Optional[SQLError]) -> Optional[RuleRepair]:
    """Return the first rule rewrite that changes ``sql`` for this error, else None."""
    if error is None:
        return None
    for rule in RULES:
        if error.code not in rule.codes:
            continue
        rewritten = rule.rewrite(sql, error)
        if rewritten is None:
            continue
        new_sql, changes = rewritten
        if normalize_sql(new_sql) != normalize_sql(sql):
            return RuleRepair(sql=new_sql, rule=rule.name, explanation=rule.explanation, changes=changes)
    return None


def _json_payload(content: str) -> Optional[str]:
    text = re.sub(r"```(?:json)?", "", content or "", flags=re.IGNORECASE).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def parse_repair_response(content: str) -> Optional[RepairResponse]:
    """Parse the JSON repair reply; fall back to pulling bare SQL out of the text."""
    payload = _json_payload(content)
    if payload:
        try:
            parsed = RepairResponse.model_validate_json(payload)
        except ValidationError:
            parsed = None
        if parsed is not None and parsed.optimized_sql.strip():
            parsed.optimized_sql = complete_truncated_cte(extract_sql_from_response(parsed.optimized_sql))
            return parsed
    sql = complete_truncated_cte(extract_sql_from_response(content))
    if not re.match(r"\s*(?:WITH|SELECT)\b", sql, re.IGNORECASE):
        return None
    return RepairResponse(optimizedSql=sql, explanation="Repaired by LLM")


def build_repair_prompt(sql: str, error: SQLError, context: Optional[RepairContext] = None) -> str:
    context = context or RepairContext()
    return REPAIR_PROMPT.format(
        sql=sql,
        code=error.code.value,
        message=error.message,
        guidance=REPAIR_GUIDANCE.get(error.code, REPAIR_GUIDANCE[SQLErrorCode.UNKNOWN]),
        services=", ".join(context.services) or "(unspecified)",
        goal=context.analysis_goal or "diagnose the critical path",
        schema=render_schema_definition(),
    )


class SQLOptimizer:
    def __init__(
        self,
        evaluator: SQLEvaluator,
        llm: Optional[LLMClient] = None,
        max_attempts: int = settings.OPTIMIZER_MAX_ATTEMPTS,
        prefer_llm: bool = settings.OPTIMIZER_PREFER_LLM,
        validation_mode: str = settings.OPTIMIZER_VALIDATION_MODE,
        repair_max_tokens: int = settings.LLM_REPAIR_MAX_TOKENS,
    ):
        self.evaluator = evaluator
        self.llm = llm
        self.max_attempts = max(1, int(max_attempts))
        self.prefer_llm = prefer_llm
        self.validation_mode = validation_mode
        self.repair_max_tokens = repair_max_tokens

    def optimize(
        self,
        sql: str,
        context: Optional[RepairContext] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> OptimizationOutcome:
        """
        Evaluate and repair ``sql`` for at most ``max_attempts`` evaluations.

        ``attempts[0]`` is always the SQL as given. Storage transport errors
        propagate; everything else ends the loop with the last candidate.
        """
        attempts: List[OptimizationAttempt] = []
        optimizations: List[Optimization] = []
        current = sql
        stop_reason = "attempts_exhausted"

        while True:
            result = self.evaluator.evaluate(current, self.validation_mode)
            attempts.append(OptimizationAttempt(sql=current, is_valid=result.is_valid, error=result.error))
            if result.is_valid:
                stop_reason = "valid"
                break
            if len(attempts) >= self.max_attempts:
                break
            if cancel_event is not None and cancel_event.is_set():
                stop_reason = "cancelled"
                break
            repaired = self._repair(current, result.error, context)
            if repaired is None:
                stop_reason = "no_repair"
                break
            new_sql, optimization = repaired
            if normalize_sql(new_sql) == normalize_sql(current):
                stop_reason = "unchanged"
                break
            optimizations.append(optimization)
            current = new_sql

        outcome = OptimizationOutcome(final_sql=current, attempts=attempts, optimizations=optimizations)
        log_event(
            logger,
            logging.INFO if outcome.is_valid else logging.WARNING,
            "optimizer_finished",
            valid=outcome.is_valid,
            attempts=len(attempts),
            repairs=len(optimizations),
            stop_reason=stop_reason,
            final_code=outcome.final_error.code.value if outcome.final_error else None,
        )
        return outcome

    def _repair(
        self, sql: str, error: Optional[SQLError], context: Optional[RepairContext]
    ) -> Optional[Tuple[str, Optimization]]:
        if error is None:
            return None
        strategies = (self._llm_repair, self._rule_repair) if self.prefer_llm else (self._rule_repair, self._llm_repair)
        for strategy in strategies:
            repaired = strategy(sql, error, context)
            if repaired is not None:
                return repaired
        return None

    def _rule_repair(
        self, sql: str, error: SQLError, context: Optional[RepairContext]
    ) -> Optional[Tuple[str, Optimization]]:
        repair = apply_rule_based_repair(sql, error)
        if repair is None:
            return None
        log_event(logger, logging.INFO, "sql_repair_applied", source="rule", rule=repair.rule, code=error.code.value)
        return repair.sql, Optimization(explanation=repair.explanation, change_summary=repair.changes, source="rule")

    def _llm_repair(
        self, sql: str, error: SQLError, context: Optional[RepairContext]
    ) -> Optional[Tuple[str, Optimization]]:
        if self.llm is None:
            return None
        request = LLMRequest(
            prompt=build_repair_prompt(sql, error, context),
            task_type="sql_repair",
            max_tokens=self.repair_max_tokens,
            temperature=0.0,
        )
        try:
            response = self.llm.generate(request)
        except QueryGenerationError as exc:
            log_event(logger, logging.WARNING, "sql_repair_failed", source="llm", reason=exc.tag, error=exc.message[:300])
            return None
        parsed = parse_repair_response(response.content)
        if parsed is None:
            log_event(logger, logging.WARNING, "sql_repair_failed", source="llm", reason="unparseable_response")
            return None
        log_event(logger, logging.INFO, "sql_repair_applied", source="llm", code=error.code.value)
        optimization = Optimization(
            explanation=parsed.explanation or "Repaired by LLM",
            change_summary=list(parsed.changes),
            source="llm",
        )
        return parsed.optimized_sql, optimization
